from pydantic import BaseModel, ConfigDict, Field
from typing import List, Literal, Optional

class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

class PurchaseRequest(CamelModel):
    buyer_id: str = Field(alias="buyerId", min_length=1)
    item_id: str = Field(alias="itemId", min_length=1)

class PurchaseResult(CamelModel):
    status: Literal["settled", "redirectRequired"]
    url: Optional[str] = None
    purchase_intent_id: Optional[str] = Field(default=None, alias="purchaseIntentId")
    top_up_intent_id: Optional[str] = Field(default=None, alias="topUpIntentId")
    amount_minor_units: Optional[int] = Field(default=None, alias="amountMinorUnits")

class TopUpRequest(CamelModel):
    user_id: str = Field(alias="userId", min_length=1)
    amount_minor_units: int = Field(alias="amountMinorUnits", gt=0)

class TopUpResult(CamelModel):
    url: str
    top_up_intent_id: str = Field(alias="topUpIntentId")

class PublishItem(CamelModel):
    item_id: str = Field(alias="itemId", min_length=1)
    owner_id: str = Field(alias="ownerId", min_length=1)
    price_minor_units: int = Field(alias="priceMinorUnits", gt=0)
    title: str

class OnboardingRequest(CamelModel):
    email: str

class PayoutRequest(CamelModel):
    amount_minor_units: int = Field(alias="amountMinorUnits", gt=0)

class PayoutResult(CamelModel):
    payout_id: str = Field(alias="payoutId")
    transfer_id: str = Field(alias="transferId")

class BalanceView(CamelModel):
    user_id: str = Field(alias="userId")
    balance_minor_units: int = Field(alias="balanceMinorUnits")
    currency: str

class OwnedItemsView(CamelModel):
    user_id: str = Field(alias="userId")
    item_ids: List[str] = Field(alias="itemIds")

class OnboardingStatus(CamelModel):
    creator_id: str = Field(alias="creatorId")
    connected_account_id: Optional[str] = Field(default=None, alias="connectedAccountId")
    payouts_enabled: bool = Field(alias="payoutsEnabled")

class PurchaseEvent(BaseModel):
    """Domain event relayed to Kafka through the outbox."""
    type: Literal["PurchaseSettled", "PurchaseFailed", "TopUpConfirmed", "PayoutCreated"]
    reference: str
    user_id: str
    amount: int
    currency: str
    item_id: Optional[str] = None
    seller_id: Optional[str] = None
    reason: Optional[str] = None
