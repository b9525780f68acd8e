"""
Reconciliation Engine

Turns "purchase requested", "balance check" and "processor confirmed" into
ledger mutations. Correctness rests on two things only: ``apply_atomic`` in
the Ledger Store, and idempotency keys (event id, intent ids and the unique
(buyer, item) ownership pair). Nothing here holds an in-process lock.

    request_purchase ──▶ balance covers price ──▶ settle ──▶ settled
            │                                      │
            │            InsufficientFunds (race) ◀┘
            ▼
      purchase intent (pending) ──blocked on──▶ top-up intent (pending)
                                                       │ webhook
            settle FIFO while funds allow ◀── confirmed ┘
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from common.error_handling import (
    GatewayUnavailable, InsufficientFunds, InvalidAmount, ItemNotFound, MalformedEvent, PayoutUnavailable,
)
from common.schemas import PurchaseEvent
from common.settings import settings
from ledger_service.gateway import (
    AccountCapabilitiesChanged, PaymentGateway, TopUpClosed, TopUpCompleted, WebhookEvent,
)
from ledger_service.models import CatalogItem, PurchaseIntent, TopUpIntent, PENDING, FAILED, PAID
from ledger_service.store import ApplyResult, LedgerStore, Mutation, utcnow

logger = logging.getLogger(__name__)

SETTLED = "settled"
REDIRECT_REQUIRED = "redirectRequired"
PAYOUT_RETRY_AFTER = timedelta(minutes=5)

@dataclass(frozen=True)
class RevenueSplit:
    """Seller share of a sale in basis points; the platform keeps the rest."""
    seller_share_bps: int = 9000

    def __post_init__(self):
        if not 0 <= self.seller_share_bps <= 10000:
            raise ValueError(f"seller_share_bps must be within 0..10000, got {self.seller_share_bps}")

    def seller_amount(self, price: int) -> int:
        return price * self.seller_share_bps // 10000

    def platform_amount(self, price: int) -> int:
        return price - self.seller_amount(price)

@dataclass(frozen=True)
class PurchaseOutcome:
    status: str
    url: Optional[str] = None
    purchase_intent_id: Optional[str] = None
    top_up_intent_id: Optional[str] = None
    amount: Optional[int] = None

    @classmethod
    def settled(cls, purchase_intent_id: str = None) -> "PurchaseOutcome":
        return cls(SETTLED, purchase_intent_id=purchase_intent_id)

@dataclass(frozen=True)
class PayoutOutcome:
    payout_id: str
    transfer_id: Optional[str]
    status: str

class ReconciliationEngine:
    def __init__(
        self,
        store: LedgerStore,
        gateway: PaymentGateway,
        split: RevenueSplit = None,
        platform_account_id: str = None,
        currency: str = None,
        intent_expiry: timedelta = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.split = split or RevenueSplit(settings.seller_share_bps)
        self.platform_account_id = platform_account_id or settings.platform_account_id
        self.currency = currency or settings.currency
        self.intent_expiry = intent_expiry or timedelta(seconds=settings.intent_expiry_seconds)
        self.clock = clock

    # =========================================================================
    # Purchases
    # =========================================================================

    def request_purchase(self, buyer_id: str, item_id: str) -> PurchaseOutcome:
        item = self.store.get_item(item_id)
        if item is None:
            raise ItemNotFound(f"deck {item_id} not found", field="itemId")

        if self.store.owns(buyer_id, item.id):
            logger.info(f"{buyer_id} already owns {item.id}; nothing to charge")
            return PurchaseOutcome.settled()

        self.store.open_account(buyer_id)

        if item.owner_id == buyer_id:
            # Creators hold their own decks without paying themselves
            self.store.apply_atomic([], [(buyer_id, item.id)], reference=f"own:{item.id}")
            return PurchaseOutcome.settled()

        pending = self._live_pending_purchase(buyer_id, item.id)

        balance = self.store.get_balance(buyer_id)
        if balance >= item.price:
            if self._settle(buyer_id, item, item.price, pending.id if pending else None):
                return PurchaseOutcome.settled(pending.id if pending else None)
            # A concurrent spend won between our read and the debit: take the blocked path
            logger.info(f"Purchase of {item.id} by {buyer_id} lost a balance race; deferring")
            balance = self.store.get_balance(buyer_id)
            pending = self._live_pending_purchase(buyer_id, item.id)

        if pending is not None:
            outcome = self._reuse_pending(pending, balance)
            if outcome is not None:
                return outcome
            self.store.fail_purchase(pending, "superseded", self.currency)

        return self._defer(buyer_id, item, balance)

    def _settle(self, buyer_id: str, item: CatalogItem, price: int, intent_id: Optional[str]) -> bool:
        """Debit buyer, credit seller and platform, grant ownership: one transaction.

        False means the buyer could not cover ``price`` at commit time.
        """
        seller_amount = self.split.seller_amount(price)
        platform_amount = self.split.platform_amount(price)
        reference = intent_id or str(uuid.uuid4())

        result = self.store.apply_atomic(
            [
                Mutation(buyer_id, -price),
                Mutation(item.owner_id, seller_amount),
                Mutation(self.platform_account_id, platform_amount),
            ],
            [(buyer_id, item.id)],
            reference=reference,
            settle_purchase_id=intent_id,
            events=[PurchaseEvent(
                type="PurchaseSettled", reference=reference, user_id=buyer_id, amount=price,
                currency=self.currency, item_id=item.id, seller_id=item.owner_id,
            )],
        )

        if result is ApplyResult.OK:
            logger.info(f"Settled {item.id} for {buyer_id}: price={price} seller={seller_amount} platform={platform_amount}")
            return True
        if result is ApplyResult.ALREADY_OWNED:
            if intent_id is not None:
                self.store.mark_purchase_settled(intent_id)
            return True
        if result is ApplyResult.STALE_INTENT:
            # Settled or failed concurrently; ownership tells which
            return self.store.owns(buyer_id, item.id)
        return False

    def _live_pending_purchase(self, buyer_id: str, item_id: str) -> Optional[PurchaseIntent]:
        pending = self.store.find_pending_purchase(buyer_id, item_id)
        if pending is not None and self._is_stale(pending.created_at):
            self.store.fail_purchase(pending, "expired", self.currency)
            return None
        return pending

    def _reuse_pending(self, pending: PurchaseIntent, balance: int) -> Optional[PurchaseOutcome]:
        """A retried request gets the same redirect while its top-up can still cover the price."""
        top_up = self.store.get_top_up(pending.blocked_on_top_up_id) if pending.blocked_on_top_up_id else None
        if top_up is None or top_up.status != PENDING or not top_up.redirect_url:
            return None
        if balance + top_up.amount < pending.price:
            return None
        return PurchaseOutcome(
            REDIRECT_REQUIRED,
            url=top_up.redirect_url,
            purchase_intent_id=pending.id,
            top_up_intent_id=top_up.id,
            amount=top_up.amount,
        )

    def _defer(self, buyer_id: str, item: CatalogItem, balance: int) -> PurchaseOutcome:
        shortfall = item.price - balance
        # Both rows exist before the checkout does, so no webhook can outrun them
        top_up = self.store.create_top_up_intent(buyer_id, shortfall)
        intent = self.store.create_purchase_intent(buyer_id, item.id, item.price, top_up.id)
        try:
            session = self.gateway.create_top_up_session(buyer_id, shortfall, top_up.id)
        except GatewayUnavailable:
            self.store.fail_purchase(intent, "gateway_unavailable", self.currency)
            self.store.close_top_up(top_up.id, FAILED)
            raise
        self.store.attach_session(top_up.id, session.external_session_id, session.redirect_url)

        logger.info(f"Purchase {intent.id} of {item.id} by {buyer_id} blocked on top-up {top_up.id} for {shortfall}")
        return PurchaseOutcome(
            REDIRECT_REQUIRED,
            url=session.redirect_url,
            purchase_intent_id=intent.id,
            top_up_intent_id=top_up.id,
            amount=shortfall,
        )

    # =========================================================================
    # Top-ups
    # =========================================================================

    def request_top_up(self, user_id: str, amount: int) -> TopUpIntent:
        if amount <= 0:
            raise InvalidAmount("top-up amount must be positive", field="amountMinorUnits")
        self.store.open_account(user_id)
        top_up = self.store.create_top_up_intent(user_id, amount)
        try:
            session = self.gateway.create_top_up_session(user_id, amount, top_up.id)
        except GatewayUnavailable:
            self.store.close_top_up(top_up.id, FAILED)
            raise
        self.store.attach_session(top_up.id, session.external_session_id, session.redirect_url)
        top_up.external_session_id = session.external_session_id
        top_up.redirect_url = session.redirect_url
        return top_up

    # =========================================================================
    # Webhooks
    # =========================================================================

    def on_webhook(self, raw_payload: bytes, signature_header: Optional[str]) -> str:
        """Verify, deduplicate and apply one processor delivery.

        Returns ``applied``, ``duplicate`` or ``ignored``. Raises
        ``SignatureInvalid`` before touching any state.
        """
        envelope = self.gateway.verify_webhook_signature(raw_payload, signature_header)
        event = self.gateway.parse_event(envelope)
        return self.apply_event(event)

    def apply_event(self, event: WebhookEvent) -> str:
        if self.store.is_event_processed(event.event_id):
            logger.info(f"Webhook event {event.event_id} already processed")
            return "duplicate"

        if isinstance(event, TopUpCompleted):
            return self._on_top_up_completed(event)
        if isinstance(event, TopUpClosed):
            return self._on_top_up_closed(event)
        if isinstance(event, AccountCapabilitiesChanged):
            found = self.store.set_payouts_enabled(event.account_id, event.payouts_enabled)
            if not found:
                logger.warning(f"account.updated for unknown connected account {event.account_id}")
            self.store.record_event(event.event_id, type(event).__name__)
            return "applied"

        logger.info(f"Ignoring webhook event {event.event_id} of type {event.event_type}")
        self.store.record_event(event.event_id, event.event_type)
        return "ignored"

    def _find_top_up(self, intent_id: Optional[str], external_session_id: str) -> Optional[TopUpIntent]:
        top_up = self.store.get_top_up(intent_id) if intent_id else None
        if top_up is None:
            top_up = self.store.find_top_up_by_session(external_session_id)
        return top_up

    def _on_top_up_completed(self, event: TopUpCompleted) -> str:
        if event.amount <= 0:
            raise MalformedEvent(f"top-up event {event.event_id} carries no amount")

        top_up = self._find_top_up(event.intent_id, event.external_session_id)
        if top_up is None:
            # Paid checkout we hold no intent for: the money is real, so credit it
            if not event.user_id:
                raise MalformedEvent(f"top-up event {event.event_id} names no user")
            logger.warning(f"No intent for paid session {event.external_session_id}; recording one for {event.user_id}")
            self.store.open_account(event.user_id)
            top_up = self.store.create_top_up_intent(
                event.user_id, event.amount, intent_id=event.intent_id,
                external_session_id=event.external_session_id,
            )
        elif top_up.status != PENDING:
            logger.warning(f"Top-up {top_up.id} confirmed while {top_up.status}; crediting anyway")
        if event.amount != top_up.amount:
            logger.warning(f"Top-up {top_up.id} confirmed {event.amount}, expected {top_up.amount}")

        result = self.store.apply_atomic(
            [Mutation(top_up.user_id, event.amount)],
            reference=top_up.id,
            event_id=event.event_id,
            event_type=type(event).__name__,
            confirm_top_up_id=top_up.id,
            events=[PurchaseEvent(
                type="TopUpConfirmed", reference=top_up.id, user_id=top_up.user_id,
                amount=event.amount, currency=self.currency,
            )],
        )
        if result is ApplyResult.DUPLICATE_EVENT:
            # Same session confirmed by another event id; its credit already landed
            self.store.record_event(event.event_id, type(event).__name__)
            return "duplicate"

        logger.info(f"Top-up {top_up.id} confirmed: +{event.amount} for {top_up.user_id}")
        self.resume_blocked(top_up.id)
        return "applied"

    def _on_top_up_closed(self, event: TopUpClosed) -> str:
        top_up = self._find_top_up(event.intent_id, event.external_session_id)
        if top_up is not None and self.store.close_top_up(top_up.id, event.status):
            for intent in self.store.blocked_purchases(top_up.id):
                self.store.fail_purchase(intent, f"top_up_{event.status}", self.currency)
            logger.info(f"Top-up {top_up.id} closed as {event.status}")
        self.store.record_event(event.event_id, type(event).__name__)
        return "applied"

    def resume_blocked(self, top_up_id: str) -> int:
        """Settle purchases blocked on ``top_up_id`` oldest first, as far as funds allow.

        Intents that cannot be covered stay pending.
        """
        settled = 0
        for intent in self.store.blocked_purchases(top_up_id):
            item = self.store.get_item(intent.item_id)
            if self._settle(intent.buyer_id, item, intent.price, intent.id):
                settled += 1
            else:
                logger.info(f"Purchase {intent.id} still short after top-up {top_up_id}; left pending")
        return settled

    # =========================================================================
    # Time-driven transitions
    # =========================================================================

    def _is_stale(self, created_at: datetime, now: datetime = None) -> bool:
        return created_at < (now or self.clock()) - self.intent_expiry

    def expire_stale_intents(self, now: datetime = None) -> Dict[str, int]:
        """Fail purchases pending past the expiry and expire their top-ups. No refunds."""
        cutoff = (now or self.clock()) - self.intent_expiry
        failed = 0
        for intent in self.store.stale_pending_purchases(cutoff):
            if self.store.fail_purchase(intent, "expired", self.currency):
                failed += 1
        expired = 0
        for top_up in self.store.stale_pending_top_ups(cutoff):
            if self.store.close_top_up(top_up.id, "expired"):
                expired += 1
        if failed or expired:
            logger.info(f"Expiry sweep: {failed} purchases failed, {expired} top-ups expired")
        return {"purchases_failed": failed, "top_ups_expired": expired}

    def resume_confirmed_purchases(self) -> int:
        """Settle pending purchases whose top-up is already confirmed."""
        settled = 0
        for top_up_id in dict.fromkeys(i.blocked_on_top_up_id for i in self.store.resumable_purchases()):
            settled += self.resume_blocked(top_up_id)
        return settled

    # =========================================================================
    # Creators: onboarding and payouts
    # =========================================================================

    def start_onboarding(self, creator_id: str, email: str) -> str:
        self.store.open_account(creator_id)
        account = self.store.get_account(creator_id)
        connected_id = account.connected_account_id
        if not connected_id:
            connected_id = self.gateway.create_connected_account(email)
            self.store.set_connected_account(creator_id, connected_id)
            logger.info(f"Connected account {connected_id} created for {creator_id}")
        return self.gateway.create_onboarding_link(connected_id)

    def get_onboarding_status(self, creator_id: str) -> dict:
        account = self.store.get_account(creator_id)
        return {
            "creator_id": creator_id,
            "connected_account_id": account.connected_account_id if account else None,
            "payouts_enabled": bool(account and account.payouts_enabled),
        }

    def request_payout(self, creator_id: str, amount: int) -> PayoutOutcome:
        if amount <= 0:
            raise InvalidAmount("payout amount must be positive", field="amountMinorUnits")
        account = self.store.get_account(creator_id)
        if account is None or not account.connected_account_id or not account.payouts_enabled:
            raise PayoutUnavailable(f"creator {creator_id} has not completed payout onboarding")

        payout = self.store.create_payout(creator_id, amount)
        result = self.store.apply_atomic([Mutation(creator_id, -amount)], reference=payout.id)
        if result is ApplyResult.INSUFFICIENT_FUNDS:
            self.store.finish_payout(payout.id, FAILED)
            raise InsufficientFunds(f"balance of {creator_id} does not cover {amount}", field="amountMinorUnits")

        return self._transfer(payout.id, creator_id, account.connected_account_id, amount)

    def _transfer(self, payout_id: str, creator_id: str, connected_account_id: str, amount: int) -> PayoutOutcome:
        try:
            transfer_id = self.gateway.create_payout_transfer(connected_account_id, amount, payout_id)
        except PayoutUnavailable:
            # Definitive refusal: give the funds back
            self.store.apply_atomic([Mutation(creator_id, amount)], reference=payout_id)
            self.store.finish_payout(payout_id, FAILED)
            raise
        except GatewayUnavailable:
            # Outcome unknown; the debit stays held and the payout is retried with the same idempotency key
            logger.warning(f"Payout {payout_id} left pending after a processor failure")
            raise

        self.store.finish_payout(payout_id, PAID, transfer_id, PurchaseEvent(
            type="PayoutCreated", reference=payout_id, user_id=creator_id, amount=amount, currency=self.currency,
        ))
        return PayoutOutcome(payout_id=payout_id, transfer_id=transfer_id, status=PAID)

    def retry_pending_payouts(self, now: datetime = None) -> List[PayoutOutcome]:
        """Re-issue transfers left pending by a processor failure. The idempotency
        key is the payout id, so a transfer that did go through is not repeated."""
        outcomes = []
        cutoff = (now or self.clock()) - PAYOUT_RETRY_AFTER
        for payout in self.store.pending_payouts(cutoff):
            account = self.store.get_account(payout.creator_id)
            try:
                outcomes.append(self._transfer(payout.id, payout.creator_id, account.connected_account_id, payout.amount))
            except (PayoutUnavailable, GatewayUnavailable) as e:
                logger.warning(f"Payout {payout.id} retry failed: {e}")
        return outcomes
