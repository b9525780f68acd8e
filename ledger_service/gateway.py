"""
Payment Gateway Adapter (Stripe)

Outbound: checkout sessions for balance top-ups, Connect transfers for creator
payouts, Connect onboarding. Inbound: webhook signature verification and
translation of the processor's event envelope into the closed set of events
the reconciliation engine understands.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Union

import stripe

from common.circuit_breaker import CircuitBreaker, STRIPE_CB_CONFIG
from common.error_handling import GatewayUnavailable, MalformedEvent, PayoutUnavailable, SignatureInvalid
from common.settings import settings

logger = logging.getLogger(__name__)

TOP_UP_METADATA_TYPE = "top_up"

# =============================================================================
# Events
# =============================================================================

@dataclass(frozen=True)
class TopUpCompleted:
    event_id: str
    external_session_id: str
    intent_id: Optional[str]
    user_id: Optional[str]
    amount: int

@dataclass(frozen=True)
class TopUpClosed:
    """The checkout ended without funds: ``status`` is ``expired`` or ``failed``."""
    event_id: str
    external_session_id: str
    intent_id: Optional[str]
    status: str

@dataclass(frozen=True)
class AccountCapabilitiesChanged:
    event_id: str
    account_id: str
    payouts_enabled: bool

@dataclass(frozen=True)
class Unrecognized:
    event_id: str
    event_type: str

WebhookEvent = Union[TopUpCompleted, TopUpClosed, AccountCapabilitiesChanged, Unrecognized]

@dataclass(frozen=True)
class CheckoutSession:
    external_session_id: str
    redirect_url: str

# =============================================================================
# Adapter
# =============================================================================

class PaymentGateway(ABC):
    """Processor boundary used by the reconciliation engine.

    Webhook verification and parsing work on the processor's wire format and
    are shared by every implementation.
    """

    webhook_secret: str = settings.stripe_webhook_secret
    webhook_tolerance: int = settings.stripe_webhook_tolerance_seconds

    @abstractmethod
    def create_top_up_session(self, user_id: str, amount: int, intent_id: str) -> CheckoutSession:
        """Open a hosted checkout for ``amount`` minor units tagged with ``intent_id``."""

    @abstractmethod
    def create_payout_transfer(self, connected_account_id: str, amount: int, payout_id: str) -> str:
        """Transfer to a connected account; returns the transfer id."""

    @abstractmethod
    def create_connected_account(self, email: str) -> str:
        """Create a connected payout account; returns its id."""

    @abstractmethod
    def create_onboarding_link(self, connected_account_id: str) -> str:
        """Hosted onboarding URL for a connected account."""

    def verify_webhook_signature(self, raw_payload: bytes, signature_header: Optional[str],
                                 secret: Optional[str] = None) -> dict:
        """Verify the HMAC signature over the raw body, then parse it.

        Nothing is parsed before the signature has been checked.
        """
        secret = secret or self.webhook_secret
        if not signature_header:
            raise SignatureInvalid("missing signature header")
        try:
            payload = raw_payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(payload, signature_header, secret, self.webhook_tolerance)
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise SignatureInvalid("webhook signature verification failed")

        try:
            envelope = json.loads(payload)
        except ValueError:
            raise MalformedEvent("webhook body is not JSON")
        if not isinstance(envelope, dict) or not envelope.get("id") or not envelope.get("type"):
            raise MalformedEvent("webhook body is not an event envelope")
        return envelope

    def parse_event(self, envelope: dict) -> WebhookEvent:
        event_id = envelope["id"]
        event_type = envelope["type"]
        data = envelope.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            obj = {}

        if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
            metadata = self._top_up_metadata(obj)
            if metadata is None:
                return Unrecognized(event_id, event_type)
            if obj.get("payment_status") != "paid":
                # Delayed payment methods complete later via async_payment_succeeded
                logger.info(f"Checkout {obj.get('id')} completed but not yet paid")
                return Unrecognized(event_id, event_type)
            try:
                amount = int(obj.get("amount_total") or 0)
            except (TypeError, ValueError):
                raise MalformedEvent(f"event {event_id} carries a non-numeric amount")
            return TopUpCompleted(
                event_id=event_id,
                external_session_id=self._object_id(event_id, obj),
                intent_id=metadata.get("intentId") or obj.get("client_reference_id"),
                user_id=metadata.get("userId"),
                amount=amount,
            )

        if event_type in ("checkout.session.expired", "checkout.session.async_payment_failed"):
            metadata = self._top_up_metadata(obj)
            if metadata is None:
                return Unrecognized(event_id, event_type)
            return TopUpClosed(
                event_id=event_id,
                external_session_id=self._object_id(event_id, obj),
                intent_id=metadata.get("intentId") or obj.get("client_reference_id"),
                status="expired" if event_type == "checkout.session.expired" else "failed",
            )

        if event_type == "account.updated":
            return AccountCapabilitiesChanged(
                event_id=event_id,
                account_id=self._object_id(event_id, obj),
                payouts_enabled=bool(obj.get("payouts_enabled")),
            )

        return Unrecognized(event_id, event_type)

    @staticmethod
    def _top_up_metadata(obj: dict) -> Optional[dict]:
        metadata = obj.get("metadata")
        if not isinstance(metadata, dict) or metadata.get("type") != TOP_UP_METADATA_TYPE:
            return None
        return metadata

    @staticmethod
    def _object_id(event_id: str, obj: dict) -> str:
        object_id = obj.get("id")
        if not isinstance(object_id, str) or not object_id:
            raise MalformedEvent(f"event {event_id} object has no id")
        return object_id

# Errors worth retrying and worth counting against the circuit
TRANSIENT_STRIPE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)

class StripeGateway(PaymentGateway):
    def __init__(
        self,
        api_key: str = None,
        webhook_secret: str = None,
        currency: str = None,
        client_url: str = None,
        timeout: float = None,
        breaker: CircuitBreaker = None,
    ):
        self.api_key = api_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self.currency = currency or settings.currency
        self.client_url = client_url or settings.client_url
        self.breaker = breaker or CircuitBreaker("stripe", STRIPE_CB_CONFIG)
        # Every processor call is bounded; a hung request must not stall settlement
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout or settings.gateway_timeout_seconds)

    def _call(self, operation: str, func, **params):
        try:
            return self.breaker.call(func, api_key=self.api_key, failure_exceptions=TRANSIENT_STRIPE_ERRORS, **params)
        except TRANSIENT_STRIPE_ERRORS as e:
            logger.error(f"Stripe {operation} failed transiently: {e}")
            raise GatewayUnavailable(f"payment processor unavailable during {operation}", original_error=e)

    def create_top_up_session(self, user_id: str, amount: int, intent_id: str) -> CheckoutSession:
        try:
            session = self._call(
                "checkout",
                stripe.checkout.Session.create,
                idempotency_key=f"topup_{intent_id}",
                mode="payment",
                payment_method_types=["card"],
                line_items=[{
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {"name": "Add credits to your balance"},
                        "unit_amount": amount,
                    },
                    "quantity": 1,
                }],
                client_reference_id=intent_id,
                success_url=f"{self.client_url}/app/purchase-success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self.client_url}/app/purchase-cancelled",
                metadata={"userId": user_id, "intentId": intent_id, "type": TOP_UP_METADATA_TYPE},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe rejected checkout for intent {intent_id}: {e}")
            raise GatewayUnavailable("payment processor rejected the checkout session", original_error=e)

        logger.info(f"Checkout session {session.id} created for top-up {intent_id} ({amount} {self.currency})")
        return CheckoutSession(external_session_id=session.id, redirect_url=session.url)

    def create_payout_transfer(self, connected_account_id: str, amount: int, payout_id: str) -> str:
        try:
            transfer = self._call(
                "transfer",
                stripe.Transfer.create,
                idempotency_key=f"payout_{payout_id}",
                amount=amount,
                currency=self.currency,
                destination=connected_account_id,
                description="Deck sales payout",
                metadata={"payoutId": payout_id},
            )
        except stripe.InvalidRequestError as e:
            # Destination without transfer capability (onboarding not finished)
            logger.warning(f"Transfer to {connected_account_id} refused: {e}")
            raise PayoutUnavailable(f"connected account {connected_account_id} cannot receive payouts")
        except stripe.StripeError as e:
            raise GatewayUnavailable("payment processor rejected the transfer", original_error=e)

        logger.info(f"Transfer {transfer.id} of {amount} to {connected_account_id} for payout {payout_id}")
        return transfer.id

    def create_connected_account(self, email: str) -> str:
        try:
            account = self._call(
                "account",
                stripe.Account.create,
                type="express",
                country=settings.connect_country,
                email=email,
                business_type="individual",
                capabilities={
                    "card_payments": {"requested": True},
                    "transfers": {"requested": True},
                },
            )
        except stripe.StripeError as e:
            raise GatewayUnavailable("payment processor rejected the connected account", original_error=e)
        return account.id

    def create_onboarding_link(self, connected_account_id: str) -> str:
        try:
            link = self._call(
                "onboarding",
                stripe.AccountLink.create,
                account=connected_account_id,
                refresh_url=f"{self.client_url}/onboarding/refresh",
                return_url=f"{self.client_url}/onboarding/complete",
                type="account_onboarding",
            )
        except stripe.StripeError as e:
            raise GatewayUnavailable("payment processor rejected the onboarding link", original_error=e)
        return link.url
