"""
Ledger Store: durable balances, ownership and intent records.

``apply_atomic`` is the only path that changes a balance. Every delta is a
conditional ``UPDATE ... WHERE balance + delta >= 0`` executed inside the same
transaction as the rest of the batch, so two concurrent debits can never both
pass a stale balance check (row lock on MySQL, database write lock on SQLite).
"""
import json
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError

from common.error_handling import AccountNotFound, ItemImmutable, StorageUnavailable
from common.kafka import TOPIC_PURCHASE_EVENTS
from common.schemas import PurchaseEvent
from ledger_service.models import (
    Account, CatalogItem, LedgerEntry, Outbox, Ownership, Payout, PurchaseIntent, TopUpIntent,
    WebhookEventRecord, PENDING, SETTLED, FAILED, CONFIRMED, EXPIRED,
)

logger = logging.getLogger(__name__)

def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

class ApplyResult(str, Enum):
    OK = "ok"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    DUPLICATE_EVENT = "duplicate_event"
    # The ownership grant already exists (a concurrent settlement won); nothing was applied
    ALREADY_OWNED = "already_owned"
    # The purchase intent to settle is no longer pending; nothing was applied
    STALE_INTENT = "stale_intent"

@dataclass(frozen=True)
class Mutation:
    user_id: str
    delta: int

class _Rollback(Exception):
    def __init__(self, result: ApplyResult):
        self.result = result

class LedgerStore:
    def __init__(self, session_factory, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
        except IntegrityError:
            db.rollback()
            raise
        except DBAPIError as e:
            db.rollback()
            raise StorageUnavailable("ledger storage unavailable", original_error=e) from e
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def open_account(self, user_id: str) -> None:
        """Initialise an account at zero on first touch. Idempotent."""
        try:
            with self._session() as db:
                if db.get(Account, user_id) is None:
                    db.add(Account(id=user_id, balance=0))
                    db.commit()
                    logger.info(f"Opened account {user_id}")
        except IntegrityError:
            # Created concurrently
            pass

    def get_balance(self, user_id: str) -> int:
        with self._session() as db:
            acc = db.get(Account, user_id)
            if acc is None:
                raise AccountNotFound(f"account {user_id} not found")
            return acc.balance

    def get_account(self, user_id: str) -> Optional[Account]:
        with self._session() as db:
            return db.get(Account, user_id)

    def set_connected_account(self, user_id: str, connected_account_id: str) -> None:
        self.open_account(user_id)
        with self._session() as db:
            acc = db.get(Account, user_id)
            acc.connected_account_id = connected_account_id
            db.commit()

    def set_payouts_enabled(self, connected_account_id: str, enabled: bool) -> bool:
        """Returns False when no local account is linked to ``connected_account_id``."""
        with self._session() as db:
            res = db.execute(
                update(Account)
                .where(Account.connected_account_id == connected_account_id)
                .values(payouts_enabled=enabled)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return res.rowcount > 0

    # ------------------------------------------------------------------
    # The atomic mutation path
    # ------------------------------------------------------------------

    def apply_atomic(
        self,
        mutations: Sequence[Mutation],
        ownership_grants: Iterable[Tuple[str, str]] = (),
        *,
        reference: str,
        event_id: Optional[str] = None,
        event_type: Optional[str] = None,
        settle_purchase_id: Optional[str] = None,
        confirm_top_up_id: Optional[str] = None,
        events: Sequence[PurchaseEvent] = (),
    ) -> ApplyResult:
        """Apply balance deltas, ownership grants and the related bookkeeping
        as one transaction.

        Returns ``INSUFFICIENT_FUNDS`` and applies nothing if any resulting
        balance would be negative. ``event_id`` is recorded as processed in
        the same transaction; a repeat returns ``DUPLICATE_EVENT``.
        ``settle_purchase_id`` flips that intent ``pending -> settled`` and
        ``confirm_top_up_id`` marks that top-up ``confirmed``. A grant the buyer
        already holds returns ``ALREADY_OWNED`` when the batch moves money.
        """
        ownership_grants = list(ownership_grants)
        for user_id in {m.user_id for m in mutations}:
            self.open_account(user_id)

        try:
            with self._session() as db:
                try:
                    if event_id is not None:
                        db.add(WebhookEventRecord(id=event_id, event_type=event_type or "unknown"))
                        db.flush()

                    if settle_purchase_id is not None:
                        res = db.execute(
                            update(PurchaseIntent)
                            .where(PurchaseIntent.id == settle_purchase_id, PurchaseIntent.status == PENDING)
                            .values(status=SETTLED)
                            .execution_options(synchronize_session=False)
                        )
                        if res.rowcount != 1:
                            raise _Rollback(ApplyResult.STALE_INTENT)

                    # Ownership before money: a deck already paid for must not be charged again
                    for buyer_id, item_id in ownership_grants:
                        exists = db.execute(
                            select(Ownership.id).where(Ownership.buyer_id == buyer_id, Ownership.item_id == item_id)
                        ).first()
                        if exists is None:
                            db.add(Ownership(buyer_id=buyer_id, item_id=item_id))
                            db.flush()
                        elif any(m.delta for m in mutations):
                            raise _Rollback(ApplyResult.ALREADY_OWNED)

                    # Credits first: every intermediate balance is then >= the final one
                    for m in sorted(mutations, key=lambda m: m.delta < 0):
                        if m.delta == 0:
                            continue
                        res = db.execute(
                            update(Account)
                            .where(Account.id == m.user_id, Account.balance + m.delta >= 0)
                            .values(balance=Account.balance + m.delta)
                            .execution_options(synchronize_session=False)
                        )
                        if res.rowcount != 1:
                            raise _Rollback(ApplyResult.INSUFFICIENT_FUNDS)
                        db.add(LedgerEntry(
                            reference=reference,
                            account_id=m.user_id,
                            amount=abs(m.delta),
                            direction="credit" if m.delta > 0 else "debit",
                        ))

                    # A top-up confirmed under another event id rolls the credit back
                    if confirm_top_up_id is not None:
                        res = db.execute(
                            update(TopUpIntent)
                            .where(TopUpIntent.id == confirm_top_up_id, TopUpIntent.status != CONFIRMED)
                            .values(status=CONFIRMED)
                            .execution_options(synchronize_session=False)
                        )
                        if res.rowcount != 1:
                            # Already credited under another event id
                            raise _Rollback(ApplyResult.DUPLICATE_EVENT)

                    for event in events:
                        db.add(Outbox(topic=TOPIC_PURCHASE_EVENTS, payload=event.model_dump_json()))

                    db.commit()
                except _Rollback as rb:
                    db.rollback()
                    logger.info(f"apply_atomic {reference} rolled back: {rb.result.value}")
                    return rb.result
        except IntegrityError:
            return self._classify_conflict(event_id, ownership_grants, reference)

        logger.info(f"apply_atomic {reference} committed: {len(mutations)} mutations, {len(ownership_grants)} grants")
        return ApplyResult.OK

    def _classify_conflict(self, event_id, ownership_grants, reference) -> ApplyResult:
        """A unique constraint fired, meaning a concurrent writer got there first."""
        if event_id is not None and self.is_event_processed(event_id):
            logger.info(f"apply_atomic {reference}: event {event_id} already processed")
            return ApplyResult.DUPLICATE_EVENT
        if ownership_grants and all(self.owns(b, i) for b, i in ownership_grants):
            logger.info(f"apply_atomic {reference}: ownership already granted concurrently")
            return ApplyResult.ALREADY_OWNED
        raise StorageUnavailable(f"conflicting concurrent write for {reference}")

    # ------------------------------------------------------------------
    # Catalog and ownership
    # ------------------------------------------------------------------

    def publish_item(self, item_id: str, owner_id: str, price: int, title: str) -> CatalogItem:
        """Publish a deck. Re-publishing identical data is a no-op; changing it is refused."""
        self.open_account(owner_id)
        try:
            with self._session() as db:
                item = db.get(CatalogItem, item_id)
                if item is None:
                    item = CatalogItem(id=item_id, owner_id=owner_id, price=price, title=title)
                    db.add(item)
                    db.commit()
                    return item
        except IntegrityError:
            item = self.get_item(item_id)
        if (item.owner_id, item.price, item.title) != (owner_id, price, title):
            raise ItemImmutable(f"deck {item_id} is already published with different terms", field="itemId")
        return item

    def get_item(self, item_id: str) -> Optional[CatalogItem]:
        with self._session() as db:
            return db.get(CatalogItem, item_id)

    def owns(self, buyer_id: str, item_id: str) -> bool:
        with self._session() as db:
            return db.execute(
                select(Ownership.id).where(Ownership.buyer_id == buyer_id, Ownership.item_id == item_id)
            ).first() is not None

    def list_owned_items(self, user_id: str) -> List[str]:
        with self._session() as db:
            rows = db.execute(
                select(Ownership.item_id).where(Ownership.buyer_id == user_id).order_by(Ownership.id)
            ).scalars().all()
            return list(rows)

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    def create_top_up_intent(self, user_id: str, amount: int, intent_id: str = None,
                             status: str = PENDING, external_session_id: str = None) -> TopUpIntent:
        with self._session() as db:
            intent = TopUpIntent(
                id=intent_id or str(uuid.uuid4()),
                user_id=user_id,
                amount=amount,
                status=status,
                external_session_id=external_session_id,
                created_at=self.clock(),
            )
            db.add(intent)
            db.commit()
            return intent

    def attach_session(self, top_up_id: str, external_session_id: str, redirect_url: str) -> None:
        with self._session() as db:
            db.execute(
                update(TopUpIntent)
                .where(TopUpIntent.id == top_up_id)
                .values(external_session_id=external_session_id, redirect_url=redirect_url)
                .execution_options(synchronize_session=False)
            )
            db.commit()

    def get_top_up(self, top_up_id: str) -> Optional[TopUpIntent]:
        with self._session() as db:
            return db.get(TopUpIntent, top_up_id)

    def find_top_up_by_session(self, external_session_id: str) -> Optional[TopUpIntent]:
        with self._session() as db:
            return db.execute(
                select(TopUpIntent).where(TopUpIntent.external_session_id == external_session_id)
            ).scalars().first()

    def create_purchase_intent(self, buyer_id: str, item_id: str, price: int,
                               blocked_on_top_up_id: Optional[str]) -> PurchaseIntent:
        with self._session() as db:
            intent = PurchaseIntent(
                id=str(uuid.uuid4()),
                buyer_id=buyer_id,
                item_id=item_id,
                price=price,
                status=PENDING,
                blocked_on_top_up_id=blocked_on_top_up_id,
                created_at=self.clock(),
            )
            db.add(intent)
            db.commit()
            return intent

    def get_purchase(self, intent_id: str) -> Optional[PurchaseIntent]:
        with self._session() as db:
            return db.execute(select(PurchaseIntent).where(PurchaseIntent.id == intent_id)).scalars().first()

    def find_pending_purchase(self, buyer_id: str, item_id: str) -> Optional[PurchaseIntent]:
        with self._session() as db:
            return db.execute(
                select(PurchaseIntent)
                .where(PurchaseIntent.buyer_id == buyer_id,
                       PurchaseIntent.item_id == item_id,
                       PurchaseIntent.status == PENDING)
                .order_by(PurchaseIntent.seq.desc())
            ).scalars().first()

    def blocked_purchases(self, top_up_id: str) -> List[PurchaseIntent]:
        """Pending purchase intents waiting on ``top_up_id``, oldest first."""
        with self._session() as db:
            return list(db.execute(
                select(PurchaseIntent)
                .where(PurchaseIntent.blocked_on_top_up_id == top_up_id, PurchaseIntent.status == PENDING)
                .order_by(PurchaseIntent.seq)
            ).scalars().all())

    def stale_pending_purchases(self, cutoff: datetime) -> List[PurchaseIntent]:
        with self._session() as db:
            return list(db.execute(
                select(PurchaseIntent)
                .where(PurchaseIntent.status == PENDING, PurchaseIntent.created_at < cutoff)
                .order_by(PurchaseIntent.seq)
            ).scalars().all())

    def stale_pending_top_ups(self, cutoff: datetime) -> List[TopUpIntent]:
        with self._session() as db:
            return list(db.execute(
                select(TopUpIntent)
                .where(TopUpIntent.status == PENDING, TopUpIntent.created_at < cutoff)
            ).scalars().all())

    def resumable_purchases(self) -> List[PurchaseIntent]:
        """Pending purchase intents whose top-up has already been confirmed."""
        with self._session() as db:
            return list(db.execute(
                select(PurchaseIntent)
                .join(TopUpIntent, PurchaseIntent.blocked_on_top_up_id == TopUpIntent.id)
                .where(PurchaseIntent.status == PENDING, TopUpIntent.status == CONFIRMED)
                .order_by(PurchaseIntent.seq)
            ).scalars().all())

    def mark_purchase_settled(self, intent_id: str) -> bool:
        """pending -> settled without moving money (ownership was granted elsewhere)."""
        with self._session() as db:
            res = db.execute(
                update(PurchaseIntent)
                .where(PurchaseIntent.id == intent_id, PurchaseIntent.status == PENDING)
                .values(status=SETTLED)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return res.rowcount == 1

    def fail_purchase(self, intent: PurchaseIntent, reason: str, currency: str) -> bool:
        """pending -> failed, expiring a still-pending linked top-up. False if no longer pending."""
        with self._session() as db:
            res = db.execute(
                update(PurchaseIntent)
                .where(PurchaseIntent.id == intent.id, PurchaseIntent.status == PENDING)
                .values(status=FAILED, failure_reason=reason)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                db.rollback()
                return False
            if intent.blocked_on_top_up_id:
                db.execute(
                    update(TopUpIntent)
                    .where(TopUpIntent.id == intent.blocked_on_top_up_id, TopUpIntent.status == PENDING)
                    .values(status=EXPIRED)
                    .execution_options(synchronize_session=False)
                )
            db.add(Outbox(topic=TOPIC_PURCHASE_EVENTS, payload=PurchaseEvent(
                type="PurchaseFailed", reference=intent.id, user_id=intent.buyer_id,
                amount=intent.price, currency=currency, item_id=intent.item_id, reason=reason,
            ).model_dump_json()))
            db.commit()
            return True

    def close_top_up(self, top_up_id: str, status: str) -> bool:
        """pending -> expired|failed. False if the top-up is not pending."""
        with self._session() as db:
            res = db.execute(
                update(TopUpIntent)
                .where(TopUpIntent.id == top_up_id, TopUpIntent.status == PENDING)
                .values(status=status)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return res.rowcount == 1

    # ------------------------------------------------------------------
    # Webhook idempotency
    # ------------------------------------------------------------------

    def is_event_processed(self, event_id: str) -> bool:
        with self._session() as db:
            return db.get(WebhookEventRecord, event_id) is not None

    def record_event(self, event_id: str, event_type: str) -> bool:
        """Mark an event processed. False if it already was."""
        try:
            with self._session() as db:
                db.add(WebhookEventRecord(id=event_id, event_type=event_type))
                db.commit()
        except IntegrityError:
            return False
        return True

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    def create_payout(self, creator_id: str, amount: int) -> Payout:
        with self._session() as db:
            payout = Payout(id=str(uuid.uuid4()), creator_id=creator_id, amount=amount, status=PENDING,
                            created_at=self.clock())
            db.add(payout)
            db.commit()
            return payout

    def pending_payouts(self, cutoff: datetime) -> List[Payout]:
        """Pending payouts created before ``cutoff`` whose debit has been applied."""
        debited = select(LedgerEntry.id).where(LedgerEntry.reference == Payout.id, LedgerEntry.direction == "debit")
        with self._session() as db:
            return list(db.execute(
                select(Payout)
                .where(Payout.status == PENDING, Payout.created_at < cutoff, debited.exists())
                .order_by(Payout.created_at)
            ).scalars().all())

    def finish_payout(self, payout_id: str, status: str, transfer_id: str = None, event: PurchaseEvent = None) -> None:
        with self._session() as db:
            payout = db.get(Payout, payout_id)
            payout.status = status
            payout.transfer_id = transfer_id
            if event is not None:
                db.add(Outbox(topic=TOPIC_PURCHASE_EVENTS, payload=event.model_dump_json()))
            db.commit()

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------

    def pending_outbox(self, limit: int = 50) -> List[Outbox]:
        with self._session() as db:
            return list(db.execute(
                select(Outbox).where(Outbox.status == "new").order_by(Outbox.id).limit(limit)
            ).scalars().all())

    def mark_outbox(self, outbox_id: int, status: str) -> None:
        with self._session() as db:
            db.execute(
                update(Outbox).where(Outbox.id == outbox_id).values(status=status)
                .execution_options(synchronize_session=False)
            )
            db.commit()

    def outbox_payloads(self) -> List[dict]:
        with self._session() as db:
            return [json.loads(p) for p in db.execute(select(Outbox.payload).order_by(Outbox.id)).scalars().all()]
