from sqlalchemy import (Column, Integer, String, BigInteger, Boolean, DateTime, ForeignKey,
                        UniqueConstraint, CheckConstraint, func)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Purchase intent states
PENDING = "pending"
SETTLED = "settled"
FAILED = "failed"
# Top-up intent states (plus PENDING / FAILED)
CONFIRMED = "confirmed"
EXPIRED = "expired"
# Payout states (plus PENDING / FAILED)
PAID = "paid"

class Account(Base):
    __tablename__ = "accounts"
    id = Column(String(64), primary_key=True)
    balance = Column(BigInteger, nullable=False, default=0)
    connected_account_id = Column(String(64), unique=True, nullable=True)
    payouts_enabled = Column(Boolean, nullable=False, default=False)
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),)

class CatalogItem(Base):
    __tablename__ = "catalog_items"
    id = Column(String(64), primary_key=True)
    owner_id = Column(String(64), nullable=False, index=True)
    price = Column(BigInteger, nullable=False)
    title = Column(String(255), nullable=False)
    __table_args__ = (CheckConstraint("price > 0", name="ck_catalog_items_price_positive"),)

class Ownership(Base):
    __tablename__ = "ownerships"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    buyer_id = Column(String(64), nullable=False, index=True)
    item_id = Column(String(64), nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    __table_args__ = (UniqueConstraint("buyer_id", "item_id", name="uq_ownerships_buyer_item"),)

class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    reference = Column(String(64), index=True)
    account_id = Column(String(64), ForeignKey("accounts.id"))
    amount = Column(BigInteger, nullable=False)
    direction = Column(String(8))  # 'debit' or 'credit'
    created_at = Column(DateTime, server_default=func.now())

class TopUpIntent(Base):
    __tablename__ = "top_up_intents"
    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    status = Column(String(16), nullable=False, default=PENDING)  # pending|confirmed|failed|expired
    external_session_id = Column(String(255), unique=True, nullable=True)
    redirect_url = Column(String(2048), nullable=True)
    created_at = Column(DateTime, nullable=False)

class PurchaseIntent(Base):
    __tablename__ = "purchase_intents"
    # Insertion order; blocked intents settle FIFO by this column
    seq = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    id = Column(String(64), unique=True, nullable=False)
    buyer_id = Column(String(64), nullable=False, index=True)
    item_id = Column(String(64), nullable=False)
    price = Column(BigInteger, nullable=False)
    status = Column(String(16), nullable=False, default=PENDING)  # pending|settled|failed
    blocked_on_top_up_id = Column(String(64), ForeignKey("top_up_intents.id"), nullable=True, index=True)
    failure_reason = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False)

class WebhookEventRecord(Base):
    __tablename__ = "webhook_events"
    id = Column(String(255), primary_key=True)  # processor event id
    event_type = Column(String(64), nullable=False)
    processed_at = Column(DateTime, server_default=func.now())

class Payout(Base):
    __tablename__ = "payouts"
    id = Column(String(64), primary_key=True)
    creator_id = Column(String(64), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    transfer_id = Column(String(255), nullable=True)
    status = Column(String(16), nullable=False, default=PENDING)  # pending|paid|failed
    created_at = Column(DateTime, nullable=False)

class Outbox(Base):
    __tablename__ = "outbox"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    topic = Column(String(64), nullable=False)
    payload = Column(String(4000), nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    status = Column(String(16), default="new")  # new|sent|failed
