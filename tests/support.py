"""Shared fixtures: a throwaway SQLite ledger, a scripted gateway and signed webhooks."""
import hashlib
import hmac
import itertools
import json
import os
import shutil
import tempfile
import time
import unittest
from datetime import datetime, timedelta

from ledger_service.db import make_engine, make_session_factory
from ledger_service.engine import ReconciliationEngine, RevenueSplit
from ledger_service.gateway import CheckoutSession, PaymentGateway
from ledger_service.models import Base
from ledger_service.store import LedgerStore, Mutation

WEBHOOK_SECRET = "whsec_test_secret"
PLATFORM = "platform"

class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)

class FakeGateway(PaymentGateway):
    """Records processor calls; failures are scripted per test."""
    webhook_secret = WEBHOOK_SECRET

    def __init__(self):
        self.sessions = []
        self.transfers = []
        self.accounts = []
        self.checkout_error = None
        self.transfer_error = None
        # Called with the session before it is returned, to simulate an early webhook
        self.before_session_returned = None
        self._ids = itertools.count(1)

    def create_top_up_session(self, user_id, amount, intent_id):
        if self.checkout_error is not None:
            raise self.checkout_error
        session = CheckoutSession(f"cs_test_{next(self._ids)}", f"https://checkout.test/pay/{intent_id}")
        self.sessions.append({"user_id": user_id, "amount": amount, "intent_id": intent_id,
                              "session_id": session.external_session_id})
        if self.before_session_returned is not None:
            self.before_session_returned(self.sessions[-1])
        return session

    def create_payout_transfer(self, connected_account_id, amount, payout_id):
        if self.transfer_error is not None:
            raise self.transfer_error
        self.transfers.append({"account": connected_account_id, "amount": amount, "payout_id": payout_id})
        return f"tr_test_{next(self._ids)}"

    def create_connected_account(self, email):
        account_id = f"acct_test_{next(self._ids)}"
        self.accounts.append({"id": account_id, "email": email})
        return account_id

    def create_onboarding_link(self, connected_account_id):
        return f"https://connect.test/onboard/{connected_account_id}"

def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    mac = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8"), hashlib.sha256)
    return f"t={timestamp},v1={mac.hexdigest()}"

def checkout_completed(event_id, session, amount=None, payment_status="paid", event_type="checkout.session.completed"):
    """Envelope for a paid top-up checkout built from a FakeGateway session record."""
    return {
        "id": event_id,
        "type": event_type,
        "data": {"object": {
            "id": session["session_id"],
            "object": "checkout.session",
            "amount_total": session["amount"] if amount is None else amount,
            "payment_status": payment_status,
            "client_reference_id": session["intent_id"],
            "metadata": {"userId": session["user_id"], "intentId": session["intent_id"], "type": "top_up"},
        }},
    }

def account_updated(event_id, account_id, payouts_enabled=True):
    return {
        "id": event_id,
        "type": "account.updated",
        "data": {"object": {"id": account_id, "object": "account", "payouts_enabled": payouts_enabled}},
    }

def encode(envelope: dict):
    payload = json.dumps(envelope).encode("utf-8")
    return payload, sign(payload)

class LedgerTestCase(unittest.TestCase):
    """Fresh file-backed SQLite ledger per test (file, so threads share it)."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.db_engine = make_engine(f"sqlite:///{os.path.join(self.tmpdir, 'ledger.db')}")
        Base.metadata.create_all(bind=self.db_engine)
        self.clock = FakeClock()
        self.store = LedgerStore(make_session_factory(self.db_engine), clock=self.clock)
        self.gateway = FakeGateway()
        self.engine = ReconciliationEngine(
            self.store,
            self.gateway,
            split=RevenueSplit(9000),
            platform_account_id=PLATFORM,
            currency="eur",
            intent_expiry=timedelta(hours=1),
            clock=self.clock,
        )
        self.store.open_account(PLATFORM)

    def tearDown(self):
        self.db_engine.dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def fund(self, user_id: str, amount: int):
        """Credit a balance directly, as a confirmed top-up would."""
        self.store.apply_atomic([Mutation(user_id, amount)], reference=f"seed:{user_id}")

    def deliver(self, envelope: dict) -> str:
        payload, header = encode(envelope)
        return self.engine.on_webhook(payload, header)
