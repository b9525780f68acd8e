"""Time-driven transitions: intent expiry, resumption of confirmed top-ups, payout retries."""
import logging
import time

from ledger_service.db import make_engine, make_session_factory
from ledger_service.engine import ReconciliationEngine
from ledger_service.gateway import StripeGateway
from ledger_service.store import LedgerStore

logger = logging.getLogger(__name__)

POLL_INTERVAL = 30.0

def sweep_once(engine: ReconciliationEngine) -> dict:
    # Resume before expiring: a confirmed top-up already paid for its blocked purchases
    resumed = engine.resume_confirmed_purchases()
    result = engine.expire_stale_intents()
    result["purchases_resumed"] = resumed
    result["payouts_retried"] = len(engine.retry_pending_payouts())
    return result

def run():
    store = LedgerStore(make_session_factory(make_engine()))
    engine = ReconciliationEngine(store, StripeGateway())
    while True:
        try:
            sweep_once(engine)
        except Exception:
            logger.exception("Expiry sweep failed")
        time.sleep(POLL_INTERVAL)

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run()
