"""Relays committed outbox rows to Kafka."""
import logging
import time

from common.kafka import get_producer, TOPIC_PURCHASE_EVENTS
from ledger_service.db import make_engine, make_session_factory
from ledger_service.store import LedgerStore

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5
FLUSH_TIMEOUT = 5.0

def relay_once(store: LedgerStore, producer, limit: int = 50) -> int:
    """Publish up to ``limit`` new rows in order. Stops at the first failure so
    ordering is kept; the row stays ``new`` and is retried on the next poll."""
    sent = 0
    for row in store.pending_outbox(limit):
        try:
            producer.produce(row.topic or TOPIC_PURCHASE_EVENTS, value=row.payload.encode("utf-8"))
            undelivered = producer.flush(FLUSH_TIMEOUT)
        except Exception as e:
            logger.error(f"Outbox row {row.id} not published: {e}")
            break
        if undelivered:
            logger.warning(f"Outbox row {row.id} not acknowledged within {FLUSH_TIMEOUT}s")
            break
        store.mark_outbox(row.id, "sent")
        sent += 1
    return sent

def run():
    store = LedgerStore(make_session_factory(make_engine()))
    producer = get_producer()
    while True:
        try:
            relay_once(store, producer)
        except Exception:
            logger.exception("Outbox relay pass failed")
        time.sleep(POLL_INTERVAL)

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run()
