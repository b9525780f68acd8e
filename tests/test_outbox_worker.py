"""Outbox relay and the periodic sweep."""
import json
import unittest

from ledger_service.expiry_worker import sweep_once
from ledger_service.outbox_worker import relay_once
from ledger_service.store import Mutation
from tests.support import LedgerTestCase

class FakeProducer:
    def __init__(self, fail_on=None):
        self.messages = []
        self.fail_on = fail_on

    def produce(self, topic, value):
        if self.fail_on is not None and len(self.messages) == self.fail_on:
            raise BufferError("local queue full")
        self.messages.append((topic, json.loads(value)))

    def flush(self, timeout):
        return 0

class TestOutboxRelay(LedgerTestCase):

    def setUp(self):
        super().setUp()
        self.store.publish_item("deck-1", "creator", 100, "Kana")
        self.store.publish_item("deck-2", "creator", 100, "Kanji")
        self.fund("buyer", 200)
        self.engine.request_purchase("buyer", "deck-1")
        self.engine.request_purchase("buyer", "deck-2")

    def test_rows_are_published_in_order_once(self):
        producer = FakeProducer()

        self.assertEqual(relay_once(self.store, producer), 2)
        self.assertEqual(relay_once(self.store, producer), 0)

        self.assertEqual([m[1]["item_id"] for m in producer.messages], ["deck-1", "deck-2"])
        self.assertEqual({m[0] for m in producer.messages}, {"purchase_events"})

    def test_failure_stops_the_pass_and_keeps_the_row(self):
        producer = FakeProducer(fail_on=1)

        self.assertEqual(relay_once(self.store, producer), 1)
        self.assertEqual(len(self.store.pending_outbox()), 1)

        producer.fail_on = None
        self.assertEqual(relay_once(self.store, producer), 1)
        self.assertEqual([m[1]["item_id"] for m in producer.messages], ["deck-1", "deck-2"])

class TestSweep(LedgerTestCase):

    def test_sweep_reports_each_transition(self):
        self.store.publish_item("deck-1", "creator", 700, "Spanish verbs")
        self.engine.request_purchase("buyer", "deck-1")
        self.clock.advance(hours=2)

        result = sweep_once(self.engine)

        self.assertEqual(result, {
            "purchases_failed": 1,
            "top_ups_expired": 0,
            "purchases_resumed": 0,
            "payouts_retried": 0,
        })

    def test_confirmed_top_up_is_resumed_before_expiry(self):
        self.store.publish_item("deck-1", "creator", 700, "Spanish verbs")
        outcome = self.engine.request_purchase("buyer", "deck-1")
        # Credit landed but the process stopped before resuming the purchase
        self.store.apply_atomic([Mutation("buyer", 700)], reference=outcome.top_up_intent_id,
                                confirm_top_up_id=outcome.top_up_intent_id)
        self.clock.advance(hours=2)

        result = sweep_once(self.engine)

        self.assertEqual(result["purchases_resumed"], 1)
        self.assertEqual(result["purchases_failed"], 0)
        self.assertEqual(self.store.get_purchase(outcome.purchase_intent_id).status, "settled")
        self.assertTrue(self.store.owns("buyer", "deck-1"))
        self.assertEqual(self.store.get_balance("buyer"), 0)

if __name__ == "__main__":
    unittest.main()
