"""HTTP surface of the ledger service."""
import unittest

from fastapi.testclient import TestClient

from common.security import mint_internal_jwt
from ledger_service.main import create_app
from tests.support import LedgerTestCase, checkout_completed, encode

class ApiTestCase(LedgerTestCase):

    def setUp(self):
        super().setUp()
        self.client = TestClient(create_app(db_engine=self.db_engine, gateway=self.gateway, clock=self.clock))
        self.client.__enter__()
        self.auth = {"Authorization": f"Bearer {mint_internal_jwt('ledger', {'sub': 'catalog-service'})}"}

    def tearDown(self):
        self.client.__exit__(None, None, None)
        super().tearDown()

    def publish(self, item_id="deck-1", price=700, owner_id="creator"):
        return self.client.post("/catalog", headers=self.auth, json={
            "itemId": item_id, "ownerId": owner_id, "priceMinorUnits": price, "title": "Spanish verbs",
        })

    def webhook(self, envelope):
        payload, header = encode(envelope)
        return self.client.post("/webhook", content=payload,
                                headers={"Stripe-Signature": header, "Content-Type": "application/json"})

class TestPurchaseFlow(ApiTestCase):

    def test_purchase_top_up_webhook_settles(self):
        self.publish()
        self.fund("buyer", 500)

        response = self.client.post("/purchase", json={"buyerId": "buyer", "itemId": "deck-1"})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "redirectRequired")
        self.assertEqual(body["amountMinorUnits"], 200)
        self.assertTrue(body["url"].startswith("https://checkout.test/pay/"))

        hook = self.webhook(checkout_completed("evt_1", self.gateway.sessions[0]))
        self.assertEqual(hook.status_code, 200)
        self.assertEqual(hook.json(), {"received": True, "outcome": "applied"})

        self.assertEqual(self.client.get("/accounts/buyer/balance").json()["balanceMinorUnits"], 0)
        self.assertEqual(self.client.get("/accounts/creator/balance").json()["balanceMinorUnits"], 630)
        self.assertEqual(self.client.get("/accounts/buyer/items").json(), {"userId": "buyer", "itemIds": ["deck-1"]})

    def test_settled_purchase_has_no_redirect(self):
        self.publish()
        self.fund("buyer", 700)

        body = self.client.post("/purchase", json={"buyerId": "buyer", "itemId": "deck-1"}).json()

        self.assertEqual(body["status"], "settled")
        self.assertNotIn("url", body)

    def test_unknown_item_error_body(self):
        response = self.client.post("/purchase", json={"buyerId": "buyer", "itemId": "missing"},
                                    headers={"X-Trace-ID": "trace-abc"})

        self.assertEqual(response.status_code, 404)
        body = response.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["error"]["code"], "ITEM_NOT_FOUND")
        self.assertEqual(body["error"]["field"], "itemId")
        self.assertEqual(body["trace_id"], "trace-abc")
        self.assertEqual(response.headers["X-Trace-ID"], "trace-abc")

    def test_invalid_request_body(self):
        response = self.client.post("/purchase", json={"buyerId": "buyer"})

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_top_up_endpoint(self):
        response = self.client.post("/topup", json={"userId": "buyer", "amountMinorUnits": 1500})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["url"], f"https://checkout.test/pay/{body['topUpIntentId']}")
        self.assertEqual(self.gateway.sessions[0]["amount"], 1500)

    def test_top_up_rejects_non_positive_amount(self):
        response = self.client.post("/topup", json={"userId": "buyer", "amountMinorUnits": 0})
        self.assertEqual(response.status_code, 422)

    def test_unknown_account_reads_as_empty(self):
        body = self.client.get("/accounts/nobody/balance").json()
        self.assertEqual(body, {"userId": "nobody", "balanceMinorUnits": 0, "currency": "eur"})

class TestWebhookEndpoint(ApiTestCase):

    def test_bad_signature_is_rejected(self):
        payload, _ = encode({"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}})

        response = self.client.post("/webhook", content=payload, headers={"Stripe-Signature": "t=1,v1=deadbeef"})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "SIGNATURE_INVALID")
        self.assertFalse(self.store.is_event_processed("evt_1"))

    def test_missing_signature_is_rejected(self):
        payload, _ = encode({"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}})
        response = self.client.post("/webhook", content=payload)
        self.assertEqual(response.status_code, 400)

    def test_redelivery_is_acknowledged(self):
        envelope = {"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}}
        self.assertEqual(self.webhook(envelope).json()["outcome"], "ignored")
        self.assertEqual(self.webhook(envelope).json()["outcome"], "duplicate")

    def test_authentic_event_without_object_id_is_rejected(self):
        response = self.webhook({"id": "evt_odd", "type": "account.updated", "data": {"object": {}}})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")
        self.assertFalse(self.store.is_event_processed("evt_odd"))

class TestAdministration(ApiTestCase):

    def test_catalog_requires_internal_token(self):
        response = self.client.post("/catalog", headers={"Authorization": "Bearer not-a-token"}, json={
            "itemId": "deck-1", "ownerId": "creator", "priceMinorUnits": 700, "title": "Spanish verbs",
        })
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "UNAUTHORIZED")

    def test_maintenance_without_token(self):
        response = self.client.post("/maintenance/expire")
        self.assertEqual(response.status_code, 401)

    def test_published_deck_is_immutable(self):
        self.assertEqual(self.publish().status_code, 200)
        self.assertEqual(self.publish().status_code, 200)

        response = self.publish(price=900)

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "ITEM_IMMUTABLE")

    def test_expiry_sweep(self):
        self.publish()
        self.fund("buyer", 500)
        self.client.post("/purchase", json={"buyerId": "buyer", "itemId": "deck-1"})
        self.clock.advance(hours=2)

        response = self.client.post("/maintenance/expire", headers=self.auth)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["purchases_failed"], 1)

    def test_health(self):
        self.assertEqual(self.client.get("/health").json()["service"], "ledger")

class TestCreatorEndpoints(ApiTestCase):

    def test_onboarding_and_payout(self):
        self.fund("creator", 1000)

        link = self.client.post("/creators/creator/onboarding", json={"email": "creator@example.com"}).json()
        account_id = self.gateway.accounts[0]["id"]
        self.assertEqual(link["url"], f"https://connect.test/onboard/{account_id}")

        blocked = self.client.post("/creators/creator/payouts", json={"amountMinorUnits": 400})
        self.assertEqual(blocked.status_code, 409)
        self.assertEqual(blocked.json()["error"]["code"], "PAYOUT_UNAVAILABLE")

        self.webhook({"id": "evt_acct", "type": "account.updated",
                      "data": {"object": {"id": account_id, "payouts_enabled": True}}})
        status = self.client.get("/creators/creator/onboarding").json()
        self.assertEqual(status, {"creatorId": "creator", "connectedAccountId": account_id, "payoutsEnabled": True})

        paid = self.client.post("/creators/creator/payouts", json={"amountMinorUnits": 400})
        self.assertEqual(paid.status_code, 200)
        self.assertTrue(paid.json()["transferId"].startswith("tr_test_"))
        self.assertEqual(self.client.get("/accounts/creator/balance").json()["balanceMinorUnits"], 600)

if __name__ == "__main__":
    unittest.main()
