"""End-to-end tests through the HTTP surface."""

import json

import pytest

from bookstore.core.config import settings
from bookstore.store import cart_store
from conftest import auth_header, make_token, sign

ALICE = auth_header("alice")
BOB = auth_header("bob")
ADMIN = auth_header("root", role="admin")
CRON = {"Authorization": "Bearer cron-test"}


def _webhook(client, payload, signature=None):
    body = json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json", "X-Webhook-Signature": signature or sign(body)}
    return client.post("/payments/webhook", content=body, headers=headers)


def _checkout(client, items=None, headers=ALICE):
    resp = client.post("/checkout", json={"items": items or [{"bookId": "b1", "quantity": 1}]}, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestService:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_info(self, client):
        assert client.get("/v1/_info").json()["service"] == "bookstore"


class TestAuth:
    def test_missing_token(self, client):
        resp = client.get("/orders")
        assert resp.status_code == 401
        assert resp.json()["code"] == "unauthorized"

    def test_refresh_token_is_not_an_access_token(self, client):
        token = make_token("alice", token_type="refresh")
        assert client.get("/orders", headers={"Authorization": f"Bearer {token}"}).status_code == 401

    def test_foreign_signature(self, client):
        token = make_token("alice", secret="someone-else")
        assert client.get("/orders", headers={"Authorization": f"Bearer {token}"}).status_code == 401


class TestPurchaseFlow:
    def test_checkout_pay_and_download(self, client, books, object_store, events):
        cart_store.replace_cart("alice", {"b1": 1, "b2": 2})
        checkout = _checkout(client, [{"bookId": "b1", "quantity": 1}, {"bookId": "b2", "quantity": 2}])
        order = checkout["order"]
        assert order["status"] == "Pending"
        assert order["total_amount"] == 500 + 2 * 300
        assert checkout["payment"]["reference"] == order["custom_id"]
        assert checkout["payment"]["amount"] == 1100

        early = client.post("/download", json={"orderId": order["id"], "bookId": "b1"}, headers=ALICE)
        assert early.status_code == 403

        ack = _webhook(client, {"user_reference": order["custom_id"], "paymentSuccess": True, "providerReference": "PH-77"})
        assert ack.status_code == 200
        assert ack.json() == {"received": True, "applied": True, "status": "Completed"}
        assert cart_store.get_cart("alice") == {}

        replay = _webhook(client, {"user_reference": order["custom_id"], "paymentSuccess": True})
        assert replay.json()["applied"] is False

        link = client.post("/download", json={"orderId": order["id"], "bookId": "b1"}, headers=ALICE)
        assert link.status_code == 200
        assert link.json()["expires_in_seconds"] == 300
        assert object_store.calls[-1]["object_key"] == "books/b1.pdf"

        assert events.types() == ["order.created", "order.completed"]

    def test_two_copies_then_download(self, client, books):
        order = _checkout(client, [{"bookId": "b1", "quantity": 2}])["order"]
        assert (order["total_amount"], order["status"]) == (1000, "Pending")

        _webhook(client, {"reference": order["custom_id"], "success": True})

        request = {"orderId": order["id"], "bookId": "b1"}
        assert client.post("/download", json=request, headers=ALICE).status_code == 200
        assert client.post("/download", json=request, headers=BOB).status_code == 403

    def test_failed_payment_cancels(self, client, books):
        order = _checkout(client)["order"]
        ack = _webhook(client, {"reference": order["custom_id"], "success": False})
        assert ack.json()["status"] == "Cancelled"
        assert client.get(f"/orders/{order['id']}", headers=ALICE).json()["status"] == "Cancelled"

    def test_poll_settles_from_provider(self, client, books, payhero_stub):
        order = _checkout(client)["order"]
        payhero_stub.transaction_status = "SUCCESS"
        resp = client.post(f"/payments/{order['custom_id']}/poll", headers=ALICE)
        assert resp.json() == {"reference": order["custom_id"], "status": "Completed"}

    def test_poll_someone_elses_order(self, client, books):
        order = _checkout(client)["order"]
        assert client.post(f"/payments/{order['custom_id']}/poll", headers=BOB).status_code == 403


class TestWebhookGuards:
    def test_unsigned(self, client, books):
        order = _checkout(client)["order"]
        resp = _webhook(client, {"user_reference": order["custom_id"], "success": True}, signature="deadbeef")
        assert resp.status_code == 401
        assert client.get(f"/orders/{order['id']}", headers=ALICE).json()["status"] == "Pending"

    def test_sender_outside_allow_list(self, client, books, monkeypatch):
        order = _checkout(client)["order"]
        monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_ALLOWED_IPS", ["198.51.100.7"])
        resp = _webhook(client, {"user_reference": order["custom_id"], "success": True})
        assert resp.status_code == 401

    def test_malformed_payload(self, client):
        resp = _webhook(client, {"success": True})
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_error"

    def test_unknown_order(self, client):
        assert _webhook(client, {"user_reference": "ORD-199901-0001", "success": True}).status_code == 404

    def test_non_ascii_signature(self, client, books):
        order = _checkout(client)["order"]
        body = json.dumps({"user_reference": order["custom_id"], "success": True}).encode("utf-8")
        headers = {"Content-Type": "application/json", "X-Webhook-Signature": "\u00e9".encode("latin-1")}
        resp = client.post("/payments/webhook", content=body, headers=headers)
        assert resp.status_code == 401
        assert client.get(f"/orders/{order['id']}", headers=ALICE).json()["status"] == "Pending"


class TestOrders:
    def test_empty_order(self, client, books):
        resp = client.post("/orders", json={"items": []}, headers=ALICE)
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_error"

    def test_unknown_book(self, client, books):
        resp = client.post("/orders", json={"items": [{"bookId": "nope", "quantity": 1}]}, headers=ALICE)
        assert resp.status_code == 404

    def test_catalogue_outage(self, client, books):
        books.unavailable = True
        resp = client.post("/orders", json={"items": [{"bookId": "b1", "quantity": 1}]}, headers=ALICE)
        assert resp.status_code == 502
        assert resp.json()["message"] == "The catalog is unavailable, please try again."

    def test_visibility(self, client, books):
        mine = client.post("/orders", json={"items": [{"bookId": "b1", "quantity": 1}]}, headers=ALICE).json()
        client.post("/orders", json={"items": [{"bookId": "b2", "quantity": 1}]}, headers=BOB)

        assert [o["id"] for o in client.get("/orders", headers=ALICE).json()] == [mine["id"]]
        assert len(client.get("/orders", headers=ADMIN).json()) == 2
        assert client.get(f"/orders/{mine['id']}", headers=BOB).status_code == 403
        assert client.get(f"/orders/by-ref/{mine['custom_id']}", headers=ALICE).json()["id"] == mine["id"]

    def test_admin_status_override(self, client, books):
        order = client.post("/orders", json={"items": [{"bookId": "b1", "quantity": 1}]}, headers=ALICE).json()
        assert client.patch(f"/orders/{order['id']}", json={"status": "Cancelled"}, headers=ALICE).status_code == 403

        resp = client.patch(f"/orders/{order['id']}", json={"status": "Cancelled"}, headers=ADMIN)
        assert resp.json()["status"] == "Cancelled"

        again = client.patch(f"/orders/{order['id']}", json={"status": "Completed"}, headers=ADMIN)
        assert again.json()["status"] == "Cancelled"

    def test_admin_status_override_rejects_unknown_status(self, client, books):
        order = client.post("/orders", json={"items": [{"bookId": "b1", "quantity": 1}]}, headers=ALICE).json()
        assert client.patch(f"/orders/{order['id']}", json={"status": "Shipped"}, headers=ADMIN).status_code == 400


class TestCart:
    def test_replace_and_read(self, client, books):
        resp = client.post("/cart", json={"items": [{"bookId": "b1", "quantity": 2}, {"book_id": "gone", "quantity": 1}]}, headers=ALICE)
        assert resp.status_code == 200
        lines = sorted(resp.json()["items"], key=lambda line: line["book_id"])
        assert lines[0]["kind"] == "resolved" and lines[0]["title"] == "Dune"
        assert lines[1] == {"kind": "ref", "book_id": "gone", "quantity": 1}
        assert len(client.get("/cart", headers=ALICE).json()["items"]) == 2

    def test_merge_guest_cart(self, client, books):
        client.post("/cart", json={"items": [{"bookId": "b1", "quantity": 1}]}, headers=ALICE)
        resp = client.post("/cart/merge", json={"items": [{"bookId": "b1", "quantity": 1}, {"bookId": "b2", "quantity": 1}]}, headers=ALICE)
        body = resp.json()
        assert body["guest_cleared"] is True
        assert {line["book_id"]: line["quantity"] for line in body["items"]} == {"b1": 2, "b2": 1}

    def test_merge_nothing(self, client, books):
        assert client.post("/cart/merge", json={"items": []}, headers=ALICE).json()["guest_cleared"] is False

    def test_merge_survives_catalogue_outage(self, client, books):
        client.post("/cart", json={"items": [{"bookId": "b1", "quantity": 1}]}, headers=ALICE)
        books.unavailable = True

        resp = client.post("/cart/merge", json={"items": [{"bookId": "b1", "quantity": 2}]}, headers=ALICE)

        assert resp.status_code == 200
        body = resp.json()
        assert body["guest_cleared"] is True
        assert body["items"] == [{"kind": "ref", "book_id": "b1", "quantity": 3}]
        assert cart_store.get_cart("alice") == {"b1": 3}

        # the client cleared its guest cart, so a retry sends nothing
        client.post("/cart/merge", json={"items": []}, headers=ALICE)
        assert cart_store.get_cart("alice") == {"b1": 3}


class TestPayouts:
    def _create(self, client, percentage=30, **extra):
        payload = {"name": "Author", "destination": "0712345678", "payoutPercentage": percentage, "frequency": "weekly"}
        payload.update(extra)
        return client.post("/payouts", json=payload, headers=ADMIN)

    def test_admin_only(self, client):
        assert client.get("/payouts", headers=ALICE).status_code == 403

    def test_crud(self, client):
        created = self._create(client)
        assert created.status_code == 201
        config = created.json()
        assert (config["phone"], config["payout_frequency"], config["is_active"]) == ("0712345678", "weekly", True)

        updated = client.patch(f"/payouts/{config['id']}", json={"payout_percentage": 50}, headers=ADMIN)
        assert updated.json()["payout_percentage"] == 50

        assert [c["id"] for c in client.get("/payouts", headers=ADMIN).json()] == [config["id"]]
        assert client.delete(f"/payouts/{config['id']}", headers=ADMIN).json() == {"status": "deleted"}
        assert client.get("/payouts", headers=ADMIN).json() == []

    def test_bad_phone(self, client):
        assert self._create(client, destination="+1 555 0100").status_code == 422

    @pytest.mark.parametrize("field", ["name", "phone", "payout_percentage", "payout_frequency", "is_active"])
    def test_patch_cannot_null_a_field(self, client, field):
        config = self._create(client).json()
        resp = client.patch(f"/payouts/{config['id']}", json={field: None}, headers=ADMIN)
        assert resp.status_code == 422
        assert client.get("/payouts", headers=ADMIN).json()[0][field] == config[field]

    def test_ceiling(self, client):
        self._create(client, percentage=70)
        resp = self._create(client, percentage=40)
        assert resp.status_code == 400

    def test_payout_now(self, client, payhero_stub):
        payhero_stub.balance = 1000
        config = self._create(client).json()
        resp = client.post(f"/payouts/{config['id']}/payout-now", headers=ADMIN)
        assert resp.status_code == 200
        assert (resp.json()["amount"], resp.json()["fee"]) == (300, 6)

    def test_payout_now_insufficient(self, client, payhero_stub):
        payhero_stub.balance = 2
        config = self._create(client).json()
        resp = client.post(f"/payouts/{config['id']}/payout-now", headers=ADMIN)
        assert resp.status_code == 422
        assert resp.json()["code"] == "insufficient_funds"

    def test_payout_now_missing_config(self, client):
        assert client.post("/payouts/999/payout-now", headers=ADMIN).status_code == 404

    def test_wallet(self, client, payhero_stub):
        payhero_stub.balance = 1234.5
        payhero_stub.service_balance = 80
        assert client.get("/payouts/wallet", headers=ADMIN).json() == {"channel_id": 222, "balance": 1234.5, "service_balance": 80}

    def test_wallet_provider_down(self, client, payhero_stub):
        payhero_stub.down = True
        resp = client.get("/payouts/wallet", headers=ADMIN)
        assert resp.status_code == 502
        assert "maintenance" not in resp.text

    def test_wallet_transactions(self, client, payhero_stub):
        resp = client.get("/payouts/wallet/transactions", params={"page": 2, "status": "SUCCESS"}, headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["transactions"][0]["amount"] == 50
        assert payhero_stub.transaction_queries == [{"page": "2", "per_page": "20", "status": "SUCCESS"}]

    def test_wallet_topup(self, client, payhero_stub):
        resp = client.post("/payouts/wallet/topup", json={"amount": 150, "phone_number": "0712345678"}, headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["reference"] == "TOP-1"
        assert payhero_stub.topups == [{"amount": 150, "phone_number": "254712345678"}]

    @pytest.mark.parametrize("payload", [{"amount": 0, "phone": "0712345678"}, {"amount": 100, "phone": "12345"}])
    def test_wallet_topup_rejects_bad_input(self, client, payhero_stub, payload):
        assert client.post("/payouts/wallet/topup", json=payload, headers=ADMIN).status_code == 422
        assert payhero_stub.topups == []

    @pytest.mark.parametrize("method, path", [
        ("get", "/payouts/wallet/transactions"), ("post", "/payouts/wallet/topup"),
    ])
    def test_wallet_admin_only(self, client, method, path):
        assert client.request(method.upper(), path, json={"amount": 10, "phone": "0712345678"}, headers=ALICE).status_code == 403

    def test_wallet_topup_provider_down(self, client, payhero_stub):
        payhero_stub.down = True
        resp = client.post("/payouts/wallet/topup", json={"amount": 150, "phone": "0712345678"}, headers=ADMIN)
        assert resp.status_code == 502
        assert "maintenance" not in resp.text

    @pytest.mark.parametrize("headers", [{}, ALICE, {"Authorization": "Bearer wrong"}])
    def test_run_due_requires_cron_secret(self, client, headers):
        assert client.post("/payouts/run-due", headers=headers).status_code == 401

    def test_run_due_rejects_non_ascii_token(self, client):
        resp = client.post("/payouts/run-due", headers={"Authorization": "Bearer \u00e9".encode("latin-1")})
        assert resp.status_code == 401

    def test_run_due(self, client):
        resp = client.post("/payouts/run-due", headers=CRON)
        assert resp.status_code == 200
        assert set(resp.json()) == {"processed", "skipped", "failed", "not_due"}
