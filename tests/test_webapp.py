"""Tests for the Flask setup page, config API and payment webhooks."""
import json

import pytest

from vpn_store import deposits, repository
from vpn_store.config import Settings
from vpn_store.webapp import create_app

VALID = {
    "BOT_TOKEN": "123:abc",
    "USER_ID": [1],
    "GROUP_ID": "-100",
    "DATA_QRIS": "000201",
    "MERCHANT_ID": "M1",
    "SERVER_KEY": "SK",
}


class TestSetupMode:
    """Test the web server while the store is unconfigured."""

    @pytest.fixture
    def client(self, tmp_path):
        settings = Settings(setup_mode=True, vars_path=str(tmp_path / ".vars.json"))
        return create_app(settings).test_client()

    def test_health(self, client):
        """Test the health endpoint reports setup mode."""
        body = client.get("/health").get_json()
        assert body["status"] == "ok"
        assert body["setupMode"] is True

    def test_redirects_to_setup(self, client):
        """Test unrelated paths redirect to the setup page."""
        response = client.get("/anything")
        assert response.status_code == 302
        assert response.headers["Location"].endswith("/setup")

    def test_setup_page(self, client):
        """Test both setup routes serve the page."""
        assert b"Konfigurasi" in client.get("/setup").data
        assert client.get("/config/edit").status_code == 200

    def test_get_config_example(self, client):
        """Test an unconfigured store returns the example document."""
        body = client.get("/api/config").get_json()
        assert body["configured"] is False
        assert "BOT_TOKEN" in body["example"]

    def test_post_empty(self, client):
        """Test an empty body is rejected."""
        response = client.post("/api/config", json={})
        assert response.status_code == 400

    def test_post_invalid(self, client):
        """Test validation errors are returned."""
        response = client.post("/api/config", json={"BOT_TOKEN": "x"})
        assert response.status_code == 400
        assert "USER_ID is required" in response.get_json()["errors"]

    def test_post_valid(self, client, tmp_path):
        """Test a valid document is written and then served."""
        response = client.post("/api/config", json=VALID)
        assert response.status_code == 200
        assert json.loads((tmp_path / ".vars.json").read_text()) == VALID
        body = client.get("/api/config").get_json()
        assert body == {"configured": True, "config": VALID}


class TestWebhooks:
    """Test gateway notifications."""

    @pytest.fixture
    def client(self, app, settings):
        return create_app(settings, app).test_client()

    @pytest.fixture
    def order(self, app, make_user):
        make_user(app.db, 10)
        return deposits.create_deposit(app.db, 10, 25000, method=deposits.METHOD_PAKASIR, code="ORDER-1")

    def test_health_not_in_setup(self, client):
        """Test health reports a configured store."""
        assert client.get("/health").get_json()["setupMode"] is False

    def test_pakasir_wrong_project(self, client, order):
        """Test notifications for another project are refused."""
        response = client.post("/api/pakasir/notification", json={"project": "other", "order_id": "ORDER-1", "status": "completed", "amount": 25000})
        assert response.status_code == 403

    def test_pakasir_unknown_order(self, client, order):
        """Test unknown orders are reported as missing."""
        response = client.post("/api/pakasir/notification", json={"project": "store", "order_id": "NOPE", "status": "completed", "amount": 1})
        assert response.status_code == 404

    def test_pakasir_completed_credits_once(self, client, app, bot, order):
        """Test a completed payment credits once and replays are acknowledged."""
        payload = {"project": "store", "order_id": "ORDER-1", "status": "completed", "amount": 25000}

        first = client.post("/api/pakasir/notification", json=payload)
        second = client.post("/api/pakasir/notification", json=payload)

        assert first.status_code == 200
        assert second.get_json()["message"] == "Already processed"
        assert repository.get_user(app.db, 10)["saldo"] == 25000
        assert any(c.args[0] == 10 for c in bot.send_message.call_args_list)

    def test_pakasir_expired(self, client, app, order):
        """Test an expired payment closes the deposit without credit."""
        client.post("/api/pakasir/notification", json={"project": "store", "order_id": "ORDER-1", "status": "expired", "amount": 25000})
        assert deposits.get_deposit(app.db, "ORDER-1")["status"] == deposits.STATUS_EXPIRED
        assert repository.get_user(app.db, 10)["saldo"] == 0

    def test_pakasir_cancelled_is_failed(self, client, app, order):
        """Test a cancelled payment is recorded as failed."""
        client.post("/api/pakasir/notification", json={"project": "store", "order_id": "ORDER-1", "status": "cancelled", "amount": 25000})
        assert deposits.get_deposit(app.db, "ORDER-1")["status"] == deposits.STATUS_FAILED

    def test_midtrans_settlement(self, client, app, order):
        """Test a settled Midtrans payment credits the balance."""
        response = client.post("/api/midtrans/notification", json={"order_id": "ORDER-1", "transaction_status": "settlement", "fraud_status": "accept"})
        assert response.status_code == 200
        assert repository.get_user(app.db, 10)["saldo"] == 25000

    def test_midtrans_fraud_challenge_not_credited(self, client, app, order):
        """Test a payment flagged for review is not credited."""
        client.post("/api/midtrans/notification", json={"order_id": "ORDER-1", "transaction_status": "capture", "fraud_status": "challenge"})
        assert deposits.get_deposit(app.db, "ORDER-1")["status"] == deposits.STATUS_PENDING

    def test_midtrans_pending_and_expire(self, client, app, order):
        """Test pending is acknowledged and expire closes the deposit."""
        pending = client.post("/api/midtrans/notification", json={"order_id": "ORDER-1", "transaction_status": "pending"})
        assert pending.get_json()["message"] == "Payment pending"
        client.post("/api/midtrans/notification", json={"order_id": "ORDER-1", "transaction_status": "expire"})
        assert deposits.get_deposit(app.db, "ORDER-1")["status"] == deposits.STATUS_EXPIRED

    def test_midtrans_deny(self, client, app, order):
        """Test a denied payment is recorded as failed."""
        client.post("/api/midtrans/notification", json={"order_id": "ORDER-1", "transaction_status": "deny"})
        assert deposits.get_deposit(app.db, "ORDER-1")["status"] == deposits.STATUS_FAILED
