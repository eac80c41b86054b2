"""Tests for the Pakasir gateway client."""
from unittest.mock import MagicMock, patch

import pytest
import requests

from vpn_store import payments
from vpn_store.payments import PakasirClient, PakasirConnectionError, PakasirError


def _response(payload=None, status=200):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = payload
    if status >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(response=response)
    return response


@pytest.fixture
def client():
    return PakasirClient("store", "key")


class TestPakasirClient:
    """Test gateway requests and retries."""

    def test_configured(self):
        """Test the client needs both project and key."""
        assert PakasirClient("store", "key").configured is True
        assert PakasirClient("store", "").configured is False

    def test_create_qris(self, client):
        """Test a created payment is returned."""
        payment = {"payment_number": "000201", "total_payment": 25000}
        with patch.object(client.session, "request", return_value=_response({"payment": payment})) as request:
            assert client.create_qris("ORDER-1", 25000) == payment
        assert request.call_args.kwargs["json"]["order_id"] == "ORDER-1"

    def test_create_qris_error(self, client):
        """Test a response without a payment raises."""
        with patch.object(client.session, "request", return_value=_response({"error": "bad amount"})):
            with pytest.raises(PakasirError, match="bad amount"):
                client.create_qris("ORDER-1", 1)

    def test_retries_then_gives_up(self, client):
        """Test connection errors are retried before failing."""
        with patch.object(client.session, "request", side_effect=requests.exceptions.ConnectionError("down")) as request, \
                patch("vpn_store.payments.time.sleep") as sleep:
            with pytest.raises(PakasirConnectionError):
                client.create_qris("ORDER-1", 25000)
        assert request.call_count == payments.MAX_RETRIES
        assert sleep.call_count == payments.MAX_RETRIES - 1

    def test_recovers_after_retry(self, client):
        """Test a later attempt can succeed."""
        ok = _response({"transaction": {"status": "completed"}})
        with patch.object(client.session, "request", side_effect=[requests.exceptions.Timeout(), ok]), \
                patch("vpn_store.payments.time.sleep"):
            assert client.transaction_status("ORDER-1", 25000) == "paid"

    def test_http_error(self, client):
        """Test HTTP errors are not retried."""
        with patch.object(client.session, "request", return_value=_response(status=500)) as request:
            with pytest.raises(PakasirError):
                client.transaction_status("ORDER-1", 25000)
        assert request.call_count == 1

    @pytest.mark.parametrize(
        "status,expected",
        [("completed", "paid"), ("expired", "expired"), ("cancelled", "failed"), ("pending", "pending")],
    )
    def test_status_mapping(self, client, status, expected):
        """Test gateway statuses map to deposit statuses."""
        with patch.object(client.session, "request", return_value=_response({"transaction": {"status": status}})):
            assert client.transaction_status("ORDER-1", 25000) == expected

    def test_missing_transaction_is_pending(self, client):
        """Test an empty detail response counts as pending."""
        with patch.object(client.session, "request", return_value=_response({})):
            assert client.transaction_status("ORDER-1", 25000) == "pending"
