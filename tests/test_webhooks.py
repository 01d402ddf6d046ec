"""
Tests for nanocharge.webhooks.

Tests cover:
- Payload shape
- Signature generation
- Delivery outcomes (2xx, non-2xx, transport errors)
"""
from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import timedelta

import httpx
import pytest

from nanocharge.models import Charge, ChargeStatus, PaymentTransaction, SweepResult, utcnow
from nanocharge.webhooks import WebhookNotifier, WebhookSigner, build_payload

WEBHOOK_URL = "https://merchant.example/hooks/nano"


def _expected_signature(body: bytes, secret: str, timestamp: int) -> str:
    """Compute the signature a receiver would check against."""
    signed = f"{timestamp}.{body.decode()}".encode()
    return "v1=" + hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


@pytest.fixture
def swept_charge() -> Charge:
    charge = Charge.new(
        address="nano_3charge",
        account_index=1000,
        amount_raw=1_000_000,
        timeout=timedelta(minutes=30),
        webhook_url=WEBHOOK_URL,
        metadata={"order_id": "ord_1"},
    )
    charge.record_transaction(PaymentTransaction(hash="H1", amount_raw=1_000_000))
    charge.status = ChargeStatus.SWEPT
    charge.completed_at = utcnow()
    charge.swept_at = utcnow()
    charge.sweep_tx_hash = "S1"
    return charge


class TestBuildPayload:
    """Tests for build_payload."""

    def test_shape(self, swept_charge):
        """Should produce the charge.completed payload."""
        sweep = SweepResult(charge_id=swept_charge.id, hash="S1", amount_raw=1_000_000)
        payload = build_payload(swept_charge, sweep)

        assert payload["event"] == "charge.completed"
        assert set(payload["charge"]) == {
            "id",
            "address",
            "amountDisplay",
            "amountRaw",
            "receivedDisplay",
            "receivedRaw",
            "status",
            "sweepTxHash",
            "sweptAmountDisplay",
            "sweptAmountRaw",
            "completedAt",
            "sweptAt",
            "metadata",
        }
        charge = payload["charge"]
        assert charge["amountRaw"] == "1000000"
        assert charge["amountDisplay"] == "0.000000000000000000000001"
        assert charge["sweptAmountRaw"] == "1000000"
        assert charge["sweepTxHash"] == "S1"
        assert charge["metadata"] == {"order_id": "ord_1"}
        assert charge["completedAt"] == swept_charge.completed_at.isoformat()
        assert "timestamp" in payload

    def test_without_sweep(self, swept_charge):
        """Should leave swept amounts empty when no sweep happened."""
        payload = build_payload(swept_charge)
        assert payload["charge"]["sweptAmountRaw"] is None
        assert payload["charge"]["sweepTxHash"] == "S1"


class TestWebhookSigner:
    """Tests for WebhookSigner."""

    def test_sign(self):
        """Should sign timestamp and body with HMAC-SHA256."""
        signer = WebhookSigner()
        body = b'{"event":"charge.completed"}'
        signature, ts = signer.sign(body, "secret")

        assert abs(ts - int(time.time())) <= 5
        assert signature == _expected_signature(body, "secret", ts)
        assert signature != _expected_signature(body, "other", ts)
        assert signature != _expected_signature(b"{}", "secret", ts)

    def test_explicit_timestamp(self):
        """Should use a supplied timestamp unchanged."""
        signature, ts = WebhookSigner().sign(b"{}", "secret", 1_700_000_000)
        assert ts == 1_700_000_000
        assert signature == _expected_signature(b"{}", "secret", 1_700_000_000)

    def test_headers(self):
        """Should place signature and timestamp in the configured headers."""
        signer = WebhookSigner(signature_header="X-Sig", timestamp_header="X-Ts")
        headers = signer.get_headers(b"{}", "secret")
        assert set(headers) == {"X-Sig", "X-Ts"}
        assert headers["X-Sig"] == _expected_signature(b"{}", "secret", int(headers["X-Ts"]))


class TestWebhookNotifier:
    """Tests for WebhookNotifier.notify."""

    @pytest.mark.asyncio
    async def test_success(self, swept_charge, httpx_mock):
        """Should report delivery on a 2xx response."""
        httpx_mock.add_response(url=WEBHOOK_URL, method="POST", status_code=204)
        notifier = WebhookNotifier()

        result = await notifier.notify(swept_charge)
        await notifier.close()

        assert result.delivered is True
        assert result.status_code == 204
        request = httpx_mock.get_requests()[0]
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content)["charge"]["id"] == swept_charge.id
        assert "X-Webhook-Signature" not in request.headers

    @pytest.mark.asyncio
    async def test_signed_when_secret_set(self, swept_charge, httpx_mock):
        """Should add verifiable signature headers."""
        httpx_mock.add_response(url=WEBHOOK_URL, method="POST", status_code=200)
        notifier = WebhookNotifier(secret="whsec_test")

        await notifier.notify(swept_charge)
        await notifier.close()

        request = httpx_mock.get_requests()[0]
        signature = request.headers["X-Webhook-Signature"]
        timestamp = int(request.headers["X-Webhook-Timestamp"])
        assert signature == _expected_signature(request.content, "whsec_test", timestamp)

    @pytest.mark.asyncio
    async def test_non_2xx(self, swept_charge, httpx_mock):
        """Should report a failed attempt without raising."""
        httpx_mock.add_response(url=WEBHOOK_URL, method="POST", status_code=404)
        notifier = WebhookNotifier()

        result = await notifier.notify(swept_charge)
        await notifier.close()

        assert result.delivered is False
        assert result.status_code == 404
        assert result.status_text == "Not Found"
        assert result.error is None

    @pytest.mark.asyncio
    async def test_timeout(self, swept_charge, httpx_mock):
        """Should report timeouts as transport errors."""
        httpx_mock.add_exception(httpx.ReadTimeout("timed out"), url=WEBHOOK_URL)
        notifier = WebhookNotifier()

        result = await notifier.notify(swept_charge)
        await notifier.close()

        assert result.delivered is False
        assert result.status_code is None
        assert result.error == "Request timed out"

    @pytest.mark.asyncio
    async def test_no_retry(self, swept_charge, httpx_mock):
        """Should make exactly one attempt per call."""
        httpx_mock.add_response(url=WEBHOOK_URL, method="POST", status_code=503)
        notifier = WebhookNotifier()

        await notifier.notify(swept_charge)
        await notifier.close()

        assert len(httpx_mock.get_requests()) == 1

    @pytest.mark.asyncio
    async def test_no_url(self, swept_charge):
        """Should not send anything when the charge has no URL."""
        swept_charge.webhook_url = None
        result = await WebhookNotifier().notify(swept_charge)
        assert result.delivered is False
        assert result.error

    @pytest.mark.asyncio
    async def test_injected_client_not_closed(self, swept_charge, httpx_mock):
        """Should leave a caller-provided client open."""
        httpx_mock.add_response(url=WEBHOOK_URL, method="POST", status_code=200)
        async with httpx.AsyncClient() as client:
            notifier = WebhookNotifier(client=client)
            result = await notifier.notify(swept_charge)
            await notifier.close()
            assert not client.is_closed
        assert result.delivered is True
