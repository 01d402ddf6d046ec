"""Completion webhooks.

One POST per completed charge, with no retry. The caller records
``webhook_sent`` on success, which is what prevents a second delivery.

Payload:
    {
        "event": "charge.completed",
        "charge": {"id", "address", "amountDisplay", "amountRaw", ...},
        "timestamp": "2026-01-01T00:00:00+00:00"
    }
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from .models import Charge, SweepResult, utcnow

logger = logging.getLogger(__name__)

CHARGE_COMPLETED_EVENT = "charge.completed"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def build_payload(charge: Charge, sweep: Optional[SweepResult] = None) -> Dict[str, Any]:
    """Build the ``charge.completed`` notification body."""
    return {
        "event": CHARGE_COMPLETED_EVENT,
        "charge": {
            "id": charge.id,
            "address": charge.address,
            "amountDisplay": charge.amount_display,
            "amountRaw": str(charge.amount_raw),
            "receivedDisplay": charge.received_display,
            "receivedRaw": str(charge.received_raw),
            "status": charge.status.value,
            "sweepTxHash": sweep.hash if sweep else charge.sweep_tx_hash,
            "sweptAmountDisplay": sweep.amount_display if sweep else None,
            "sweptAmountRaw": str(sweep.amount_raw) if sweep else None,
            "completedAt": _iso(charge.completed_at),
            "sweptAt": _iso(charge.swept_at),
            "metadata": charge.metadata,
        },
        "timestamp": utcnow().isoformat(),
    }


class WebhookSigner:
    """Generates ``v1=`` HMAC-SHA256 signature headers."""

    def __init__(
        self,
        signature_header: str = "X-Webhook-Signature",
        timestamp_header: str = "X-Webhook-Timestamp",
    ):
        self.signature_header = signature_header
        self.timestamp_header = timestamp_header

    def sign(self, payload: bytes, secret: str, timestamp: Optional[int] = None) -> tuple[str, int]:
        """Sign ``"{timestamp}.{body}"``; returns (signature, timestamp)."""
        ts = timestamp or int(time.time())
        signed_payload = f"{ts}.{payload.decode()}".encode()
        signature = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
        return f"v1={signature}", ts

    def get_headers(self, payload: bytes, secret: str) -> Dict[str, str]:
        signature, timestamp = self.sign(payload, secret)
        return {
            self.signature_header: signature,
            self.timestamp_header: str(timestamp),
        }


@dataclass
class WebhookDeliveryResult:
    """Outcome of a single delivery attempt.

    Exactly one of ``status_code`` (a response arrived) or ``error`` (no
    response) is set.
    """
    url: str
    delivered: bool
    status_code: Optional[int] = None
    status_text: Optional[str] = None
    error: Optional[str] = None


class WebhookNotifier:
    """Posts completion payloads; never raises on delivery failure."""

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        secret: Optional[str] = None,
        signer: Optional[WebhookSigner] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.secret = secret
        self.signer = signer or WebhookSigner()
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def notify(
        self,
        charge: Charge,
        sweep: Optional[SweepResult] = None,
    ) -> WebhookDeliveryResult:
        url = charge.webhook_url
        if not url:
            return WebhookDeliveryResult(url="", delivered=False, error="No webhook URL configured")

        body = json.dumps(build_payload(charge, sweep)).encode()
        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers.update(self.signer.get_headers(body, self.secret))

        try:
            response = await self._get_client().post(url, content=body, headers=headers)
        except httpx.TimeoutException:
            logger.warning(f"Webhook to {url} timed out")
            return WebhookDeliveryResult(url=url, delivered=False, error="Request timed out")
        except httpx.RequestError as e:
            logger.warning(f"Webhook to {url} failed: {e}")
            return WebhookDeliveryResult(url=url, delivered=False, error=f"Request error: {e}")
        except Exception as e:
            logger.error(f"Unexpected webhook error for {url}: {e}", exc_info=True)
            return WebhookDeliveryResult(url=url, delivered=False, error=f"Unexpected error: {e}")

        if 200 <= response.status_code < 300:
            logger.info(f"Webhook delivered to {url}")
            return WebhookDeliveryResult(
                url=url,
                delivered=True,
                status_code=response.status_code,
                status_text=response.reason_phrase,
            )

        logger.warning(f"Webhook to {url} returned HTTP {response.status_code}")
        return WebhookDeliveryResult(
            url=url,
            delivered=False,
            status_code=response.status_code,
            status_text=response.reason_phrase,
        )
