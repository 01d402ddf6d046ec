"""
Tests for nanocharge.models.

Tests cover:
- Charge construction and derived amounts
- Forward-only status transitions
- Address ownership and deletability rules
- camelCase JSON serialization of raw amounts and timestamps
- Positive amounts and JSON-only metadata
"""
from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from nanocharge.exceptions import ChargeStateError
from nanocharge.models import (
    ALLOWED_TRANSITIONS,
    Charge,
    ChargeStatus,
    PaymentEvent,
    PaymentTransaction,
    PendingItem,
)


def _charge(amount_raw: int = 1_000_000) -> Charge:
    return Charge.new(
        address="nano_3test",
        account_index=1000,
        amount_raw=amount_raw,
        timeout=timedelta(minutes=30),
    )


class TestChargeNew:
    """Tests for Charge.new."""

    def test_defaults(self):
        """Should start pending with nothing received."""
        charge = _charge()
        assert charge.id.startswith("chg_")
        assert len(charge.id) == 4 + 24
        assert charge.status == ChargeStatus.PENDING
        assert charge.received_raw == 0
        assert charge.transactions == []
        assert charge.expires_at - charge.created_at == timedelta(minutes=30)
        assert charge.webhook_sent is False

    def test_ids_are_unique(self):
        """Should generate a fresh id per charge."""
        assert len({_charge().id for _ in range(50)}) == 50

    def test_remaining(self):
        """Should compute remaining amount and clamp at zero."""
        charge = _charge(100)
        charge.record_transaction(PaymentTransaction(hash="h1", amount_raw=40))
        assert charge.remaining_raw == 60
        charge.record_transaction(PaymentTransaction(hash="h2", amount_raw=90))
        assert charge.remaining_raw == 0


class TestTransitions:
    """Tests for the status state machine."""

    @pytest.mark.parametrize(
        "start,target",
        [
            (ChargeStatus.PENDING, ChargeStatus.PARTIAL),
            (ChargeStatus.PENDING, ChargeStatus.COMPLETED),
            (ChargeStatus.PARTIAL, ChargeStatus.COMPLETED),
            (ChargeStatus.PARTIAL, ChargeStatus.EXPIRED),
            (ChargeStatus.COMPLETED, ChargeStatus.SWEPT),
            (ChargeStatus.EXPIRED, ChargeStatus.SWEPT),
        ],
    )
    def test_allowed(self, start, target):
        """Should allow forward transitions."""
        charge = _charge()
        charge.status = start
        charge.transition(target)
        assert charge.status == target

    @pytest.mark.parametrize(
        "start,target",
        [
            (ChargeStatus.PARTIAL, ChargeStatus.PENDING),
            (ChargeStatus.COMPLETED, ChargeStatus.PARTIAL),
            (ChargeStatus.COMPLETED, ChargeStatus.EXPIRED),
            (ChargeStatus.EXPIRED, ChargeStatus.COMPLETED),
            (ChargeStatus.SWEPT, ChargeStatus.COMPLETED),
            (ChargeStatus.PENDING, ChargeStatus.SWEPT),
        ],
    )
    def test_rejected(self, start, target):
        """Should reject backward or skipping transitions."""
        charge = _charge()
        charge.status = start
        with pytest.raises(ChargeStateError):
            charge.transition(target)
        assert charge.status == start

    def test_swept_is_terminal(self):
        """Should have no transitions out of swept."""
        assert ALLOWED_TRANSITIONS[ChargeStatus.SWEPT] == frozenset()


class TestAddressOwnership:
    """Tests for holds_address and is_deletable."""

    def test_active_holds_address(self):
        """Should hold the address while active or completed."""
        charge = _charge()
        assert charge.holds_address
        charge.status = ChargeStatus.COMPLETED
        assert charge.holds_address
        assert not charge.is_deletable

    def test_expired_without_funds(self):
        """Should release the address and be deletable."""
        charge = _charge()
        charge.status = ChargeStatus.EXPIRED
        assert not charge.holds_address
        assert charge.is_deletable

    def test_expired_with_funds(self):
        """Should keep the address and refuse deletion."""
        charge = _charge()
        charge.record_transaction(PaymentTransaction(hash="h1", amount_raw=1))
        charge.status = ChargeStatus.EXPIRED
        assert charge.holds_address
        assert not charge.is_deletable

    def test_swept(self):
        """Should release the address and be deletable."""
        charge = _charge()
        charge.status = ChargeStatus.SWEPT
        assert not charge.holds_address
        assert charge.is_deletable


class TestSerialization:
    """Tests for JSON round-trips."""

    def test_camel_case_and_string_amounts(self):
        """Should emit camelCase keys and raw amounts as strings."""
        charge = _charge(10**30)
        data = charge.to_dict()
        assert data["amountRaw"] == str(10**30)
        assert data["receivedRaw"] == "0"
        assert data["accountIndex"] == 1000
        assert data["webhookSent"] is False
        assert data["status"] == "pending"

    def test_round_trip(self):
        """Should restore an identical charge from its dict."""
        charge = _charge(2**127)
        charge.record_transaction(PaymentTransaction(hash="h1", sender="nano_1payer", amount_raw=5))
        charge.metadata = {"order": "42"}
        restored = Charge.from_dict(charge.to_dict())
        assert restored == charge
        assert restored.transactions[0].sender == "nano_1payer"
        assert restored.created_at == charge.created_at

    def test_transaction_uses_from_key(self):
        """Should serialize the sender under 'from'."""
        tx = PaymentTransaction(hash="h1", sender="nano_1payer", amount_raw=5)
        assert tx.to_dict()["from"] == "nano_1payer"

    def test_payment_event_from_wire(self):
        """Should parse monitor payloads with 'from' and 'amount' keys."""
        event = PaymentEvent.from_dict(
            {"to": "nano_3test", "from": "nano_1payer", "hash": "H", "amount": "1000000"}
        )
        assert event.amount_raw == 1_000_000
        tx = event.to_transaction()
        assert tx.sender == "nano_1payer"
        assert tx.amount_raw == 1_000_000


class TestValidation:
    """Tests for input constraints on wire and persisted models."""

    @pytest.mark.parametrize("amount", ["0", "-300000"])
    def test_payment_event_amount_positive(self, amount):
        """Should reject payment events without a positive amount."""
        with pytest.raises(ValidationError):
            PaymentEvent.from_dict({"to": "nano_3test", "hash": "H", "amount": amount})

    @pytest.mark.parametrize("amount", [0, -1])
    def test_pending_item_amount_positive(self, amount):
        """Should reject pending items without a positive amount."""
        with pytest.raises(ValidationError):
            PendingItem(hash="H", amount_raw=amount)

    def test_metadata_must_be_json(self):
        """Should reject metadata values that have no JSON form."""
        with pytest.raises(ValidationError):
            Charge.new(
                address="nano_3test",
                account_index=1000,
                amount_raw=100,
                timeout=timedelta(minutes=30),
                metadata={"obj": object()},
            )
