"""Charge, payment and snapshot models.

Persisted and wire-facing types are pydantic models serialized with camelCase
keys; raw amounts travel as decimal strings so 128-bit balances survive JSON.
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, JsonValue, PlainSerializer
from pydantic.alias_generators import to_camel

from .exceptions import ChargeStateError
from .units import raw_to_display

RawAmount = Annotated[int, PlainSerializer(lambda v: str(v), return_type=str, when_used="json")]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_charge_id() -> str:
    return f"chg_{secrets.token_hex(12)}"


class ChargeStatus(str, Enum):
    """Lifecycle status of a charge."""
    PENDING = "pending"
    PARTIAL = "partial"
    COMPLETED = "completed"
    EXPIRED = "expired"
    SWEPT = "swept"


# Forward-only state machine; anything not listed here is rejected.
ALLOWED_TRANSITIONS: dict[ChargeStatus, frozenset[ChargeStatus]] = {
    ChargeStatus.PENDING: frozenset(
        {ChargeStatus.PARTIAL, ChargeStatus.COMPLETED, ChargeStatus.EXPIRED}
    ),
    ChargeStatus.PARTIAL: frozenset({ChargeStatus.COMPLETED, ChargeStatus.EXPIRED}),
    ChargeStatus.COMPLETED: frozenset({ChargeStatus.SWEPT}),
    ChargeStatus.EXPIRED: frozenset({ChargeStatus.SWEPT}),
    ChargeStatus.SWEPT: frozenset(),
}

ACTIVE_STATUSES = frozenset({ChargeStatus.PENDING, ChargeStatus.PARTIAL})


class PaymentApplication(str, Enum):
    """Outcome of applying a payment to a charge."""
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNKNOWN_ADDRESS = "unknown_address"


class ChargeModel(BaseModel):
    """Base model with camelCase aliases and JSON helpers."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert model to a JSON-ready dictionary."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        """Create model from dictionary."""
        return cls.model_validate(data)


class PaymentTransaction(ChargeModel):
    """A payment recorded against a charge."""
    hash: str
    sender: str = Field(default="", alias="from")
    amount_raw: RawAmount
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def amount_display(self) -> str:
        return raw_to_display(self.amount_raw)


class Charge(ChargeModel):
    """A request for a fixed amount of funds at a dedicated sub-account."""
    id: str
    address: str
    account_index: int
    amount_raw: RawAmount
    received_raw: RawAmount = 0
    status: ChargeStatus = ChargeStatus.PENDING
    transactions: list[PaymentTransaction] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    completed_at: Optional[datetime] = None
    swept_at: Optional[datetime] = None
    sweep_tx_hash: Optional[str] = None
    webhook_url: Optional[str] = None
    webhook_sent: bool = False
    metadata: Optional[dict[str, JsonValue]] = None

    @staticmethod
    def new(
        address: str,
        account_index: int,
        amount_raw: int,
        timeout: timedelta,
        *,
        webhook_url: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> "Charge":
        now = utcnow()
        return Charge(
            id=generate_charge_id(),
            address=address,
            account_index=account_index,
            amount_raw=amount_raw,
            created_at=now,
            expires_at=now + timeout,
            webhook_url=webhook_url,
            metadata=metadata,
        )

    @property
    def amount_display(self) -> str:
        return raw_to_display(self.amount_raw)

    @property
    def received_display(self) -> str:
        return raw_to_display(self.received_raw)

    @property
    def remaining_raw(self) -> int:
        return max(self.amount_raw - self.received_raw, 0)

    @property
    def is_active(self) -> bool:
        """Still accepting payments."""
        return self.status in ACTIVE_STATUSES

    @property
    def holds_address(self) -> bool:
        """Whether the charge still owns its address mapping.

        Swept charges and expired charges that never received funds have
        released their address.
        """
        if self.status == ChargeStatus.SWEPT:
            return False
        if self.status == ChargeStatus.EXPIRED and self.received_raw == 0:
            return False
        return True

    @property
    def is_deletable(self) -> bool:
        return self.status == ChargeStatus.SWEPT or (
            self.status == ChargeStatus.EXPIRED and self.received_raw == 0
        )

    def is_expired_at(self, now: datetime) -> bool:
        return self.is_active and self.expires_at < now

    def has_transaction(self, tx_hash: str) -> bool:
        return any(tx.hash == tx_hash for tx in self.transactions)

    def record_transaction(self, tx: PaymentTransaction) -> None:
        """Append a transaction and add it to the received total."""
        self.transactions.append(tx)
        self.received_raw += tx.amount_raw

    def transition(self, new_status: ChargeStatus) -> None:
        """Move to ``new_status``, enforcing the forward-only state machine."""
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise ChargeStateError(
                f"Cannot move charge from {self.status.value} to {new_status.value}",
                charge_id=self.id,
                status=self.status.value,
            )
        self.status = new_status


class ChargeSnapshot(ChargeModel):
    """Persisted state: allocation cursor plus the full charge set."""
    next_account_index: int
    charges: list[Charge] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Ledger / monitor payloads
# =============================================================================

class PaymentEvent(ChargeModel):
    """Payment notification pushed by the event monitor."""
    to: str
    sender: str = Field(default="", alias="from")
    hash: str
    amount_raw: RawAmount = Field(alias="amount", gt=0)
    amount_display: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    def to_transaction(self) -> PaymentTransaction:
        return PaymentTransaction(
            hash=self.hash,
            sender=self.sender,
            amount_raw=self.amount_raw,
            timestamp=self.timestamp,
        )


class PendingItem(ChargeModel):
    """Unsettled incoming send on a sub-account."""
    hash: str
    amount_raw: RawAmount = Field(alias="amount", gt=0)
    source: str = ""


class AccountBalance(ChargeModel):
    balance: RawAmount = 0
    pending: RawAmount = 0


class ReceiveResult(ChargeModel):
    hash: str
    amount_raw: RawAmount = Field(alias="amount")


class SendResult(ChargeModel):
    hash: str


# =============================================================================
# Operation results
# =============================================================================

@dataclass
class SweepResult:
    """Funds moved from a charge's sub-account to the primary account."""
    charge_id: str
    hash: str
    amount_raw: int

    @property
    def amount_display(self) -> str:
        return raw_to_display(self.amount_raw)


@dataclass
class ChargeStatusReport:
    """On-demand reconciliation of a charge against ledger state."""
    charge: Charge
    is_paid: bool
    remaining_raw: int
    balance_raw: int = 0
    pending_raw: int = 0
    ledger_available: bool = True
    sweep: Optional[SweepResult] = None

    @property
    def remaining_display(self) -> str:
        return raw_to_display(self.remaining_raw)
