"""Charge lifecycle: creation, payment application, sweeping and removal.

State machine::

    pending  -> partial | completed | expired
    partial  -> completed | expired
    completed -> swept
    expired  -> swept        (only when funds were received)

Every mutation of an existing charge runs under that charge's lock, so a
payment event, a recovery pass, an expiry pass and a manual sweep for the
same charge never interleave.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Optional, Union

from pydantic import ValidationError

from .events import EventEmitter, ProcessorEvent
from .exceptions import (
    ChargeNotFoundError,
    ChargeStateError,
    ChargeValidationError,
)
from .ledger import LedgerClient
from .logging_config import bind_charge
from .models import (
    Charge,
    ChargeStatus,
    ChargeStatusReport,
    PaymentApplication,
    PaymentEvent,
    PaymentTransaction,
    SweepResult,
    utcnow,
)
from .monitor import EventMonitor
from .recovery import RecoveryScanner
from .store import ChargeStore
from .webhooks import WebhookNotifier

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = timedelta(minutes=30)

Timeout = Union[int, float, timedelta]


class ChargeLocks:
    """Lazily created per-charge ``asyncio.Lock`` registry."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, charge_id: str) -> asyncio.Lock:
        lock = self._locks.get(charge_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[charge_id] = lock
        return lock

    def discard(self, charge_id: str) -> None:
        lock = self._locks.get(charge_id)
        # A released lock stays registered until its queued waiters have run.
        if lock is not None and not lock.locked() and not lock._waiters:
            del self._locks[charge_id]

    def __len__(self) -> int:
        return len(self._locks)


def _to_timedelta(timeout: Timeout) -> timedelta:
    if isinstance(timeout, bool):
        raise ChargeValidationError("Timeout must be a number of seconds or a timedelta", field="timeout")
    if isinstance(timeout, timedelta):
        value = timeout
    elif isinstance(timeout, (int, float)):
        value = timedelta(seconds=timeout)
    else:
        raise ChargeValidationError("Timeout must be a number of seconds or a timedelta", field="timeout")
    if value <= timedelta(0):
        raise ChargeValidationError("Timeout must be positive", field="timeout")
    return value


class ChargeLifecycleManager:
    """Owns charges from creation until they are swept or deleted."""

    def __init__(
        self,
        store: ChargeStore,
        ledger: LedgerClient,
        monitor: EventMonitor,
        emitter: Optional[EventEmitter] = None,
        notifier: Optional[WebhookNotifier] = None,
        *,
        auto_sweep: bool = True,
        default_timeout: Timeout = DEFAULT_TIMEOUT,
        main_account_index: int = 0,
        main_address: Optional[str] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.monitor = monitor
        self.emitter = emitter or EventEmitter()
        self.notifier = notifier
        self.auto_sweep = auto_sweep
        self.default_timeout = _to_timedelta(default_timeout)
        self.main_account_index = main_account_index
        self._main_address = main_address
        self.locks = ChargeLocks()
        self.recovery = RecoveryScanner(self)

    @property
    def main_address(self) -> str:
        """Primary account that receives swept funds."""
        if self._main_address is None:
            self._main_address = self.ledger.get_address(self.main_account_index)
        return self._main_address

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_charge(self, charge_id: str) -> Optional[Charge]:
        return self.store.get(charge_id)

    def get_charge_by_address(self, address: str) -> Optional[Charge]:
        return self.store.get_by_address(address)

    def list_charges(self, status: Optional[ChargeStatus] = None) -> list[Charge]:
        return self.store.list(status)

    def list_active_charges(self) -> list[Charge]:
        return self.store.list_active()

    def _require(self, charge_id: str) -> Charge:
        charge = self.store.get(charge_id)
        if charge is None:
            raise ChargeNotFoundError(charge_id)
        return charge

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create_charge(
        self,
        amount_raw: int,
        timeout: Optional[Timeout] = None,
        webhook_url: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Charge:
        """Create a charge on a freshly derived sub-account."""
        if isinstance(amount_raw, bool) or not isinstance(amount_raw, int):
            raise ChargeValidationError("Amount must be an integer number of raw", field="amount_raw")
        if amount_raw <= 0:
            raise ChargeValidationError("Amount must be positive", field="amount_raw")
        ttl = self.default_timeout if timeout is None else _to_timedelta(timeout)

        index = self.store.allocate_account_index()
        address = self.ledger.derive_address(index)
        try:
            charge = Charge.new(
                address=address,
                account_index=index,
                amount_raw=amount_raw,
                timeout=ttl,
                webhook_url=webhook_url,
                metadata=metadata,
            )
        except ValidationError as e:
            raise ChargeValidationError(f"Invalid charge fields: {e}", field="metadata") from e
        self.store.create(charge)
        self.monitor.add_account(address)
        self.store.schedule_save()

        with bind_charge(charge.id):
            logger.info(f"Created charge for {charge.amount_display} XNO at {address} (index {index})")
        self.emitter.emit(ProcessorEvent.CHARGE_CREATED, charge)
        return charge

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    async def apply_payment(self, event: PaymentEvent) -> PaymentApplication:
        """Apply a pushed payment event to the charge owning ``event.to``."""
        charge = self.store.get_by_address(event.to)
        if charge is None:
            logger.debug(f"No charge registered for {event.to}, ignoring {event.hash}")
            return PaymentApplication.UNKNOWN_ADDRESS

        async with self.locks.get(charge.id):
            with bind_charge(charge.id):
                return await self._apply_locked(charge, event.to_transaction(), self.auto_sweep)

    async def _apply_locked(
        self,
        charge: Charge,
        tx: PaymentTransaction,
        sweep_on_complete: bool,
    ) -> PaymentApplication:
        if not charge.is_active:
            logger.debug(f"Charge is {charge.status.value}, ignoring payment {tx.hash}")
            return PaymentApplication.IGNORED
        if tx.amount_raw <= 0:
            logger.warning(f"Ignoring payment {tx.hash} with non-positive amount {tx.amount_raw}")
            return PaymentApplication.IGNORED
        if charge.has_transaction(tx.hash):
            logger.debug(f"Payment {tx.hash} already recorded")
            return PaymentApplication.DUPLICATE

        charge.record_transaction(tx)
        logger.info(
            f"Received {tx.amount_display} XNO ({charge.received_display}/{charge.amount_display})"
        )
        self.emitter.emit(ProcessorEvent.CHARGE_PAYMENT, {"charge": charge, "transaction": tx})

        if charge.received_raw >= charge.amount_raw:
            charge.transition(ChargeStatus.COMPLETED)
            charge.completed_at = utcnow()
            self.store.flush()
            logger.info("Charge completed")
            self.emitter.emit(ProcessorEvent.CHARGE_COMPLETED, charge)

            if sweep_on_complete:
                try:
                    await self._sweep_locked(charge)
                except Exception as e:
                    logger.error(f"Auto-sweep failed: {e}")
        else:
            if charge.status == ChargeStatus.PENDING:
                charge.transition(ChargeStatus.PARTIAL)
            self.store.schedule_save()
            self.emitter.emit(ProcessorEvent.CHARGE_PARTIAL, charge)

        return PaymentApplication.APPLIED

    # -------------------------------------------------------------------------
    # Sweeping
    # -------------------------------------------------------------------------

    async def sweep_charge(self, charge_id: str) -> Optional[SweepResult]:
        """Move a charge's funds to the primary account.

        Returns None when the charge is already swept or its sub-account
        holds nothing.

        Raises:
            ChargeNotFoundError: Unknown charge id.
            ChargeStateError: The charge is still pending or partial.
            LedgerError: Receive or send failed.
        """
        charge = self._require(charge_id)
        async with self.locks.get(charge.id):
            with bind_charge(charge.id):
                return await self._sweep_locked(charge)

    async def _sweep_locked(self, charge: Charge) -> Optional[SweepResult]:
        if charge.status == ChargeStatus.SWEPT:
            return None
        if charge.is_active:
            raise ChargeStateError(
                f"Cannot sweep a {charge.status.value} charge",
                charge_id=charge.id,
                status=charge.status.value,
            )

        index = charge.account_index
        try:
            await self.ledger.receive_pending(index)
            balance = await self.ledger.get_balance(index)
            if balance.balance == 0:
                logger.info("Nothing to sweep")
                return None
            amount = balance.balance
            result = await self.ledger.send(self.main_address, amount, index)
        except Exception as e:
            logger.error(f"Sweep failed: {e}")
            self.emitter.emit(ProcessorEvent.ERROR, {"charge_id": charge.id, "error": e})
            raise

        charge.transition(ChargeStatus.SWEPT)
        charge.swept_at = utcnow()
        charge.sweep_tx_hash = result.hash

        self.store.release_address(charge)
        self.monitor.remove_account(charge.address)
        self.store.flush()

        sweep = SweepResult(charge_id=charge.id, hash=result.hash, amount_raw=amount)
        logger.info(f"Swept {sweep.amount_display} XNO to {self.main_address} ({result.hash})")
        self.emitter.emit(
            ProcessorEvent.CHARGE_SWEPT,
            {
                "charge": charge,
                "hash": result.hash,
                "amount_raw": amount,
                "amount_display": sweep.amount_display,
            },
        )

        if charge.webhook_url and not charge.webhook_sent:
            await self._send_webhook(charge, sweep)

        return sweep

    async def _send_webhook(self, charge: Charge, sweep: SweepResult) -> None:
        if self.notifier is None:
            return
        result = await self.notifier.notify(charge, sweep)
        if result.delivered:
            charge.webhook_sent = True
            self.store.flush()
            self.emitter.emit(ProcessorEvent.WEBHOOK_SENT, {"charge_id": charge.id, "url": result.url})
        elif result.status_code is not None:
            self.emitter.emit(
                ProcessorEvent.WEBHOOK_FAILED,
                {
                    "charge_id": charge.id,
                    "url": result.url,
                    "status": result.status_code,
                    "status_text": result.status_text,
                },
            )
        else:
            self.emitter.emit(
                ProcessorEvent.WEBHOOK_ERROR,
                {"charge_id": charge.id, "url": result.url, "error": result.error},
            )

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    async def check_status(self, charge_id: str, sweep: bool = False) -> ChargeStatusReport:
        """Compare a charge against the ledger's view of its sub-account.

        Never changes ``received_raw`` on its own; with ``sweep=True`` a paid
        charge is reconciled through the recovery path and then swept.
        """
        charge = self._require(charge_id)

        with bind_charge(charge.id):
            try:
                balance = await self.ledger.get_balance(charge.account_index)
                pending = await self.ledger.get_pending_items(charge.account_index)
            except Exception as e:
                logger.warning(f"Ledger unavailable while checking status: {e}")
                return ChargeStatusReport(
                    charge=charge,
                    is_paid=False,
                    remaining_raw=charge.amount_raw,
                    ledger_available=False,
                )

            pending_raw = sum(item.amount_raw for item in pending)
            total = balance.balance + pending_raw
            report = ChargeStatusReport(
                charge=charge,
                is_paid=total >= charge.amount_raw,
                remaining_raw=max(charge.amount_raw - total, 0),
                balance_raw=balance.balance,
                pending_raw=pending_raw,
            )

            if sweep and report.is_paid:
                if charge.is_active:
                    await self.recovery.reconcile_charge(charge, auto_sweep=False)
                if charge.status in (ChargeStatus.COMPLETED, ChargeStatus.EXPIRED):
                    report.sweep = await self.sweep_charge(charge.id)

            return report

    # -------------------------------------------------------------------------
    # Removal
    # -------------------------------------------------------------------------

    async def delete_charge(self, charge_id: str) -> bool:
        """Remove a terminal charge.

        Returns False for an unknown id. Raises ChargeStateError if the
        charge may still hold funds.
        """
        charge = self.store.get(charge_id)
        if charge is None:
            return False

        async with self.locks.get(charge.id):
            if not charge.is_deletable:
                raise ChargeStateError(
                    "Cannot delete charge with pending funds. Sweep first.",
                    charge_id=charge.id,
                    status=charge.status.value,
                )
            self.store.delete(charge.id)
            self.monitor.remove_account(charge.address)
        self.locks.discard(charge.id)
        self.store.schedule_save()

        with bind_charge(charge.id):
            logger.info("Deleted charge")
        self.emitter.emit(ProcessorEvent.CHARGE_DELETED, charge)
        return True

    def cleanup_swept(self) -> int:
        """Drop every swept charge from the store. Returns the count removed."""
        removed = 0
        for charge in self.store.list(ChargeStatus.SWEPT):
            if self.store.delete(charge.id) is not None:
                self.locks.discard(charge.id)
                removed += 1
        if removed:
            self.store.schedule_save()
            logger.info(f"Cleaned up {removed} swept charge(s)")
        return removed
