"""Startup reconciliation of active charges against ledger pending items.

Payments sent while the processor was offline never arrive as push events.
Before the monitor starts, every active charge's sub-account is checked for
unsettled incoming sends, and each one is applied exactly as a live payment
would be.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from .events import ProcessorEvent
from .logging_config import bind_charge
from .models import Charge, PaymentApplication, PaymentTransaction

if TYPE_CHECKING:
    from .lifecycle import ChargeLifecycleManager

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    """Summary of one recovery scan."""
    scanned: int = 0
    applied: int = 0
    completed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


class RecoveryScanner:
    """Applies ledger pending items that were missed while offline."""

    def __init__(self, lifecycle: "ChargeLifecycleManager"):
        self.lifecycle = lifecycle

    async def scan(self) -> RecoveryReport:
        """Reconcile every pending/partial charge; failures are isolated per charge."""
        report = RecoveryReport()
        for charge in self.lifecycle.store.list_active():
            report.scanned += 1
            try:
                applied = await self.reconcile_charge(charge)
            except Exception as e:
                with bind_charge(charge.id):
                    logger.error(f"Recovery failed: {e}", exc_info=True)
                report.failed[charge.id] = str(e)
                self.lifecycle.emitter.emit(
                    ProcessorEvent.ERROR, {"charge_id": charge.id, "error": e}
                )
                continue
            report.applied += applied
            if applied and not charge.is_active:
                report.completed.append(charge.id)

        if report.scanned:
            logger.info(
                f"Recovery scanned {report.scanned} charge(s): applied {report.applied} "
                f"payment(s), {len(report.failed)} failure(s)"
            )
        return report

    async def reconcile_charge(self, charge: Charge, auto_sweep: Optional[bool] = None) -> int:
        """Apply the ledger's pending items for one charge.

        Items whose hash is already recorded are skipped. Returns the number
        of newly applied payments. ``auto_sweep`` overrides the manager's
        setting for a charge that completes here.
        """
        lifecycle = self.lifecycle
        sweep_on_complete = lifecycle.auto_sweep if auto_sweep is None else auto_sweep

        with bind_charge(charge.id):
            items = await lifecycle.ledger.get_pending_items(charge.account_index)
            if not items:
                return 0

            logger.info(f"Found {len(items)} pending item(s) on {charge.address}")
            lifecycle.emitter.emit(
                ProcessorEvent.RECOVERY_FOUND,
                {"charge_id": charge.id, "pending_count": len(items)},
            )

            applied = 0
            async with lifecycle.locks.get(charge.id):
                for item in items:
                    tx = PaymentTransaction(
                        hash=item.hash,
                        sender=item.source,
                        amount_raw=item.amount_raw,
                    )
                    outcome = await lifecycle._apply_locked(charge, tx, sweep_on_complete)
                    if outcome == PaymentApplication.APPLIED:
                        applied += 1
                    elif outcome == PaymentApplication.IGNORED:
                        break
            return applied
