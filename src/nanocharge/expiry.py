"""Periodic expiry of charges whose deadline has passed."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from .events import ProcessorEvent
from .logging_config import bind_charge
from .models import Charge, ChargeStatus, utcnow

if TYPE_CHECKING:
    from .lifecycle import ChargeLifecycleManager

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL_SECONDS = 10.0


class ExpiryScheduler:
    """Marks overdue pending/partial charges as expired.

    Charges that received something are swept (when auto-sweep is on) or
    left holding their address for a manual sweep. Charges that received
    nothing release their address.
    """

    def __init__(
        self,
        lifecycle: "ChargeLifecycleManager",
        interval_seconds: float = DEFAULT_CHECK_INTERVAL_SECONDS,
    ):
        self.lifecycle = lifecycle
        self.interval_seconds = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Expiry scheduler started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Expiry scheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in expiry scheduler: {e}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    async def run_once(self, now: Optional[datetime] = None) -> list[Charge]:
        """Expire every overdue charge. Returns the charges expired by this pass."""
        now = now or utcnow()
        lifecycle = self.lifecycle
        expired: list[Charge] = []

        for charge in lifecycle.store.list_active():
            if not charge.is_expired_at(now):
                continue
            async with lifecycle.locks.get(charge.id):
                # A payment may have completed it while we waited for the lock
                if not charge.is_expired_at(now):
                    continue
                charge.transition(ChargeStatus.EXPIRED)
            expired.append(charge)
            with bind_charge(charge.id):
                logger.info(f"Charge expired with {charge.received_display} XNO received")
            lifecycle.emitter.emit(ProcessorEvent.CHARGE_EXPIRED, charge)

        if not expired:
            return expired
        lifecycle.store.schedule_save()

        for charge in expired:
            if charge.received_raw > 0:
                if lifecycle.auto_sweep:
                    await self._sweep_best_effort(charge)
                else:
                    lifecycle.monitor.remove_account(charge.address)
            else:
                lifecycle.store.release_address(charge)
                lifecycle.monitor.remove_account(charge.address)

        return expired

    async def _sweep_best_effort(self, charge: Charge) -> None:
        try:
            await self.lifecycle.sweep_charge(charge.id)
        except Exception as e:
            # Ledger failures were already emitted by the sweep itself
            with bind_charge(charge.id):
                logger.error(f"Sweep of expired charge failed: {e}")
