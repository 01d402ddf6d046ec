"""Payment processor facade.

Wires the charge store, lifecycle manager, event router, recovery scanner,
expiry scheduler and webhook notifier around a ledger client and an event
monitor.

Usage:
    processor = PaymentProcessor(ledger, monitor)
    processor.on(ProcessorEvent.CHARGE_COMPLETED, handle_completed)

    async with processor:
        charge = await processor.create_charge(display_to_raw("0.1"))
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Iterable, Optional, Union

from .config import ChargeProcessorSettings, load_settings
from .events import EventEmitter, EventName, Handler, ProcessorEvent
from .expiry import ExpiryScheduler
from .ledger import LedgerClient
from .lifecycle import ChargeLifecycleManager
from .logging_config import setup_logging
from .models import (
    Charge,
    ChargeStatus,
    ChargeStatusReport,
    PaymentApplication,
    PaymentEvent,
    SweepResult,
)
from .monitor import EventMonitor
from .recovery import RecoveryReport
from .router import PaymentEventRouter
from .store import ChargeStore
from .webhooks import WebhookNotifier

logger = logging.getLogger(__name__)


class PaymentProcessor:
    """Ephemeral charge processor.

    The constructor loads persisted state; ``start()`` resumes watching
    active charges, recovers payments missed while offline and begins
    expiring overdue charges. With ``configure_logging=True`` the root
    logger is set up from ``log_level`` and ``log_json``.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        monitor: EventMonitor,
        settings: Optional[ChargeProcessorSettings] = None,
        *,
        store: Optional[ChargeStore] = None,
        notifier: Optional[WebhookNotifier] = None,
        configure_logging: bool = False,
    ):
        self.settings = settings or load_settings()
        if configure_logging:
            setup_logging(level=self.settings.log_level, json_format=self.settings.log_json)
        self.ledger = ledger
        self.monitor = monitor
        self.emitter = EventEmitter()

        self.store = store or ChargeStore.from_path(
            self.settings.persist_path,
            starting_index=self.settings.starting_index,
            save_debounce_seconds=self.settings.save_debounce_seconds,
        )
        self.notifier = notifier or WebhookNotifier(
            timeout_seconds=self.settings.webhook_timeout_seconds,
            secret=self.settings.webhook_secret,
        )
        self.lifecycle = ChargeLifecycleManager(
            self.store,
            ledger,
            monitor,
            self.emitter,
            self.notifier,
            auto_sweep=self.settings.auto_sweep,
            default_timeout=timedelta(seconds=self.settings.default_timeout_seconds),
            main_account_index=self.settings.main_account_index,
            main_address=self.settings.main_address,
        )
        self.recovery = self.lifecycle.recovery
        self.router = PaymentEventRouter(monitor, self.lifecycle, self.emitter)
        self.expiry = ExpiryScheduler(
            self.lifecycle,
            interval_seconds=self.settings.expiry_check_interval_seconds,
        )
        self._running = False
        self.last_recovery: Optional[RecoveryReport] = None

        count = self.store.load()
        self.emitter.emit(ProcessorEvent.STATE_LOADED, {"charge_count": count})

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def main_address(self) -> str:
        return self.lifecycle.main_address

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def on(self, event: EventName, handler: Handler) -> None:
        self.emitter.on(event, handler)

    def off(self, event: EventName, handler: Handler) -> None:
        self.emitter.off(event, handler)

    # -------------------------------------------------------------------------
    # Start / stop
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return

        active = self.store.list_active()
        for charge in active:
            self.monitor.add_account(charge.address)

        self.router.attach()
        self.last_recovery = await self.recovery.scan()
        await self.monitor.start()
        await self.expiry.start()
        self._running = True

        logger.info(f"Payment processor started, resumed {len(active)} active charge(s)")
        self.emitter.emit(ProcessorEvent.STARTED, {"resumed_charges": len(active)})

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False

        await self.expiry.stop()
        await self.monitor.stop()
        self.router.detach()
        if self.store.has_pending_save:
            self.store.flush()
        await self.notifier.close()

        logger.info("Payment processor stopped")
        self.emitter.emit(ProcessorEvent.STOPPED)

    async def __aenter__(self) -> "PaymentProcessor":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def wait_for_background_tasks(self, timeout: Optional[float] = None) -> None:
        """Wait for routed payments and async event handlers to finish."""
        await self.router.wait_for_pending(timeout)
        await self.emitter.wait_for_background_tasks(timeout)

    # -------------------------------------------------------------------------
    # Charge operations
    # -------------------------------------------------------------------------

    async def create_charge(
        self,
        amount_raw: int,
        timeout: Optional[Union[int, float, timedelta]] = None,
        webhook_url: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Charge:
        return await self.lifecycle.create_charge(
            amount_raw,
            timeout=timeout,
            webhook_url=webhook_url,
            metadata=metadata,
        )

    async def apply_payment(self, event: PaymentEvent) -> PaymentApplication:
        return await self.lifecycle.apply_payment(event)

    async def sweep_charge(self, charge_id: str) -> Optional[SweepResult]:
        return await self.lifecycle.sweep_charge(charge_id)

    async def check_status(self, charge_id: str, sweep: bool = False) -> ChargeStatusReport:
        return await self.lifecycle.check_status(charge_id, sweep=sweep)

    async def delete_charge(self, charge_id: str) -> bool:
        return await self.lifecycle.delete_charge(charge_id)

    def cleanup_swept(self) -> int:
        return self.lifecycle.cleanup_swept()

    def get_charge(self, charge_id: str) -> Optional[Charge]:
        return self.lifecycle.get_charge(charge_id)

    def get_charge_by_address(self, address: str) -> Optional[Charge]:
        return self.lifecycle.get_charge_by_address(address)

    def list_charges(self, status: Optional[ChargeStatus] = None) -> list[Charge]:
        return self.lifecycle.list_charges(status)

    def list_active_charges(self) -> list[Charge]:
        return self.lifecycle.list_active_charges()

    # -------------------------------------------------------------------------
    # Backup / restore
    # -------------------------------------------------------------------------

    def export_charges(self) -> list[dict[str, Any]]:
        """All charges as JSON-ready dicts."""
        return [charge.to_dict() for charge in self.store.list()]

    def import_charges(self, charges: Iterable[Union[Charge, dict[str, Any]]]) -> int:
        """Restore exported charges; active ones are watched again.

        Returns the number of charges imported.
        """
        parsed = [c if isinstance(c, Charge) else Charge.from_dict(c) for c in charges]
        imported = self.store.import_charges(parsed)
        for charge in imported:
            if charge.is_active:
                self.monitor.add_account(charge.address)
        if imported:
            self.store.schedule_save()
            logger.info(f"Imported {len(imported)} charge(s)")
        return len(imported)
