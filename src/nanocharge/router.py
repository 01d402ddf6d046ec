"""Routes event monitor notifications into the processor.

Payment events are dispatched to the lifecycle manager as tracked tasks so
a slow sweep never blocks the monitor's delivery loop. Connection events
are re-emitted unchanged on the processor's emitter.
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Optional

from .events import EventEmitter, MonitorEvent, ProcessorEvent
from .models import PaymentApplication, PaymentEvent
from .monitor import EventMonitor

if TYPE_CHECKING:
    from .lifecycle import ChargeLifecycleManager

logger = logging.getLogger(__name__)


class PaymentEventRouter:
    def __init__(
        self,
        monitor: EventMonitor,
        lifecycle: "ChargeLifecycleManager",
        emitter: Optional[EventEmitter] = None,
    ):
        self.monitor = monitor
        self.lifecycle = lifecycle
        self.emitter = emitter or lifecycle.emitter
        self._attached = False
        self._tasks: set[asyncio.Task[Optional[PaymentApplication]]] = set()

    @property
    def is_attached(self) -> bool:
        return self._attached

    def attach(self) -> None:
        """Subscribe to the monitor's events."""
        if self._attached:
            return
        self.monitor.on(MonitorEvent.PAYMENT, self._on_payment)
        self.monitor.on(MonitorEvent.CONNECTED, self._on_connected)
        self.monitor.on(MonitorEvent.DISCONNECTED, self._on_disconnected)
        self.monitor.on(MonitorEvent.ERROR, self._on_error)
        self._attached = True

    def detach(self) -> None:
        if not self._attached:
            return
        self.monitor.off(MonitorEvent.PAYMENT, self._on_payment)
        self.monitor.off(MonitorEvent.CONNECTED, self._on_connected)
        self.monitor.off(MonitorEvent.DISCONNECTED, self._on_disconnected)
        self.monitor.off(MonitorEvent.ERROR, self._on_error)
        self._attached = False

    def _on_payment(self, event: PaymentEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop; dropped payment {event.hash}")
            return
        task = loop.create_task(self.route(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def route(self, event: PaymentEvent) -> Optional[PaymentApplication]:
        """Apply one payment event; errors are emitted, never raised to the monitor."""
        try:
            return await self.lifecycle.apply_payment(event)
        except Exception as e:
            logger.error(f"Failed to apply payment {event.hash} to {event.to}: {e}", exc_info=True)
            self.emitter.emit(ProcessorEvent.ERROR, {"payment": event, "error": e})
            return None

    def _on_connected(self, payload: Any = None) -> None:
        logger.info("Event monitor connected")
        self.emitter.emit(ProcessorEvent.CONNECTED, payload)

    def _on_disconnected(self, payload: Any = None) -> None:
        logger.warning("Event monitor disconnected")
        self.emitter.emit(ProcessorEvent.DISCONNECTED, payload)

    def _on_error(self, detail: Any = None) -> None:
        logger.error(f"Event monitor error: {detail}")
        self.emitter.emit(ProcessorEvent.ERROR, detail)

    async def wait_for_pending(self, timeout: Optional[float] = None) -> None:
        """Wait until dispatched payment tasks have finished."""
        if not self._tasks:
            return
        await asyncio.wait_for(
            asyncio.gather(*list(self._tasks), return_exceptions=True),
            timeout=timeout,
        )
