"""Processor event names and a small callback registry.

Decouples event producers (lifecycle manager, recovery scanner, expiry
scheduler) from consumers (application hooks, metrics, logging).

Example:
    emitter = EventEmitter()

    async def on_swept(payload):
        print(payload["hash"])

    emitter.on(ProcessorEvent.CHARGE_SWEPT, on_swept)
    emitter.emit(ProcessorEvent.CHARGE_SWEPT, {"hash": "..."})
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Optional, Union

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


class ProcessorEvent(str, Enum):
    """Events emitted by the payment processor."""

    # Charge lifecycle
    CHARGE_CREATED = "charge:created"
    CHARGE_PAYMENT = "charge:payment"
    CHARGE_PARTIAL = "charge:partial"
    CHARGE_COMPLETED = "charge:completed"
    CHARGE_EXPIRED = "charge:expired"
    CHARGE_SWEPT = "charge:swept"
    CHARGE_DELETED = "charge:deleted"

    # Notification delivery
    WEBHOOK_SENT = "webhook:sent"
    WEBHOOK_FAILED = "webhook:failed"
    WEBHOOK_ERROR = "webhook:error"

    # Startup / shutdown
    STATE_LOADED = "state:loaded"
    RECOVERY_FOUND = "recovery:found"
    STARTED = "started"
    STOPPED = "stopped"

    # Forwarded from the event monitor
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class MonitorEvent(str, Enum):
    """Events emitted by an event monitor."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    PAYMENT = "payment"


EventName = Union[ProcessorEvent, MonitorEvent, str]


def _event_key(event: EventName) -> str:
    return event.value if isinstance(event, Enum) else event


class EventEmitter:
    """Callback registry keyed by event name.

    Handlers may be plain callables or coroutine functions. Coroutines are
    scheduled on the running loop and tracked until they finish. A failing
    handler is logged and never breaks the emitter or other handlers.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def on(self, event: EventName, handler: Handler) -> None:
        """Subscribe ``handler`` to ``event``."""
        handlers = self._handlers.setdefault(_event_key(event), [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, event: EventName, handler: Handler) -> None:
        """Remove a subscription."""
        key = _event_key(event)
        handlers = self._handlers.get(key)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            pass
        if not handlers:
            del self._handlers[key]

    def listener_count(self, event: EventName) -> int:
        return len(self._handlers.get(_event_key(event), []))

    def emit(self, event: EventName, payload: Any = None) -> int:
        """Dispatch ``payload`` to every handler of ``event``.

        Returns the number of handlers invoked.
        """
        key = _event_key(event)
        handlers = list(self._handlers.get(key, []))
        for handler in handlers:
            try:
                result = handler(payload)
                if asyncio.iscoroutine(result):
                    self._schedule_background(result, key)
            except Exception as e:
                logger.error(
                    f"Handler {getattr(handler, '__name__', handler)!r} failed for {key}: {e}",
                    exc_info=True,
                )
        return len(handlers)

    def _schedule_background(self, coro: Any, key: str) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.warning(f"No running event loop; dropped async handler for {key}")
            return
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_task_done)

    def _on_background_task_done(self, task: asyncio.Task[Any]) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async event handler failed", exc_info=exc)

    async def wait_for_background_tasks(self, timeout: Optional[float] = None) -> None:
        """Wait for async handlers that are still running."""
        if not self._background_tasks:
            return
        pending = list(self._background_tasks)
        await asyncio.wait_for(asyncio.gather(*pending, return_exceptions=True), timeout=timeout)

    def clear(self) -> None:
        """Remove all subscriptions (useful for testing)."""
        self._handlers.clear()
