"""Event monitor interface and an in-process implementation.

A monitor watches a set of addresses and pushes ``payment`` events for
incoming sends, plus ``connected``/``disconnected``/``error`` for its own
connection state.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, Set

from .events import EventEmitter, EventName, Handler, MonitorEvent
from .models import PaymentEvent

logger = logging.getLogger(__name__)


class EventMonitor(ABC):
    """Abstract push-notification client for a set of watched addresses."""

    def __init__(self) -> None:
        self._emitter = EventEmitter()

    def on(self, event: EventName, handler: Handler) -> None:
        self._emitter.on(event, handler)

    def off(self, event: EventName, handler: Handler) -> None:
        self._emitter.off(event, handler)

    def emit(self, event: EventName, payload: Any = None) -> int:
        return self._emitter.emit(event, payload)

    @abstractmethod
    def add_account(self, address: str) -> None:
        """Start watching ``address``."""
        pass

    @abstractmethod
    def remove_account(self, address: str) -> None:
        """Stop watching ``address``."""
        pass

    @abstractmethod
    async def start(self) -> None:
        pass

    @abstractmethod
    async def stop(self) -> None:
        pass


class InMemoryEventMonitor(EventMonitor):
    """Monitor that delivers payments published in-process.

    Used by the simulated ledger setup and in tests. Payments to addresses
    that are not being watched are dropped, the same as a node subscription
    would never report them.
    """

    def __init__(self) -> None:
        super().__init__()
        self._accounts: Set[str] = set()
        self._running = False

    @property
    def accounts(self) -> Set[str]:
        return set(self._accounts)

    @property
    def is_running(self) -> bool:
        return self._running

    def is_watching(self, address: str) -> bool:
        return address in self._accounts

    def add_account(self, address: str) -> None:
        self._accounts.add(address)

    def remove_account(self, address: str) -> None:
        self._accounts.discard(address)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        logger.info(f"In-memory monitor started, watching {len(self._accounts)} account(s)")
        self.emit(MonitorEvent.CONNECTED)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        logger.info("In-memory monitor stopped")
        self.emit(MonitorEvent.DISCONNECTED)

    def publish_payment(self, event: PaymentEvent) -> bool:
        """Deliver a payment event to subscribers.

        Returns False if the monitor is stopped or the address is unwatched.
        """
        if not self._running:
            logger.debug(f"Monitor stopped, dropping payment {event.hash}")
            return False
        if event.to not in self._accounts:
            logger.debug(f"Ignoring payment to unwatched address {event.to}")
            return False
        self.emit(MonitorEvent.PAYMENT, event)
        return True

    def publish_error(self, detail: Optional[Any]) -> None:
        self.emit(MonitorEvent.ERROR, detail)
