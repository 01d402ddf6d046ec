"""
Pytest configuration for nanocharge tests.
"""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

from nanocharge.config import ChargeProcessorSettings
from nanocharge.events import EventEmitter, ProcessorEvent
from nanocharge.ledger import SimulatedLedgerClient
from nanocharge.lifecycle import ChargeLifecycleManager
from nanocharge.models import PaymentEvent
from nanocharge.monitor import InMemoryEventMonitor
from nanocharge.processor import PaymentProcessor
from nanocharge.store import ChargeStore
from nanocharge.webhooks import WebhookNotifier

TEST_SEED = "0" * 63 + "1"
PAYER = "nano_1payer" + "1" * 54


class EventRecorder:
    """Subscribes to every processor event and records payloads in order."""

    def __init__(self, emitter: EventEmitter):
        self.events: list[tuple[str, Any]] = []
        for event in ProcessorEvent:
            emitter.on(event, self._make_handler(event.value))

    def _make_handler(self, name: str):
        def handler(payload: Any) -> None:
            self.events.append((name, payload))
        return handler

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def payloads(self, event: ProcessorEvent) -> list[Any]:
        return [payload for name, payload in self.events if name == event.value]

    def count(self, event: ProcessorEvent) -> int:
        return len(self.payloads(event))


def make_payment(charge, amount_raw: int, tx_hash: str = "A" * 64) -> PaymentEvent:
    return PaymentEvent(to=charge.address, sender=PAYER, hash=tx_hash, amount_raw=amount_raw)


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture
def settings(tmp_path) -> ChargeProcessorSettings:
    """Settings isolated from the environment, persisting under tmp_path."""
    return ChargeProcessorSettings(
        persist_path=tmp_path / "charges.json",
        save_debounce_seconds=0.05,
        starting_index=1000,
        main_account_index=0,
        auto_sweep=True,
        default_timeout_seconds=1800,
        expiry_check_interval_seconds=60,
        webhook_timeout_seconds=5,
        webhook_secret=None,
    )


@pytest.fixture
def ledger() -> SimulatedLedgerClient:
    return SimulatedLedgerClient(seed=TEST_SEED)


@pytest.fixture
def monitor() -> InMemoryEventMonitor:
    return InMemoryEventMonitor()


@pytest.fixture
def store(tmp_path) -> ChargeStore:
    return ChargeStore.from_path(tmp_path / "charges.json", save_debounce_seconds=0.05)


@pytest.fixture
def emitter() -> EventEmitter:
    return EventEmitter()


@pytest.fixture
def recorder(emitter) -> EventRecorder:
    return EventRecorder(emitter)


@pytest.fixture
def notifier() -> WebhookNotifier:
    return WebhookNotifier(timeout_seconds=5)


@pytest.fixture
def manager(store, ledger, monitor, emitter, notifier) -> ChargeLifecycleManager:
    """Lifecycle manager with auto-sweep enabled."""
    return ChargeLifecycleManager(store, ledger, monitor, emitter, notifier, auto_sweep=True)


@pytest.fixture
def manual_manager(store, ledger, monitor, emitter, notifier) -> ChargeLifecycleManager:
    """Lifecycle manager that never sweeps on its own."""
    return ChargeLifecycleManager(store, ledger, monitor, emitter, notifier, auto_sweep=False)


@pytest_asyncio.fixture
async def processor(ledger, monitor, settings):
    proc = PaymentProcessor(ledger, monitor, settings)
    yield proc
    await proc.stop()
    await proc.notifier.close()
