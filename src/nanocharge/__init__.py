"""
nanocharge - ephemeral charge processing for the Nano ledger.

Each charge receives its own derived sub-account. Incoming payments are
detected by push events and by startup reconciliation, received funds are
swept into the primary account, and a completion webhook is sent once.

Features:
- Debounced JSON snapshot persistence with immediate flushes on critical transitions
- Restart recovery of payments sent while offline
- Automatic expiry with best-effort sweeping of partial payments
- Optional HMAC-signed webhooks
"""

from nanocharge.config import ChargeProcessorSettings, load_settings
from nanocharge.events import EventEmitter, MonitorEvent, ProcessorEvent
from nanocharge.exceptions import (
    AccountNotOpenedError,
    ChargeConflictError,
    ChargeNotFoundError,
    ChargeProcessorError,
    ChargeStateError,
    ChargeValidationError,
    InsufficientBalanceError,
    LedgerError,
    SnapshotError,
)
from nanocharge.expiry import ExpiryScheduler
from nanocharge.ledger import LedgerClient, SimulatedLedgerClient
from nanocharge.lifecycle import ChargeLifecycleManager, ChargeLocks
from nanocharge.logging_config import bind_charge, setup_logging
from nanocharge.models import (
    AccountBalance,
    Charge,
    ChargeSnapshot,
    ChargeStatus,
    ChargeStatusReport,
    PaymentApplication,
    PaymentEvent,
    PaymentTransaction,
    PendingItem,
    ReceiveResult,
    SendResult,
    SweepResult,
)
from nanocharge.monitor import EventMonitor, InMemoryEventMonitor
from nanocharge.processor import PaymentProcessor
from nanocharge.recovery import RecoveryReport, RecoveryScanner
from nanocharge.router import PaymentEventRouter
from nanocharge.store import ChargeStore, SnapshotFile
from nanocharge.units import RAW_PER_XNO, display_to_raw, raw_to_display
from nanocharge.webhooks import (
    WebhookDeliveryResult,
    WebhookNotifier,
    WebhookSigner,
    build_payload,
)

__version__ = "0.1.0"

__all__ = [
    # Processor
    "PaymentProcessor",
    "ChargeLifecycleManager",
    "ChargeLocks",
    "PaymentEventRouter",
    "RecoveryScanner",
    "RecoveryReport",
    "ExpiryScheduler",
    # Storage
    "ChargeStore",
    "SnapshotFile",
    # Models
    "Charge",
    "ChargeStatus",
    "ChargeSnapshot",
    "ChargeStatusReport",
    "PaymentApplication",
    "PaymentEvent",
    "PaymentTransaction",
    "PendingItem",
    "AccountBalance",
    "ReceiveResult",
    "SendResult",
    "SweepResult",
    # Collaborators
    "LedgerClient",
    "SimulatedLedgerClient",
    "EventMonitor",
    "InMemoryEventMonitor",
    # Webhooks
    "WebhookNotifier",
    "WebhookSigner",
    "WebhookDeliveryResult",
    "build_payload",
    # Events
    "EventEmitter",
    "ProcessorEvent",
    "MonitorEvent",
    # Units
    "RAW_PER_XNO",
    "raw_to_display",
    "display_to_raw",
    # Config / logging
    "ChargeProcessorSettings",
    "load_settings",
    "setup_logging",
    "bind_charge",
    # Errors
    "ChargeProcessorError",
    "ChargeValidationError",
    "ChargeNotFoundError",
    "ChargeStateError",
    "ChargeConflictError",
    "LedgerError",
    "AccountNotOpenedError",
    "InsufficientBalanceError",
    "SnapshotError",
]
