"""Offline report queue with automatic synchronization."""

from .config import ConfigurationManager, SyncConfig
from .connectivity import ConnectivitySignal, HttpProbeConnectivity, ManualConnectivity
from .engine import SyncEngine, SyncPassReport
from .events import QueueEventNotifier, QueueEventType
from .exceptions import (
    ConfigurationError,
    ImportValidationError,
    InvalidStateTransitionError,
    ItemNotFoundError,
    PermanentTransportError,
    QueueStoreError,
    ReportSyncError,
    TransientTransportError,
    TransportError,
    ValidationTransportError,
)
from .models import FailureKind, ItemStatus, QueueItem, QueueStats
from .retry_policy import RetryPolicy
from .scheduler import APSchedulerTimer, ManualTimer, SyncScheduler
from .service import OfflineQueueService
from .state_machine import VALID_TRANSITIONS, StateMachineValidator, TransitionActor
from .storage import FileKeyValueStore, KeyValueStore, MemoryKeyValueStore, SQLiteKeyValueStore
from .store import QueueStore
from .transport import HttpIngestionTransport, IngestionTransport, SubmissionReceipt

__version__ = "0.1.0"

__all__ = [
    "APSchedulerTimer",
    "ConfigurationError",
    "ConfigurationManager",
    "ConnectivitySignal",
    "FailureKind",
    "FileKeyValueStore",
    "HttpIngestionTransport",
    "HttpProbeConnectivity",
    "ImportValidationError",
    "IngestionTransport",
    "InvalidStateTransitionError",
    "ItemNotFoundError",
    "ItemStatus",
    "KeyValueStore",
    "ManualConnectivity",
    "ManualTimer",
    "MemoryKeyValueStore",
    "OfflineQueueService",
    "PermanentTransportError",
    "QueueEventNotifier",
    "QueueEventType",
    "QueueItem",
    "QueueStats",
    "QueueStore",
    "QueueStoreError",
    "ReportSyncError",
    "RetryPolicy",
    "SQLiteKeyValueStore",
    "StateMachineValidator",
    "SubmissionReceipt",
    "SyncConfig",
    "SyncEngine",
    "SyncPassReport",
    "SyncScheduler",
    "TransientTransportError",
    "TransitionActor",
    "TransportError",
    "VALID_TRANSITIONS",
    "ValidationTransportError",
]
