"""Chronoqueue - a persisted, multi-worker photo pipeline task queue"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.app import Chronoqueue
from .core.models.app import AppConfig
from .core.models.broker import PostgresConfig
from .core.models.pool import PoolConfig, RetryBackoffConfig
from .core.models.payloads import (
    TaskPayload,
    PhotoPayload,
    LivePhotoVideoPayload,
    PhotoReverseGeocodingPayload,
    CleanupStoragePayload,
    WriteExifPayload,
    parse_payload,
    TASK_TYPES,
)
from .core.models.tasks import (
    TaskOptions,
    TaskRecord,
    QueueStats,
    WorkerStats,
    PoolStats,
    ClearResult,
    RetryBatchResult,
    SkippedTask,
    BatchAddResult,
    BatchItemResult,
)
from .core.types.status import TaskStatus, TASK_TERMINAL_STATES
from .core.dispatch.registry import (
    StageDispatcher,
    StageHandler,
    HandlerNotRegistered,
    DuplicateHandlerError,
)
from .core.worker.context import StageContext
from .core.worker.worker import Worker
from .core.pool.pool import WorkerPool, PoolState
from .core.errors import (
    ErrorCode,
    ChronoqueueError,
    ConfigurationError,
    PayloadValidationError,
    TaskOptionsError,
    RegistryError,
    TaskNotFoundError,
    InvalidTaskStateError,
    InvalidArgumentError,
    PoolNotRunningError,
    ValidationReport,
    MultipleValidationErrors,
)

__all__ = [
    # Core
    'Chronoqueue',
    'AppConfig',
    'PostgresConfig',
    'PoolConfig',
    'RetryBackoffConfig',
    # Payloads
    'TaskPayload',
    'PhotoPayload',
    'LivePhotoVideoPayload',
    'PhotoReverseGeocodingPayload',
    'CleanupStoragePayload',
    'WriteExifPayload',
    'parse_payload',
    'TASK_TYPES',
    # Tasks and stats
    'TaskOptions',
    'TaskRecord',
    'TaskStatus',
    'TASK_TERMINAL_STATES',
    'QueueStats',
    'WorkerStats',
    'PoolStats',
    'ClearResult',
    'RetryBatchResult',
    'SkippedTask',
    'BatchAddResult',
    'BatchItemResult',
    # Execution
    'StageDispatcher',
    'StageHandler',
    'StageContext',
    'Worker',
    'WorkerPool',
    'PoolState',
    # Errors
    'ErrorCode',
    'ChronoqueueError',
    'ConfigurationError',
    'PayloadValidationError',
    'TaskOptionsError',
    'RegistryError',
    'HandlerNotRegistered',
    'DuplicateHandlerError',
    'TaskNotFoundError',
    'InvalidTaskStateError',
    'InvalidArgumentError',
    'PoolNotRunningError',
    'ValidationReport',
    'MultipleValidationErrors',
]
