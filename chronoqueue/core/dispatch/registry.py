# chronoqueue/core/dispatch/registry.py
from __future__ import annotations

import inspect
import os
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterator,
    Mapping,
    Protocol,
    Union,
)

from chronoqueue.core.errors import ErrorCode, RegistryError
from chronoqueue.core.logging import get_logger
from chronoqueue.core.models.payloads import (
    TASK_TYPES,
    CleanupStoragePayload,
    LivePhotoVideoPayload,
    PhotoPayload,
    PhotoReverseGeocodingPayload,
    TaskPayload,
    WriteExifPayload,
)

if TYPE_CHECKING:
    from chronoqueue.core.worker.context import StageContext

logger = get_logger('dispatch')


class StageHandler(Protocol):
    """Executes the stages for one payload type.

    May be a coroutine function or a plain callable; an awaitable return value
    is awaited by the worker. Raising marks the attempt as failed.
    """

    def __call__(
        self, payload: Any, ctx: 'StageContext'
    ) -> Union[Awaitable[None], None]: ...


class HandlerNotRegistered(RegistryError, KeyError):
    """Raised when no handler is registered for a payload type.

    Inherits from KeyError so Mapping.__contains__ works correctly.
    """

    def __init__(self, task_type: str) -> None:
        RegistryError.__init__(
            self,
            message=f"no stage handler registered for '{task_type}'",
            code=ErrorCode.HANDLER_NOT_REGISTERED,
            notes=[f"payload type: '{task_type}'"],
            help_text='register one with @app.handler(...) before starting the pool',
        )
        self.task_type = task_type


class DuplicateHandlerError(RegistryError):
    """Raised when a payload type gets a second, different handler."""

    def __init__(self, task_type: str, context: str = '') -> None:
        super().__init__(
            message=f"duplicate stage handler for '{task_type}'",
            code=ErrorCode.HANDLER_DUPLICATE,
            notes=[context] if context else [],
            help_text='each payload type has exactly one handler',
        )
        self.task_type = task_type


def _unknown_type(task_type: str) -> RegistryError:
    return RegistryError(
        message=f"unknown payload type '{task_type}'",
        code=ErrorCode.PAYLOAD_UNKNOWN_TYPE,
        help_text=f"payload 'type' must be one of: {', '.join(TASK_TYPES)}",
    )


def _source_of(fn: Callable[..., Any]) -> str | None:
    try:
        file = inspect.getsourcefile(fn)
        _, line = inspect.getsourcelines(fn)
    except (OSError, TypeError):
        return None
    if file is None:
        return None
    return f'{os.path.realpath(file)}:{line}'


def payload_type_of(payload: TaskPayload) -> str:
    """Type tag of a concrete payload model."""
    match payload:
        case PhotoPayload():
            return 'photo'
        case LivePhotoVideoPayload():
            return 'live-photo-video'
        case PhotoReverseGeocodingPayload():
            return 'photo-reverse-geocoding'
        case CleanupStoragePayload():
            return 'cleanup-storage'
        case WriteExifPayload():
            return 'write-exif'
        case _:
            raise _unknown_type(type(payload).__name__)


class StageDispatcher(Mapping[str, StageHandler]):
    """Maps each payload type to the handler that runs its stages.

    Re-registering the same function from the same source location is a
    no-op (module re-import); a different handler for a registered type
    raises DuplicateHandlerError.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, StageHandler] = {}
        self._sources: Dict[str, str] = {}

    def __getitem__(self, task_type: str) -> StageHandler:
        try:
            return self._handlers[task_type]
        except KeyError:
            raise HandlerNotRegistered(task_type)

    def __iter__(self) -> Iterator[str]:
        return iter(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)

    def register(self, task_type: str, fn: StageHandler) -> StageHandler:
        if task_type not in TASK_TYPES:
            raise _unknown_type(task_type)

        source = _source_of(fn)
        existing = self._handlers.get(task_type)
        if existing is not None:
            if existing is fn or (source and self._sources.get(task_type) == source):
                return existing
            raise DuplicateHandlerError(
                task_type, f'already registered at {self._sources.get(task_type, "?")}'
            )

        self._handlers[task_type] = fn
        if source:
            self._sources[task_type] = source
        logger.debug(f"Registered stage handler for '{task_type}'")
        return fn

    def handler(
        self, task_type: str
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of register()."""

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register(task_type, fn)
            return fn

        return decorator

    def unregister(self, task_type: str) -> None:
        self._handlers.pop(task_type, None)
        self._sources.pop(task_type, None)

    def resolve(self, payload: TaskPayload) -> StageHandler:
        """Handler for a parsed payload; raises HandlerNotRegistered if missing."""
        return self[payload_type_of(payload)]

    def missing_types(self) -> list[str]:
        """Payload types that have no handler yet."""
        return [t for t in TASK_TYPES if t not in self._handlers]
