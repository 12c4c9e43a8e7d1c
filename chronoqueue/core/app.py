# chronoqueue/core/app.py
from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Optional, Sequence

from chronoqueue.core import defaults
from chronoqueue.core.dispatch.registry import StageDispatcher
from chronoqueue.core.errors import (
    ErrorCode,
    InvalidArgumentError,
    PayloadValidationError,
    TaskOptionsError,
)
from chronoqueue.core.logging import get_logger
from chronoqueue.core.models.app import AppConfig
from chronoqueue.core.models.payloads import TaskPayload
from chronoqueue.core.models.tasks import (
    BatchAddResult,
    BatchItemResult,
    ClearResult,
    PoolStats,
    QueueStats,
    RetryBatchResult,
    TaskRecord,
)
from chronoqueue.core.pool.pool import WorkerPool
from chronoqueue.core.types.status import TaskStatus
from chronoqueue.core.worker.worker import error_message_of

if TYPE_CHECKING:
    from chronoqueue.core.brokers.postgres import PostgresBroker


class Chronoqueue:
    """
    Process-wide handle for the pipeline queue.

    Owns the broker, the stage dispatcher and the worker pool. Construct it
    once at process start, register handlers, then `await app.start()` (or
    `await app.run_forever()` from the CLI).
    """

    def __init__(
        self,
        config: AppConfig,
        dispatcher: Optional[StageDispatcher] = None,
        broker: Optional['PostgresBroker'] = None,
    ):
        self.config = config
        self.dispatcher = dispatcher or StageDispatcher()
        self._broker = broker
        self._pool: Optional[WorkerPool] = None
        self._stop_requested: Optional[asyncio.Event] = None
        self.logger = get_logger('app')
        self.logger.info(
            f'chronoqueue initialized with {config.pool.worker_count} workers'
        )

    def get_broker(self) -> 'PostgresBroker':
        """Get the configured PostgreSQL broker, creating it on first use."""
        if self._broker is None:
            from chronoqueue.core.brokers.postgres import PostgresBroker

            self._broker = PostgresBroker(self.config.broker)
        return self._broker

    def get_pool(self) -> WorkerPool:
        if self._pool is None:
            self._pool = WorkerPool(
                self.get_broker(), self.dispatcher, self.config.pool
            )
        return self._pool

    def handler(
        self, task_type: str
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Register the stage handler for a payload type.

        @app.handler('photo-reverse-geocoding')
        async def geocode(payload, ctx): ...
        """
        return self.dispatcher.handler(task_type)

    # ----- lifecycle -----

    async def start(self) -> None:
        missing = self.dispatcher.missing_types()
        if missing:
            self.logger.warning(
                f'No stage handler registered for: {", ".join(missing)}; '
                'such tasks will fail'
            )
        await self.get_broker().ensure_schema_initialized()
        await self.get_pool().start()

    async def stop(self) -> None:
        if self._pool is not None:
            await self._pool.stop()
        if self._broker is not None:
            await self._broker.close_async()

    def request_stop(self) -> None:
        if self._stop_requested is not None:
            self._stop_requested.set()

    async def run_forever(self) -> None:
        """Start the pool and block until SIGINT/SIGTERM or request_stop()."""
        self._stop_requested = asyncio.Event()
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            self.logger.info('Received interrupt signal, stopping pool...')
            self.request_stop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, signal_handler)
            except NotImplementedError:
                # Windows event loops do not support signal handlers
                pass

        try:
            await self.start()
            await self._stop_requested.wait()
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                try:
                    loop.remove_signal_handler(sig)
                except NotImplementedError:
                    pass
            await self.stop()

    # ----- producer -----

    async def add_task(
        self,
        payload: TaskPayload | dict[str, Any],
        priority: int = defaults.DEFAULT_PRIORITY,
        max_attempts: int = defaults.DEFAULT_MAX_ATTEMPTS,
    ) -> int:
        """Validate and enqueue one task. Raises on an invalid payload or options."""
        return await self.get_broker().insert(
            payload, priority=priority, max_attempts=max_attempts
        )

    async def add_tasks(self, items: Sequence[Mapping[str, Any]]) -> BatchAddResult:
        """Enqueue up to 1000 tasks, reporting success or error per item.

        Each item is a mapping with `payload` and optional `priority` and
        `max_attempts`. Invalid items do not prevent valid ones from being
        enqueued.
        """
        if not 1 <= len(items) <= defaults.MAX_BATCH_SIZE:
            raise InvalidArgumentError(
                message='batch size out of range',
                code=ErrorCode.BATCH_INVALID_SIZE,
                notes=[f'got {len(items)} items'],
                help_text=f'submit between 1 and {defaults.MAX_BATCH_SIZE} tasks',
            )

        results: list[BatchItemResult] = []
        for index, item in enumerate(items):
            if 'payload' not in item:
                results.append(
                    BatchItemResult(index=index, success=False, error='missing payload')
                )
                continue
            try:
                task_id = await self.add_task(
                    item['payload'],
                    priority=item.get('priority', defaults.DEFAULT_PRIORITY),
                    max_attempts=item.get('max_attempts', defaults.DEFAULT_MAX_ATTEMPTS),
                )
            except (PayloadValidationError, TaskOptionsError) as exc:
                results.append(
                    BatchItemResult(
                        index=index, success=False, error=error_message_of(exc)
                    )
                )
                continue
            results.append(BatchItemResult(index=index, success=True, task_id=task_id))

        batch = BatchAddResult(results=results)
        self.logger.info(
            f'Batch enqueue: {batch.success_count} added, {batch.error_count} rejected'
        )
        return batch

    # ----- inspection -----

    async def get_task_status(self, task_id: int) -> TaskRecord | None:
        return await self.get_broker().get_task(task_id)

    async def get_queue_stats(self) -> QueueStats:
        return await self.get_broker().count_by_status()

    def get_pool_stats(self) -> PoolStats:
        return self.get_pool().get_pool_stats()

    async def list_tasks(
        self,
        status: TaskStatus | str | None = None,
        task_type: str | None = None,
    ) -> list[TaskRecord]:
        return await self.get_broker().list_tasks(status=status, task_type=task_type)

    # ----- administration -----

    async def retry_task(self, task_id: int) -> TaskRecord:
        return await self.get_broker().retry_task(task_id)

    async def retry_failed(
        self, task_ids: Optional[Iterable[int]] = None
    ) -> RetryBatchResult:
        return await self.get_broker().retry_failed(task_ids)

    async def clear_tasks(
        self,
        include_completed: bool = True,
        include_failed: bool = True,
        older_than_days: int | None = None,
    ) -> ClearResult:
        """Delete terminal tasks. At least one of the two statuses must be included."""
        statuses: list[TaskStatus] = []
        if include_completed:
            statuses.append(TaskStatus.COMPLETED)
        if include_failed:
            statuses.append(TaskStatus.FAILED)
        if not statuses:
            raise InvalidArgumentError(
                message='nothing to clear',
                code=ErrorCode.ADMIN_INVALID_ARGUMENT,
                help_text='include completed and/or failed tasks',
            )
        return await self.get_broker().purge(statuses, older_than_days)
