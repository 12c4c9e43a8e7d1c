# chronoqueue/core/worker/worker.py
from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, TypeVar

from chronoqueue.core import defaults
from chronoqueue.core.errors import ChronoqueueError, PayloadValidationError
from chronoqueue.core.logging import get_logger
from chronoqueue.core.models.payloads import TaskPayload, parse_payload
from chronoqueue.core.models.pool import RetryBackoffConfig
from chronoqueue.core.models.tasks import QueueStats, TaskRecord, WorkerStats
from chronoqueue.core.types.status import TaskStatus
from chronoqueue.core.utils.db import is_retryable_connection_error
from chronoqueue.core.worker.context import StageContext

if TYPE_CHECKING:
    from chronoqueue.core.brokers.postgres import PostgresBroker
    from chronoqueue.core.dispatch.registry import StageDispatcher

logger = get_logger('worker')

T = TypeVar('T')


def error_message_of(exc: BaseException) -> str:
    """Message persisted as a task's error_message."""
    if isinstance(exc, ChronoqueueError):
        if exc.notes:
            return f"{exc.message} ({'; '.join(exc.notes)})"
        return exc.message
    # str() of a KeyError is the repr of its key
    if len(exc.args) == 1 and isinstance(exc.args[0], str) and exc.args[0]:
        return exc.args[0]
    return str(exc) or type(exc).__name__


@dataclass
class _PendingResolution:
    """A completed/failed write lost to a transient database error."""

    task_id: int
    action: str
    apply: Callable[[], Awaitable[Any]]
    retries: int = 0
    next_attempt_at: float = 0.0


class Worker:
    """
    One polling loop with its own identity and counters.

    Each tick claims at most one task, runs the registered stage handler for
    its payload and resolves the task as completed, retried with backoff, or
    failed once its attempt budget is spent.
    """

    def __init__(
        self,
        worker_id: str,
        broker: 'PostgresBroker',
        dispatcher: 'StageDispatcher',
        backoff: RetryBackoffConfig | None = None,
    ) -> None:
        self.worker_id = worker_id
        self.broker = broker
        self.dispatcher = dispatcher
        self.backoff = backoff or RetryBackoffConfig()

        self.processed_count = 0
        self.error_count = 0
        self.start_time = time.time()
        self.is_processing = False
        self.interval_ms: int | None = None

        # task_id -> resolution waiting to be re-applied on a later tick
        self._pending_resolutions: dict[int, _PendingResolution] = {}
        self.resolve_retry_base_ms = defaults.RESOLVE_RETRY_BASE_MS
        self.resolve_retry_max_ms = defaults.RESOLVE_RETRY_MAX_MS

        self._stop = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None

    # ----- lifecycle -----

    def start_processing(self, interval_ms: int) -> None:
        """Begin polling every `interval_ms`. Must be called from a running loop."""
        if self.is_processing:
            logger.warning(f'[{self.worker_id}] Worker is already processing')
            return

        self.interval_ms = interval_ms
        self.is_processing = True
        self._stop = asyncio.Event()
        self._loop_task = asyncio.create_task(
            self._run(interval_ms), name=f'{self.worker_id}-loop'
        )
        logger.info(f'[{self.worker_id}] Started processing (interval: {interval_ms}ms)')

    async def stop_processing(self) -> None:
        """Stop polling; waits for an in-flight tick to finish. Idempotent.

        Resolutions still waiting on the database get one last attempt.
        """
        task = self._loop_task
        if self.is_processing or task is not None:
            self._stop.set()
            if task is not None and task is not asyncio.current_task():
                # asyncio.wait never raises the task's own exception or cancellation
                await asyncio.wait([task])

            self._loop_task = None
            self.is_processing = False
            logger.info(f'[{self.worker_id}] Stopped processing')

        if self._pending_resolutions:
            await self._retry_pending_resolutions(force=True)
            if self._pending_resolutions:
                logger.warning(
                    f'[{self.worker_id}] {len(self._pending_resolutions)} task(s) left '
                    'in-stages; they are recovered on the next pool start'
                )

    async def _sleep_with_stop(self, delay_seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay_seconds)
        except asyncio.TimeoutError:
            return

    async def _run(self, interval_ms: int) -> None:
        delay = interval_ms / 1000.0
        try:
            while not self._stop.is_set():
                await self._sleep_with_stop(delay)
                if self._stop.is_set():
                    break
                try:
                    await self.tick()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.error(f'[{self.worker_id}] Worker tick failed: {exc}')
        finally:
            self.is_processing = False

    # ----- processing -----

    async def tick(self) -> bool:
        """Claim and execute at most one task. Returns True if a task ran."""
        if self._pending_resolutions:
            await self._retry_pending_resolutions()

        try:
            task = await self.broker.claim_next(self.worker_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._log_infra_failure('claim', exc)
            return False

        if task is None:
            return False

        await self._execute(task)
        return True

    async def _execute(self, task: TaskRecord) -> None:
        self.processed_count += 1
        attempt = task.attempts + 1
        logger.info(
            f'[{self.worker_id}] Processing task {task.id} '
            f'({task.task_type}, attempt {attempt}/{task.max_attempts})'
        )

        try:
            payload = parse_payload(task.payload)
        except PayloadValidationError as exc:
            # Structure cannot be repaired by a retry.
            self.error_count += 1
            message = error_message_of(exc)
            logger.error(f'[{self.worker_id}] Task {task.id} has an invalid payload: {message}')
            await self._resolve(
                lambda: self.broker.mark_invalid(task.id, message), task.id, 'mark invalid'
            )
            return

        ctx = StageContext(
            task_id=task.id,
            worker_id=self.worker_id,
            attempt=attempt,
            broker=self.broker,
        )
        try:
            handler = self.dispatcher.resolve(payload)
            result = handler(payload, ctx)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.error_count += 1
            await self._record_failure(task, attempt, exc, ctx.current_stage)
            return

        completed = await self._resolve(
            lambda: self.broker.mark_completed(task.id), task.id, 'mark completed'
        )
        if completed:
            logger.info(f'[{self.worker_id}] Task {task.id} completed')
        elif completed is False:
            logger.warning(
                f'[{self.worker_id}] Task {task.id} was no longer in-stages at completion'
            )

    async def _record_failure(
        self,
        task: TaskRecord,
        attempt: int,
        exc: Exception,
        stage: str | None,
    ) -> None:
        message = error_message_of(exc)
        delay_ms = self.backoff.delay_ms(attempt)
        status = await self._resolve(
            lambda: self.broker.record_failure(task.id, message, delay_ms),
            task.id,
            'record failure',
        )
        where = f" in stage '{stage}'" if stage else ''
        if status == TaskStatus.FAILED:
            logger.error(
                f'[{self.worker_id}] Task {task.id} failed permanently{where} '
                f'after {attempt} attempt(s): {message}'
            )
        elif status == TaskStatus.PENDING:
            logger.warning(
                f'[{self.worker_id}] Task {task.id} failed{where} '
                f'(attempt {attempt}/{task.max_attempts}), retrying in {delay_ms}ms: {message}'
            )

    async def _resolve(
        self, op: Callable[[], Awaitable[T]], task_id: int, action: str
    ) -> Optional[T]:
        """Run a resolution write; datastore faults are logged, not raised.

        A transient fault keeps the write and re-applies it on later ticks with
        backoff (the SQL is guarded by status, so replaying is safe). Anything
        else leaves the task in-stages for recovery on the next pool start.
        """
        try:
            return await op()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if is_retryable_connection_error(exc):
                self._schedule_resolution_retry(
                    _PendingResolution(task_id=task_id, action=action, apply=op), exc
                )
            else:
                logger.error(
                    f'[{self.worker_id}] Failed to {action} for task {task_id}: {exc}'
                )
            return None

    def _schedule_resolution_retry(
        self, pending: _PendingResolution, exc: BaseException
    ) -> None:
        if pending.retries >= defaults.RESOLVE_RETRY_MAX_ATTEMPTS:
            self._pending_resolutions.pop(pending.task_id, None)
            logger.critical(
                f'[{self.worker_id}] Gave up trying to {pending.action} for task '
                f'{pending.task_id} after {pending.retries} retries: {exc}. '
                'It stays in-stages until the next pool start'
            )
            return

        pending.retries += 1
        delay_ms = min(
            self.resolve_retry_max_ms,
            self.resolve_retry_base_ms * (2 ** (pending.retries - 1)),
        )
        pending.next_attempt_at = time.monotonic() + delay_ms / 1000.0
        self._pending_resolutions[pending.task_id] = pending
        logger.warning(
            f'[{self.worker_id}] Database unavailable during {pending.action} for task '
            f'{pending.task_id}; retry {pending.retries}/'
            f'{defaults.RESOLVE_RETRY_MAX_ATTEMPTS} in {delay_ms}ms: {exc}'
        )

    async def _retry_pending_resolutions(self, force: bool = False) -> None:
        """Re-apply resolutions whose backoff has elapsed (all of them if `force`)."""
        now = time.monotonic()
        for pending in list(self._pending_resolutions.values()):
            if not force and pending.next_attempt_at > now:
                continue
            try:
                await pending.apply()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if is_retryable_connection_error(exc):
                    self._schedule_resolution_retry(pending, exc)
                else:
                    self._pending_resolutions.pop(pending.task_id, None)
                    logger.error(
                        f'[{self.worker_id}] Failed to {pending.action} for task '
                        f'{pending.task_id}: {exc}'
                    )
                continue

            self._pending_resolutions.pop(pending.task_id, None)
            logger.info(
                f'[{self.worker_id}] Task {pending.task_id}: {pending.action} '
                f'applied on retry {pending.retries}'
            )

    def _log_infra_failure(self, action: str, exc: BaseException) -> None:
        if is_retryable_connection_error(exc):
            logger.warning(
                f'[{self.worker_id}] Database unavailable during {action}: {exc}. '
                'Retrying next tick'
            )
        else:
            logger.error(f'[{self.worker_id}] Failed to {action}: {exc}')

    # ----- producer / inspection -----

    async def add_task(
        self,
        payload: TaskPayload | dict[str, Any],
        priority: int = defaults.DEFAULT_PRIORITY,
        max_attempts: int = defaults.DEFAULT_MAX_ATTEMPTS,
    ) -> int:
        return await self.broker.insert(
            payload, priority=priority, max_attempts=max_attempts
        )

    async def get_task_status(self, task_id: int) -> TaskRecord | None:
        return await self.broker.get_task(task_id)

    async def get_queue_stats(self) -> QueueStats:
        return await self.broker.count_by_status()

    @property
    def success_rate(self) -> float:
        """Percentage of executed tasks that did not fail (0.0 when idle)."""
        if self.processed_count == 0:
            return 0.0
        return (self.processed_count - self.error_count) / self.processed_count * 100

    def get_stats(self) -> WorkerStats:
        return WorkerStats(
            worker_id=self.worker_id,
            is_processing=self.is_processing,
            processed_count=self.processed_count,
            error_count=self.error_count,
            uptime=int(time.time() - self.start_time),
            success_rate=self.success_rate,
        )
