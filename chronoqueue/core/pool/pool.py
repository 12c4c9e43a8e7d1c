# chronoqueue/core/pool/pool.py
from __future__ import annotations

import asyncio
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Coroutine

from chronoqueue.core import defaults
from chronoqueue.core.errors import ErrorCode, PoolNotRunningError
from chronoqueue.core.logging import get_logger
from chronoqueue.core.models.payloads import TaskPayload
from chronoqueue.core.models.pool import PoolConfig
from chronoqueue.core.models.tasks import PoolStats, QueueStats, TaskRecord
from chronoqueue.core.utils.db import is_retryable_connection_error
from chronoqueue.core.worker.worker import Worker

if TYPE_CHECKING:
    from chronoqueue.core.brokers.postgres import PostgresBroker
    from chronoqueue.core.dispatch.registry import StageDispatcher

logger = get_logger('pool')

WorkerFactory = Callable[[str], Worker]


class PoolState(str, Enum):
    STOPPED = 'stopped'
    STARTING = 'starting'
    RUNNING = 'running'
    STOPPING = 'stopping'


class WorkerPool:
    """
    Owns the workers of one process.

    start(): recover dead tasks, then start worker-1..N with staggered
    intervals, plus the stats and rebalance timers.
    stop(): cancel timers and pending replacements, stop every worker.
    """

    def __init__(
        self,
        broker: 'PostgresBroker',
        dispatcher: 'StageDispatcher',
        config: PoolConfig | None = None,
        worker_factory: WorkerFactory | None = None,
    ) -> None:
        self.broker = broker
        self.dispatcher = dispatcher
        self.config = config or PoolConfig()
        self._worker_factory = worker_factory or self._default_worker
        self.workers: list[Worker] = []
        self.state = PoolState.STOPPED
        self._timers: set[asyncio.Task[Any]] = set()
        self._replacements: dict[str, asyncio.Task[None]] = {}
        # Bumped by every start/stop so a start resuming after its recovery await
        # can tell it was overtaken.
        self._lifecycle_epoch = 0

    def _default_worker(self, worker_id: str) -> Worker:
        return Worker(worker_id, self.broker, self.dispatcher, self.config.backoff)

    # ----- lifecycle -----

    async def start(self) -> None:
        if self.state != PoolState.STOPPED:
            logger.warning(f'Worker pool is not stopped (state: {self.state.value})')
            return

        self.state = PoolState.STARTING
        self._lifecycle_epoch += 1
        epoch = self._lifecycle_epoch
        logger.info(f'Starting worker pool with {self.config.worker_count} workers')

        await self.recover_dead_tasks()
        if self._lifecycle_epoch != epoch or self.state != PoolState.STARTING:
            logger.info('Worker pool was stopped while starting; not spawning workers')
            return

        for index in range(1, self.config.worker_count + 1):
            worker = self._worker_factory(f'worker-{index}')
            worker.start_processing(self.config.interval_for(index))
            self.workers.append(worker)

        if self.config.stats_report_interval_ms > 0:
            self._spawn_timer(
                self.config.stats_report_interval_ms, self.report_stats, 'pool-stats'
            )
        if self.config.enable_load_balancing and self.config.rebalance_interval_ms > 0:
            self._spawn_timer(
                self.config.rebalance_interval_ms, self.rebalance, 'pool-rebalance'
            )

        self.state = PoolState.RUNNING
        logger.info(f'Worker pool started with {len(self.workers)} workers')

    async def stop(self) -> None:
        if self.state == PoolState.STOPPED:
            logger.warning('Worker pool is not running')
            return

        self.state = PoolState.STOPPING
        self._lifecycle_epoch += 1
        logger.info('Stopping worker pool')

        pending = list(self._timers) + list(self._replacements.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._timers.clear()
        self._replacements.clear()

        await asyncio.gather(
            *(w.stop_processing() for w in self.workers), return_exceptions=True
        )
        self.workers = []
        self.state = PoolState.STOPPED
        logger.info('Worker pool stopped')

    async def recover_dead_tasks(self) -> int:
        """Return tasks stranded in-stages by a previous run to pending."""
        try:
            recovered = await self.broker.recover_dead_tasks(
                self.config.recovered_priority
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if is_retryable_connection_error(exc):
                logger.warning(f'Database unavailable during dead task recovery: {exc}')
            else:
                logger.error(f'Dead task recovery failed: {exc}')
            return 0

        if recovered:
            logger.info(f'Recovered {recovered} dead task(s) stuck in-stages')
        return recovered

    def _spawn_timer(
        self,
        interval_ms: int,
        fn: Callable[[], Coroutine[Any, Any, Any]],
        name: str,
    ) -> None:
        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval_ms / 1000.0)
                try:
                    await fn()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.error(f'{name} failed: {exc}')

        task = asyncio.create_task(_loop(), name=name)
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    # ----- stats -----

    def get_pool_stats(self) -> PoolStats:
        worker_stats = [w.get_stats() for w in self.workers]
        active = [s for s in worker_stats if s.processed_count > 0]
        average = (
            round(sum(s.success_rate for s in active) / len(active), 2)
            if active
            else 0.0
        )
        return PoolStats(
            total_workers=len(worker_stats),
            active_workers=sum(1 for s in worker_stats if s.is_processing),
            total_processed=sum(s.processed_count for s in worker_stats),
            total_errors=sum(s.error_count for s in worker_stats),
            average_success_rate=average,
            workers=worker_stats,
        )

    async def report_stats(self) -> None:
        stats = self.get_pool_stats()
        logger.info(
            f'Pool: {stats.active_workers}/{stats.total_workers} active, '
            f'{stats.total_processed} processed, {stats.total_errors} errors, '
            f'{stats.average_success_rate}% avg success'
        )
        for s in stats.workers:
            logger.info(
                f'  {s.worker_id}: {s.processed_count} processed, '
                f'{s.error_count} errors, {s.success_rate:.1f}% success, '
                f'up {s.uptime}s'
            )

    # ----- rebalancing -----

    def _needs_restart(self, worker: Worker) -> bool:
        return (
            worker.error_count > self.config.rebalance_error_threshold
            and worker.success_rate < self.config.rebalance_success_rate_threshold
        )

    async def rebalance(self) -> int:
        """Restart workers with many errors and a low success rate.

        Returns the number of workers scheduled for replacement.
        """
        if not self.config.enable_load_balancing:
            return 0
        if self.state != PoolState.RUNNING:
            return 0

        restarted = 0
        for index, worker in enumerate(list(self.workers), start=1):
            if worker.worker_id in self._replacements:
                continue
            if not self._needs_restart(worker):
                continue
            logger.warning(
                f'Restarting {worker.worker_id}: {worker.error_count} errors, '
                f'{worker.success_rate:.1f}% success'
            )
            try:
                await worker.stop_processing()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f'Failed to stop {worker.worker_id}: {exc}')
                continue

            replacement = asyncio.create_task(
                self._replace_after_cooldown(worker, index),
                name=f'replace-{worker.worker_id}',
            )
            self._replacements[worker.worker_id] = replacement
            restarted += 1
        return restarted

    async def _replace_after_cooldown(self, old: Worker, index: int) -> None:
        try:
            await asyncio.sleep(self.config.rebalance_cooldown_ms / 1000.0)
            if self.state != PoolState.RUNNING:
                return
            fresh = self._worker_factory(old.worker_id)
            fresh.start_processing(old.interval_ms or self.config.interval_for(index))
            self.workers = [fresh if w is old else w for w in self.workers]
            logger.info(f'{old.worker_id} replaced with a fresh worker')
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f'Failed to replace {old.worker_id}: {exc}')
        finally:
            if self._replacements.get(old.worker_id) is asyncio.current_task():
                del self._replacements[old.worker_id]

    # ----- delegation -----

    def _first_worker(self) -> Worker:
        if not self.workers:
            raise PoolNotRunningError(
                message='worker pool has no workers',
                code=ErrorCode.POOL_NOT_RUNNING,
                help_text='start the pool before submitting or inspecting tasks',
            )
        return self.workers[0]

    async def add_task(
        self,
        payload: TaskPayload | dict[str, Any],
        priority: int = defaults.DEFAULT_PRIORITY,
        max_attempts: int = defaults.DEFAULT_MAX_ATTEMPTS,
    ) -> int:
        return await self._first_worker().add_task(payload, priority, max_attempts)

    async def get_task_status(self, task_id: int) -> TaskRecord | None:
        return await self._first_worker().get_task_status(task_id)

    async def get_queue_stats(self) -> QueueStats:
        if not self.workers:
            return QueueStats()
        return await self.workers[0].get_queue_stats()

    def is_active(self) -> bool:
        return self.state == PoolState.RUNNING and any(
            w.is_processing for w in self.workers
        )

    def get_worker_count(self) -> int:
        return len(self.workers)
