"""Unit tests for Worker against the in-memory broker."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import pytest
from psycopg import OperationalError

from chronoqueue.core import defaults
from chronoqueue.core.dispatch.registry import StageDispatcher
from chronoqueue.core.errors import PayloadValidationError
from chronoqueue.core.models.pool import RetryBackoffConfig
from chronoqueue.core.types.status import TaskStatus
from chronoqueue.core.worker.context import StageContext
from chronoqueue.core.worker.worker import Worker, error_message_of
from tests.unit.fakes import InMemoryBroker, wait_until

pytestmark = pytest.mark.unit

NO_BACKOFF = RetryBackoffConfig(base_ms=0, max_ms=0)
PHOTO = {'type': 'photo', 'storageKey': 'uploads/a.jpg'}


def _make_worker(
    broker: InMemoryBroker,
    dispatcher: StageDispatcher,
    backoff: RetryBackoffConfig = NO_BACKOFF,
    worker_id: str = 'worker-1',
) -> Worker:
    return Worker(worker_id, broker, dispatcher, backoff)  # type: ignore[arg-type]


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def dispatcher() -> StageDispatcher:
    return StageDispatcher()


class TestTick:
    @pytest.mark.asyncio(loop_scope='function')
    async def test_empty_queue_is_noop(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        worker = _make_worker(broker, dispatcher)
        assert await worker.tick() is False
        assert worker.processed_count == 0
        assert worker.error_count == 0

    @pytest.mark.asyncio(loop_scope='function')
    async def test_success_marks_completed(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        seen: list[Any] = []

        @dispatcher.handler('photo')
        async def ingest(payload: Any, ctx: StageContext) -> None:
            seen.append((payload.storage_key, ctx.task_id, ctx.attempt, ctx.worker_id))

        task_id = await broker.insert(PHOTO)
        worker = _make_worker(broker, dispatcher)

        assert await worker.tick() is True

        task = broker.tasks[task_id]
        assert task.status == TaskStatus.COMPLETED
        assert task.completed_at is not None
        assert task.status_stage is None
        assert task.attempts == 0
        assert seen == [('uploads/a.jpg', task_id, 1, 'worker-1')]
        assert worker.processed_count == 1
        assert worker.error_count == 0

    @pytest.mark.asyncio(loop_scope='function')
    async def test_stage_visible_while_running(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        stages: list[Any] = []

        @dispatcher.handler('photo')
        async def ingest(payload: Any, ctx: StageContext) -> None:
            await ctx.set_stage('thumbnail')
            stages.append(broker.tasks[ctx.task_id].status_stage)

        task_id = await broker.insert(PHOTO)
        await _make_worker(broker, dispatcher).tick()

        assert stages == ['thumbnail']
        assert broker.tasks[task_id].status_stage is None

    @pytest.mark.asyncio(loop_scope='function')
    async def test_claimed_task_has_stage_before_handler_reports_one(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        observed: list[tuple[TaskStatus, str | None]] = []

        @dispatcher.handler('photo')
        async def ingest(payload: Any, ctx: StageContext) -> None:
            row = broker.tasks[ctx.task_id]
            observed.append((row.status, row.status_stage))

        await broker.insert(PHOTO)
        await _make_worker(broker, dispatcher).tick()

        assert observed == [(TaskStatus.IN_STAGES, defaults.CLAIMED_STAGE)]

    @pytest.mark.asyncio(loop_scope='function')
    async def test_sync_handler_supported(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        calls: list[str] = []
        dispatcher.register('photo', lambda payload, ctx: calls.append(payload.type))
        task_id = await broker.insert(PHOTO)

        await _make_worker(broker, dispatcher).tick()

        assert calls == ['photo']
        assert broker.tasks[task_id].status == TaskStatus.COMPLETED

    @pytest.mark.asyncio(loop_scope='function')
    async def test_handler_can_enqueue_follow_up(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        @dispatcher.handler('photo')
        async def ingest(payload: Any, ctx: StageContext) -> None:
            await ctx.enqueue(
                {'type': 'photo-reverse-geocoding', 'photoId': 'p1'}, priority=1,
            )

        await broker.insert(PHOTO)
        await _make_worker(broker, dispatcher).tick()

        follow_up = [t for t in broker.tasks.values() if t.task_type == 'photo-reverse-geocoding']
        assert len(follow_up) == 1
        assert follow_up[0].priority == 1
        assert follow_up[0].status == TaskStatus.PENDING


class TestFailures:
    @pytest.mark.asyncio(loop_scope='function')
    async def test_failure_below_budget_goes_back_to_pending(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        @dispatcher.handler('photo')
        async def ingest(payload: Any, ctx: StageContext) -> None:
            await ctx.set_stage('metadata')
            raise RuntimeError('exif reader crashed')

        task_id = await broker.insert(PHOTO, max_attempts=3)
        worker = _make_worker(broker, dispatcher)
        await worker.tick()

        task = broker.tasks[task_id]
        assert task.status == TaskStatus.PENDING
        assert task.attempts == 1
        assert task.status_stage is None
        assert task.error_message is None
        assert worker.error_count == 1

    @pytest.mark.asyncio(loop_scope='function')
    async def test_backoff_delays_next_claim(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        @dispatcher.handler('photo')
        async def ingest(payload: Any, ctx: StageContext) -> None:
            raise RuntimeError('storage unavailable')

        task_id = await broker.insert(PHOTO)
        worker = _make_worker(
            broker, dispatcher, RetryBackoffConfig(base_ms=60_000, max_ms=600_000),
        )
        before = datetime.now(timezone.utc)
        await worker.tick()

        task = broker.tasks[task_id]
        assert task.status == TaskStatus.PENDING
        assert (task.created_at - before).total_seconds() >= 59
        # Still backing off: not claimable yet
        assert await worker.tick() is False

    @pytest.mark.asyncio(loop_scope='function')
    async def test_always_failing_handler_fails_after_budget(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        calls = 0

        @dispatcher.handler('photo')
        async def ingest(payload: Any, ctx: StageContext) -> None:
            nonlocal calls
            calls += 1
            raise RuntimeError(f'boom #{calls}')

        task_id = await broker.insert(PHOTO, max_attempts=3)
        worker = _make_worker(broker, dispatcher)
        for _ in range(5):
            await worker.tick()

        task = broker.tasks[task_id]
        assert calls == 3
        assert task.status == TaskStatus.FAILED
        assert task.attempts == task.max_attempts == 3
        assert task.error_message == 'boom #3'
        assert worker.processed_count == 3
        assert worker.error_count == 3

    @pytest.mark.asyncio(loop_scope='function')
    async def test_single_attempt_budget(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        dispatcher.register('photo', _raise_value_error)
        task_id = await broker.insert(PHOTO, max_attempts=1)
        await _make_worker(broker, dispatcher).tick()

        task = broker.tasks[task_id]
        assert task.status == TaskStatus.FAILED
        assert task.attempts == 1

    @pytest.mark.asyncio(loop_scope='function')
    async def test_missing_handler_counts_as_failure(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        task_id = await broker.insert(PHOTO, max_attempts=1)
        worker = _make_worker(broker, dispatcher)
        await worker.tick()

        task = broker.tasks[task_id]
        assert task.status == TaskStatus.FAILED
        assert task.error_message is not None
        assert "no stage handler registered for 'photo'" in task.error_message
        assert worker.error_count == 1

    @pytest.mark.asyncio(loop_scope='function')
    async def test_invalid_stored_payload_fails_without_consuming_attempt(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        task = broker.put({'type': 'photo'})
        worker = _make_worker(broker, dispatcher)
        await worker.tick()

        stored = broker.tasks[task.id]
        assert stored.status == TaskStatus.FAILED
        assert stored.attempts == 0
        assert stored.error_message is not None
        assert 'invalid task payload' in stored.error_message
        assert worker.error_count == 1

    @pytest.mark.asyncio(loop_scope='function')
    async def test_claim_error_skips_tick(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        broker.claim_error = OperationalError('connection refused')
        worker = _make_worker(broker, dispatcher)
        assert await worker.tick() is False
        assert worker.processed_count == 0

    @pytest.mark.asyncio(loop_scope='function')
    async def test_lost_completion_is_reapplied_on_later_tick(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        dispatcher.register('photo', _ok)
        task_id = await broker.insert(PHOTO)
        worker = _make_worker(broker, dispatcher)
        worker.resolve_retry_base_ms = 0
        broker.resolve_error = OperationalError('server closed the connection')

        assert await worker.tick() is True
        assert broker.tasks[task_id].status == TaskStatus.IN_STAGES
        assert task_id in worker._pending_resolutions

        broker.resolve_error = None
        assert await worker.tick() is False

        task = broker.tasks[task_id]
        assert task.status == TaskStatus.COMPLETED
        assert task.status_stage is None
        assert worker._pending_resolutions == {}

    @pytest.mark.asyncio(loop_scope='function')
    async def test_lost_failure_is_reapplied(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        dispatcher.register('photo', _raise_value_error)
        task_id = await broker.insert(PHOTO, max_attempts=1)
        worker = _make_worker(broker, dispatcher)
        worker.resolve_retry_base_ms = 0
        broker.resolve_error = OperationalError('connection reset')

        await worker.tick()
        broker.resolve_error = None
        await worker.tick()

        task = broker.tasks[task_id]
        assert task.status == TaskStatus.FAILED
        assert task.error_message == 'bad image'
        assert task.attempts == 1

    @pytest.mark.asyncio(loop_scope='function')
    async def test_reapply_waits_for_backoff(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        dispatcher.register('photo', _ok)
        task_id = await broker.insert(PHOTO)
        worker = _make_worker(broker, dispatcher)
        worker.resolve_retry_base_ms = 60_000
        broker.resolve_error = OperationalError('server closed the connection')

        await worker.tick()
        broker.resolve_error = None
        await worker.tick()
        assert broker.tasks[task_id].status == TaskStatus.IN_STAGES

        worker._pending_resolutions[task_id].next_attempt_at = 0.0
        await worker.tick()
        assert broker.tasks[task_id].status == TaskStatus.COMPLETED

    @pytest.mark.asyncio(loop_scope='function')
    async def test_reapply_gives_up_after_bounded_retries(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        dispatcher.register('photo', _ok)
        task_id = await broker.insert(PHOTO)
        worker = _make_worker(broker, dispatcher)
        worker.resolve_retry_base_ms = 0
        broker.resolve_error = OperationalError('server closed the connection')

        await worker.tick()
        for _ in range(defaults.RESOLVE_RETRY_MAX_ATTEMPTS):
            assert task_id in worker._pending_resolutions
            await worker.tick()

        assert worker._pending_resolutions == {}
        # Left in-stages for startup recovery
        assert broker.tasks[task_id].status == TaskStatus.IN_STAGES

    @pytest.mark.asyncio(loop_scope='function')
    async def test_non_transient_resolution_error_is_not_retried(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        dispatcher.register('photo', _ok)
        task_id = await broker.insert(PHOTO)
        worker = _make_worker(broker, dispatcher)
        broker.resolve_error = ValueError('constraint violated')

        assert await worker.tick() is True
        assert worker._pending_resolutions == {}
        assert broker.tasks[task_id].status == TaskStatus.IN_STAGES

    @pytest.mark.asyncio(loop_scope='function')
    async def test_stop_flushes_pending_resolution(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        dispatcher.register('photo', _ok)
        task_id = await broker.insert(PHOTO)
        worker = _make_worker(broker, dispatcher)
        broker.resolve_error = OperationalError('server closed the connection')
        await worker.tick()

        broker.resolve_error = None
        await worker.stop_processing()

        assert broker.tasks[task_id].status == TaskStatus.COMPLETED
        assert worker._pending_resolutions == {}

    @pytest.mark.asyncio(loop_scope='function')
    async def test_cancellation_propagates(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        @dispatcher.handler('photo')
        async def ingest(payload: Any, ctx: StageContext) -> None:
            raise asyncio.CancelledError()

        await broker.insert(PHOTO)
        with pytest.raises(asyncio.CancelledError):
            await _make_worker(broker, dispatcher).tick()


class TestCounters:
    def test_success_rate_zero_when_idle(self) -> None:
        worker = _make_worker(InMemoryBroker(), StageDispatcher())
        assert worker.success_rate == 0.0

    def test_success_rate_is_percentage(self) -> None:
        worker = _make_worker(InMemoryBroker(), StageDispatcher())
        worker.processed_count = 20
        worker.error_count = 12
        assert worker.success_rate == pytest.approx(40.0)

    def test_get_stats(self) -> None:
        worker = _make_worker(InMemoryBroker(), StageDispatcher(), worker_id='worker-3')
        worker.processed_count = 4
        worker.error_count = 1
        stats = worker.get_stats()
        assert stats.worker_id == 'worker-3'
        assert stats.is_processing is False
        assert stats.processed_count == 4
        assert stats.error_count == 1
        assert stats.success_rate == pytest.approx(75.0)
        assert stats.uptime >= 0


class TestLifecycle:
    @pytest.mark.asyncio(loop_scope='function')
    async def test_polling_loop_processes_and_stops(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        dispatcher.register('photo', _ok)
        ids = [await broker.insert(PHOTO) for _ in range(3)]
        worker = _make_worker(broker, dispatcher)

        worker.start_processing(5)
        assert worker.is_processing is True
        await wait_until(
            lambda: all(broker.tasks[i].status == TaskStatus.COMPLETED for i in ids)
        )
        await worker.stop_processing()

        assert worker.is_processing is False
        assert worker.processed_count == 3

    @pytest.mark.asyncio(loop_scope='function')
    async def test_stop_is_idempotent(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        worker = _make_worker(broker, dispatcher)
        await worker.stop_processing()
        worker.start_processing(5)
        await worker.stop_processing()
        await worker.stop_processing()
        assert worker.is_processing is False

    @pytest.mark.asyncio(loop_scope='function')
    async def test_stop_waits_for_in_flight_task(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        started = asyncio.Event()

        @dispatcher.handler('photo')
        async def slow(payload: Any, ctx: StageContext) -> None:
            started.set()
            await asyncio.sleep(0.05)

        task_id = await broker.insert(PHOTO)
        worker = _make_worker(broker, dispatcher)
        worker.start_processing(1)
        await asyncio.wait_for(started.wait(), timeout=2)
        await worker.stop_processing()

        assert broker.tasks[task_id].status == TaskStatus.COMPLETED

    @pytest.mark.asyncio(loop_scope='function')
    async def test_double_start_ignored(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        worker = _make_worker(broker, dispatcher)
        worker.start_processing(50)
        first_loop = worker._loop_task
        worker.start_processing(50)
        assert worker._loop_task is first_loop
        await worker.stop_processing()


class TestDelegation:
    @pytest.mark.asyncio(loop_scope='function')
    async def test_add_and_inspect(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        worker = _make_worker(broker, dispatcher)
        task_id = await worker.add_task(PHOTO, priority=4)
        task = await worker.get_task_status(task_id)
        assert task is not None
        assert task.priority == 4
        stats = await worker.get_queue_stats()
        assert stats.pending == 1
        assert stats.total == 1

    @pytest.mark.asyncio(loop_scope='function')
    async def test_add_rejects_invalid_payload(
        self, broker: InMemoryBroker, dispatcher: StageDispatcher,
    ) -> None:
        worker = _make_worker(broker, dispatcher)
        with pytest.raises(PayloadValidationError):
            await worker.add_task({'type': 'photo'})
        assert broker.tasks == {}


class TestErrorMessageOf:
    def test_plain_exception(self) -> None:
        assert error_message_of(RuntimeError('disk full')) == 'disk full'

    def test_empty_message_uses_type(self) -> None:
        assert error_message_of(KeyError()) == 'KeyError'

    def test_key_error_without_repr_quotes(self) -> None:
        assert error_message_of(KeyError('storageKey')) == 'storageKey'

    def test_non_string_arg(self) -> None:
        assert error_message_of(KeyError(42)) == '42'

    def test_multiple_args(self) -> None:
        assert error_message_of(OSError(28, 'No space left')) == '[Errno 28] No space left'


async def _ok(payload: Any, ctx: StageContext) -> None:
    return None


async def _raise_value_error(payload: Any, ctx: StageContext) -> None:
    raise ValueError('bad image')
