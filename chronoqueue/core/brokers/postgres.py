# chronoqueue/core/brokers/postgres.py
from __future__ import annotations
import hashlib
import json
from collections import Counter
from typing import Any, Iterable, Optional
from sqlalchemy import func, text, update as sa_update
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from chronoqueue.core import defaults
from chronoqueue.core.brokers.sql import (
    CLAIM_SQL,
    COUNT_BY_STATUS_SQL,
    GET_FAILED_IDS_SQL,
    GET_STATUSES_BY_IDS_SQL,
    GET_TASK_SQL,
    INSERT_TASK_SQL,
    LIST_TASKS_SQL,
    MARK_COMPLETED_SQL,
    MARK_INVALID_SQL,
    PURGE_TASKS_SQL,
    RECORD_FAILURE_SQL,
    RECOVER_DEAD_TASKS_SQL,
    RETRY_FAILED_TASKS_SQL,
    SET_STAGE_SQL,
)
from chronoqueue.core.errors import (
    ErrorCode,
    InvalidArgumentError,
    InvalidTaskStateError,
    TaskNotFoundError,
    TaskOptionsError,
)
from chronoqueue.core.logging import get_logger
from chronoqueue.core.models.broker import PostgresConfig
from chronoqueue.core.models.payloads import TaskPayload, parse_payload, payload_to_json
from chronoqueue.core.models.task_pg import Base, PipelineTaskModel
from chronoqueue.core.models.tasks import (
    ClearResult,
    QueueStats,
    RetryBatchResult,
    SkippedTask,
    TaskOptions,
    TaskRecord,
)
from chronoqueue.core.types.status import TaskStatus
from chronoqueue.core.utils.db import mask_database_url

# Columns an administrative patch may touch. Identity and bookkeeping
# columns are managed by the broker itself.
_PATCHABLE_COLUMNS: frozenset[str] = frozenset({
    'priority',
    'attempts',
    'max_attempts',
    'status',
    'status_stage',
    'error_message',
    'created_at',
    'completed_at',
})


def validate_task_options(priority: int, max_attempts: int) -> TaskOptions:
    """Build TaskOptions, turning range violations into TaskOptionsError."""
    from pydantic import ValidationError

    try:
        return TaskOptions(priority=priority, max_attempts=max_attempts)
    except ValidationError as exc:
        raise TaskOptionsError(
            message='invalid task options',
            code=ErrorCode.TASK_INVALID_OPTIONS,
            notes=[
                f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}"
                for e in exc.errors(include_url=False)
            ],
            help_text='priority must be 0..9 and max_attempts 1..5',
        ) from exc


class PostgresBroker:
    """
    PostgreSQL-backed queue table.

    Every worker-side transition is a single conditional UPDATE guarded by the
    row's current status, so claims are exclusive and resolutions idempotent
    even with several workers polling one database.

      - Producer: insert()
      - Worker: claim_next(), set_stage(), mark_completed(), record_failure(), mark_invalid()
      - Pool: recover_dead_tasks(), count_by_status()
      - Administration: list_tasks(), retry_task(), retry_failed(), purge(), update()
    """

    def __init__(self, config: PostgresConfig):
        self.config = config
        self.logger = get_logger('broker')

        engine_cfg = self.config.model_dump(exclude={'database_url'}, exclude_none=True)
        self.async_engine = create_async_engine(self.config.database_url, **engine_cfg)
        self.session_factory = async_sessionmaker(
            self.async_engine, expire_on_commit=False
        )

        self._initialized = False
        self.logger.info(
            f'PostgresBroker initialized for {mask_database_url(self.config.database_url)}'
        )

    def _schema_advisory_key(self) -> int:
        """
        Compute a stable 64-bit advisory lock key for schema initialization.

        Derived from the database URL so that different clusters do not
        contend on the same key.
        """
        basis = self.config.database_url.encode('utf-8', errors='ignore')
        h = hashlib.sha256(b'chronoqueue-schema:' + basis).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self.async_engine.begin() as conn:
            # Serialize DDL across processes sharing the database.
            await conn.execute(
                text('SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))'),
                {'key': self._schema_advisory_key()},
            )
            await conn.run_sync(Base.metadata.create_all)
        self._initialized = True

    async def ensure_schema_initialized(self) -> None:
        """
        Public entry point to ensure the queue table and its indexes exist.

        Safe to call multiple times and from multiple processes.
        """
        await self._ensure_initialized()

    # ----------------- Producer -----------------

    async def insert(
        self,
        payload: TaskPayload | dict[str, Any],
        priority: int = 0,
        max_attempts: int = 3,
    ) -> int:
        """Validate and enqueue a task, returning its id.

        Raises PayloadValidationError / TaskOptionsError before anything is
        written, so a rejected payload never consumes an attempt.
        """
        parsed = parse_payload(payload)
        options = validate_task_options(priority, max_attempts)
        await self._ensure_initialized()

        async with self.session_factory() as session:
            result = await session.execute(
                INSERT_TASK_SQL,
                {
                    'payload': json.dumps(payload_to_json(parsed)),
                    'priority': options.priority,
                    'max_attempts': options.max_attempts,
                },
            )
            task_id = int(result.scalar_one())
            await session.commit()

        self.logger.debug(
            f'Task {task_id} ({parsed.type}) enqueued with priority {options.priority}'
        )
        return task_id

    # ----------------- Worker -----------------

    async def claim_next(self, worker_id: str) -> Optional[TaskRecord]:
        """Atomically move the best-ranked claimable task to in-stages."""
        await self._ensure_initialized()
        async with self.session_factory() as session:
            result = await session.execute(
                CLAIM_SQL,
                {'worker_id': worker_id, 'claimed_stage': defaults.CLAIMED_STAGE},
            )
            row = result.mappings().first()
            await session.commit()
        return TaskRecord.from_mapping(row) if row is not None else None

    async def set_stage(self, task_id: int, stage: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(SET_STAGE_SQL, {'id': task_id, 'stage': stage})
            updated = result.fetchone() is not None
            await session.commit()
        return updated

    async def mark_completed(self, task_id: int) -> bool:
        """Resolve an in-stages task as completed. False if it was not in-stages."""
        async with self.session_factory() as session:
            result = await session.execute(MARK_COMPLETED_SQL, {'id': task_id})
            updated = result.fetchone() is not None
            await session.commit()
        return updated

    async def record_failure(
        self, task_id: int, error_message: str, delay_ms: int,
    ) -> Optional[TaskStatus]:
        """Consume one attempt: back to pending with backoff, or failed at budget.

        Returns the resulting status, or None if the task was not in-stages.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                RECORD_FAILURE_SQL,
                {'id': task_id, 'error_message': error_message, 'delay_ms': delay_ms},
            )
            row = result.fetchone()
            await session.commit()
        return TaskStatus(row.status) if row is not None else None

    async def mark_invalid(self, task_id: int, error_message: str) -> bool:
        """Fail a claimed task whose stored payload no longer validates."""
        async with self.session_factory() as session:
            result = await session.execute(
                MARK_INVALID_SQL, {'id': task_id, 'error_message': error_message},
            )
            updated = result.fetchone() is not None
            await session.commit()
        return updated

    async def update(self, task_id: int, patch: dict[str, Any]) -> bool:
        """Apply a raw column patch to one task. False if the task does not exist."""
        unknown = set(patch) - _PATCHABLE_COLUMNS
        if unknown:
            raise InvalidArgumentError(
                message='cannot patch task columns',
                code=ErrorCode.ADMIN_INVALID_ARGUMENT,
                notes=[f'unknown or protected columns: {sorted(unknown)}'],
                help_text=f'patchable columns: {sorted(_PATCHABLE_COLUMNS)}',
            )
        await self._ensure_initialized()
        values = dict(patch)
        if isinstance(values.get('status'), str):
            values['status'] = TaskStatus(values['status'])
        stmt = (
            sa_update(PipelineTaskModel)
            .where(PipelineTaskModel.id == task_id)
            .values(**values, updated_at=func.now())
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return (result.rowcount or 0) > 0

    # ----------------- Reads -----------------

    async def get_task(self, task_id: int) -> Optional[TaskRecord]:
        await self._ensure_initialized()
        async with self.session_factory() as session:
            result = await session.execute(GET_TASK_SQL, {'id': task_id})
            row = result.mappings().first()
        return TaskRecord.from_mapping(row) if row is not None else None

    async def list_tasks(
        self,
        status: TaskStatus | str | None = None,
        task_type: str | None = None,
    ) -> list[TaskRecord]:
        """Tasks filtered by status and/or payload type, newest first."""
        await self._ensure_initialized()
        status_value = TaskStatus(status).value if status is not None else None
        async with self.session_factory() as session:
            result = await session.execute(
                LIST_TASKS_SQL, {'status': status_value, 'task_type': task_type},
            )
            rows = result.mappings().all()
        return [TaskRecord.from_mapping(r) for r in rows]

    async def count_by_status(self) -> QueueStats:
        await self._ensure_initialized()
        async with self.session_factory() as session:
            result = await session.execute(COUNT_BY_STATUS_SQL)
            counts = {str(r.status): int(r.count) for r in result.fetchall()}
        return QueueStats.from_counts(counts)

    # ----------------- Pool -----------------

    async def recover_dead_tasks(self, priority: int) -> int:
        """Return every in-stages task to pending with at least `priority`."""
        await self._ensure_initialized()
        async with self.session_factory() as session:
            result = await session.execute(RECOVER_DEAD_TASKS_SQL, {'priority': priority})
            recovered = len(result.fetchall())
            await session.commit()
        return recovered

    # ----------------- Administration -----------------

    async def retry_task(self, task_id: int) -> TaskRecord:
        """Reset one failed task to pending with a fresh attempt budget."""
        await self._ensure_initialized()
        async with self.session_factory() as session:
            row = (await session.execute(GET_TASK_SQL, {'id': task_id})).mappings().first()
            if row is None:
                raise TaskNotFoundError(
                    message=f'task {task_id} not found',
                    code=ErrorCode.TASK_NOT_FOUND,
                    task_id=task_id,
                )
            current = TaskStatus(row['status'])
            if current != TaskStatus.FAILED:
                raise InvalidTaskStateError(
                    message=f'task {task_id} is not in failed status',
                    code=ErrorCode.TASK_INVALID_STATE,
                    notes=[f'current status: {current.value}'],
                    help_text='only failed tasks can be retried',
                    task_id=task_id,
                    status=current.value,
                )
            await session.execute(RETRY_FAILED_TASKS_SQL, {'ids': [task_id]})
            refreshed = (
                await session.execute(GET_TASK_SQL, {'id': task_id})
            ).mappings().first()
            await session.commit()

        self.logger.info(f'Task {task_id} has been reset and will be retried')
        assert refreshed is not None
        return TaskRecord.from_mapping(refreshed)

    async def retry_failed(self, task_ids: Iterable[int] | None = None) -> RetryBatchResult:
        """Reset failed tasks to pending.

        task_ids=None retries every failed task; otherwise only the given ids,
        reporting the rest (missing or not failed) as skipped.
        """
        ids = None if task_ids is None else list(dict.fromkeys(task_ids))
        if ids is not None and not ids:
            raise InvalidArgumentError(
                message='no task ids given',
                code=ErrorCode.ADMIN_INVALID_ARGUMENT,
                help_text='pass task ids, or None to retry every failed task',
            )
        await self._ensure_initialized()

        async with self.session_factory() as session:
            if ids is None:
                rows = (await session.execute(GET_FAILED_IDS_SQL)).fetchall()
            else:
                rows = (await session.execute(GET_STATUSES_BY_IDS_SQL, {'ids': ids})).fetchall()
            found = {int(r.id): TaskStatus(r.status) for r in rows}

            skipped: list[SkippedTask] = []
            for task_id in ids or []:
                if task_id not in found:
                    skipped.append(SkippedTask(task_id, None, 'Task not found'))
            for task_id, status in found.items():
                if status != TaskStatus.FAILED:
                    skipped.append(SkippedTask(
                        task_id,
                        status,
                        f'Task is not in failed status (current: {status.value})',
                    ))

            candidates = [tid for tid, st in found.items() if st == TaskStatus.FAILED]
            retried: list[int] = []
            if candidates:
                result = await session.execute(RETRY_FAILED_TASKS_SQL, {'ids': candidates})
                retried = sorted(int(r.id) for r in result.fetchall())
                for task_id in sorted(set(candidates) - set(retried)):
                    skipped.append(SkippedTask(
                        task_id, None, 'Task changed status before it could be retried',
                    ))
            await session.commit()

        if retried:
            self.logger.info(f'Reset {len(retried)} failed task(s) for retry')
        return RetryBatchResult(
            retried_count=len(retried),
            skipped_count=len(skipped),
            retried_ids=retried,
            skipped=skipped,
        )

    async def purge(
        self,
        statuses: Iterable[TaskStatus | str],
        older_than_days: int | None = None,
    ) -> ClearResult:
        """Delete terminal tasks, optionally only those created more than N days ago."""
        wanted = {TaskStatus(s) for s in statuses}
        if not wanted:
            raise InvalidArgumentError(
                message='no statuses selected for purge',
                code=ErrorCode.ADMIN_INVALID_ARGUMENT,
                help_text='include completed and/or failed tasks',
            )
        active = {s for s in wanted if s.is_active}
        if active:
            raise InvalidArgumentError(
                message='only terminal tasks can be purged',
                code=ErrorCode.ADMIN_INVALID_ARGUMENT,
                notes=[f'requested: {sorted(s.value for s in active)}'],
                help_text='pending and in-stages tasks are still owned by the queue',
            )
        if older_than_days is not None and older_than_days < 0:
            raise InvalidArgumentError(
                message='older_than_days must be a non-negative integer',
                code=ErrorCode.ADMIN_INVALID_ARGUMENT,
                notes=[f'got older_than_days={older_than_days}'],
            )
        await self._ensure_initialized()

        async with self.session_factory() as session:
            result = await session.execute(
                PURGE_TASKS_SQL,
                {
                    'statuses': sorted(s.value for s in wanted),
                    'older_than_days': older_than_days,
                },
            )
            removed = Counter(str(r.status) for r in result.fetchall())
            await session.commit()

        deleted = sum(removed.values())
        self.logger.info(f'Cleared {deleted} non-active task(s)')
        return ClearResult(
            deleted_count=deleted,
            breakdown={
                TaskStatus.COMPLETED.value: removed.get(TaskStatus.COMPLETED.value, 0),
                TaskStatus.FAILED.value: removed.get(TaskStatus.FAILED.value, 0),
            },
        )

    async def close_async(self) -> None:
        await self.async_engine.dispose()
