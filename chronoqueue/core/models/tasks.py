# chronoqueue/core/models/tasks.py
from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

from chronoqueue.core import defaults
from chronoqueue.core.types.status import TaskStatus


class TaskOptions(BaseModel):
    """
    Producer options for a task.

    Fields:
        priority: 0..9, higher is claimed first
        max_attempts: retry budget, 1..5
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    priority: int = Field(
        default=defaults.DEFAULT_PRIORITY,
        ge=defaults.MIN_PRIORITY,
        le=defaults.MAX_PRIORITY,
    )
    max_attempts: int = Field(
        default=defaults.DEFAULT_MAX_ATTEMPTS,
        ge=defaults.MIN_MAX_ATTEMPTS,
        le=defaults.MAX_MAX_ATTEMPTS,
    )


@dataclass
class TaskRecord:
    """One row of the queue table."""

    id: int
    payload: dict[str, Any]
    priority: int
    attempts: int
    max_attempts: int
    status: TaskStatus
    status_stage: str | None
    error_message: str | None
    created_at: datetime.datetime
    completed_at: datetime.datetime | None = None
    claimed_by: str | None = None
    updated_at: datetime.datetime | None = None

    @property
    def task_type(self) -> str | None:
        value = self.payload.get('type') if isinstance(self.payload, dict) else None
        return value if isinstance(value, str) else None

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> TaskRecord:
        """Build from a result row mapping (``result.mappings()``)."""
        return cls(
            id=int(row['id']),
            payload=dict(row['payload'] or {}),
            priority=int(row['priority']),
            attempts=int(row['attempts']),
            max_attempts=int(row['max_attempts']),
            status=TaskStatus(row['status']),
            status_stage=row['status_stage'],
            error_message=row['error_message'],
            created_at=row['created_at'],
            completed_at=row.get('completed_at'),
            claimed_by=row.get('claimed_by'),
            updated_at=row.get('updated_at'),
        )


@dataclass
class QueueStats:
    """Task counts grouped by status."""

    pending: int = 0
    in_stages: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.in_stages + self.completed + self.failed

    @classmethod
    def from_counts(cls, counts: Mapping[str, int]) -> QueueStats:
        return cls(
            pending=int(counts.get(TaskStatus.PENDING.value, 0)),
            in_stages=int(counts.get(TaskStatus.IN_STAGES.value, 0)),
            completed=int(counts.get(TaskStatus.COMPLETED.value, 0)),
            failed=int(counts.get(TaskStatus.FAILED.value, 0)),
        )

    def as_dict(self) -> dict[str, int]:
        """Counts keyed by the stored status value."""
        return {
            TaskStatus.PENDING.value: self.pending,
            TaskStatus.IN_STAGES.value: self.in_stages,
            TaskStatus.COMPLETED.value: self.completed,
            TaskStatus.FAILED.value: self.failed,
        }


@dataclass
class WorkerStats:
    worker_id: str
    is_processing: bool
    processed_count: int
    error_count: int
    uptime: int  # seconds
    success_rate: float  # percent, 0.0 when nothing processed


@dataclass
class PoolStats:
    total_workers: int
    active_workers: int
    total_processed: int
    total_errors: int
    average_success_rate: float
    workers: list[WorkerStats] = field(default_factory=lambda: [])


@dataclass
class ClearResult:
    """Outcome of purging terminal tasks."""

    deleted_count: int
    breakdown: dict[str, int]


@dataclass
class SkippedTask:
    id: int
    status: TaskStatus | None
    reason: str


@dataclass
class RetryBatchResult:
    retried_count: int
    skipped_count: int
    retried_ids: list[int] = field(default_factory=lambda: [])
    skipped: list[SkippedTask] = field(default_factory=lambda: [])


@dataclass
class BatchItemResult:
    """Per-item outcome of Chronoqueue.add_tasks()."""

    index: int
    success: bool
    task_id: int | None = None
    error: str | None = None


@dataclass
class BatchAddResult:
    results: list[BatchItemResult] = field(default_factory=lambda: [])

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def error_count(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def success(self) -> bool:
        return self.error_count == 0
