# chronoqueue/core/worker/context.py
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from chronoqueue.core import defaults
from chronoqueue.core.logging import get_logger
from chronoqueue.core.models.payloads import TaskPayload

if TYPE_CHECKING:
    from chronoqueue.core.brokers.postgres import PostgresBroker

logger = get_logger('worker')


@dataclass
class StageContext:
    """
    Handed to a stage handler for the task it is executing.

    - task_id: id of the claimed task
    - worker_id: id of the executing worker
    - attempt: 1-based attempt number of this execution
    """

    task_id: int
    worker_id: str
    attempt: int
    broker: 'PostgresBroker'
    current_stage: str | None = None

    async def set_stage(self, label: str) -> None:
        """Record the step currently running, visible while the task is in-stages."""
        self.current_stage = label
        updated = await self.broker.set_stage(self.task_id, label)
        if not updated:
            logger.warning(
                f'[{self.worker_id}] Task {self.task_id} no longer in-stages; '
                f"stage '{label}' not recorded"
            )

    async def enqueue(
        self,
        payload: TaskPayload | dict[str, Any],
        priority: int = defaults.DEFAULT_PRIORITY,
        max_attempts: int = defaults.DEFAULT_MAX_ATTEMPTS,
    ) -> int:
        """Schedule follow-up work (e.g. geocoding after photo ingest)."""
        return await self.broker.insert(
            payload, priority=priority, max_attempts=max_attempts
        )
