# core/types/status.py
"""
Core types and enums used throughout the application.
This module should not import from other application modules.
"""

from enum import Enum


class TaskStatus(str, Enum):
    """Task lifecycle status"""

    PENDING = 'pending'  # Awaits a worker claim. Default status on insert.
    # Also the status a retriable failure returns to.

    IN_STAGES = 'in-stages'  # Claimed by a worker and moving through stages.

    COMPLETED = 'completed'  # Handler finished successfully.

    FAILED = 'failed'  # Retry budget exhausted or payload unusable.

    @property
    def is_terminal(self) -> bool:
        """Whether this status represents a final state (no further transitions)."""
        return self in TASK_TERMINAL_STATES

    @property
    def is_active(self) -> bool:
        """Whether the task is still queued or being worked on."""
        return not self.is_terminal


TASK_TERMINAL_STATES: frozenset[TaskStatus] = frozenset({
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
})
