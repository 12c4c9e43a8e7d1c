# chronoqueue/core/models/pool.py
from __future__ import annotations

from typing import Annotated

from typing_extensions import Self
from pydantic import BaseModel, Field, model_validator
from chronoqueue.core import defaults
from chronoqueue.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)


class RetryBackoffConfig(BaseModel):
    """
    Delay before a failed-but-retriable task becomes claimable again.

    delay(attempts) = min(max_ms, base_ms * 2 ** (attempts - 1))

    The delay is applied by moving the task's created_at forward; the claim
    query skips rows whose created_at is still in the future.
    """

    base_ms: Annotated[int, Field(ge=0, le=3_600_000)] = Field(
        default=defaults.DEFAULT_BACKOFF_BASE_MS,
        description='Delay after the first failed attempt (0ms-1h)',
    )
    max_ms: Annotated[int, Field(ge=0, le=86_400_000)] = Field(
        default=defaults.DEFAULT_BACKOFF_MAX_MS,
        description='Upper bound for the retry delay (0ms-24h)',
    )

    @model_validator(mode='after')
    def validate_backoff(self) -> Self:
        report = ValidationReport('backoff')
        if self.max_ms < self.base_ms:
            report.add(
                ConfigurationError(
                    message='max_ms must be >= base_ms',
                    code=ErrorCode.CONFIG_INVALID_BACKOFF,
                    notes=[f'base_ms={self.base_ms}ms', f'max_ms={self.max_ms}ms'],
                    help_text='increase max_ms or reduce base_ms',
                )
            )
        raise_collected(report)
        return self

    def delay_ms(self, attempts: int) -> int:
        """Backoff for a task that has now consumed `attempts` attempts."""
        exponent = max(0, attempts - 1)
        return min(self.max_ms, self.base_ms * (2**exponent))


class PoolConfig(BaseModel):
    """
    Configuration for the worker pool.

    Fields:
    - worker_count: number of polling workers (worker-1..N)
    - interval_ms: poll interval of worker-1
    - interval_offset_ms: extra interval per subsequent worker, desynchronizing ticks
    - enable_load_balancing: whether rebalance() restarts failing workers
    - stats_report_interval_ms: how often pool stats are logged; 0 disables
    - rebalance_interval_ms: period of the built-in rebalance timer; 0 disables
    - rebalance_cooldown_ms: delay between stopping a worker and its replacement
    - rebalance_error_threshold: restart only above this many errors
    - rebalance_success_rate_threshold: restart only below this success rate (%)
    - recovered_priority: minimum priority given to tasks recovered at startup
    - backoff: retry delay policy for failed tasks
    """

    worker_count: Annotated[int, Field(ge=1, le=32)] = defaults.DEFAULT_WORKER_COUNT
    interval_ms: Annotated[int, Field(ge=1, le=600_000)] = defaults.DEFAULT_INTERVAL_MS
    interval_offset_ms: Annotated[int, Field(ge=0, le=60_000)] = (
        defaults.DEFAULT_INTERVAL_OFFSET_MS
    )
    enable_load_balancing: bool = True
    stats_report_interval_ms: Annotated[int, Field(ge=0)] = (
        defaults.DEFAULT_STATS_REPORT_INTERVAL_MS
    )
    rebalance_interval_ms: Annotated[int, Field(ge=0)] = (
        defaults.DEFAULT_REBALANCE_INTERVAL_MS
    )
    rebalance_cooldown_ms: Annotated[int, Field(ge=0, le=600_000)] = (
        defaults.DEFAULT_REBALANCE_COOLDOWN_MS
    )
    rebalance_error_threshold: Annotated[int, Field(ge=0)] = (
        defaults.DEFAULT_REBALANCE_ERROR_THRESHOLD
    )
    rebalance_success_rate_threshold: Annotated[float, Field(ge=0.0, le=100.0)] = (
        defaults.DEFAULT_REBALANCE_SUCCESS_RATE_THRESHOLD
    )
    recovered_priority: Annotated[
        int, Field(ge=defaults.MIN_PRIORITY, le=defaults.MAX_PRIORITY)
    ] = defaults.DEFAULT_RECOVERED_PRIORITY
    backoff: RetryBackoffConfig = Field(default_factory=RetryBackoffConfig)

    @model_validator(mode='after')
    def validate_timers(self) -> Self:
        report = ValidationReport('pool')
        if (
            self.rebalance_interval_ms > 0
            and self.rebalance_cooldown_ms >= self.rebalance_interval_ms
        ):
            report.add(
                ConfigurationError(
                    message='rebalance_cooldown_ms must be < rebalance_interval_ms',
                    code=ErrorCode.CONFIG_INVALID_POOL,
                    notes=[
                        f'rebalance_cooldown_ms={self.rebalance_cooldown_ms}ms',
                        f'rebalance_interval_ms={self.rebalance_interval_ms}ms',
                    ],
                    help_text=(
                        'a replacement must be running before the next rebalance pass;\n'
                        'shorten the cool-down or set rebalance_interval_ms=0'
                    ),
                )
            )
        raise_collected(report)
        return self

    def interval_for(self, index: int) -> int:
        """Poll interval for the 1-based worker slot `index`."""
        return self.interval_ms + (index - 1) * self.interval_offset_ms
