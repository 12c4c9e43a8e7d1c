"""Shared default constants for the chronoqueue library."""

# Task options accepted from producers.
DEFAULT_PRIORITY: int = 0
MIN_PRIORITY: int = 0
MAX_PRIORITY: int = 9
DEFAULT_MAX_ATTEMPTS: int = 3
MIN_MAX_ATTEMPTS: int = 1
MAX_MAX_ATTEMPTS: int = 5

# Retry backoff: base * 2 ** (attempts - 1), capped.
DEFAULT_BACKOFF_BASE_MS: int = 5_000
DEFAULT_BACKOFF_MAX_MS: int = 300_000  # 5 minutes

# Pool polling and staggering.
DEFAULT_WORKER_COUNT: int = 3
DEFAULT_INTERVAL_MS: int = 2_000
DEFAULT_INTERVAL_OFFSET_MS: int = 300

# Priority given to tasks recovered from 'in-stages' at pool startup.
# Recovery never lowers a priority that was already higher.
DEFAULT_RECOVERED_PRIORITY: int = 1

# Rebalance: a worker past both thresholds is restarted after the cool-down.
DEFAULT_REBALANCE_INTERVAL_MS: int = 300_000  # 5 minutes
DEFAULT_REBALANCE_COOLDOWN_MS: int = 5_000
DEFAULT_REBALANCE_ERROR_THRESHOLD: int = 10
DEFAULT_REBALANCE_SUCCESS_RATE_THRESHOLD: float = 50.0

DEFAULT_STATS_REPORT_INTERVAL_MS: int = 30_000

# Upper bound on tasks accepted by a single add_tasks() call.
MAX_BATCH_SIZE: int = 1_000

# Stage label written by the claim, before a handler reports its own steps.
CLAIMED_STAGE: str = 'claimed'

# A resolution write (completed/failed) lost to a transient database error is
# re-applied on later ticks: base * 2 ** (retries - 1), capped, bounded count.
RESOLVE_RETRY_MAX_ATTEMPTS: int = 5
RESOLVE_RETRY_BASE_MS: int = 500
RESOLVE_RETRY_MAX_MS: int = 15_000
