"""SQL constants for the queue table."""

from __future__ import annotations

from sqlalchemy import text

TASK_COLUMNS = """
    id, payload, priority, attempts, max_attempts, status, status_stage,
    error_message, created_at, completed_at, claimed_by, updated_at
"""

# ---------- Producer ----------

INSERT_TASK_SQL = text("""
    INSERT INTO chronoqueue_tasks (
        payload, priority, attempts, max_attempts, status, created_at, updated_at
    ) VALUES (
        CAST(:payload AS JSONB), :priority, 0, :max_attempts, 'pending', now(), now()
    )
    RETURNING id
""")


# ---------- Claim SQL (priority DESC + created_at ASC) ----------
# SKIP LOCKED keeps concurrent claimers off the same row; the outer
# status guard means a row can only be flipped to in-stages once.
# Rows whose created_at lies in the future are backing off and are skipped.
# The stage starts at a placeholder label so an in-stages row always has one.

CLAIM_SQL = text(f"""
WITH next AS (
  SELECT id
  FROM chronoqueue_tasks
  WHERE status = 'pending'
    AND created_at <= now()
  ORDER BY priority DESC, created_at ASC, id ASC
  FOR UPDATE SKIP LOCKED
  LIMIT 1
)
UPDATE chronoqueue_tasks t
SET status = 'in-stages',
    status_stage = :claimed_stage,
    error_message = NULL,
    claimed_by = :worker_id,
    updated_at = now()
FROM next
WHERE t.id = next.id
  AND t.status = 'pending'
RETURNING {', '.join(f't.{c.strip()}' for c in TASK_COLUMNS.split(','))};
""")


# ---------- Worker resolution (all guarded by status = 'in-stages') ----------

SET_STAGE_SQL = text("""
    UPDATE chronoqueue_tasks
    SET status_stage = :stage,
        updated_at = now()
    WHERE id = :id
      AND status = 'in-stages'
    RETURNING id
""")

MARK_COMPLETED_SQL = text("""
    UPDATE chronoqueue_tasks
    SET status = 'completed',
        status_stage = NULL,
        error_message = NULL,
        completed_at = now(),
        updated_at = now()
    WHERE id = :id
      AND status = 'in-stages'
    RETURNING id
""")

# Every SET expression sees the pre-update row, so `attempts + 1` is the
# attempt count after this failure in all branches.
RECORD_FAILURE_SQL = text("""
    UPDATE chronoqueue_tasks
    SET attempts = LEAST(attempts + 1, max_attempts),
        status = CASE
            WHEN attempts + 1 < max_attempts THEN 'pending'
            ELSE 'failed'
        END,
        status_stage = NULL,
        error_message = CASE
            WHEN attempts + 1 < max_attempts THEN NULL
            ELSE :error_message
        END,
        created_at = CASE
            WHEN attempts + 1 < max_attempts
                THEN now() + CAST(:delay_ms AS INTEGER) * INTERVAL '1 millisecond'
            ELSE created_at
        END,
        updated_at = now()
    WHERE id = :id
      AND status = 'in-stages'
    RETURNING status, attempts
""")

MARK_INVALID_SQL = text("""
    UPDATE chronoqueue_tasks
    SET status = 'failed',
        status_stage = NULL,
        error_message = :error_message,
        updated_at = now()
    WHERE id = :id
      AND status = 'in-stages'
    RETURNING id
""")


# ---------- Reads ----------

GET_TASK_SQL = text(f"""
    SELECT {TASK_COLUMNS}
    FROM chronoqueue_tasks
    WHERE id = :id
""")

COUNT_BY_STATUS_SQL = text("""
    SELECT status, COUNT(*) AS count
    FROM chronoqueue_tasks
    GROUP BY status
""")

LIST_TASKS_SQL = text(f"""
    SELECT {TASK_COLUMNS}
    FROM chronoqueue_tasks
    WHERE (CAST(:status AS VARCHAR) IS NULL OR status = CAST(:status AS VARCHAR))
      AND (CAST(:task_type AS VARCHAR) IS NULL
           OR payload->>'type' = CAST(:task_type AS VARCHAR))
    ORDER BY created_at DESC, id DESC
""")


# ---------- Pool startup recovery ----------

RECOVER_DEAD_TASKS_SQL = text("""
    UPDATE chronoqueue_tasks
    SET status = 'pending',
        status_stage = NULL,
        priority = GREATEST(priority, :priority),
        updated_at = now()
    WHERE status = 'in-stages'
    RETURNING id
""")


# ---------- Administration ----------

GET_STATUSES_BY_IDS_SQL = text("""
    SELECT id, status
    FROM chronoqueue_tasks
    WHERE id = ANY(:ids)
""")

GET_FAILED_IDS_SQL = text("""
    SELECT id, status
    FROM chronoqueue_tasks
    WHERE status = 'failed'
""")

RETRY_FAILED_TASKS_SQL = text("""
    UPDATE chronoqueue_tasks
    SET status = 'pending',
        status_stage = NULL,
        error_message = NULL,
        attempts = 0,
        completed_at = NULL,
        created_at = now(),
        updated_at = now()
    WHERE id = ANY(:ids)
      AND status = 'failed'
    RETURNING id
""")

PURGE_TASKS_SQL = text("""
    DELETE FROM chronoqueue_tasks
    WHERE status = ANY(:statuses)
      AND (CAST(:older_than_days AS INTEGER) IS NULL
           OR created_at < now() - CAST(:older_than_days AS INTEGER) * INTERVAL '1 day')
    RETURNING status
""")
