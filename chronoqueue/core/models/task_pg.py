from __future__ import annotations
from datetime import datetime
from typing import Any, Optional
from sqlalchemy import (
    BigInteger,
    DateTime,
    Identity,
    Index,
    Integer,
    String,
    Text,
    Enum as SQLAlchemyEnum,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from chronoqueue.core.types.status import TaskStatus


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for PostgreSQL models"""

    pass


class PipelineTaskModel(Base):
    """
    SQLAlchemy model for the pipeline queue table.

    - id: int # identity, monotonically assigned
    - payload: dict # tagged variant keyed by "type" (camelCase JSON)
    - priority: int # 0..9, higher is claimed first
    - attempts: int # execution attempts consumed so far
    - max_attempts: int # retry budget, 1..5
    - status: TaskStatus # pending, in-stages, completed, failed
    - status_stage: str # in-progress step label, only while in-stages
    - error_message: str # last failure reason, only while failed
    - created_at: datetime # enqueue / re-enqueue time; FIFO tie-break and backoff anchor
    - completed_at: datetime # set when the task completes
    - claimed_by: str # worker id of the most recent claim
    - updated_at: datetime # last mutation
    """

    __tablename__ = 'chronoqueue_tasks'
    __table_args__ = (
        Index(
            'idx_chronoqueue_tasks_claim',
            'status',
            text('priority DESC'),
            'created_at',
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text('0'),
    )

    # Retry budget and tracking
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text('0'),
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=3, server_default=text('3'),
    )

    # Lifecycle
    status: Mapped[TaskStatus] = mapped_column(
        SQLAlchemyEnum(
            TaskStatus,
            native_enum=False,
            length=16,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
        default=TaskStatus.PENDING,
        server_default=text("'pending'"),
        index=True,
    )
    status_stage: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    claimed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )  # shifted forward on retry; rows in the future are not claimable yet
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )
