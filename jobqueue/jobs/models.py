"""
Job record persistence model.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, CheckConstraint, DateTime, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from jobqueue.infra.database import Base


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (no automatic transition leaves it)."""
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


def utc_now() -> datetime:
    return datetime.now(UTC)


class Job(Base):
    """
    Durable state for one unit of background work.

    Claiming flips a pending row to processing in a single statement, so
    several worker processes can share the table safely.
    """

    __tablename__ = "jobs"

    # Core fields
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Job type identifier"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Job-specific parameters",
    )

    # Job state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="Job status: pending|processing|completed|failed",
    )
    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Higher priority is claimed first",
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Number of claims so far"
    )
    max_retries: Mapped[int] = mapped_column(
        Integer, nullable=False, default=3, comment="Retry budget fixed at enqueue time"
    )
    scheduled_for: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        comment="Earliest time to run job",
    )

    # Worker coordination
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="When the current claim started"
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="When the job reached a terminal status"
    )
    claim_token: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Token written by the claim that holds the job"
    )
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker ID that claimed the job"
    )

    # Failure detail
    error: Mapped[str | None] = mapped_column(Text, nullable=True, comment="Current error")
    last_error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Last error message"
    )
    last_error_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, comment="When the last error happened"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="jobs_status_check",
        ),
        CheckConstraint("attempts >= 0", name="jobs_attempts_check"),
        Index("ix_jobs_claim", "status", "scheduled_for", "priority", "created_at"),
        Index("ix_jobs_status_started_at", "status", "started_at"),
        Index("ix_jobs_status_completed_at", "status", "completed_at"),
        Index("ix_jobs_type_status", "type", "status"),
    )
