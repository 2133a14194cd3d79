"""
Job queue Pydantic schemas.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from jobqueue.core.registries import job_type_name
from jobqueue.jobs.models import JobStatus


class JobSpec(BaseModel):
    """Schema for enqueueing a new job."""

    # Unknown keys fail validation
    model_config = ConfigDict(extra="forbid")

    type: str = Field(..., min_length=1, description="Job type identifier")
    data: dict[str, Any] = Field(default_factory=dict, description="Job payload")
    priority: int = Field(default=0, description="Higher values are claimed first")
    delay_ms: int | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("delay_ms", "delay"),
        description="Delay in milliseconds before the job becomes eligible",
    )
    max_retries: int | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("max_retries", "maxRetries"),
        description="Override the handler and global retry budget",
    )

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, value: Any) -> Any:
        if isinstance(value, Enum):
            return job_type_name(value)
        return value


class NewJob(BaseModel):
    """A fully resolved job handed to the store for insertion."""

    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    max_retries: int
    scheduled_for: datetime


class JobRecord(BaseModel):
    """Snapshot of a stored job."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus
    priority: int = 0
    attempts: int = 0
    max_retries: int
    scheduled_for: datetime

    # Worker coordination
    started_at: datetime | None = None
    completed_at: datetime | None = None
    claim_token: str | None = None
    locked_by: str | None = None

    # Failure detail
    error: str | None = None
    last_error: str | None = None
    last_error_at: datetime | None = None

    created_at: datetime
    updated_at: datetime

    @field_validator(
        "scheduled_for",
        "started_at",
        "completed_at",
        "last_error_at",
        "created_at",
        "updated_at",
    )
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        # SQLite hands timestamps back without tzinfo; every stored time is UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


@dataclass(frozen=True)
class JobContext:
    """What a handler receives for one execution attempt."""

    id: UUID
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    attempts: int = 1
    max_retries: int = 0

    @classmethod
    def from_record(cls, job: JobRecord) -> "JobContext":
        return cls(
            id=job.id,
            type=job.type,
            payload=dict(job.payload),
            attempts=job.attempts,
            max_retries=job.max_retries,
        )


class QueueStats(BaseModel):
    """Schema for queue statistics."""

    pending: int
    processing: int
    completed: int
    failed: int
    total: int
    active_workers: int
    is_polling: bool
    is_shutting_down: bool
