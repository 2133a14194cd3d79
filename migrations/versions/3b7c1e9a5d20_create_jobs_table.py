"""create jobs table

Revision ID: 3b7c1e9a5d20
Revises:
Create Date: 2026-10-19 09:12:31.418220

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b7c1e9a5d20"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "jobs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("type", sa.Text, nullable=False, comment="Job type identifier"),
        sa.Column(
            "payload",
            sa.JSON,
            nullable=False,
            comment="Job-specific parameters",
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="pending",
            comment="Job status: pending|processing|completed|failed",
        ),
        sa.Column(
            "priority",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Higher priority is claimed first",
        ),
        sa.Column(
            "attempts",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Number of claims so far",
        ),
        sa.Column(
            "max_retries",
            sa.Integer,
            nullable=False,
            server_default="3",
            comment="Retry budget fixed at enqueue time",
        ),
        sa.Column(
            "scheduled_for",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            comment="Earliest time to run job",
        ),
        # Worker coordination fields
        sa.Column(
            "started_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="When the current claim started",
        ),
        sa.Column(
            "completed_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="When the job reached a terminal status",
        ),
        sa.Column(
            "claim_token",
            sa.Text,
            nullable=True,
            comment="Token written by the claim that holds the job",
        ),
        sa.Column(
            "locked_by", sa.Text, nullable=True, comment="Worker ID that claimed the job"
        ),
        # Failure detail
        sa.Column("error", sa.Text, nullable=True, comment="Current error"),
        sa.Column("last_error", sa.Text, nullable=True, comment="Last error message"),
        sa.Column(
            "last_error_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="When the last error happened",
        ),
        # Timestamps
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        # Constraints
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="jobs_status_check",
        ),
        sa.CheckConstraint("attempts >= 0", name="jobs_attempts_check"),
    )

    # Claim scans pending rows by due time, then priority and age
    op.create_index(
        "ix_jobs_claim", "jobs", ["status", "scheduled_for", "priority", "created_at"]
    )
    op.create_index("ix_jobs_status_started_at", "jobs", ["status", "started_at"])
    op.create_index("ix_jobs_status_completed_at", "jobs", ["status", "completed_at"])
    op.create_index("ix_jobs_type_status", "jobs", ["type", "status"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("jobs")
