"""create_generation_pipeline_tables

Revision ID: 3f1c9a27d5e4
Revises:
Create Date: 2025-11-10 09:12:41.318204

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f1c9a27d5e4"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# SQLModel stores str enums by member name
generation_mode = sa.Enum(
    "TEXT_TO_IMAGE", "IMAGE_TO_IMAGE", "TEXT_TO_VIDEO", "IMAGE_TO_VIDEO", name="generationmode"
)
capability = sa.Enum("IMAGE", "VIDEO", name="capability")
job_state = sa.Enum("QUEUED", "PROCESSING", "SUCCEEDED", "FAILED", name="jobstate")
attempt_outcome = sa.Enum(
    "SUCCESS",
    "TRANSIENT_ERROR",
    "PERMANENT_ERROR",
    "TIMEOUT",
    "MODEL_UNAVAILABLE",
    name="attemptoutcome",
)


def upgrade() -> None:
    """Create job ledger, attempt log, artifact index and table-backed queue."""
    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("mode", generation_mode, nullable=False),
        sa.Column("capability", capability, nullable=False),
        sa.Column("inputs", sa.JSON(), nullable=False),
        sa.Column("state", job_state, nullable=False),
        sa.Column("chain_runs", sa.Integer(), nullable=False),
        sa.Column("result", sa.String(length=1024), nullable=True),
        sa.Column("last_error", sa.String(length=2000), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_generation_jobs_idempotency_key", "generation_jobs", ["idempotency_key"], unique=True
    )
    op.create_index("ix_generation_jobs_capability", "generation_jobs", ["capability"])
    op.create_index("ix_generation_jobs_state", "generation_jobs", ["state"])

    op.create_table(
        "provider_attempts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("chain_run", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("model", sa.String(length=255), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=False),
        sa.Column("outcome", attempt_outcome, nullable=False),
        sa.Column("error_detail", sa.String(length=2000), nullable=True),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id", "sequence", name="uq_provider_attempts_job_seq"),
    )
    op.create_index("ix_provider_attempts_job_id", "provider_attempts", ["job_id"])

    op.create_table(
        "artifacts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=False),
        sa.Column("capability", capability, nullable=False),
        sa.Column("media_type", sa.String(length=100), nullable=False),
        sa.Column("storage_ref", sa.String(length=1024), nullable=False),
        sa.Column("public_url", sa.String(length=2048), nullable=True),
        sa.Column("size_bytes", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_artifacts_job_id", "artifacts", ["job_id"], unique=True)

    op.create_table(
        "queue_messages",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("queue_name", sa.String(length=100), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("visible_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("read_count", sa.Integer(), nullable=False),
        sa.Column("poisoned", sa.Boolean(), nullable=False),
        sa.Column("dead_letter_reason", sa.String(length=1000), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_queue_messages_queue_name", "queue_messages", ["queue_name"])
    op.create_index("ix_queue_messages_visible_at", "queue_messages", ["visible_at"])
    op.create_index("ix_queue_messages_poisoned", "queue_messages", ["poisoned"])


def downgrade() -> None:
    """Drop pipeline tables and enum types."""
    op.drop_table("queue_messages")
    op.drop_table("artifacts")
    op.drop_table("provider_attempts")
    op.drop_table("generation_jobs")

    bind = op.get_bind()
    for enum_type in (attempt_outcome, job_state, capability, generation_mode):
        enum_type.drop(bind, checkfirst=True)
