"""generation jobs and per-unit task ledger

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _is_postgresql() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def upgrade() -> None:
    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("owner_ref", sa.String(length=64), nullable=False),
        sa.Column("subject_ref", sa.String(length=64), nullable=False),
        sa.Column("style_id", sa.String(length=40), nullable=False),
        sa.Column("total_units", sa.Integer(), nullable=False),
        sa.Column("completed_units", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.String(length=500), nullable=True),
        sa.Column("idempotency_key", sa.String(length=80), nullable=True),
        sa.Column("reference_inputs_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("explicit_unit_texts_json", sa.Text(), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("owner_ref", "idempotency_key", name="uq_generation_jobs_owner_idempotency"),
        sa.CheckConstraint("total_units >= 1", name="ck_generation_jobs_total_units_positive"),
        sa.CheckConstraint(
            "completed_units >= 0 AND completed_units <= total_units",
            name="ck_generation_jobs_completed_units_range",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_generation_jobs_status",
        ),
    )
    op.create_index(
        "ix_generation_jobs_status_updated_at",
        "generation_jobs",
        ["status", "updated_at"],
        unique=False,
    )
    op.create_index(
        "ix_generation_jobs_owner_created_at",
        "generation_jobs",
        ["owner_ref", "created_at"],
        unique=False,
    )

    op.create_table(
        "task_ledger_entries",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("job_id", sa.String(length=36), nullable=False),
        sa.Column("unit_index", sa.Integer(), nullable=False),
        sa.Column("external_task_id", sa.String(length=128), nullable=True),
        sa.Column("prompt_snapshot", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.String(length=500), nullable=True),
        sa.Column("result_url", sa.String(length=1000), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id", "unit_index", name="uq_task_ledger_job_unit"),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="ck_task_ledger_status",
        ),
    )
    op.create_index(
        "ix_task_ledger_status_created_at",
        "task_ledger_entries",
        ["status", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_task_ledger_external_task_id",
        "task_ledger_entries",
        ["external_task_id"],
        unique=False,
    )

    if _is_postgresql():
        # Pending rows are scanned oldest-first by the poller.
        op.execute(
            sa.text(
                "CREATE INDEX IF NOT EXISTS ix_task_ledger_pending_created_at "
                "ON task_ledger_entries (created_at) WHERE status = 'pending'"
            )
        )


def downgrade() -> None:
    if _is_postgresql():
        op.execute(sa.text("DROP INDEX IF EXISTS ix_task_ledger_pending_created_at"))

    op.drop_index("ix_task_ledger_external_task_id", table_name="task_ledger_entries")
    op.drop_index("ix_task_ledger_status_created_at", table_name="task_ledger_entries")
    op.drop_table("task_ledger_entries")

    op.drop_index("ix_generation_jobs_owner_created_at", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_status_updated_at", table_name="generation_jobs")
    op.drop_table("generation_jobs")
