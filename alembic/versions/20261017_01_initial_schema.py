"""Job store schema: jobs, items and dispatch records."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "20261017_01"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "optimization_job",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("owner_ref", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("item_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("group_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pushed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("preset_type", sa.String(length=32)),
        sa.Column("preset_id", sa.String(length=128)),
        sa.Column("custom_prompt", sa.Text()),
        sa.Column("prompt", sa.Text()),
        sa.Column("ai_model", sa.String(length=64), nullable=False),
        sa.Column(
            "approval_mode", sa.String(length=16), nullable=False, server_default="preview"
        ),
        sa.Column(
            "trigger_type", sa.String(length=16), nullable=False, server_default="manual"
        ),
        sa.Column("last_error", sa.Text()),
        sa.Column(
            "created_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("expires_at", sa.DateTime()),
        sa.Column("approved_at", sa.DateTime()),
        sa.Column("completed_at", sa.DateTime()),
    )
    op.create_index("ix_optimization_job_owner_ref", "optimization_job", ["owner_ref"])
    op.create_index("ix_optimization_job_status", "optimization_job", ["status"])

    op.create_table(
        "job_item",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column(
            "job_id",
            sa.String(length=64),
            sa.ForeignKey("optimization_job.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("group_ref", sa.String(length=128), nullable=False),
        sa.Column("image_ref", sa.String(length=128), nullable=False),
        sa.Column("title", sa.String(length=512)),
        sa.Column("position", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("source_ref", sa.String(length=1024), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("provider_reference", sa.String(length=128)),
        sa.Column("result_ref", sa.String(length=1024)),
        sa.Column("error_message", sa.Text()),
        sa.Column("push_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pushed_at", sa.DateTime()),
        sa.Column(
            "created_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_job_item_job_id", "job_item", ["job_id"])
    op.create_index("ix_job_item_status", "job_item", ["status"])

    op.create_table(
        "dispatch_record",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "item_id",
            sa.String(length=64),
            sa.ForeignKey("job_item.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("outcome", sa.String(length=16), nullable=False),
        sa.Column("dispatched_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime()),
        sa.Column("error_message", sa.Text()),
    )
    op.create_index("ix_dispatch_record_item_id", "dispatch_record", ["item_id"])


def downgrade() -> None:
    op.drop_index("ix_dispatch_record_item_id", table_name="dispatch_record")
    op.drop_table("dispatch_record")
    op.drop_index("ix_job_item_status", table_name="job_item")
    op.drop_index("ix_job_item_job_id", table_name="job_item")
    op.drop_table("job_item")
    op.drop_index("ix_optimization_job_status", table_name="optimization_job")
    op.drop_index("ix_optimization_job_owner_ref", table_name="optimization_job")
    op.drop_table("optimization_job")
