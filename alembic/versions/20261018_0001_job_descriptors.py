"""Job descriptor schema with principals (baseline)."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index("ix_users_display_name", "users", ["display_name"])

    op.create_table(
        "job_descriptors",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("signature", sa.String(), nullable=False),
        sa.Column("implementation", sa.String(), nullable=False),
        sa.Column("queue_type", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("start_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_steps", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("steps_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_processed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("resume_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("run_as", sa.String(), nullable=True),
        sa.Column("job_started", sa.DateTime(timezone=True), nullable=True),
        sa.Column("job_restarted", sa.DateTime(timezone=True), nullable=True),
        sa.Column("job_finished", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=True),
        sa.Column("messages_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_descriptors_signature", "job_descriptors", ["signature"])
    op.create_index("ix_job_descriptors_status", "job_descriptors", ["status"])
    op.create_index("ix_job_descriptors_run_as", "job_descriptors", ["run_as"])
    op.create_index(
        "idx_job_descriptors_queue",
        "job_descriptors",
        ["queue_type", "status", "id"],
    )
    op.create_index(
        "uq_job_descriptors_new_signature",
        "job_descriptors",
        ["signature"],
        unique=True,
        sqlite_where=sa.text("status = 'new'"),
    )


def downgrade() -> None:
    op.drop_index("uq_job_descriptors_new_signature", table_name="job_descriptors")
    op.drop_index("idx_job_descriptors_queue", table_name="job_descriptors")
    op.drop_index("ix_job_descriptors_run_as", table_name="job_descriptors")
    op.drop_index("ix_job_descriptors_status", table_name="job_descriptors")
    op.drop_index("ix_job_descriptors_signature", table_name="job_descriptors")
    op.drop_table("job_descriptors")
    op.drop_index("ix_users_display_name", table_name="users")
    op.drop_table("users")
