"""SQLModel ORM tables for job descriptor storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text, text
from sqlmodel import Field, SQLModel

DEFAULT_USER_ID = "default_user"


class AppUser(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True)
    display_name: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobDescriptorRow(SQLModel, table=True):
    __tablename__ = "job_descriptors"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_job_descriptors_queue", "queue_type", "status", "id"),
        Index(
            "uq_job_descriptors_new_signature",
            "signature",
            unique=True,
            sqlite_where=text("status = 'new'"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    title: str
    signature: str = Field(index=True)
    implementation: str
    queue_type: int = Field(default=2)
    status: str = Field(index=True)
    start_after: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    total_steps: int = Field(default=0)
    steps_processed: int = Field(default=0)
    last_processed_count: int = Field(default=0)
    resume_count: int = Field(default=0)
    run_as: str | None = Field(default=None, index=True)
    job_started: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    job_restarted: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    job_finished: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    messages_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
