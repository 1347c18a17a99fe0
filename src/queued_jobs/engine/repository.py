"""Persistent descriptor store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Collection, Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from queued_jobs.engine.errors import DescriptorNotFoundError
from queued_jobs.engine.models import (
    ACTIVE_STATUSES,
    JobDescriptor,
    JobDescriptorCreate,
    JobMessage,
    JobStatus,
)
from queued_jobs.engine.principal import Principal
from queued_jobs.storage.alembic_runner import upgrade_head
from queued_jobs.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from queued_jobs.storage.sqlmodel_models import DEFAULT_USER_ID, AppUser, JobDescriptorRow


class DescriptorRepository:
    """Job descriptor persistence facade."""

    def __init__(
        self,
        db_path: Path,
        *,
        user_id: str = DEFAULT_USER_ID,
        user_name: str = "Default User",
        sqlite_busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = db_path
        self.user_id = user_id
        self.user_name = user_name
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations and ensure the default principal exists."""

        upgrade_head(self.db_path)
        self.ensure_principal(self.user_id, self.user_name)

    def ensure_principal(self, user_id: str, display_name: str) -> Principal:
        with Session(self.engine) as session:
            user = session.exec(select(AppUser).where(AppUser.user_id == user_id)).one_or_none()
            if user is None:
                user = AppUser(user_id=user_id, display_name=display_name, created_at=utc_now())
                session.add(user)
                session.commit()
                session.refresh(user)
            return Principal(user_id=user.user_id, display_name=user.display_name)

    def get_principal(self, user_id: str) -> Principal | None:
        with Session(self.engine) as session:
            user = session.exec(select(AppUser).where(AppUser.user_id == user_id)).one_or_none()
        if user is None:
            return None
        return Principal(user_id=user.user_id, display_name=user.display_name)

    def create(self, payload: JobDescriptorCreate) -> JobDescriptor:
        """Persist a new descriptor.

        If another writer inserted a ``new`` descriptor with the same signature
        first, that descriptor is returned instead.
        """

        now = utc_now()
        state = payload.state
        status = JobStatus.COMPLETE if state.is_complete else JobStatus.NEW
        row = JobDescriptorRow(
            title=payload.title,
            signature=payload.signature,
            implementation=payload.implementation,
            queue_type=int(payload.queue_type),
            status=status.value,
            start_after=(
                to_db_datetime(payload.start_after) if payload.start_after is not None else None
            ),
            total_steps=state.total_steps,
            steps_processed=state.current_step,
            run_as=payload.run_as,
            job_finished=to_db_datetime(now) if state.is_complete else None,
            payload_json=_dump_payload(state.payload),
            messages_json=_dump_messages(state.messages),
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return self.find_new_by_signature(payload.signature)
            session.refresh(row)
            return _to_descriptor(row)

    def find_new_by_signature(self, signature: str) -> JobDescriptor:
        with Session(self.engine) as session:
            row = session.exec(
                select(JobDescriptorRow)
                .where(
                    JobDescriptorRow.signature == signature,
                    JobDescriptorRow.status == JobStatus.NEW.value,
                )
                .order_by(col(JobDescriptorRow.id).asc())
                .limit(1),
            ).one_or_none()
        if row is None:
            raise DescriptorNotFoundError(f"signature={signature}")
        return _to_descriptor(row)

    def get(self, descriptor_id: int) -> JobDescriptor:
        with Session(self.engine) as session:
            row = session.get(JobDescriptorRow, descriptor_id)
        if row is None:
            raise DescriptorNotFoundError(descriptor_id)
        return _to_descriptor(row)

    def find_active_by_type(self, queue_type: int) -> list[JobDescriptor]:
        return self._find_by_type(queue_type, ACTIVE_STATUSES)

    def find_waiting_by_type(self, queue_type: int) -> list[JobDescriptor]:
        return self._find_by_type(queue_type, (JobStatus.WAIT,))

    def find_eligible_new(self, queue_type: int, now: datetime) -> list[JobDescriptor]:
        """New descriptors whose start time has come, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(JobDescriptorRow)
                .where(
                    JobDescriptorRow.queue_type == int(queue_type),
                    JobDescriptorRow.status == JobStatus.NEW.value,
                    or_(
                        col(JobDescriptorRow.start_after).is_(None),
                        col(JobDescriptorRow.start_after) <= to_db_datetime(now),
                    ),
                )
                .order_by(col(JobDescriptorRow.id).asc()),
            ).all()
        return [_to_descriptor(row) for row in rows]

    def find_by_status(
        self,
        statuses: Iterable[JobStatus],
        *,
        queue_type: int | None = None,
    ) -> list[JobDescriptor]:
        with Session(self.engine) as session:
            statement = (
                select(JobDescriptorRow)
                .where(col(JobDescriptorRow.status).in_([status.value for status in statuses]))
                .order_by(col(JobDescriptorRow.id).asc())
            )
            if queue_type is not None:
                statement = statement.where(JobDescriptorRow.queue_type == int(queue_type))
            rows = session.exec(statement).all()
        return [_to_descriptor(row) for row in rows]

    def list_descriptors(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobDescriptor]:
        """List recent descriptors, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = (
                select(JobDescriptorRow).order_by(col(JobDescriptorRow.id).desc()).limit(limit)
            )
            if status is not None:
                statement = statement.where(JobDescriptorRow.status == status.value)
            rows = session.exec(statement).all()
        return [_to_descriptor(row) for row in rows]

    def update(self, descriptor: JobDescriptor) -> JobDescriptor:
        """Persist the full descriptor state."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(JobDescriptorRow, descriptor.id)
            if row is None:
                raise DescriptorNotFoundError(descriptor.id)
            row.title = descriptor.title
            row.status = descriptor.status.value
            row.start_after = _optional_db(descriptor.start_after)
            row.total_steps = descriptor.total_steps
            row.steps_processed = descriptor.steps_processed
            row.last_processed_count = descriptor.last_processed_count
            row.resume_count = descriptor.resume_count
            row.run_as = descriptor.run_as
            row.job_started = _optional_db(descriptor.job_started)
            row.job_restarted = _optional_db(descriptor.job_restarted)
            row.job_finished = _optional_db(descriptor.job_finished)
            row.payload_json = _dump_payload(descriptor.payload)
            row.messages_json = _dump_messages(descriptor.messages)
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_descriptor(row)

    def save_progress(self, descriptor: JobDescriptor, *, expected_status: JobStatus) -> bool:
        """Write the descriptor if its stored status is still ``expected_status``.

        When another actor changed the status meanwhile, only the progress
        snapshot is written and the foreign status is kept.
        """

        now = to_db_datetime(utc_now())
        progress = {
            "total_steps": descriptor.total_steps,
            "steps_processed": descriptor.steps_processed,
            "payload_json": _dump_payload(descriptor.payload),
            "messages_json": _dump_messages(descriptor.messages),
            "updated_at": now,
        }
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobDescriptorRow)
                .where(
                    col(JobDescriptorRow.id) == descriptor.id,
                    col(JobDescriptorRow.status) == expected_status.value,
                )
                .values(
                    status=descriptor.status.value,
                    job_started=_optional_db(descriptor.job_started),
                    job_restarted=_optional_db(descriptor.job_restarted),
                    job_finished=_optional_db(descriptor.job_finished),
                    **progress,
                ),
            )
            if result.rowcount == 1:
                session.commit()
                return True
            session.exec(
                sa_update(JobDescriptorRow)
                .where(col(JobDescriptorRow.id) == descriptor.id)
                .values(**progress),
            )
            session.commit()
            return False

    def refresh_progress_baselines(self) -> int:
        """Set ``last_processed_count = steps_processed`` for every running descriptor."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobDescriptorRow)
                .where(col(JobDescriptorRow.status) == JobStatus.RUN.value)
                .values(
                    last_processed_count=JobDescriptorRow.steps_processed,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def transition(
        self,
        descriptor_id: int,
        *,
        from_statuses: Collection[JobStatus],
        to_status: JobStatus,
        message: JobMessage | None = None,
        **values: Any,
    ) -> bool:
        """Atomically move a descriptor to ``to_status`` if it is still in ``from_statuses``.

        ``message`` is appended to the descriptor log in the same write.
        """

        now = utc_now()
        with Session(self.engine) as session:
            if message is not None:
                row = session.get(JobDescriptorRow, descriptor_id)
                if row is None:
                    return False
                messages = [*_load_messages(row.messages_json), message]
                values["messages_json"] = _dump_messages(messages)
            result = session.exec(
                sa_update(JobDescriptorRow)
                .where(
                    col(JobDescriptorRow.id) == descriptor_id,
                    col(JobDescriptorRow.status).in_([status.value for status in from_statuses]),
                )
                .values(
                    status=to_status.value,
                    updated_at=to_db_datetime(now),
                    **values,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def count_by_type(
        self,
        queue_types: Iterable[int],
        *,
        include_finished_within: timedelta | None = None,
    ) -> dict[int, int]:
        """Count unfinished descriptors per queue type.

        With ``include_finished_within``, jobs completed inside that window are
        counted as well.
        """

        wanted = [int(queue_type) for queue_type in queue_types]
        condition = col(JobDescriptorRow.status) != JobStatus.COMPLETE.value
        if include_finished_within is not None:
            cutoff = to_db_datetime(utc_now() - include_finished_within)
            condition = or_(condition, col(JobDescriptorRow.job_finished) > cutoff)
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobDescriptorRow.queue_type, func.count())
                .where(col(JobDescriptorRow.queue_type).in_(wanted), condition)
                .group_by(JobDescriptorRow.queue_type),
            ).all()
        counts = dict.fromkeys(wanted, 0)
        for queue_type, count in rows:
            counts[int(queue_type)] = int(count)
        return counts

    def _find_by_type(
        self,
        queue_type: int,
        statuses: Iterable[JobStatus],
    ) -> list[JobDescriptor]:
        return self.find_by_status(statuses, queue_type=queue_type)


def _optional_db(value: datetime | None) -> datetime | None:
    return to_db_datetime(value) if value is not None else None


def _dump_payload(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _dump_messages(messages: list[JobMessage]) -> str:
    return json.dumps([message.to_json() for message in messages], ensure_ascii=False)


def _load_payload(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _load_messages(raw: str | None) -> list[JobMessage]:
    if not raw:
        return []
    parsed = json.loads(raw)
    if not isinstance(parsed, list):
        return []
    return [JobMessage.from_json(item) for item in parsed if isinstance(item, dict)]


def _to_descriptor(row: JobDescriptorRow) -> JobDescriptor:
    return JobDescriptor(
        id=row.id or 0,
        title=row.title,
        signature=row.signature,
        implementation=row.implementation,
        queue_type=row.queue_type,
        status=JobStatus(row.status),
        start_after=optional_utc(row.start_after),
        total_steps=row.total_steps,
        steps_processed=row.steps_processed,
        last_processed_count=row.last_processed_count,
        resume_count=row.resume_count,
        run_as=row.run_as,
        job_started=optional_utc(row.job_started),
        job_restarted=optional_utc(row.job_restarted),
        job_finished=optional_utc(row.job_finished),
        payload=_load_payload(row.payload_json),
        messages=_load_messages(row.messages_json),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
