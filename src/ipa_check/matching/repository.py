"""Persistent queue and lease state for match tasks."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import case, func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from ipa_check.matching.errors import TaskNotFoundError
from ipa_check.matching.models import (
    FailureClass,
    Lease,
    MatchTaskView,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskOutcome,
    TaskPage,
    TaskStats,
    TaskStatus,
)
from ipa_check.storage.alembic_runner import upgrade_head
from ipa_check.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from ipa_check.storage.sqlmodel_models import MatchTask, MatchTaskEvent

logger = logging.getLogger(__name__)


class TaskRepository:
    """Queue persistence facade backed by SQLModel + SQLite.

    Every state transition is a conditional ``UPDATE`` whose ``WHERE`` clause
    restates the expected current state, so concurrent callers (threads or
    processes sharing the database file) race on the row instead of on
    in-memory state. A zero rowcount means someone else got there first.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_task(self, payload: TaskCreate) -> MatchTaskView:
        """Create a pending task."""

        now = to_db_datetime(utc_now())
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            row = MatchTask(
                task_id=task_id,
                artifact_a_name=payload.artifact_a_name,
                artifact_a_hash=_normalize_hash(payload.artifact_a_hash),
                artifact_b_name=payload.artifact_b_name,
                artifact_b_hash=_normalize_hash(payload.artifact_b_hash),
                status=TaskStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={
                    "artifact_a_name": payload.artifact_a_name,
                    "artifact_b_name": payload.artifact_b_name,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def lease_next(
        self,
        *,
        worker_id: str,
        worker_address: str,
        lease_duration: timedelta,
    ) -> MatchTaskView | None:
        """Atomically lease the oldest pending task, or return None."""

        while True:
            now = utc_now()
            lease_expiry = to_db_datetime(now + lease_duration)
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(MatchTask)
                    .where(MatchTask.status == TaskStatus.PENDING.value)
                    .order_by(col(MatchTask.created_at).asc(), col(MatchTask.task_id).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(MatchTask)
                    .where(
                        col(MatchTask.task_id) == candidate.task_id,
                        col(MatchTask.status) == TaskStatus.PENDING.value,
                    )
                    .values(
                        status=TaskStatus.PROCESSING.value,
                        worker_id=worker_id,
                        worker_address=worker_address,
                        lease_expiry=lease_expiry,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                leased = session.exec(
                    select(MatchTask)
                    .where(MatchTask.task_id == candidate.task_id)
                    .execution_options(populate_existing=True),
                ).one()
                self._add_event(
                    session=session,
                    task_id=leased.task_id,
                    event_type="leased",
                    status_from=TaskStatus.PENDING,
                    status_to=TaskStatus.PROCESSING,
                    details={
                        "worker_id": worker_id,
                        "worker_address": worker_address,
                        "lease_expiry": to_utc_aware_datetime(lease_expiry).isoformat(),
                    },
                )
                view = _to_task_view(leased)
                session.commit()
                return view

    def finalize(
        self,
        task_id: str,
        outcome: TaskOutcome,
        *,
        lease: Lease | None = None,
    ) -> bool:
        """Move a processing task to its terminal outcome.

        Returns False without touching the row when the task is no longer
        processing, or when ``lease`` is given and the row holds a different
        lease (it was reclaimed and possibly re-leased).
        """

        now = to_db_datetime(utc_now())
        conditions = [
            col(MatchTask.task_id) == task_id,
            col(MatchTask.status) == TaskStatus.PROCESSING.value,
        ]
        if lease is not None:
            conditions.append(col(MatchTask.worker_id) == lease.worker_id)
            conditions.append(col(MatchTask.lease_expiry) == to_db_datetime(lease.lease_expiry))

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(MatchTask)
                .where(*conditions)
                .values(
                    status=outcome.status.value,
                    similarity_score=outcome.similarity_score,
                    error_message=outcome.error_message,
                    failure_class=(
                        outcome.failure_class.value if outcome.failure_class is not None else None
                    ),
                    worker_id=None,
                    worker_address=None,
                    lease_expiry=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                self._get_task_row(session=session, task_id=task_id)
                logger.info("Finalize ignored for task %s: no matching active lease", task_id)
                return False

            details: dict[str, object] = {}
            if outcome.status == TaskStatus.COMPLETED:
                details["similarity_score"] = outcome.similarity_score
            else:
                details["error_message"] = outcome.error_message
                if outcome.failure_class is not None:
                    details["failure_class"] = outcome.failure_class.value
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=outcome.status.value,
                status_from=TaskStatus.PROCESSING,
                status_to=outcome.status,
                details=details,
            )
            session.commit()
            return True

    def reclaim_expired(self, *, now: datetime | None = None) -> int:
        """Return abandoned leases to pending; report how many were reset."""

        cutoff = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            snapshots = session.exec(
                select(MatchTask).where(
                    MatchTask.status == TaskStatus.PROCESSING.value,
                    col(MatchTask.lease_expiry).is_not(None),
                    col(MatchTask.lease_expiry) < cutoff,
                ),
            ).all()
            leases = [
                (row.task_id, row.worker_id, row.worker_address, row.lease_expiry)
                for row in snapshots
            ]

        reclaimed = 0
        for task_id, worker_id, worker_address, lease_expiry in leases:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(MatchTask)
                    .where(
                        col(MatchTask.task_id) == task_id,
                        col(MatchTask.status) == TaskStatus.PROCESSING.value,
                        col(MatchTask.worker_id) == worker_id,
                        col(MatchTask.lease_expiry) == lease_expiry,
                    )
                    .values(
                        status=TaskStatus.PENDING.value,
                        worker_id=None,
                        worker_address=None,
                        lease_expiry=None,
                        updated_at=to_db_datetime(utc_now()),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="reclaimed",
                    status_from=TaskStatus.PROCESSING,
                    status_to=TaskStatus.PENDING,
                    details={
                        "worker_id": worker_id,
                        "worker_address": worker_address,
                        "lease_expiry": (
                            to_utc_aware_datetime(lease_expiry).isoformat()
                            if lease_expiry is not None
                            else None
                        ),
                    },
                )
                session.commit()
                reclaimed += 1
                logger.warning(
                    "Reclaimed task %s from expired lease of worker %s",
                    task_id,
                    worker_id,
                )
        return reclaimed

    def retry(self, task_id: str) -> bool:
        """Manual operator retry: failed -> pending."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(MatchTask)
                .where(
                    col(MatchTask.task_id) == task_id,
                    col(MatchTask.status) == TaskStatus.FAILED.value,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    similarity_score=None,
                    error_message=None,
                    failure_class=None,
                    worker_id=None,
                    worker_address=None,
                    lease_expiry=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="retried",
                status_from=TaskStatus.FAILED,
                status_to=TaskStatus.PENDING,
                details={},
            )
            session.commit()
            return True

    def get_task(self, task_id: str) -> MatchTaskView | None:
        with Session(self.engine) as session:
            row = session.exec(select(MatchTask).where(MatchTask.task_id == task_id)).one_or_none()
            return _to_task_view(row) if row is not None else None

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.exec(
                select(MatchTask).where(MatchTask.task_id == task_id),
            ).one_or_none()
            if task is None:
                return None

            event_rows = session.exec(
                select(MatchTaskEvent)
                .where(MatchTaskEvent.task_id == task_id)
                .order_by(col(MatchTaskEvent.created_at).asc(), col(MatchTaskEvent.id).asc()),
            ).all()
            task_view = _to_task_view(task)

        events: list[TaskEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=task_view, events=events)

    def stats(self) -> TaskStats:
        """Count tasks per status in one query."""

        def _count(status: TaskStatus):
            return func.coalesce(
                func.sum(case((col(MatchTask.status) == status.value, 1), else_=0)),
                0,
            )

        with Session(self.engine) as session:
            row = session.exec(
                select(
                    func.count(),
                    _count(TaskStatus.PENDING),
                    _count(TaskStatus.PROCESSING),
                    _count(TaskStatus.COMPLETED),
                    _count(TaskStatus.FAILED),
                ).select_from(MatchTask),
            ).one()
        total, pending, processing, completed, failed = (int(value) for value in row)
        return TaskStats(
            total=total,
            pending=pending,
            processing=processing,
            completed=completed,
            failed=failed,
        )

    def list_tasks(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        status: TaskStatus | None = None,
    ) -> TaskPage:
        """List recent tasks, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(MatchTask)
            count_statement = select(func.count()).select_from(MatchTask)
            if status is not None:
                statement = statement.where(MatchTask.status == status.value)
                count_statement = count_statement.where(MatchTask.status == status.value)
            total = session.exec(count_statement).one()
            rows = session.exec(
                statement.order_by(col(MatchTask.created_at).desc(), col(MatchTask.task_id).asc())
                .offset(offset)
                .limit(limit),
            ).all()
            tasks = [_to_task_view(row) for row in rows]
        return TaskPage(tasks=tasks, total=int(total), limit=limit, offset=offset)

    def _get_task_row(self, *, session: Session, task_id: str) -> MatchTask:
        row = session.exec(select(MatchTask).where(MatchTask.task_id == task_id)).one_or_none()
        if row is None:
            raise TaskNotFoundError(task_id)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            MatchTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _normalize_hash(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    return normalized or None


def _to_task_view(row: MatchTask) -> MatchTaskView:
    return MatchTaskView(
        task_id=row.task_id,
        artifact_a_name=row.artifact_a_name,
        artifact_a_hash=row.artifact_a_hash,
        artifact_b_name=row.artifact_b_name,
        artifact_b_hash=row.artifact_b_hash,
        status=TaskStatus(row.status),
        similarity_score=row.similarity_score,
        error_message=row.error_message,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        worker_id=row.worker_id,
        worker_address=row.worker_address,
        lease_expiry=(
            to_utc_aware_datetime(row.lease_expiry) if row.lease_expiry is not None else None
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
