"""
Storage for job records and scrape sources.

Two implementations share one interface: ``MemoryJobStore`` (tests, throwaway
runs) and ``SqlJobStore`` (the durable ``job_queue`` table). Every status
change goes through ``_transition`` which only applies when the record is in
one of the expected statuses, so concurrent claimants and late handler writes
can never clobber each other.
"""
import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import Counter, defaultdict
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import SQLAlchemyError

from .db import Base, make_engine, make_session_factory
from .errors import StoreError
from .models import JobRow, ScrapeSourceRow
from .records import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    JobRecord,
    JobStatus,
    ScrapeSource,
    as_utc,
)

log = logging.getLogger("store")

SOURCE_FIELDS = ("name", "base_url", "is_active", "rate_limit", "config")


class JobStore(ABC):
    # ---------- jobs: primitives ----------
    @abstractmethod
    def ping(self) -> None: ...

    @abstractmethod
    def insert_job(self, record: JobRecord) -> None: ...

    @abstractmethod
    def get_job(self, job_id: str) -> JobRecord | None: ...

    @abstractmethod
    def list_jobs(self, status: JobStatus | None = None, type: str | None = None, limit: int = 50) -> list[JobRecord]: ...

    @abstractmethod
    def list_due(self, now: datetime, limit: int) -> list[JobRecord]:
        """PENDING records with scheduled_for <= now, priority desc then created_at asc."""

    @abstractmethod
    def list_stale(self, cutoff: datetime, limit: int) -> list[JobRecord]:
        """PROCESSING records not touched since ``cutoff``."""

    @abstractmethod
    def _transition(
        self,
        job_id: str,
        expected: Iterable[JobStatus],
        changes: dict[str, Any],
        *,
        bump_attempts: bool = False,
        exhaust_attempts: bool = False,
    ) -> bool:
        """Apply ``changes`` only if the record's status is in ``expected``."""

    @abstractmethod
    def stats(self) -> dict[str, Any]: ...

    @abstractmethod
    def delete_terminal_before(self, cutoff: datetime) -> int: ...

    # ---------- jobs: state machine ----------
    def claim(self, job_id: str, now: datetime) -> JobRecord | None:
        won = self._transition(
            job_id,
            (JobStatus.pending,),
            {"status": JobStatus.processing, "updated_at": now},
            bump_attempts=True,
        )
        return self.get_job(job_id) if won else None

    def claim_due(self, now: datetime, limit: int) -> list[JobRecord]:
        claimed = []
        for candidate in self.list_due(now, limit):
            record = self.claim(candidate.id, now)
            if record is not None:
                claimed.append(record)
        return claimed

    def finish(self, job_id: str, now: datetime, result: str | None) -> bool:
        return self._transition(
            job_id,
            (JobStatus.processing,),
            {"status": JobStatus.completed, "result": result, "error": None,
             "completed_at": now, "updated_at": now},
        )

    def reschedule(self, job_id: str, now: datetime, scheduled_for: datetime, error: str) -> bool:
        return self._transition(
            job_id,
            (JobStatus.processing,),
            {"status": JobStatus.pending, "scheduled_for": scheduled_for, "error": error,
             "result": None, "updated_at": now},
        )

    def fail(self, job_id: str, now: datetime, error: str, exhaust: bool = False) -> bool:
        return self._transition(
            job_id,
            (JobStatus.processing,),
            {"status": JobStatus.failed, "error": error, "result": None,
             "completed_at": now, "updated_at": now},
            exhaust_attempts=exhaust,
        )

    def cancel(self, job_id: str, now: datetime) -> bool:
        return self._transition(
            job_id,
            ACTIVE_STATUSES,
            {"status": JobStatus.cancelled, "completed_at": now, "updated_at": now},
        )

    def retry(self, job_id: str, now: datetime) -> bool:
        return self._transition(
            job_id,
            (JobStatus.failed,),
            {"status": JobStatus.pending, "attempts": 0, "error": None, "result": None,
             "scheduled_for": now, "completed_at": None, "updated_at": now},
        )

    def set_priority(self, job_id: str, priority: int, now: datetime) -> bool:
        return self._transition(job_id, ACTIVE_STATUSES, {"priority": priority, "updated_at": now})

    # ---------- scrape sources ----------
    @abstractmethod
    def add_source(self, source: ScrapeSource) -> None: ...

    @abstractmethod
    def get_source(self, source_id: str) -> ScrapeSource | None: ...

    @abstractmethod
    def list_sources(self, active_only: bool = False) -> list[ScrapeSource]: ...

    @abstractmethod
    def update_source(self, source_id: str, changes: dict[str, Any]) -> ScrapeSource | None: ...

    @abstractmethod
    def record_scrape(self, source_id: str, when: datetime, produced: int) -> None: ...


def _empty_stats() -> dict[str, Any]:
    return {"total": 0, "by_status": {s.value: 0 for s in JobStatus}, "by_type": {}}


class MemoryJobStore(JobStore):
    def __init__(self):
        self._lock = threading.RLock()
        self._jobs: dict[str, JobRecord] = {}
        self._sources: dict[str, ScrapeSource] = {}

    def ping(self) -> None:
        return None

    def insert_job(self, record: JobRecord) -> None:
        with self._lock:
            if record.id in self._jobs:
                raise StoreError(f"duplicate job id {record.id}")
            self._jobs[record.id] = record.copy()

    def get_job(self, job_id: str) -> JobRecord | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.copy() if job else None

    def list_jobs(self, status=None, type=None, limit=50):
        with self._lock:
            rows = [
                j for j in self._jobs.values()
                if (status is None or j.status == status) and (type is None or j.type == type)
            ]
            rows.sort(key=lambda j: j.created_at, reverse=True)
            return [j.copy() for j in rows[:limit]]

    def list_due(self, now, limit):
        with self._lock:
            due = [
                j for j in self._jobs.values()
                if j.status == JobStatus.pending and j.scheduled_for <= now
            ]
            due.sort(key=lambda j: (-j.priority, j.created_at))
            return [j.copy() for j in due[:limit]]

    def list_stale(self, cutoff, limit):
        with self._lock:
            stale = [
                j for j in self._jobs.values()
                if j.status == JobStatus.processing and j.updated_at < cutoff
            ]
            stale.sort(key=lambda j: j.updated_at)
            return [j.copy() for j in stale[:limit]]

    def _transition(self, job_id, expected, changes, *, bump_attempts=False, exhaust_attempts=False):
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in set(expected):
                return False
            for key, value in changes.items():
                setattr(job, key, value)
            if bump_attempts:
                job.attempts += 1
            if exhaust_attempts:
                job.attempts = job.max_attempts
            return True

    def stats(self):
        with self._lock:
            snapshot = [(j.status, j.type, j.priority) for j in self._jobs.values()]
        out = _empty_stats()
        by_type: dict[str, list[int]] = defaultdict(list)
        for status, job_type, priority in snapshot:
            out["by_status"][status.value] += 1
            by_type[job_type].append(priority)
        out["total"] = len(snapshot)
        out["by_type"] = {
            t: {"count": len(p), "avg_priority": round(sum(p) / len(p), 2)} for t, p in by_type.items()
        }
        return out

    def delete_terminal_before(self, cutoff):
        with self._lock:
            doomed = [
                j.id for j in self._jobs.values()
                if j.status in TERMINAL_STATUSES and j.updated_at < cutoff
            ]
            for job_id in doomed:
                del self._jobs[job_id]
            return len(doomed)

    def add_source(self, source):
        with self._lock:
            self._sources[source.id] = source.copy()

    def get_source(self, source_id):
        with self._lock:
            src = self._sources.get(source_id)
            return src.copy() if src else None

    def list_sources(self, active_only=False):
        with self._lock:
            rows = [s.copy() for s in self._sources.values() if s.is_active or not active_only]
        rows.sort(key=lambda s: (s.created_at is None, s.created_at, s.name))
        return rows

    def update_source(self, source_id, changes):
        with self._lock:
            src = self._sources.get(source_id)
            if src is None:
                return None
            for key in SOURCE_FIELDS:
                if key in changes:
                    value = changes[key]
                    if key == "config":
                        value = dict(value or {})
                    setattr(src, key, value)
            return src.copy()

    def record_scrape(self, source_id, when, produced):
        with self._lock:
            src = self._sources.get(source_id)
            if src is not None:
                src.last_scraped = when
                src.total_jobs_produced += produced


def _row_to_record(row: JobRow) -> JobRecord:
    return JobRecord(
        id=row.id,
        type=row.type,
        payload=row.payload,
        priority=row.priority,
        status=row.status,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        scheduled_for=as_utc(row.scheduled_for),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        completed_at=as_utc(row.completed_at),
        result=row.result,
        error=row.error,
    )

def _row_to_source(row: ScrapeSourceRow) -> ScrapeSource:
    return ScrapeSource(
        id=row.id,
        name=row.name,
        base_url=row.base_url,
        is_active=row.is_active,
        rate_limit=row.rate_limit,
        config=json.loads(row.config) if row.config else {},
        last_scraped=as_utc(row.last_scraped),
        total_jobs_produced=row.total_jobs_produced,
        created_at=as_utc(row.created_at),
    )


class SqlJobStore(JobStore):
    def __init__(self, database_url: str):
        self.engine = make_engine(database_url)
        self._sessions = make_session_factory(self.engine)
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def _session(self):
        try:
            with self._sessions() as db:
                yield db
        except SQLAlchemyError as e:
            log.error("store operation failed", extra={"event": "store_error"}, exc_info=True)
            raise StoreError(str(e)) from e

    def ping(self) -> None:
        with self._session() as db:
            db.execute(text("SELECT 1"))

    def insert_job(self, record):
        with self._session() as db:
            db.add(JobRow(
                id=record.id,
                type=record.type,
                payload=record.payload,
                priority=record.priority,
                status=record.status,
                attempts=record.attempts,
                max_attempts=record.max_attempts,
                scheduled_for=record.scheduled_for,
                created_at=record.created_at,
                updated_at=record.updated_at,
                completed_at=record.completed_at,
                result=record.result,
                error=record.error,
            ))
            db.commit()

    def get_job(self, job_id):
        with self._session() as db:
            row = db.get(JobRow, job_id)
            return _row_to_record(row) if row else None

    def list_jobs(self, status=None, type=None, limit=50):
        stmt = select(JobRow)
        if status is not None:
            stmt = stmt.where(JobRow.status == status)
        if type is not None:
            stmt = stmt.where(JobRow.type == type)
        stmt = stmt.order_by(JobRow.created_at.desc()).limit(limit)
        with self._session() as db:
            return [_row_to_record(r) for r in db.scalars(stmt)]

    def list_due(self, now, limit):
        stmt = (
            select(JobRow)
            .where(JobRow.status == JobStatus.pending, JobRow.scheduled_for <= now)
            .order_by(JobRow.priority.desc(), JobRow.created_at.asc())
            .limit(limit)
        )
        with self._session() as db:
            return [_row_to_record(r) for r in db.scalars(stmt)]

    def list_stale(self, cutoff, limit):
        stmt = (
            select(JobRow)
            .where(JobRow.status == JobStatus.processing, JobRow.updated_at < cutoff)
            .order_by(JobRow.updated_at.asc())
            .limit(limit)
        )
        with self._session() as db:
            return [_row_to_record(r) for r in db.scalars(stmt)]

    def _transition(self, job_id, expected, changes, *, bump_attempts=False, exhaust_attempts=False):
        values = dict(changes)
        if bump_attempts:
            values["attempts"] = JobRow.attempts + 1
        if exhaust_attempts:
            values["attempts"] = JobRow.max_attempts
        stmt = (
            update(JobRow)
            .where(JobRow.id == job_id, JobRow.status.in_(list(expected)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with self._session() as db:
            res = db.execute(stmt)
            db.commit()
            return res.rowcount == 1

    def stats(self):
        stmt = select(
            JobRow.status, JobRow.type, func.count(JobRow.id), func.avg(JobRow.priority)
        ).group_by(JobRow.status, JobRow.type)
        with self._session() as db:
            rows = db.execute(stmt).all()
        out = _empty_stats()
        counts: Counter = Counter()
        weighted: Counter = Counter()
        for status, job_type, count, avg_priority in rows:
            out["by_status"][status.value] += count
            counts[job_type] += count
            weighted[job_type] += float(avg_priority or 0) * count
            out["total"] += count
        out["by_type"] = {
            t: {"count": c, "avg_priority": round(weighted[t] / c, 2)} for t, c in counts.items()
        }
        return out

    def delete_terminal_before(self, cutoff):
        stmt = (
            delete(JobRow)
            .where(JobRow.status.in_(list(TERMINAL_STATUSES)), JobRow.updated_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        with self._session() as db:
            res = db.execute(stmt)
            db.commit()
            return res.rowcount

    def add_source(self, source):
        with self._session() as db:
            db.add(ScrapeSourceRow(
                id=source.id,
                name=source.name,
                base_url=source.base_url,
                is_active=source.is_active,
                rate_limit=source.rate_limit,
                config=json.dumps(source.config) if source.config else None,
                last_scraped=source.last_scraped,
                total_jobs_produced=source.total_jobs_produced,
                created_at=source.created_at,
            ))
            db.commit()

    def get_source(self, source_id):
        with self._session() as db:
            row = db.get(ScrapeSourceRow, source_id)
            return _row_to_source(row) if row else None

    def list_sources(self, active_only=False):
        stmt = select(ScrapeSourceRow).order_by(ScrapeSourceRow.created_at.asc())
        if active_only:
            stmt = stmt.where(ScrapeSourceRow.is_active.is_(True))
        with self._session() as db:
            return [_row_to_source(r) for r in db.scalars(stmt)]

    def update_source(self, source_id, changes):
        with self._session() as db:
            row = db.get(ScrapeSourceRow, source_id)
            if row is None:
                return None
            for key in SOURCE_FIELDS:
                if key not in changes:
                    continue
                value = changes[key]
                if key == "config":
                    value = json.dumps(value) if value else None
                setattr(row, key, value)
            db.commit()
            return _row_to_source(row)

    def record_scrape(self, source_id, when, produced):
        stmt = (
            update(ScrapeSourceRow)
            .where(ScrapeSourceRow.id == source_id)
            .values(
                last_scraped=when,
                total_jobs_produced=ScrapeSourceRow.total_jobs_produced + produced,
            )
        )
        with self._session() as db:
            db.execute(stmt)
            db.commit()


def build_store(settings) -> JobStore:
    backend = settings.store_backend.lower()
    if backend == "memory":
        return MemoryJobStore()
    if backend == "sql":
        return SqlJobStore(settings.database_url)
    raise ValueError(f"unknown store_backend: {settings.store_backend!r}")
