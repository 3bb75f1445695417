import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from .channel import NullNotifier
from .errors import NotFoundError, ValidationError
from .records import JobRecord, JobStatus, Priority, as_utc, parse_priority, utcnow
from .store import JobStore

log = logging.getLogger("queue")

MAX_ATTEMPTS_CEILING = 20
UNKNOWN_TYPE_ERROR = "unknown job type"

@dataclass
class RetryPolicy:
    base_seconds: float = 5
    max_seconds: float = 3600

    def delay_for(self, attempts: int) -> timedelta:
        # exponential: base, 2*base, 4*base, ... capped
        exponent = max(attempts - 1, 0)
        return timedelta(seconds=min(self.max_seconds, self.base_seconds * (2 ** exponent)))

def _encode(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload).decode("utf-8")
    return json.dumps(payload)


class JobQueueManager:
    """
    Owns every status change of a JobRecord.

    The processor never writes fields itself; it goes through claim_batch /
    mark_completed / record_failure / mark_unknown_type here.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        notifier=None,
        max_attempts: int = 3,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.notifier = notifier or NullNotifier()
        self.max_attempts = max_attempts
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock
        # set by whoever can run a job right away (in-process processor or a redis wakeup)
        self.immediate_dispatch: Callable[[str], None] | None = None

    # ---------- enqueue ----------
    def schedule(
        self,
        type: str,
        payload: Any,
        priority: "Priority | str | None" = None,
        *,
        delay_ms: int | None = None,
        scheduled_for: datetime | None = None,
        max_attempts: int | None = None,
    ) -> str:
        if not type or not type.strip():
            raise ValidationError("job type cannot be empty")
        level = parse_priority(priority)
        if delay_ms is not None and scheduled_for is not None:
            raise ValidationError("use either delay_ms or scheduled_for, not both")
        if delay_ms is not None and delay_ms < 0:
            raise ValidationError("delay_ms must be >= 0")
        attempts_ceiling = self.max_attempts if max_attempts is None else max_attempts
        if not 1 <= attempts_ceiling <= MAX_ATTEMPTS_CEILING:
            raise ValidationError(f"max_attempts must be between 1 and {MAX_ATTEMPTS_CEILING}")
        try:
            body = _encode(payload)
        except (TypeError, ValueError, UnicodeDecodeError) as e:
            raise ValidationError(f"payload is not serializable: {e}") from e

        now = self.clock()
        if delay_ms:
            run_at = now + timedelta(milliseconds=delay_ms)
        elif scheduled_for is not None:
            # naive timestamps are taken as UTC
            run_at = as_utc(scheduled_for)
        else:
            run_at = now

        record = JobRecord(
            id=str(uuid.uuid4()),
            type=type.strip(),
            payload=body,
            priority=int(level),
            status=JobStatus.pending,
            attempts=0,
            max_attempts=attempts_ceiling,
            scheduled_for=run_at,
            created_at=now,
            updated_at=now,
        )
        self.store.insert_job(record)
        log.info(
            f"scheduled {record.type} with priority {level.name}",
            extra={"job_id": record.id, "event": "job_queued"},
        )
        self._publish("queued", record.to_event())

        if not delay_ms and scheduled_for is None and self.immediate_dispatch is not None:
            try:
                self.immediate_dispatch(record.id)
            except Exception:
                # polling picks it up anyway
                log.warning(
                    "immediate dispatch failed",
                    extra={"job_id": record.id, "event": "job_dispatch_failed"},
                    exc_info=True,
                )
        return record.id

    def schedule_fetch_jobs(self, source: str | None = None, keywords: list[str] | None = None,
                            location: str | None = None, limit: int | None = None) -> str:
        data = {"source": source, "keywords": keywords or [], "location": location, "limit": limit}
        return self.schedule("fetch-jobs", data, Priority.HIGH)

    def schedule_email(self, to: str, subject: str, template: str | None = None,
                       variables: dict | None = None) -> str:
        data = {"to": to, "subject": subject, "template": template, "variables": variables or {}}
        return self.schedule("send-email", data, Priority.MEDIUM)

    def schedule_rebuild_index(self, target: str = "all", incremental: bool = False) -> str:
        return self.schedule("rebuild-index", {"type": target, "incremental": incremental}, Priority.HIGH)

    def schedule_archive_logs(self, older_than_days: int = 30, archive_type: str = "compress") -> str:
        return self.schedule(
            "archive-logs",
            {"olderThan": older_than_days, "archiveType": archive_type},
            Priority.LOW,
            scheduled_for=self.clock() + timedelta(days=1),
        )

    def schedule_data_processing(self, operation: str, parameters: dict | None = None) -> str:
        return self.schedule("data-processing", {"operation": operation, "parameters": parameters or {}},
                             Priority.MEDIUM)

    # ---------- queries ----------
    def get_job(self, job_id: str) -> JobRecord:
        record = self.store.get_job(job_id)
        if record is None:
            raise NotFoundError("job", job_id)
        return record

    def list_pending(self, limit: int = 50) -> list[JobRecord]:
        return self.store.list_due(self.clock(), limit)

    def list_jobs(self, status: JobStatus | None = None, type: str | None = None, limit: int = 50) -> list[JobRecord]:
        return self.store.list_jobs(status=status, type=type, limit=limit)

    def stats(self) -> dict[str, Any]:
        return self.store.stats()

    # ---------- administration ----------
    def cancel(self, job_id: str) -> bool:
        ok = self.store.cancel(job_id, self.clock())
        if ok:
            log.info("job cancelled", extra={"job_id": job_id, "event": "job_cancelled"})
            self._publish("cancelled", {"id": job_id, "status": JobStatus.cancelled.value})
        return ok

    def retry(self, job_id: str) -> bool:
        ok = self.store.retry(job_id, self.clock())
        if ok:
            log.info("failed job re-queued", extra={"job_id": job_id, "event": "job_requeued"})
            self._publish("queued", {"id": job_id, "status": JobStatus.pending.value})
        return ok

    def update_priority(self, job_id: str, level: "Priority | str") -> bool:
        priority = parse_priority(level)
        ok = self.store.set_priority(job_id, int(priority), self.clock())
        if ok:
            log.info(f"priority set to {priority.name}", extra={"job_id": job_id, "event": "job_priority"})
        return ok

    def cleanup_older_than(self, days: float) -> int:
        if days < 0:
            raise ValidationError("days must be >= 0")
        cutoff = self.clock() - timedelta(days=days)
        removed = self.store.delete_terminal_before(cutoff)
        if removed:
            log.info(f"cleaned up {removed} old jobs", extra={"event": "jobs_cleanup"})
        return removed

    def reap_stale(self, stale_after_seconds: float, limit: int = 100) -> int:
        """Recover PROCESSING records whose claimant presumably crashed."""
        now = self.clock()
        cutoff = now - timedelta(seconds=stale_after_seconds)
        reaped = 0
        for record in self.store.list_stale(cutoff, limit):
            error = f"stale: no progress since {record.updated_at.isoformat()}"
            if record.attempts >= record.max_attempts:
                ok = self.store.fail(record.id, now, error)
                status = JobStatus.failed
            else:
                ok = self.store.reschedule(record.id, now, now, error)
                status = JobStatus.pending
            if ok:
                reaped += 1
                log.warning(
                    f"reaped stale job -> {status.value}",
                    extra={"job_id": record.id, "event": "job_reaped"},
                )
                self._publish("failed" if status is JobStatus.failed else "retrying",
                              {"id": record.id, "status": status.value, "error": error})
        return reaped

    def _publish(self, event_type: str, data: dict[str, Any]) -> None:
        # best-effort: the store write has already committed
        try:
            self.notifier.publish(event_type, data)
        except Exception:
            log.warning("status publish failed", extra={"job_id": data.get("id"), "event": "publish_error"}, exc_info=True)

    # ---------- processor transitions ----------
    def claim(self, job_id: str) -> JobRecord | None:
        record = self.store.claim(job_id, self.clock())
        if record is not None:
            log.info("job claimed", extra={"job_id": job_id, "event": "job_claimed"})
        return record

    def claim_batch(self, limit: int) -> list[JobRecord]:
        records = self.store.claim_due(self.clock(), limit)
        for record in records:
            log.info(f"job claimed (attempt {record.attempts})", extra={"job_id": record.id, "event": "job_claimed"})
        return records

    def mark_completed(self, record: JobRecord, result: str | None) -> bool:
        ok = self.store.finish(record.id, self.clock(), result)
        if ok:
            log.info("job completed", extra={"job_id": record.id, "event": "job_completed"})
        else:
            # cancelled (or reaped) while the handler ran: the other write wins
            log.info("job no longer processing, result discarded",
                     extra={"job_id": record.id, "event": "job_result_discarded"})
        return ok

    def record_failure(self, record: JobRecord, error: str) -> JobStatus | None:
        """Retry with backoff while attempts remain, otherwise FAILED. None if the record moved on."""
        now = self.clock()
        error = error[:2000]
        if record.attempts < record.max_attempts:
            delay = self.retry_policy.delay_for(record.attempts)
            if not self.store.reschedule(record.id, now, now + delay, error):
                return None
            log.warning(
                f"job failed, retry scheduled in {delay.total_seconds():g}s",
                extra={"job_id": record.id, "event": "job_retry_scheduled"},
            )
            return JobStatus.pending
        if not self.store.fail(record.id, now, error):
            return None
        log.error(
            f"job failed after {record.attempts} attempts",
            extra={"job_id": record.id, "event": "job_failed"},
        )
        return JobStatus.failed

    def mark_unknown_type(self, record: JobRecord) -> bool:
        ok = self.store.fail(record.id, self.clock(), UNKNOWN_TYPE_ERROR, exhaust=True)
        if ok:
            log.error(f"no handler for type {record.type!r}", extra={"job_id": record.id, "event": "job_failed"})
        return ok
