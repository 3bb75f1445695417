import json
import logging
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime
from typing import Any, Callable

from .channel import NullNotifier
from .errors import StoreError
from .handlers import HandlerRegistry
from .queue_manager import UNKNOWN_TYPE_ERROR, JobQueueManager
from .records import JobRecord, JobStatus, utcnow
from .ticker import Ticker

log = logging.getLogger("processor")

def _serialize(output: Any) -> str | None:
    if output is None or isinstance(output, str):
        return output
    return json.dumps(output, default=str)


class BackgroundJobProcessor:
    """
    Polls the queue, claims due records and runs their handlers on a bounded pool.

    Auxiliary sweeps (cleanup, stale reaper, metrics, plus anything added with
    ``register_sweep``) run on their own timer so neither side blocks the other.
    """

    def __init__(
        self,
        manager: JobQueueManager,
        registry: HandlerRegistry,
        *,
        notifier=None,
        poll_interval: float = 30,
        batch_size: int = 10,
        concurrency: int = 5,
        sweep_interval: float = 30,
        cleanup_after_days: int = 30,
        stale_after_seconds: float = 1800,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.manager = manager
        self.registry = registry
        self.notifier = notifier or NullNotifier()
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.sweep_interval = sweep_interval
        self.cleanup_after_days = cleanup_after_days
        self.stale_after_seconds = stale_after_seconds
        self.clock = clock

        self.counters: Counter = Counter()
        self.last_metrics: dict[str, Any] | None = None
        self.started_at: datetime | None = None

        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._poller: Ticker | None = None
        self._sweeper: Ticker | None = None

        self.sweeps: dict[str, Callable[[], Any]] = {
            "cleanup": lambda: self.manager.cleanup_older_than(self.cleanup_after_days),
            "reaper": lambda: self.manager.reap_stale(self.stale_after_seconds),
            "metrics": self._aggregate_metrics,
        }

    @property
    def running(self) -> bool:
        return self._poller is not None

    def register_sweep(self, name: str, fn: Callable[[], Any]) -> None:
        self.sweeps[name] = fn

    # ---------- lifecycle ----------
    def start(self) -> None:
        if self._poller is not None:
            log.warning("processor already running", extra={"event": "processor_start_skipped"})
            return
        self._ensure_executor()
        self.started_at = self.clock()
        self._poller = Ticker("processor-poll", self.poll_interval, self.run_cycle, immediate=True).start()
        self._sweeper = Ticker("processor-sweeps", self.sweep_interval, self.run_sweeps, immediate=False).start()
        log.info(
            f"processor started (interval={self.poll_interval}s batch={self.batch_size} concurrency={self.concurrency})",
            extra={"event": "processor_start"},
        )

    def stop(self) -> None:
        for ticker in (self._poller, self._sweeper):
            if ticker is not None:
                ticker.stop()
        self._poller = self._sweeper = None
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)
        log.info("processor stopped", extra={"event": "processor_stop"})

    def _ensure_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="job")
            return self._executor

    # ---------- main loop ----------
    def run_cycle(self) -> int:
        """Claim one batch and run it to completion. Returns the number of records claimed."""
        if not self._cycle_lock.acquire(blocking=False):
            log.debug("previous cycle still running", extra={"event": "cycle_skipped"})
            return 0
        try:
            try:
                records = self.manager.claim_batch(self.batch_size)
            except StoreError:
                self.counters["store_errors"] += 1
                log.error("claim failed, retrying next cycle", extra={"event": "cycle_store_error"}, exc_info=True)
                return 0
            if not records:
                return 0
            executor = self._ensure_executor()
            wait([executor.submit(self.execute, record) for record in records])
            self.counters["cycles"] += 1
            return len(records)
        finally:
            self._cycle_lock.release()

    def submit_now(self, job_id: str) -> None:
        """Immediate-execution path. Safe for ids that are already claimed or finished."""
        try:
            self._ensure_executor().submit(self._run_immediate, job_id)
        except RuntimeError:
            log.warning("executor shut down, leaving job to polling", extra={"job_id": job_id, "event": "job_dispatch_skipped"})

    def _run_immediate(self, job_id: str) -> None:
        try:
            record = self.manager.claim(job_id)
        except StoreError:
            log.error("immediate claim failed", extra={"job_id": job_id, "event": "claim_store_error"}, exc_info=True)
            return
        if record is None:
            log.debug("job not claimable, skipping", extra={"job_id": job_id, "event": "job_claim_lost"})
            return
        self.execute(record)

    def execute(self, record: JobRecord) -> JobStatus | None:
        """Run one claimed record and apply the outcome. Never raises."""
        try:
            return self._execute(record)
        except StoreError:
            self.counters["store_errors"] += 1
            log.error("store error while finishing job", extra={"job_id": record.id, "event": "job_store_error"}, exc_info=True)
        except Exception:
            log.error("unexpected error executing job", extra={"job_id": record.id, "event": "job_internal_error"}, exc_info=True)
        return None

    def _execute(self, record: JobRecord) -> JobStatus | None:
        handler = self.registry.get(record.type)
        if handler is None:
            if self.manager.mark_unknown_type(record):
                self.counters["failed"] += 1
                self._publish("failed", {**record.to_event(), "status": JobStatus.failed.value,
                                         "error": UNKNOWN_TYPE_ERROR})
                return JobStatus.failed
            return None

        log.info(f"executing {record.type}", extra={"job_id": record.id, "event": "job_started"})
        self._publish("started", record.to_event())
        try:
            output = handler(record.payload)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            log.warning(f"handler raised: {error}", extra={"job_id": record.id, "event": "job_handler_error"}, exc_info=True)
            status = self.manager.record_failure(record, error)
            if status is JobStatus.pending:
                self.counters["retried"] += 1
                self._publish("retrying", {**record.to_event(), "status": status.value, "error": error})
            elif status is JobStatus.failed:
                self.counters["failed"] += 1
                self._publish("failed", {**record.to_event(), "status": status.value, "error": error})
            else:
                self.counters["discarded"] += 1
            return status

        if self.manager.mark_completed(record, _serialize(output)):
            self.counters["completed"] += 1
            self._publish("completed", {**record.to_event(), "status": JobStatus.completed.value})
            return JobStatus.completed
        self.counters["discarded"] += 1
        return None

    def _publish(self, event_type: str, data: dict[str, Any]) -> None:
        try:
            self.notifier.publish(event_type, data)
        except Exception:
            log.warning("status publish failed", extra={"job_id": data.get("id"), "event": "publish_error"}, exc_info=True)

    # ---------- sweeps ----------
    def run_sweeps(self) -> dict[str, Any]:
        outcome = {}
        for name, fn in list(self.sweeps.items()):
            try:
                outcome[name] = fn()
            except Exception:
                outcome[name] = None
                log.error(f"sweep {name} failed", extra={"event": "sweep_error"}, exc_info=True)
        return outcome

    def _aggregate_metrics(self) -> dict[str, Any]:
        stats = self.manager.stats()
        self.last_metrics = {**stats, "at": self.clock().isoformat()}
        self._publish("metrics", self.last_metrics)
        return self.last_metrics

    # ---------- introspection ----------
    def get_stats(self) -> dict[str, Any]:
        now = self.clock()
        return {
            "running": self.running,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "uptime_seconds": int((now - self.started_at).total_seconds()) if self.started_at else 0,
            "counters": dict(self.counters),
            "last_metrics": self.last_metrics,
            "handlers": self.registry.types(),
            "sweeps": sorted(self.sweeps),
            "config": {
                "poll_interval": self.poll_interval,
                "batch_size": self.batch_size,
                "concurrency": self.concurrency,
                "sweep_interval": self.sweep_interval,
                "cleanup_after_days": self.cleanup_after_days,
                "stale_after_seconds": self.stale_after_seconds,
            },
        }

    def get_health(self) -> dict[str, Any]:
        try:
            self.manager.store.ping()
            store_ok = True
        except StoreError:
            store_ok = False
        return {
            "status": "healthy" if self.running and store_ok else "unhealthy",
            "running": self.running,
            "store": store_ok,
            "timestamp": self.clock().isoformat(),
        }
