import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Callable
from urllib.parse import quote_plus

from .errors import NotFoundError, ValidationError
from .queue_manager import JobQueueManager
from .rate_limit import RollingWindowLimiter
from .records import Priority, ScrapeSource, parse_priority, utcnow
from .store import JobStore
from .ticker import Ticker

log = logging.getLogger("scraper")

SCRAPE_JOB_TYPE = "scrape-source"

# search path per known site; {query} is url-encoded
SEARCH_TEMPLATES = {
    "linkedin": "/jobs/search/?keywords={query}",
    "indeed": "/jobs?q={query}",
}
DEFAULT_KEYWORDS = ("software engineer", "frontend developer", "backend developer")

def scrape_interval(rate_limit: int, floor_seconds: float = 5) -> float:
    """Seconds between ticks: 60/rate_limit, never below the floor."""
    return max(60.0 / max(rate_limit, 1), floor_seconds)

def generate_targets(source: ScrapeSource, max_targets: int = 10) -> list[str]:
    base = source.base_url.rstrip("/")
    config = source.config or {}
    template = config.get("search_path") or SEARCH_TEMPLATES.get(source.name.strip().lower())
    if not template:
        targets = list(config.get("urls") or [source.base_url])
    else:
        keywords = config.get("keywords") or DEFAULT_KEYWORDS
        targets = [base + template.format(query=quote_plus(k)) for k in keywords]
    return targets[:max_targets]

def _validate_source_fields(fields: dict[str, Any]) -> None:
    if "name" in fields and not (fields["name"] or "").strip():
        raise ValidationError("source name cannot be empty")
    if "base_url" in fields and not (fields["base_url"] or "").strip():
        raise ValidationError("source base_url cannot be empty")
    if "rate_limit" in fields:
        rate = fields["rate_limit"]
        if not isinstance(rate, int) or isinstance(rate, bool) or rate < 1:
            raise ValidationError("rate_limit must be a positive integer (requests per minute)")
    if "is_active" in fields and not isinstance(fields["is_active"], bool):
        raise ValidationError("is_active must be true or false")
    if "config" in fields and fields["config"] is not None and not isinstance(fields["config"], dict):
        raise ValidationError("config must be an object")


class ScrapeScheduler:
    """
    One timer per active source; every tick checks the source's rolling quota
    and enqueues ``scrape-source`` jobs through the queue manager.
    """

    def __init__(
        self,
        store: JobStore,
        manager: JobQueueManager,
        *,
        priority: "Priority | str" = Priority.MEDIUM,
        window_seconds: float = 60,
        min_interval_seconds: float = 5,
        reconcile_seconds: float = 300,
        max_targets: int = 10,
        limiter: RollingWindowLimiter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.manager = manager
        self.priority = parse_priority(priority)
        self.min_interval_seconds = min_interval_seconds
        self.reconcile_seconds = reconcile_seconds
        self.max_targets = max_targets
        self.limiter = limiter or RollingWindowLimiter(window_seconds)
        self.clock = clock

        self._lock = threading.Lock()
        self._timers: dict[str, Ticker] = {}
        self._reconciler: Ticker | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def active_source_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._timers)

    # ---------- lifecycle ----------
    def start(self) -> None:
        if self._running:
            log.warning("scraper already running", extra={"event": "scraper_start_skipped"})
            return
        self._running = True
        self.reconcile()
        self._reconciler = Ticker("scraper-reconcile", self.reconcile_seconds, self.reconcile, immediate=False).start()
        log.info(f"scraper started with {len(self.active_source_ids())} sources", extra={"event": "scraper_start"})

    def stop(self) -> None:
        self._running = False
        if self._reconciler is not None:
            self._reconciler.stop()
            self._reconciler = None
        with self._lock:
            timers, self._timers = self._timers, {}
        for source_id, timer in timers.items():
            timer.stop()
            log.debug("stopped source timer", extra={"source_id": source_id, "event": "source_timer_stop"})
        log.info("scraper stopped", extra={"event": "scraper_stop"})

    def reconcile(self) -> dict[str, list[str]]:
        """Start timers for newly active sources, stop the ones gone inactive, restart on rate changes."""
        if not self._running:
            return {"started": [], "stopped": []}
        active = {s.id: s for s in self.store.list_sources(active_only=True)}
        started, stopped = [], []
        with self._lock:
            current = dict(self._timers)
        for source_id, timer in current.items():
            source = active.get(source_id)
            if source is None or timer.interval != scrape_interval(source.rate_limit, self.min_interval_seconds):
                self._stop_timer(source_id)
                stopped.append(source_id)
        for source_id, source in active.items():
            if self._start_timer(source):
                started.append(source_id)
        if started or stopped:
            log.info(f"reconciled sources: {len(started)} started, {len(stopped)} stopped",
                     extra={"event": "scraper_reconcile"})
        return {"started": started, "stopped": stopped}

    def _start_timer(self, source: ScrapeSource) -> bool:
        interval = scrape_interval(source.rate_limit, self.min_interval_seconds)
        with self._lock:
            if not self._running or source.id in self._timers:
                return False
            timer = Ticker(f"scrape-{source.name}", interval, lambda: self.scrape_source(source.id), immediate=True)
            self._timers[source.id] = timer
        timer.start()
        log.info(f"started scraper for {source.name} (interval: {interval:g}s)",
                 extra={"source_id": source.id, "event": "source_timer_start"})
        return True

    def _stop_timer(self, source_id: str) -> bool:
        with self._lock:
            timer = self._timers.pop(source_id, None)
        if timer is None:
            return False
        timer.stop()
        log.info("stopped scraper", extra={"source_id": source_id, "event": "source_timer_stop"})
        return True

    # ---------- ticks ----------
    def scrape_source(self, source_id: str) -> int:
        """One tick for one source. Returns how many scrape jobs were enqueued."""
        source = self.store.get_source(source_id)
        if source is None or not source.is_active:
            return 0
        now = self.clock()
        if self.limiter.remaining(source.id, source.rate_limit, now) == 0:
            log.debug("rate limit reached, tick skipped", extra={"source_id": source.id, "event": "scrape_rate_limited"})
            return 0

        enqueued = 0
        for url in generate_targets(source, self.max_targets):
            if not self.limiter.try_acquire(source.id, source.rate_limit, now):
                break
            payload = {
                "sourceId": source.id,
                "url": url,
                "metadata": {"sourceName": source.name, "scrapedAt": now.isoformat()},
            }
            self.manager.schedule(SCRAPE_JOB_TYPE, payload, self.priority)
            enqueued += 1

        self.store.record_scrape(source.id, now, enqueued)
        log.info(f"queued {enqueued} scrape jobs for {source.name}",
                 extra={"source_id": source.id, "event": "scrape_queued"})
        return enqueued

    def force_scrape(self, source_id: str) -> bool:
        source = self.store.get_source(source_id)
        if source is None or not source.is_active:
            log.warning("source not found or inactive", extra={"source_id": source_id, "event": "force_scrape_skipped"})
            return False
        self.scrape_source(source_id)
        return True

    # ---------- administration ----------
    def add_source(self, name: str, base_url: str, rate_limit: int = 60, is_active: bool = True,
                   config: dict[str, Any] | None = None) -> str:
        _validate_source_fields({"name": name, "base_url": base_url, "rate_limit": rate_limit, "config": config})
        source = ScrapeSource(
            id=str(uuid.uuid4()),
            name=name.strip(),
            base_url=base_url.strip(),
            is_active=is_active,
            rate_limit=rate_limit,
            config=dict(config or {}),
            created_at=self.clock(),
        )
        self.store.add_source(source)
        log.info(f"added scraping source {source.name}", extra={"source_id": source.id, "event": "source_added"})
        if source.is_active:
            self._start_timer(source)
        return source.id

    def update_source(self, source_id: str, **fields: Any) -> bool:
        _validate_source_fields(fields)
        before = self.store.get_source(source_id)
        if before is None:
            return False
        source = self.store.update_source(source_id, fields)
        if source is None:
            return False
        log.info(f"updated scraping source {source.name}", extra={"source_id": source_id, "event": "source_updated"})
        if not source.is_active:
            self._stop_timer(source_id)
        else:
            if source.rate_limit != before.rate_limit:
                self._stop_timer(source_id)
            self._start_timer(source)
        return True

    def get_source(self, source_id: str) -> ScrapeSource:
        source = self.store.get_source(source_id)
        if source is None:
            raise NotFoundError("source", source_id)
        return source

    def get_stats(self) -> dict[str, Any]:
        sources = self.store.list_sources()
        timers = set(self.active_source_ids())
        now = self.clock()
        return {
            "running": self._running,
            "total_sources": len(sources),
            "active_sources": sum(1 for s in sources if s.is_active),
            "total_jobs_produced": sum(s.total_jobs_produced for s in sources),
            "sources": [
                {
                    "id": s.id,
                    "name": s.name,
                    "is_active": s.is_active,
                    "rate_limit": s.rate_limit,
                    "interval_seconds": scrape_interval(s.rate_limit, self.min_interval_seconds),
                    "remaining_quota": self.limiter.remaining(s.id, s.rate_limit, now),
                    "total_jobs_produced": s.total_jobs_produced,
                    "last_scraped": s.last_scraped.isoformat() if s.last_scraped else None,
                    "timer_running": s.id in timers,
                }
                for s in sources
            ],
        }
