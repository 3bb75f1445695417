import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .channel import StatusChannel
from .handlers import Fetcher, HandlerRegistry, register_default_handlers
from .processor import BackgroundJobProcessor
from .queue_manager import JobQueueManager, RetryPolicy
from .records import utcnow
from .redis_client import RedisStatusPublisher, RedisStatusRelay, RedisWakeupQueue, get_redis
from .scraper import ScrapeScheduler
from .settings import Settings
from .store import JobStore, build_store

log = logging.getLogger("runtime")

@dataclass
class Runtime:
    settings: Settings
    role: str
    store: JobStore
    channel: StatusChannel
    manager: JobQueueManager
    registry: HandlerRegistry
    processor: BackgroundJobProcessor
    scraper: ScrapeScheduler
    wakeups: RedisWakeupQueue | None = None
    relay: RedisStatusRelay | None = None

    @property
    def runs_jobs(self) -> bool:
        return self.role == "worker" or self.settings.embedded_worker

    def start(self) -> None:
        self.channel.start()
        if self.relay is not None:
            self.relay.start()
        if self.runs_jobs:
            self.processor.start()
            if self.settings.scrape_enabled:
                self.scraper.start()
            if self.wakeups is not None:
                self.wakeups.listen(self.processor.submit_now)
        log.info(f"runtime started (role={self.role}, jobs={self.runs_jobs})", extra={"event": "runtime_start"})

    def stop(self) -> None:
        if self.wakeups is not None:
            self.wakeups.stop()
        if self.scraper.running:
            self.scraper.stop()
        if self.processor.running:
            self.processor.stop()
        if self.relay is not None:
            self.relay.stop()
        self.channel.stop()
        log.info("runtime stopped", extra={"event": "runtime_stop"})


def build_runtime(
    settings: Settings,
    role: str = "api",
    *,
    store: JobStore | None = None,
    fetcher: Fetcher | None = None,
    sink: Callable[[dict], None] | None = None,
    mailer: Callable[[str, str, str], None] | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Runtime:
    store = store or build_store(settings)
    r = get_redis(settings.redis_url) if settings.redis_url else None
    runs_jobs = role == "worker" or settings.embedded_worker

    channel = StatusChannel(
        max_subscribers=settings.max_subscribers,
        heartbeat_seconds=settings.heartbeat_seconds,
        missed_heartbeats=settings.missed_heartbeats,
        buffer_size=settings.subscriber_buffer,
        clock=clock,
    )
    # a standalone worker has nobody connected locally, so events go over redis
    notifier = RedisStatusPublisher(r, settings.status_channel) if (role == "worker" and r is not None) else channel

    manager = JobQueueManager(
        store,
        notifier=notifier,
        max_attempts=settings.max_attempts,
        retry_policy=RetryPolicy(settings.retry_base_seconds, settings.retry_max_seconds),
        clock=clock,
    )
    channel.snapshot = manager.stats

    registry = register_default_handlers(
        HandlerRegistry(), fetcher=fetcher, sink=sink, mailer=mailer, notifier=notifier
    )
    processor = BackgroundJobProcessor(
        manager,
        registry,
        notifier=notifier,
        poll_interval=settings.poll_interval_seconds,
        batch_size=settings.batch_size,
        concurrency=settings.concurrency,
        sweep_interval=settings.sweep_interval_seconds,
        cleanup_after_days=settings.cleanup_after_days,
        stale_after_seconds=settings.stale_after_seconds,
        clock=clock,
    )
    scraper = ScrapeScheduler(
        store,
        manager,
        priority=settings.scrape_priority,
        window_seconds=settings.scrape_window_seconds,
        min_interval_seconds=settings.scrape_min_interval_seconds,
        reconcile_seconds=settings.scrape_reconcile_seconds,
        max_targets=settings.scrape_max_targets,
        clock=clock,
    )

    wakeups = relay = None
    if runs_jobs:
        manager.immediate_dispatch = processor.submit_now
        if role == "worker" and r is not None:
            wakeups = RedisWakeupQueue(r, settings.wakeup_queue)
    elif r is not None:
        api_wakeups = RedisWakeupQueue(r, settings.wakeup_queue)
        manager.immediate_dispatch = api_wakeups.push
        relay = RedisStatusRelay(r, settings.status_channel, channel)

    return Runtime(
        settings=settings,
        role=role,
        store=store,
        channel=channel,
        manager=manager,
        registry=registry,
        processor=processor,
        scraper=scraper,
        wakeups=wakeups,
        relay=relay,
    )
