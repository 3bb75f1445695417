"""
Optional Redis plumbing for running the API and the worker as separate processes.

- wakeups: the API LPUSHes freshly scheduled job ids, the worker BRPOPs them
  and tries an immediate claim. Polling still covers anything lost here.
- status: the worker PUBLISHes lifecycle events, the API relays them into its
  in-memory StatusChannel.
"""
import json
import logging
import threading
from functools import lru_cache
from typing import Any, Callable

import redis

log = logging.getLogger("redis")

@lru_cache
def get_redis(url: str) -> redis.Redis:
    return redis.Redis.from_url(url, decode_responses=True)


class RedisWakeupQueue:
    def __init__(self, r: redis.Redis, key: str):
        self.r = r
        self.key = key
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def push(self, job_id: str) -> None:
        self.r.lpush(self.key, job_id)

    def pop(self, timeout: int = 1) -> str | None:
        item = self.r.brpop(self.key, timeout=timeout)
        return item[1] if item else None

    def listen(self, on_job: Callable[[str], None]) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, args=(on_job,), name="redis-wakeups", daemon=True)
        self._thread.start()

    def _loop(self, on_job: Callable[[str], None]) -> None:
        while not self._stop.is_set():
            try:
                job_id = self.pop(timeout=1)
                if job_id:
                    on_job(job_id)
            except redis.RedisError:
                log.error("wakeup pop failed", extra={"event": "wakeup_error"}, exc_info=True)
                self._stop.wait(2)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=3)
            self._thread = None


class RedisStatusPublisher:
    """Notifier that forwards events to a pub/sub channel instead of local subscribers."""

    def __init__(self, r: redis.Redis, channel: str):
        self.r = r
        self.channel = channel

    def publish(self, event_type: str, data: dict[str, Any]) -> int:
        return self.r.publish(self.channel, json.dumps({"type": event_type, "data": data}, default=str))


class RedisStatusRelay:
    """Subscribes to the pub/sub channel and republishes into a local notifier."""

    def __init__(self, r: redis.Redis, channel: str, target):
        self.r = r
        self.channel = channel
        self.target = target
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is None:
            self._thread = threading.Thread(target=self._loop, name="redis-status-relay", daemon=True)
            self._thread.start()

    def handle(self, raw: str) -> bool:
        try:
            event = json.loads(raw)
            self.target.publish(event["type"], event.get("data") or {})
            return True
        except (ValueError, KeyError, TypeError):
            log.warning("dropping malformed status event", extra={"event": "relay_bad_message"})
            return False

    def _loop(self) -> None:
        while not self._stop.is_set():
            pubsub = self.r.pubsub(ignore_subscribe_messages=True)
            try:
                pubsub.subscribe(self.channel)
                while not self._stop.is_set():
                    message = pubsub.get_message(timeout=1.0)
                    if message and message.get("type") == "message":
                        self.handle(message["data"])
            except redis.RedisError:
                log.error("status relay disconnected", extra={"event": "relay_error"}, exc_info=True)
                self._stop.wait(2)
            finally:
                pubsub.close()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=3)
            self._thread = None
