"""
Live status fan-out.

Events are JSON frames ``{"type", "data", "timestamp"}`` pushed into a small
bounded outbox per subscriber. Publishing never waits: a full outbox drops the
frame for that subscriber only. The WebSocket endpoint drains the outbox.
"""
import json
import logging
import queue
import threading
import uuid
from datetime import datetime
from typing import Any, Callable

from .errors import CapacityError, ValidationError
from .records import utcnow
from .ticker import Ticker

log = logging.getLogger("channel")

MIN_SUBSCRIBERS = 1
MAX_SUBSCRIBERS = 1000

class NullNotifier:
    def publish(self, event_type: str, data: dict[str, Any]) -> int:
        return 0

def encode_event(event_type: str, data: Any, when: datetime) -> str:
    return json.dumps({"type": event_type, "data": data, "timestamp": when.isoformat()}, default=str)

class Subscriber:
    def __init__(self, remote_address: str, now: datetime, buffer_size: int):
        self.connection_id = uuid.uuid4().hex[:12]
        self.remote_address = remote_address
        self.connected_at = now
        self.last_heartbeat = now
        self.dropped = 0
        self._outbox: queue.Queue[str] = queue.Queue(maxsize=buffer_size)
        self._closed = threading.Event()
        # called from the publishing thread whenever there is something new to read
        self.waker: Callable[[], None] | None = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _wake(self) -> None:
        if self.waker is None:
            return
        try:
            self.waker()
        except RuntimeError:
            # reader's event loop already closed
            pass

    def offer(self, message: str) -> bool:
        if self.closed:
            return False
        try:
            self._outbox.put_nowait(message)
        except queue.Full:
            self.dropped += 1
            return False
        self._wake()
        return True

    def poll(self) -> str | None:
        try:
            return self._outbox.get_nowait()
        except queue.Empty:
            return None

    def next_message(self, timeout: float = 1.0) -> str | None:
        try:
            return self._outbox.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self._closed.set()
        self._wake()


class StatusChannel:
    def __init__(
        self,
        *,
        max_subscribers: int = 100,
        heartbeat_seconds: float = 30,
        missed_heartbeats: int = 2,
        buffer_size: int = 100,
        clock: Callable[[], datetime] = utcnow,
        snapshot: Callable[[], dict[str, Any]] | None = None,
    ):
        self._check_limit(max_subscribers)
        self.max_subscribers = max_subscribers
        self.heartbeat_seconds = heartbeat_seconds
        self.missed_heartbeats = missed_heartbeats
        self.buffer_size = buffer_size
        self.clock = clock
        self.snapshot = snapshot

        self._lock = threading.Lock()
        self._subscribers: dict[str, Subscriber] = {}
        self._ticker: Ticker | None = None

        self.messages_sent = 0
        self.bytes_sent = 0
        self.last_reset = clock()

    @staticmethod
    def _check_limit(n: int) -> None:
        if not MIN_SUBSCRIBERS <= n <= MAX_SUBSCRIBERS:
            raise ValidationError(f"max subscribers must be between {MIN_SUBSCRIBERS} and {MAX_SUBSCRIBERS}")

    @property
    def connected_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    # ---------- connections ----------
    def connect(self, remote_address: str = "unknown") -> Subscriber:
        now = self.clock()
        with self._lock:
            if len(self._subscribers) >= self.max_subscribers:
                raise CapacityError(f"live channel at capacity ({self.max_subscribers} subscribers)")
            sub = Subscriber(remote_address, now, self.buffer_size)
            self._subscribers[sub.connection_id] = sub
            total = len(self._subscribers)

        log.info(
            f"subscriber connected from {remote_address} ({total} total)",
            extra={"connection_id": sub.connection_id, "event": "subscriber_connected"},
        )
        data = {
            "message": "Connected to job updates",
            "connection_id": sub.connection_id,
            "connected_at": now.isoformat(),
            "total_connected": total,
        }
        if self.snapshot is not None:
            try:
                data["snapshot"] = self.snapshot()
            except Exception:
                log.warning("snapshot unavailable", extra={"event": "snapshot_error"}, exc_info=True)
        self._deliver(sub, encode_event("initial-data", data, now))
        return sub

    def disconnect(self, connection_id: str, reason: str = "closed") -> bool:
        with self._lock:
            sub = self._subscribers.pop(connection_id, None)
            remaining = len(self._subscribers)
        if sub is None:
            return False
        sub.close()
        log.info(
            f"subscriber disconnected: {reason} ({remaining} remaining)",
            extra={"connection_id": connection_id, "event": "subscriber_disconnected"},
        )
        return True

    def touch(self, connection_id: str) -> None:
        with self._lock:
            sub = self._subscribers.get(connection_id)
            if sub is not None:
                sub.last_heartbeat = self.clock()

    # ---------- fan-out ----------
    def publish(self, event_type: str, data: dict[str, Any]) -> int:
        message = encode_event(event_type, data, self.clock())
        with self._lock:
            targets = list(self._subscribers.values())
        delivered = sum(1 for sub in targets if self._deliver(sub, message))
        if len(targets) > delivered:
            log.debug(
                f"broadcast {event_type}: {delivered} delivered, {len(targets) - delivered} dropped",
                extra={"event": "broadcast_partial"},
            )
        return delivered

    def _deliver(self, sub: Subscriber, message: str, count: bool = True) -> bool:
        if not sub.offer(message):
            return False
        if count:
            with self._lock:
                self.messages_sent += 1
                self.bytes_sent += len(message.encode("utf-8"))
        return True

    def heartbeat(self) -> list[str]:
        """Evict silent subscribers, ping the rest. Returns evicted connection ids."""
        now = self.clock()
        limit = self.heartbeat_seconds * self.missed_heartbeats
        with self._lock:
            subs = list(self._subscribers.values())
        evicted = [s.connection_id for s in subs if (now - s.last_heartbeat).total_seconds() > limit]
        for connection_id in evicted:
            self.disconnect(connection_id, reason="heartbeat timeout")
        ping = encode_event("ping", {}, now)
        for sub in subs:
            if sub.connection_id not in evicted:
                self._deliver(sub, ping, count=False)
        return evicted

    # ---------- administration ----------
    def set_max_subscribers(self, n: int) -> int:
        self._check_limit(n)
        with self._lock:
            old, self.max_subscribers = self.max_subscribers, n
        log.info(f"max subscribers {old} -> {n}", extra={"event": "channel_capacity"})
        return old

    def reset_stats(self) -> datetime:
        with self._lock:
            self.messages_sent = 0
            self.bytes_sent = 0
            self.last_reset = self.clock()
            return self.last_reset

    def get_connection_stats(self) -> dict[str, Any]:
        now = self.clock()
        with self._lock:
            subs = list(self._subscribers.values())
            sent, nbytes, since = self.messages_sent, self.bytes_sent, self.last_reset
            cap = self.max_subscribers
        uptime = max((now - since).total_seconds(), 0)
        connections = [
            {
                "connection_id": s.connection_id,
                "remote_address": s.remote_address,
                "connected_at": s.connected_at.isoformat(),
                "last_heartbeat": s.last_heartbeat.isoformat(),
                "duration_seconds": int((now - s.connected_at).total_seconds()),
                "ping_age_seconds": int((now - s.last_heartbeat).total_seconds()),
                "dropped": s.dropped,
            }
            for s in subs
        ]
        return {
            "connected": len(subs),
            "max_subscribers": cap,
            "capacity_pct": round(len(subs) * 100 / cap),
            "messages_sent": sent,
            "bytes_sent": nbytes,
            "avg_message_bytes": round(nbytes / sent) if sent else 0,
            "messages_per_second": round(sent / uptime, 2) if uptime else 0.0,
            "uptime_seconds": int(uptime),
            "last_reset": since.isoformat(),
            "connections": connections,
        }

    # ---------- lifecycle ----------
    def start(self) -> None:
        if self._ticker is None:
            self._ticker = Ticker("channel-heartbeat", self.heartbeat_seconds, self.heartbeat, immediate=False).start()

    def stop(self) -> None:
        if self._ticker is not None:
            self._ticker.stop()
            self._ticker = None
        with self._lock:
            ids = list(self._subscribers)
        for connection_id in ids:
            self.disconnect(connection_id, reason="shutdown")
