import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from .errors import InvalidPriority

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(value: datetime | None) -> datetime | None:
    # sqlite hands datetimes back naive
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

class JobStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES

TERMINAL_STATUSES = frozenset({JobStatus.completed, JobStatus.failed, JobStatus.cancelled})
ACTIVE_STATUSES = frozenset({JobStatus.pending, JobStatus.processing})

class Priority(enum.IntEnum):
    LOW = 1
    MEDIUM = 5
    HIGH = 8
    URGENT = 10

def parse_priority(level: "Priority | str | None", default: Priority = Priority.MEDIUM) -> Priority:
    """Map a symbolic level (enum or case-insensitive name) onto Priority."""
    if level is None:
        return default
    if isinstance(level, Priority):
        return level
    if isinstance(level, str):
        try:
            return Priority[level.strip().upper()]
        except KeyError:
            raise InvalidPriority(level) from None
    raise InvalidPriority(level)

@dataclass
class JobRecord:
    id: str
    type: str
    payload: str
    priority: int
    status: JobStatus
    attempts: int
    max_attempts: int
    scheduled_for: datetime
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    result: str | None = None
    error: str | None = None

    def copy(self) -> "JobRecord":
        return replace(self)

    def to_event(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status.value,
            "priority": self.priority,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "error": self.error,
        }

@dataclass
class ScrapeSource:
    id: str
    name: str
    base_url: str
    is_active: bool = True
    rate_limit: int = 60
    config: dict[str, Any] = field(default_factory=dict)
    last_scraped: datetime | None = None
    total_jobs_produced: int = 0
    created_at: datetime | None = None

    def copy(self) -> "ScrapeSource":
        return replace(self, config=dict(self.config or {}))
