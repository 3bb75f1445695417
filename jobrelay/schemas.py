from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from .records import JobRecord, ScrapeSource

class JobCreate(BaseModel):
    type: str = Field(min_length=1, max_length=64)
    payload: str | dict[str, Any] | list[Any] = ""
    priority: str | None = None
    delay_ms: int | None = Field(default=None, ge=0)
    scheduled_for: datetime | None = None
    max_attempts: int | None = Field(default=None, ge=1, le=20)

class JobOut(BaseModel):
    id: str
    type: str
    status: str
    payload: str
    priority: int
    attempts: int
    max_attempts: int
    scheduled_for: datetime
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    result: str | None = None
    error: str | None = None

    @classmethod
    def from_record(cls, job: JobRecord) -> "JobOut":
        return cls(
            id=job.id,
            type=job.type,
            status=job.status.value,
            payload=job.payload,
            priority=job.priority,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            scheduled_for=job.scheduled_for,
            created_at=job.created_at,
            updated_at=job.updated_at,
            completed_at=job.completed_at,
            result=job.result,
            error=job.error,
        )

class PriorityUpdate(BaseModel):
    level: str

class SourceCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    base_url: str = Field(min_length=1, max_length=512)
    rate_limit: int = Field(default=60, ge=1)
    is_active: bool = True
    config: dict[str, Any] | None = None

class SourceUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    base_url: str | None = Field(default=None, min_length=1, max_length=512)
    rate_limit: int | None = Field(default=None, ge=1)
    is_active: bool | None = None
    config: dict[str, Any] | None = None

    # omitted means "unchanged"; an explicit null is not a value these columns can hold
    @field_validator("name", "base_url", "rate_limit", "is_active")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("may be omitted but not null")
        return v

class SourceOut(BaseModel):
    id: str
    name: str
    base_url: str
    is_active: bool
    rate_limit: int
    config: dict[str, Any]
    last_scraped: datetime | None = None
    total_jobs_produced: int

    @classmethod
    def from_source(cls, s: ScrapeSource) -> "SourceOut":
        return cls(
            id=s.id,
            name=s.name,
            base_url=s.base_url,
            is_active=s.is_active,
            rate_limit=s.rate_limit,
            config=s.config,
            last_scraped=s.last_scraped,
            total_jobs_produced=s.total_jobs_produced,
        )

class MaxSubscribers(BaseModel):
    max_subscribers: int
