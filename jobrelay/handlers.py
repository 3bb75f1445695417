"""
Handler registry and the built-in job handlers.

A handler takes the raw payload string and returns a result (anything
json-serializable) or raises. Handlers must be safe to call concurrently for
different records. The actual side effects (fetching listings, mailing,
indexing) are delegated to pluggable collaborators; the defaults only log.
"""
import json
import logging
from string import Template
from typing import Any, Callable, Iterable

from .channel import NullNotifier
from .dedup import DedupIndex
from .errors import HandlerError

log = logging.getLogger("handlers")

Handler = Callable[[str], Any]
Fetcher = Callable[[str, dict], list[dict]]

INDEX_TARGETS = ("users", "jobs", "posts", "all")
ARCHIVE_TYPES = ("compress", "delete", "move")


class HandlerRegistry:
    def __init__(self):
        self._handlers: dict[str, Handler] = {}

    def register(self, job_type: str, handler: Handler | None = None):
        if handler is None:
            def decorator(fn: Handler) -> Handler:
                self._handlers[job_type] = fn
                return fn
            return decorator
        self._handlers[job_type] = handler
        return handler

    def get(self, job_type: str) -> Handler | None:
        return self._handlers.get(job_type)

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers

    def types(self) -> list[str]:
        return sorted(self._handlers)


def load_payload(payload: str) -> dict:
    try:
        data = json.loads(payload) if payload else {}
    except json.JSONDecodeError as e:
        raise HandlerError(f"payload is not valid json: {e}") from e
    if not isinstance(data, dict):
        raise HandlerError("payload must be a json object")
    return data


# ---------- default collaborators ----------
def null_fetcher(target: str, options: dict) -> list[dict]:
    log.debug(f"no fetcher configured, nothing scraped from {target}", extra={"event": "fetch_skipped"})
    return []

def log_sink(record: dict) -> None:
    log.info(f"posting stored: {record.get('title')} at {record.get('company')}", extra={"event": "posting_stored"})

def log_mailer(to: str, subject: str, body: str) -> None:
    log.info(f"email to {to}: {subject}", extra={"event": "email_sent"})


class PostingIngest:
    """Duplicate suppression in front of domain storage."""

    def __init__(self, sink: Callable[[dict], None] = log_sink, index: DedupIndex | None = None, notifier=None):
        self.sink = sink
        self.index = index if index is not None else DedupIndex()
        self.notifier = notifier or NullNotifier()

    def ingest(self, records: Iterable[dict]) -> dict[str, int]:
        stored = duplicates = invalid = 0
        for record in records:
            if not record.get("title") or not record.get("company"):
                invalid += 1
                continue
            if not self.index.add(record):
                duplicates += 1
                continue
            self.sink(record)
            stored += 1
            self.notifier.publish("job-created", {"title": record["title"], "company": record["company"]})
        return {"stored": stored, "duplicates": duplicates, "invalid": invalid}


class FetchJobsHandler:
    def __init__(self, fetcher: Fetcher, ingest: PostingIngest):
        self.fetcher = fetcher
        self.ingest = ingest

    def __call__(self, payload: str) -> dict:
        data = load_payload(payload)
        keywords = data.get("keywords") or [""]
        limit = data.get("limit")
        options = {"source": data.get("source"), "location": data.get("location"), "limit": limit}
        found: list[dict] = []
        for keyword in keywords:
            found.extend(self.fetcher(keyword, options))
        if limit:
            found = found[: int(limit)]
        return {"found": len(found), **self.ingest.ingest(found)}


class ScrapeSourceHandler:
    def __init__(self, fetcher: Fetcher, ingest: PostingIngest):
        self.fetcher = fetcher
        self.ingest = ingest

    def __call__(self, payload: str) -> dict:
        data = load_payload(payload)
        url = data.get("url")
        if not url:
            raise HandlerError("scrape payload has no url")
        records = self.fetcher(url, {"source_id": data.get("sourceId"), "metadata": data.get("metadata") or {}})
        return {"sourceId": data.get("sourceId"), "url": url, "found": len(records), **self.ingest.ingest(records)}


class SendEmailHandler:
    def __init__(self, mailer: Callable[[str, str, str], None] = log_mailer):
        self.mailer = mailer

    def __call__(self, payload: str) -> dict:
        data = load_payload(payload)
        to, subject = data.get("to"), data.get("subject")
        if not to or not subject:
            raise HandlerError("email needs 'to' and 'subject'")
        body = Template(data.get("template") or "").safe_substitute(data.get("variables") or {})
        self.mailer(to, subject, body)
        return {"recipient": to, "sent": True}


class RebuildIndexHandler:
    def __init__(self, indexer: Callable[[str, bool], int] | None = None):
        self.indexer = indexer

    def __call__(self, payload: str) -> dict:
        data = load_payload(payload)
        target = data.get("type", "all")
        if target not in INDEX_TARGETS:
            raise HandlerError(f"unknown index target {target!r}")
        incremental = bool(data.get("incremental"))
        indexed = self.indexer(target, incremental) if self.indexer else 0
        log.info(f"index {target} rebuilt", extra={"event": "index_rebuilt"})
        return {"target": target, "incremental": incremental, "indexed": indexed}


class ArchiveLogsHandler:
    def __init__(self, archiver: Callable[[int, str], int] | None = None):
        self.archiver = archiver

    def __call__(self, payload: str) -> dict:
        data = load_payload(payload)
        archive_type = data.get("archiveType", "compress")
        if archive_type not in ARCHIVE_TYPES:
            raise HandlerError(f"unknown archive type {archive_type!r}")
        older_than = int(data.get("olderThan", 30))
        if older_than <= 0:
            raise HandlerError("olderThan must be a positive number of days")
        archived = self.archiver(older_than, archive_type) if self.archiver else 0
        return {"archiveType": archive_type, "olderThan": older_than, "archived": archived}


class DataProcessingHandler:
    def __init__(self, operations: dict[str, Callable[[dict], Any]] | None = None):
        self.operations = operations or {}

    def __call__(self, payload: str) -> dict:
        data = load_payload(payload)
        operation = data.get("operation")
        if not operation:
            raise HandlerError("data processing needs an operation")
        fn = self.operations.get(operation)
        if fn is None and self.operations:
            raise HandlerError(f"unsupported operation {operation!r}")
        output = fn(data.get("parameters") or {}) if fn else None
        return {"operation": operation, "output": output}


def register_default_handlers(
    registry: HandlerRegistry,
    *,
    fetcher: Fetcher | None = None,
    sink: Callable[[dict], None] | None = None,
    mailer: Callable[[str, str, str], None] | None = None,
    index: DedupIndex | None = None,
    notifier=None,
) -> HandlerRegistry:
    fetcher = fetcher or null_fetcher
    ingest = PostingIngest(sink or log_sink, index, notifier)
    registry.register("fetch-jobs", FetchJobsHandler(fetcher, ingest))
    registry.register("scrape-source", ScrapeSourceHandler(fetcher, ingest))
    registry.register("send-email", SendEmailHandler(mailer or log_mailer))
    registry.register("rebuild-index", RebuildIndexHandler())
    registry.register("archive-logs", ArchiveLogsHandler())
    registry.register("data-processing", DataProcessingHandler())
    return registry
