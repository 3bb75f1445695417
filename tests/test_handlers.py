import json

import pytest

from jobrelay.dedup import DedupIndex, normalize_key
from jobrelay.errors import HandlerError
from jobrelay.handlers import (
    ArchiveLogsHandler,
    DataProcessingHandler,
    HandlerRegistry,
    PostingIngest,
    RebuildIndexHandler,
    SendEmailHandler,
    register_default_handlers,
)

def test_normalize_key():
    assert normalize_key("  Senior   Python\tDev ", "ACME  Corp") == "senior python dev|acme corp"
    assert normalize_key(None, "x") == "|x"

def test_dedup_index():
    index = DedupIndex([{"title": "Dev", "company": "Acme"}])
    assert {"title": "dev ", "company": "ACME"} in index
    assert index.add({"title": "Dev", "company": "ACME"}) is False
    assert index.add({"title": "Dev", "company": "Other"}) is True
    assert len(index) == 2

def test_default_registry_types():
    registry = register_default_handlers(HandlerRegistry())
    assert registry.types() == [
        "archive-logs", "data-processing", "fetch-jobs", "rebuild-index", "scrape-source", "send-email",
    ]
    assert "send-email" in registry
    assert registry.get("nope") is None

def test_ingest_suppresses_duplicates():
    stored = []
    events = []

    class Notifier:
        def publish(self, event_type, data):
            events.append(event_type)

    ingest = PostingIngest(stored.append, notifier=Notifier())
    counts = ingest.ingest([
        {"title": "Backend Dev", "company": "Acme"},
        {"title": "backend  dev", "company": "ACME"},
        {"title": "Frontend Dev", "company": "Acme"},
        {"title": "", "company": "Acme"},
    ])
    assert counts == {"stored": 2, "duplicates": 1, "invalid": 1}
    assert [r["title"] for r in stored] == ["Backend Dev", "Frontend Dev"]
    assert events == ["job-created", "job-created"]

def test_fetch_and_scrape_handlers_share_dedup():
    listings = [{"title": "SRE", "company": "Acme"}, {"title": "SRE", "company": "Acme"}]
    calls = []

    def fetcher(target, options):
        calls.append(target)
        return list(listings)

    registry = register_default_handlers(HandlerRegistry(), fetcher=fetcher, sink=lambda r: None)
    fetch = registry.get("fetch-jobs")(json.dumps({"keywords": ["sre"], "limit": 5}))
    assert fetch == {"found": 2, "stored": 1, "duplicates": 1, "invalid": 0}

    scrape = registry.get("scrape-source")(json.dumps({"sourceId": "s1", "url": "https://x/jobs"}))
    assert scrape["stored"] == 0
    assert scrape["duplicates"] == 2
    assert calls == ["sre", "https://x/jobs"]

def test_scrape_handler_needs_url():
    registry = register_default_handlers(HandlerRegistry())
    with pytest.raises(HandlerError):
        registry.get("scrape-source")(json.dumps({"sourceId": "s1"}))

def test_send_email_renders_template():
    sent = []
    handler = SendEmailHandler(lambda to, subject, body: sent.append((to, subject, body)))
    out = handler(json.dumps({
        "to": "a@example.com",
        "subject": "Welcome",
        "template": "Hi $name",
        "variables": {"name": "Sam"},
    }))
    assert out == {"recipient": "a@example.com", "sent": True}
    assert sent == [("a@example.com", "Welcome", "Hi Sam")]

@pytest.mark.parametrize("handler, payload", [
    (SendEmailHandler(), {"to": "a@example.com"}),
    (RebuildIndexHandler(), {"type": "widgets"}),
    (ArchiveLogsHandler(), {"archiveType": "shred"}),
    (ArchiveLogsHandler(), {"olderThan": 0}),
    (DataProcessingHandler(), {}),
    (DataProcessingHandler({"recount": lambda p: 1}), {"operation": "other"}),
])
def test_handlers_reject_bad_payloads(handler, payload):
    with pytest.raises(HandlerError):
        handler(json.dumps(payload))

@pytest.mark.parametrize("payload", ["not json", "[1, 2]"])
def test_payload_must_be_json_object(payload):
    with pytest.raises(HandlerError):
        RebuildIndexHandler()(payload)

def test_data_processing_runs_operation():
    handler = DataProcessingHandler({"recount": lambda params: params["n"] * 2})
    assert handler(json.dumps({"operation": "recount", "parameters": {"n": 4}})) == {
        "operation": "recount", "output": 8,
    }

def test_registry_decorator():
    registry = HandlerRegistry()

    @registry.register("custom")
    def custom(payload):
        return payload.upper()

    assert registry.get("custom")("abc") == "ABC"
