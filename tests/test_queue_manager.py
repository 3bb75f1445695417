import json
from datetime import timedelta

import pytest

from jobrelay.errors import InvalidPriority, NotFoundError, ValidationError
from jobrelay.queue_manager import JobQueueManager, RetryPolicy
from jobrelay.records import JobStatus, Priority

def test_schedule_round_trip(manager):
    job_id = manager.schedule("send-email", "raw bytes as text")
    job = manager.get_job(job_id)
    assert job.payload == "raw bytes as text"
    assert job.status is JobStatus.pending
    assert job.priority == Priority.MEDIUM
    assert job.attempts == 0
    assert job.max_attempts == 3

def test_schedule_encodes_structured_payload(manager):
    job_id = manager.schedule("send-email", {"to": "a@example.com"}, "high")
    job = manager.get_job(job_id)
    assert json.loads(job.payload) == {"to": "a@example.com"}
    assert job.priority == 8

def test_schedule_publishes_queued(manager, notifier):
    job_id = manager.schedule("send-email", "{}")
    assert notifier.events[-1][0] == "queued"
    assert notifier.events[-1][1]["id"] == job_id

@pytest.mark.parametrize("kwargs", [
    {"type": "   ", "payload": "{}"},
    {"type": "x", "payload": "{}", "priority": "CRITICAL"},
    {"type": "x", "payload": "{}", "delay_ms": -1},
    {"type": "x", "payload": "{}", "max_attempts": 0},
    {"type": "x", "payload": "{}", "max_attempts": 21},
    {"type": "x", "payload": {"bad": object()}},
])
def test_invalid_schedule_writes_nothing(manager, kwargs):
    with pytest.raises(ValidationError):
        manager.schedule(**kwargs)
    assert manager.stats()["total"] == 0

def test_unknown_priority_is_specific(manager):
    with pytest.raises(InvalidPriority) as exc:
        manager.schedule("x", "{}", "CRITICAL")
    assert exc.value.level == "CRITICAL"

def test_delay_and_scheduled_for_are_exclusive(manager, clock):
    with pytest.raises(ValidationError):
        manager.schedule("x", "{}", delay_ms=10, scheduled_for=clock())

def test_delayed_job_becomes_due(manager, clock):
    manager.schedule("x", "{}", delay_ms=10_000)
    assert manager.list_pending() == []
    clock.advance(10)
    assert len(manager.list_pending()) == 1

def test_immediate_dispatch_only_without_delay(manager, clock):
    dispatched = []
    manager.immediate_dispatch = dispatched.append
    now_id = manager.schedule("x", "{}")
    manager.schedule("x", "{}", delay_ms=500)
    manager.schedule("x", "{}", scheduled_for=clock() + timedelta(hours=1))
    assert dispatched == [now_id]

def test_dispatch_failure_does_not_lose_job(manager):
    def broken(job_id):
        raise ConnectionError("redis down")
    manager.immediate_dispatch = broken
    job_id = manager.schedule("x", "{}")
    assert manager.get_job(job_id).status is JobStatus.pending

def test_priority_ordering_in_claim_batch(manager, clock):
    # LOW, HIGH, MEDIUM enqueued in that order
    for level in ("LOW", "HIGH", "MEDIUM"):
        manager.schedule("x", "{}", level)
        clock.advance(1)
    claimed = manager.claim_batch(3)
    assert [j.priority for j in claimed] == [Priority.HIGH, Priority.MEDIUM, Priority.LOW]
    assert all(j.status is JobStatus.processing for j in claimed)

def test_convenience_helpers(manager, clock):
    fetch = manager.get_job(manager.schedule_fetch_jobs("linkedin", ["python"]))
    assert fetch.type == "fetch-jobs"
    assert fetch.priority == Priority.HIGH

    email = manager.get_job(manager.schedule_email("a@example.com", "Hello"))
    assert email.priority == Priority.MEDIUM
    assert json.loads(email.payload)["subject"] == "Hello"

    index = manager.get_job(manager.schedule_rebuild_index("jobs"))
    assert json.loads(index.payload) == {"type": "jobs", "incremental": False}

    archive = manager.get_job(manager.schedule_archive_logs(7))
    assert archive.priority == Priority.LOW
    assert archive.scheduled_for == clock() + timedelta(days=1)

    data = manager.get_job(manager.schedule_data_processing("recount"))
    assert data.type == "data-processing"

def test_get_job_missing_raises(manager):
    with pytest.raises(NotFoundError):
        manager.get_job("nope")

def test_cancel_completed_returns_false_and_leaves_record(manager):
    job_id = manager.schedule("x", "{}")
    record = manager.claim(job_id)
    manager.mark_completed(record, "ok")
    before = manager.get_job(job_id)

    assert manager.cancel(job_id) is False
    assert manager.get_job(job_id) == before

def test_cancel_pending(manager, notifier):
    job_id = manager.schedule("x", "{}")
    assert manager.cancel(job_id) is True
    assert manager.get_job(job_id).status is JobStatus.cancelled
    assert notifier.types()[-1] == "cancelled"

def test_retry_only_failed(manager):
    job_id = manager.schedule("x", "{}", max_attempts=1)
    assert manager.retry(job_id) is False

    record = manager.claim(job_id)
    assert manager.record_failure(record, "boom") is JobStatus.failed
    assert manager.retry(job_id) is True

    job = manager.get_job(job_id)
    assert job.status is JobStatus.pending
    assert job.attempts == 0
    assert job.error is None

def test_update_priority(manager):
    job_id = manager.schedule("x", "{}", "LOW")
    assert manager.update_priority(job_id, "urgent") is True
    assert manager.get_job(job_id).priority == Priority.URGENT

    manager.cancel(job_id)
    assert manager.update_priority(job_id, "HIGH") is False
    with pytest.raises(InvalidPriority):
        manager.update_priority(job_id, "meh")

def test_failure_backoff_then_failed(manager, clock):
    job_id = manager.schedule("x", "{}")
    for expected_delay in (5, 10):
        record = manager.claim(job_id)
        assert manager.record_failure(record, "boom") is JobStatus.pending
        job = manager.get_job(job_id)
        assert job.scheduled_for == clock() + timedelta(seconds=expected_delay)
        assert job.error == "boom"
        clock.advance(expected_delay)

    record = manager.claim(job_id)
    assert manager.record_failure(record, "boom") is JobStatus.failed
    job = manager.get_job(job_id)
    assert job.status is JobStatus.failed
    assert job.attempts == job.max_attempts == 3

def test_record_failure_after_cancel_is_noop(manager):
    job_id = manager.schedule("x", "{}")
    record = manager.claim(job_id)
    manager.cancel(job_id)
    assert manager.record_failure(record, "boom") is None
    assert manager.get_job(job_id).status is JobStatus.cancelled

def test_cleanup_is_idempotent(manager, clock):
    done = manager.schedule("x", "{}")
    manager.mark_completed(manager.claim(done), None)
    manager.schedule("x", "{}")
    clock.advance(days=31)

    assert manager.cleanup_older_than(30) == 1
    assert manager.cleanup_older_than(30) == 0
    assert manager.stats()["total"] == 1

def test_cleanup_rejects_negative_days(manager):
    with pytest.raises(ValidationError):
        manager.cleanup_older_than(-1)

def test_reaper_requeues_stale_processing(manager, clock, notifier):
    job_id = manager.schedule("x", "{}")
    manager.claim(job_id)
    clock.advance(1801)

    assert manager.reap_stale(1800) == 1
    job = manager.get_job(job_id)
    assert job.status is JobStatus.pending
    assert job.error.startswith("stale")
    assert notifier.types()[-1] == "retrying"

def test_reaper_fails_exhausted(manager, clock):
    job_id = manager.schedule("x", "{}", max_attempts=1)
    manager.claim(job_id)
    clock.advance(1801)

    assert manager.reap_stale(1800) == 1
    job = manager.get_job(job_id)
    assert job.status is JobStatus.failed
    assert job.attempts == 1

def test_reaper_ignores_fresh(manager, clock):
    job_id = manager.schedule("x", "{}")
    manager.claim(job_id)
    clock.advance(60)
    assert manager.reap_stale(1800) == 0

def test_retry_policy_caps():
    policy = RetryPolicy(base_seconds=5, max_seconds=30)
    assert [policy.delay_for(n).total_seconds() for n in (1, 2, 3, 4, 5)] == [5, 10, 20, 30, 30]

def test_naive_scheduled_for_is_treated_as_utc(manager, clock):
    naive = clock().replace(tzinfo=None) - timedelta(minutes=1)
    job_id = manager.schedule("x", "{}", scheduled_for=naive)
    assert manager.get_job(job_id).scheduled_for == clock() - timedelta(minutes=1)
    assert [j.id for j in manager.list_pending()] == [job_id]

class BrokenNotifier:
    def publish(self, event_type, data):
        raise ConnectionError("redis down")

def test_notifier_outage_does_not_fail_committed_writes(store, clock):
    manager = JobQueueManager(store, notifier=BrokenNotifier(), clock=clock)
    job_id = manager.schedule("x", "{}")
    assert manager.stats()["total"] == 1

    assert manager.cancel(job_id) is True
    stale = manager.schedule("x", "{}")
    manager.claim(stale)
    clock.advance(3600)
    assert manager.reap_stale(1800) == 1

    failed = manager.schedule("x", "{}", max_attempts=1)
    assert manager.record_failure(manager.claim(failed), "boom") is JobStatus.failed
    assert manager.retry(failed) is True
    assert manager.get_job(failed).status is JobStatus.pending
