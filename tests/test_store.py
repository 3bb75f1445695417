import threading
from datetime import timedelta

from jobrelay.records import JobRecord, JobStatus, ScrapeSource
from jobrelay.store import MemoryJobStore, SqlJobStore

def make_record(clock, job_id, priority=5, status=JobStatus.pending, **kw):
    now = clock()
    fields = dict(
        id=job_id,
        type="send-email",
        payload="{}",
        priority=priority,
        status=status,
        attempts=0,
        max_attempts=3,
        scheduled_for=now,
        created_at=now,
        updated_at=now,
    )
    fields.update(kw)
    return JobRecord(**fields)

def test_insert_and_get(store, clock):
    store.insert_job(make_record(clock, "a", payload='{"x": 1}'))
    job = store.get_job("a")
    assert job.payload == '{"x": 1}'
    assert job.status is JobStatus.pending
    assert job.scheduled_for == clock()
    assert store.get_job("missing") is None

def test_list_due_orders_by_priority_then_age(store, clock):
    store.insert_job(make_record(clock, "low", priority=1))
    clock.advance(1)
    store.insert_job(make_record(clock, "high-1", priority=8))
    clock.advance(1)
    store.insert_job(make_record(clock, "high-2", priority=8))
    store.insert_job(make_record(clock, "later", priority=10, scheduled_for=clock() + timedelta(minutes=5)))

    due = store.list_due(clock(), 10)
    assert [j.id for j in due] == ["high-1", "high-2", "low"]

def test_claim_is_compare_and_swap(store, clock):
    store.insert_job(make_record(clock, "a"))
    first = store.claim("a", clock())
    second = store.claim("a", clock())

    assert first is not None
    assert first.status is JobStatus.processing
    assert first.attempts == 1
    assert second is None
    assert store.get_job("a").attempts == 1

def test_concurrent_claims_have_one_winner(clock):
    store = MemoryJobStore()
    store.insert_job(make_record(clock, "a"))
    barrier = threading.Barrier(8)
    wins = []

    def contend():
        barrier.wait()
        if store.claim("a", clock()) is not None:
            wins.append(1)

    threads = [threading.Thread(target=contend) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(wins) == 1
    assert store.get_job("a").attempts == 1

def test_finish_loses_to_cancel(store, clock):
    store.insert_job(make_record(clock, "a"))
    store.claim("a", clock())
    assert store.cancel("a", clock()) is True
    assert store.finish("a", clock(), "done") is False

    job = store.get_job("a")
    assert job.status is JobStatus.cancelled
    assert job.result is None

def test_fail_with_exhaust_sets_attempts_to_max(store, clock):
    store.insert_job(make_record(clock, "a", max_attempts=5))
    store.claim("a", clock())
    assert store.fail("a", clock(), "boom", exhaust=True) is True
    job = store.get_job("a")
    assert job.status is JobStatus.failed
    assert job.attempts == 5

def test_delete_terminal_before_keeps_active(store, clock):
    store.insert_job(make_record(clock, "done"))
    store.insert_job(make_record(clock, "waiting"))
    store.claim("done", clock())
    store.finish("done", clock(), None)
    clock.advance(days=2)

    assert store.delete_terminal_before(clock() - timedelta(days=1)) == 1
    assert store.get_job("done") is None
    assert store.get_job("waiting") is not None

def test_stats_shape(store, clock):
    store.insert_job(make_record(clock, "a", priority=8))
    store.insert_job(make_record(clock, "b", priority=1))
    store.insert_job(make_record(clock, "c", priority=5, type="rebuild-index"))
    store.claim("c", clock())

    stats = store.stats()
    assert stats["total"] == 3
    assert stats["by_status"]["pending"] == 2
    assert stats["by_status"]["processing"] == 1
    assert stats["by_status"]["failed"] == 0
    assert stats["by_type"]["send-email"] == {"count": 2, "avg_priority": 4.5}
    assert stats["by_type"]["rebuild-index"]["count"] == 1

def test_list_stale(store, clock):
    store.insert_job(make_record(clock, "a"))
    store.claim("a", clock())
    clock.advance(600)
    assert store.list_stale(clock() - timedelta(seconds=900), 10) == []
    assert [j.id for j in store.list_stale(clock() - timedelta(seconds=300), 10)] == ["a"]

def test_source_crud(store, clock):
    store.add_source(ScrapeSource(id="s1", name="Indeed", base_url="https://indeed.com",
                                  rate_limit=30, config={"keywords": ["python"]}, created_at=clock()))
    clock.advance(1)
    store.add_source(ScrapeSource(id="s2", name="Other", base_url="https://example.com",
                                  is_active=False, created_at=clock()))

    assert [s.id for s in store.list_sources()] == ["s1", "s2"]
    assert [s.id for s in store.list_sources(active_only=True)] == ["s1"]
    assert store.get_source("s1").config == {"keywords": ["python"]}

    updated = store.update_source("s2", {"is_active": True, "rate_limit": 10})
    assert updated.is_active is True
    assert updated.rate_limit == 10
    assert store.update_source("nope", {"is_active": True}) is None

    store.record_scrape("s1", clock(), 3)
    store.record_scrape("s1", clock(), 2)
    src = store.get_source("s1")
    assert src.total_jobs_produced == 5
    assert src.last_scraped == clock()

def test_two_sql_stores_on_one_database_have_one_claim_winner(tmp_path, clock):
    url = f"sqlite+pysqlite:///{tmp_path / 'shared.db'}"
    first, second = SqlJobStore(url), SqlJobStore(url)
    first.insert_job(make_record(clock, "a"))
    barrier = threading.Barrier(8)
    wins = []

    def contend(store):
        barrier.wait()
        if store.claim("a", clock()) is not None:
            wins.append(1)

    threads = [threading.Thread(target=contend, args=(s,)) for s in (first, second) * 4]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    try:
        assert len(wins) == 1
        assert second.get_job("a").attempts == 1
        assert first.get_job("a").status is JobStatus.processing
    finally:
        first.engine.dispose()
        second.engine.dispose()

def test_source_config_null_is_stored_as_empty(store, clock):
    store.add_source(ScrapeSource(id="s1", name="Board", base_url="https://x",
                                  config={"keywords": ["python"]}, created_at=clock()))
    assert store.update_source("s1", {"config": None}).config == {}
    assert store.get_source("s1").config == {}
