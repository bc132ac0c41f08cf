from __future__ import annotations

import threading

import pytest

from job_importer.engine import (
    DedupWorker,
    InMemoryWorkQueue,
    OutcomeStatus,
    ThreadPoolManager,
    WorkerPool,
    WorkItem,
)
from job_importer.engine.parser import NormalizedItem
from job_importer.engine.store import JobRecord, JobStore
from job_importer.engine.tracker import RunStatus
from job_importer.errors import StoreError


class FlakyStore(JobStore):
    """Delegate to a real store after failing the first ``failures`` creates."""

    def __init__(self, inner: JobStore, failures: int, error: Exception | None = None) -> None:
        self.inner = inner
        self.failures = failures
        self.error = error or StoreError("connection lost")
        self.create_calls = 0

    def create(self, record: JobRecord) -> None:
        self.create_calls += 1
        if self.create_calls <= self.failures:
            raise self.error
        self.inner.create(record)

    def update(self, item: NormalizedItem, run_id: str) -> None:
        self.inner.update(item, run_id)

    def get(self, external_id: str) -> JobRecord | None:
        return self.inner.get(external_id)

    def count(self) -> int:
        return self.inner.count()


@pytest.fixture
def thread_pool():
    manager = ThreadPoolManager(default_workers=2)
    yield manager
    manager.shutdown(wait=True)


def _work(run_id: str, item: NormalizedItem | None) -> WorkItem:
    return WorkItem(run_id=run_id, feed_url="https://feeds.example.com/a", item=item)


def test_first_delivery_creates_then_updates(job_store, run_tracker, make_item) -> None:
    worker = DedupWorker(job_store, run_tracker)
    first_run = run_tracker.create_run()
    second_run = run_tracker.create_run()

    created = worker.process(_work(first_run, make_item("job-1")))
    updated = worker.process(_work(second_run, make_item("job-1")))

    assert created.status is OutcomeStatus.CREATED
    assert updated.status is OutcomeStatus.UPDATED
    assert job_store.count() == 1
    assert job_store.get("job-1").run_ids == {first_run, second_run}
    assert run_tracker.get_run(first_run).new_jobs == 1
    assert run_tracker.get_run(second_run).updated_jobs == 1


def test_reprocessing_identical_item_only_unions_run_ids(job_store, run_tracker, make_item) -> None:
    worker = DedupWorker(job_store, run_tracker)
    run_a = run_tracker.create_run()
    run_b = run_tracker.create_run()
    item = make_item("job-1")

    worker.process(_work(run_a, item))
    before = job_store.get("job-1")
    worker.process(_work(run_b, item))
    after = job_store.get("job-1")

    assert before.descriptive_fields() == after.descriptive_fields()
    assert after.run_ids == {run_a, run_b}


def test_missing_external_id_is_permanent(job_store, run_tracker, make_item) -> None:
    worker = DedupWorker(job_store, run_tracker)
    run_id = run_tracker.create_run()

    outcome = worker.process(_work(run_id, make_item("")))

    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.permanent is True
    assert job_store.count() == 0
    run = run_tracker.get_run(run_id)
    assert run.failed_jobs_count == 1
    assert "external_id" in run.failed_jobs[0].reason


def test_missing_run_id_is_permanent_and_unrecorded(job_store, run_tracker, make_item) -> None:
    worker = DedupWorker(job_store, run_tracker)
    outcome = worker.process(_work("", make_item("job-1")))
    assert outcome.permanent is True
    assert job_store.count() == 0


def test_store_error_is_recorded_and_retryable(job_store, run_tracker, make_item) -> None:
    worker = DedupWorker(FlakyStore(job_store, failures=1), run_tracker)
    run_id = run_tracker.create_run()

    outcome = worker.process(_work(run_id, make_item("job-1")))

    assert outcome.status is OutcomeStatus.FAILED
    assert outcome.permanent is False
    run = run_tracker.get_run(run_id)
    assert run.failed_jobs_count == 1
    assert run.failed_jobs[0].item["externalId"] == "job-1"
    assert run.failed_jobs[0].reason == "connection lost"


def test_concurrent_duplicates_create_exactly_once(job_store, run_tracker, make_item) -> None:
    worker = DedupWorker(job_store, run_tracker)
    run_id = run_tracker.create_run()
    barrier = threading.Barrier(10)
    outcomes = []
    lock = threading.Lock()

    def deliver() -> None:
        barrier.wait()
        outcome = worker.process(_work(run_id, make_item("dup")))
        with lock:
            outcomes.append(outcome.status)

    threads = [threading.Thread(target=deliver) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count(OutcomeStatus.CREATED) == 1
    assert outcomes.count(OutcomeStatus.UPDATED) == 9
    assert job_store.count() == 1
    run = run_tracker.get_run(run_id)
    assert run.new_jobs == 1
    assert run.updated_jobs == 9


def test_pool_drains_queue_and_completes_run(job_store, run_tracker, memory_queue, make_item, thread_pool) -> None:
    run_id = run_tracker.create_run()
    run_tracker.mark_running(run_id)
    for index in range(5):
        memory_queue.enqueue(_work(run_id, make_item(f"job-{index}")))
    run_tracker.add_pending(run_id, 5)
    run_tracker.seal(run_id)

    pool = WorkerPool(
        memory_queue,
        DedupWorker(job_store, run_tracker),
        run_tracker,
        concurrency=3,
        poll_interval=0.01,
        thread_pool=thread_pool,
    )
    stats = pool.run_until_idle(timeout=10)

    assert stats.created == 5
    assert memory_queue.outstanding() == 0
    run = run_tracker.get_run(run_id)
    assert run.status is RunStatus.COMPLETED
    assert run.new_jobs == 5
    assert run.total_imported == 5


def test_pool_retries_transient_store_failures(job_store, run_tracker, memory_queue, make_item, thread_pool) -> None:
    run_id = run_tracker.create_run()
    memory_queue.enqueue(_work(run_id, make_item("job-1")))
    run_tracker.add_pending(run_id, 1)
    run_tracker.seal(run_id)

    pool = WorkerPool(
        memory_queue,
        DedupWorker(FlakyStore(job_store, failures=1), run_tracker),
        run_tracker,
        concurrency=1,
        poll_interval=0.01,
        thread_pool=thread_pool,
    )
    stats = pool.run_until_idle(timeout=10)

    assert stats.retried == 1
    assert stats.created == 1
    run = run_tracker.get_run(run_id)
    assert run.new_jobs == 1
    assert run.failed_jobs_count == 1
    assert run.status is RunStatus.COMPLETED


def test_pool_dead_letters_after_exhausting_attempts(job_store, run_tracker, memory_queue, make_item, thread_pool) -> None:
    run_id = run_tracker.create_run()
    memory_queue.enqueue(_work(run_id, make_item("job-1")))
    run_tracker.add_pending(run_id, 1)
    run_tracker.seal(run_id)

    pool = WorkerPool(
        memory_queue,
        DedupWorker(FlakyStore(job_store, failures=99), run_tracker),
        run_tracker,
        concurrency=2,
        poll_interval=0.01,
        thread_pool=thread_pool,
    )
    stats = pool.run_until_idle(timeout=10)

    assert stats.failed == 3
    assert stats.dead_lettered == 1
    assert len(memory_queue.dead_letters()) == 1
    run = run_tracker.get_run(run_id)
    assert run.failed_jobs_count == 3
    assert run.total_imported == 0
    assert run.status is RunStatus.COMPLETED
    assert job_store.count() == 0


def test_pool_never_retries_validation_failures(job_store, run_tracker, make_item, thread_pool) -> None:
    queue = InMemoryWorkQueue()
    run_id = run_tracker.create_run()
    queue.enqueue(_work(run_id, None))

    pool = WorkerPool(
        queue,
        DedupWorker(job_store, run_tracker),
        run_tracker,
        concurrency=1,
        poll_interval=0.01,
        thread_pool=thread_pool,
    )
    stats = pool.run_until_idle(timeout=10)

    assert stats.dead_lettered == 1
    assert stats.retried == 0
    [dead] = queue.dead_letters()
    assert dead.attempts_made == 1
    assert run_tracker.get_run(run_id).failed_jobs_count == 1


def test_pool_records_unexpected_crashes(job_store, run_tracker, memory_queue, make_item, thread_pool) -> None:
    run_id = run_tracker.create_run()
    memory_queue.enqueue(_work(run_id, make_item("job-1")))

    store = FlakyStore(job_store, failures=1, error=RuntimeError("driver bug"))
    pool = WorkerPool(
        memory_queue,
        DedupWorker(store, run_tracker),
        run_tracker,
        concurrency=1,
        poll_interval=0.01,
        thread_pool=thread_pool,
    )
    stats = pool.run_until_idle(timeout=10)

    assert stats.retried == 1
    assert stats.created == 1
    run = run_tracker.get_run(run_id)
    assert run.failed_jobs[0].reason == "Unhandled error: driver bug"


def test_pool_rejects_zero_concurrency(job_store, run_tracker, memory_queue) -> None:
    with pytest.raises(ValueError):
        WorkerPool(memory_queue, DedupWorker(job_store, run_tracker), run_tracker, concurrency=0)


def test_reissued_lease_settles_the_run_once(job_store, run_tracker, sqlite_queue, make_item, fake_clock, thread_pool) -> None:
    run_id = run_tracker.create_run()
    run_tracker.mark_running(run_id)
    sqlite_queue.enqueue(_work(run_id, make_item("job-a")))
    sqlite_queue.enqueue(_work(run_id, make_item("job-b")))
    run_tracker.add_pending(run_id, 2)
    run_tracker.seal(run_id)
    pool = WorkerPool(
        sqlite_queue,
        DedupWorker(job_store, run_tracker),
        run_tracker,
        concurrency=1,
        poll_interval=0.01,
        thread_pool=thread_pool,
    )

    stale = sqlite_queue.reserve()
    fake_clock.advance(61.0)
    current = sqlite_queue.reserve()
    assert current.queue_id == stale.queue_id

    assert pool.handle(current).status is OutcomeStatus.CREATED
    assert pool.handle(stale).status is OutcomeStatus.UPDATED
    assert pool.stats.lost_leases == 1

    run = run_tracker.get_run(run_id)
    assert run.status is RunStatus.RUNNING
    assert run.pending_items == 1
    assert sqlite_queue.outstanding() == 1

    pool.run_until_idle(timeout=10)
    run = run_tracker.get_run(run_id)
    assert run.status is RunStatus.COMPLETED
    assert run.pending_items == 0
    assert job_store.count() == 2


def test_expired_final_lease_is_recorded_and_settled(job_store, run_tracker, sqlite_queue, make_item, fake_clock, thread_pool) -> None:
    from job_importer.engine.queue import EnqueueOptions

    run_id = run_tracker.create_run()
    run_tracker.mark_running(run_id)
    sqlite_queue.enqueue(_work(run_id, make_item("job-crash")), EnqueueOptions(attempts=1))
    run_tracker.add_pending(run_id, 1)
    run_tracker.seal(run_id)
    pool = WorkerPool(
        sqlite_queue,
        DedupWorker(job_store, run_tracker),
        run_tracker,
        concurrency=1,
        poll_interval=0.01,
        thread_pool=thread_pool,
    )

    abandoned = sqlite_queue.reserve()
    fake_clock.advance(61.0)
    stats = pool.run_until_idle(timeout=10)

    assert stats.dead_lettered == 1
    run = run_tracker.get_run(run_id)
    assert run.status is RunStatus.COMPLETED
    assert run.pending_items == 0
    assert run.failed_jobs_count == 1
    assert run.failed_jobs[0].reason == "Lease expired after final attempt"

    pool.handle(abandoned)
    assert pool.stats.lost_leases == 1
    assert run_tracker.get_run(run_id).pending_items == 0
