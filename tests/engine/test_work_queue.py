from __future__ import annotations

import threading

import pytest

from job_importer.config import QueueConfig
from job_importer.engine.queue import (
    BackoffPolicy,
    EnqueueOptions,
    InMemoryWorkQueue,
    SQLiteWorkQueue,
    WorkItem,
)
from job_importer.errors import LeaseLost
from job_importer.infra import SQLiteManager


def _work(make_item, external_id: str, run_id: str = "run-1") -> WorkItem:
    return WorkItem(run_id=run_id, feed_url="https://feeds.example.com/a", item=make_item(external_id))


def test_backoff_policy_doubles_per_attempt() -> None:
    policy = BackoffPolicy(delay_ms=1000)
    assert [policy.delay_for(attempt) for attempt in (1, 2, 3)] == [1.0, 2.0, 4.0]
    assert BackoffPolicy(delay_ms=0).delay_for(3) == 0.0


def test_enqueue_options_validation_and_wire_shape() -> None:
    with pytest.raises(ValueError):
        EnqueueOptions(attempts=0)
    options = EnqueueOptions.from_config(QueueConfig())
    assert options.to_dict() == {"attempts": 3, "backoff": {"type": "exponential", "delayMs": 1000}}


def test_work_item_wire_shape(make_item) -> None:
    work = _work(make_item, "job-9")
    payload = work.to_dict()
    assert payload["runId"] == "run-1"
    assert payload["feedUrl"] == "https://feeds.example.com/a"
    assert payload["item"]["externalId"] == "job-9"
    assert WorkItem.from_json(work.to_json()) == work


def test_memory_queue_is_fifo(memory_queue: InMemoryWorkQueue, make_item) -> None:
    memory_queue.enqueue(_work(make_item, "a"))
    memory_queue.enqueue(_work(make_item, "b"))
    first = memory_queue.reserve()
    second = memory_queue.reserve()
    assert first is not None and second is not None
    assert first.work_item.item.external_id == "a"
    assert second.work_item.item.external_id == "b"
    assert first.attempt == 1
    assert memory_queue.reserve() is None
    assert memory_queue.outstanding() == 2
    memory_queue.ack(first)
    memory_queue.ack(second)
    assert memory_queue.outstanding() == 0


def test_memory_queue_backoff_then_dead_letter(make_item, fake_clock) -> None:
    queue = InMemoryWorkQueue(
        default_options=EnqueueOptions(attempts=3, backoff=BackoffPolicy(delay_ms=1000)),
        clock=fake_clock,
    )
    queue.enqueue(_work(make_item, "flaky"))

    delivery = queue.reserve()
    assert queue.fail(delivery, "store down") is True
    assert queue.reserve() is None
    fake_clock.advance(1.0)

    delivery = queue.reserve()
    assert delivery.attempt == 2
    assert queue.fail(delivery, "store down") is True
    fake_clock.advance(1.5)
    assert queue.reserve() is None
    fake_clock.advance(0.5)

    delivery = queue.reserve()
    assert delivery.attempt == 3
    assert delivery.is_last_attempt
    assert queue.fail(delivery, "store down") is False
    assert queue.outstanding() == 0
    [dead] = queue.dead_letters()
    assert dead.attempts_made == 3
    assert dead.reason == "store down"


def test_memory_queue_permanent_failure_skips_retries(memory_queue, make_item) -> None:
    memory_queue.enqueue(_work(make_item, "bad"))
    delivery = memory_queue.reserve()
    assert memory_queue.fail(delivery, "invalid", permanent=True) is False
    assert memory_queue.reserve() is None
    assert len(memory_queue.dead_letters()) == 1


def test_memory_queue_hands_each_item_to_one_consumer(memory_queue, make_item) -> None:
    for index in range(50):
        memory_queue.enqueue(_work(make_item, f"job-{index}"))
    seen: list[str] = []
    lock = threading.Lock()

    def consume() -> None:
        while True:
            delivery = memory_queue.reserve(timeout=0.05)
            if delivery is None:
                return
            with lock:
                seen.append(delivery.queue_id)
            memory_queue.ack(delivery)

    threads = [threading.Thread(target=consume) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert sorted(seen, key=int) == [str(index) for index in range(1, 51)]


def test_sqlite_queue_round_trips_payload(sqlite_queue: SQLiteWorkQueue, make_item) -> None:
    work = _work(make_item, "job-1")
    queue_id = sqlite_queue.enqueue(work)
    delivery = sqlite_queue.reserve()
    assert delivery.queue_id == queue_id
    assert delivery.work_item == work
    assert delivery.max_attempts == 3
    sqlite_queue.ack(delivery)
    assert sqlite_queue.outstanding() == 0


def test_sqlite_queue_backoff_and_dead_letter(sqlite_queue, make_item, fake_clock) -> None:
    options = EnqueueOptions(attempts=2, backoff=BackoffPolicy(delay_ms=500))
    sqlite_queue.enqueue(_work(make_item, "flaky"), options)

    delivery = sqlite_queue.reserve()
    assert sqlite_queue.fail(delivery, "boom") is True
    fake_clock.advance(0.25)
    assert sqlite_queue.reserve() is None
    fake_clock.advance(0.25)

    delivery = sqlite_queue.reserve()
    assert delivery.attempt == 2
    assert sqlite_queue.fail(delivery, "boom again") is False
    assert sqlite_queue.outstanding() == 0
    [dead] = sqlite_queue.dead_letters()
    assert dead.reason == "boom again"
    assert dead.work_item.item.external_id == "flaky"


def test_sqlite_queue_redelivers_after_lease_expiry(sqlite_queue, make_item, fake_clock) -> None:
    sqlite_queue.enqueue(_work(make_item, "job-1"))
    first = sqlite_queue.reserve()
    assert sqlite_queue.reserve() is None

    fake_clock.advance(61.0)
    again = sqlite_queue.reserve()
    assert again is not None
    assert again.queue_id == first.queue_id
    assert again.attempt == 2


def test_sqlite_queue_survives_reopen(tmp_path, make_item, fake_clock) -> None:
    path = tmp_path / "queue.db"
    writer_manager = SQLiteManager()
    writer = SQLiteWorkQueue(writer_manager, path, clock=fake_clock)
    writer.enqueue(_work(make_item, "durable"))
    writer_manager.close_all()

    reader_manager = SQLiteManager()
    reader = SQLiteWorkQueue(reader_manager, path, clock=fake_clock)
    delivery = reader.reserve()
    assert delivery.work_item.item.external_id == "durable"
    reader_manager.close_all()


def test_sqlite_queue_dead_letters_expired_final_lease(sqlite_queue, make_item, fake_clock) -> None:
    sqlite_queue.enqueue(_work(make_item, "crashy"), EnqueueOptions(attempts=1))
    sqlite_queue.enqueue(_work(make_item, "healthy"))
    first = sqlite_queue.reserve()
    assert first.work_item.item.external_id == "crashy"
    assert first.is_last_attempt

    fake_clock.advance(61.0)
    following = sqlite_queue.reserve()
    assert following.work_item.item.external_id == "healthy"
    assert sqlite_queue.reserve() is None

    [expired] = sqlite_queue.collect_expired()
    assert expired.queue_id == first.queue_id
    assert expired.attempts_made == 1
    assert expired.reason == "Lease expired after final attempt"
    assert sqlite_queue.collect_expired() == []
    assert [dead.queue_id for dead in sqlite_queue.dead_letters()] == [first.queue_id]
    assert sqlite_queue.outstanding() == 1


def test_sqlite_queue_rejects_settling_a_reissued_lease(sqlite_queue, make_item, fake_clock) -> None:
    sqlite_queue.enqueue(_work(make_item, "slow"))
    stale = sqlite_queue.reserve()
    fake_clock.advance(61.0)
    current = sqlite_queue.reserve()
    assert current.attempt == stale.attempt + 1

    with pytest.raises(LeaseLost):
        sqlite_queue.ack(stale)
    with pytest.raises(LeaseLost):
        sqlite_queue.fail(stale, "too late")
    assert sqlite_queue.outstanding() == 1

    sqlite_queue.ack(current)
    assert sqlite_queue.outstanding() == 0
    with pytest.raises(LeaseLost):
        sqlite_queue.ack(current)


def test_memory_queue_rejects_double_settlement(memory_queue, make_item) -> None:
    memory_queue.enqueue(_work(make_item, "once"))
    delivery = memory_queue.reserve()
    memory_queue.ack(delivery)
    with pytest.raises(LeaseLost):
        memory_queue.ack(delivery)
    with pytest.raises(LeaseLost):
        memory_queue.fail(delivery, "late")
    assert memory_queue.collect_expired() == []


def test_sqlite_queues_sharing_a_file_never_share_an_item(tmp_path, make_item, fake_clock) -> None:
    path = tmp_path / "shared-queue.db"
    managers = [SQLiteManager(), SQLiteManager()]
    queues = [
        SQLiteWorkQueue(manager, path, visibility_timeout=60.0, poll_interval=0.01, clock=fake_clock)
        for manager in managers
    ]
    for index in range(120):
        queues[0].enqueue(_work(make_item, f"job-{index}"))

    seen: list[str] = []
    lock = threading.Lock()

    def consume(queue: SQLiteWorkQueue) -> None:
        while True:
            delivery = queue.reserve()
            if delivery is None:
                return
            with lock:
                seen.append(delivery.queue_id)
            queue.ack(delivery)

    threads = [threading.Thread(target=consume, args=(queues[index % 2],)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    for manager in managers:
        manager.close_all()

    assert len(seen) == 120
    assert len(set(seen)) == 120
