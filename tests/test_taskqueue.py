import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from llmbalancer.models import Task, TaskStatus
from llmbalancer.taskqueue import (
    InvalidTask,
    QueueClosed,
    QueueEmpty,
    QueueFull,
    QueueTimeout,
    TaskQueue,
)

BASE = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_task(task_id, priority=0, offset=0, payload=b"hello", status=TaskStatus.PENDING):
    return Task(
        id=task_id,
        payload=payload,
        priority=priority,
        created_at=BASE + timedelta(seconds=offset),
        status=status,
    )


def test_pop_returns_highest_priority_first():
    queue = TaskQueue(10)
    queue.push(make_task("low", priority=1))
    queue.push(make_task("high", priority=9))
    queue.push(make_task("mid", priority=5))
    assert [queue.pop(timeout=0.1).id for _ in range(3)] == ["high", "mid", "low"]


def test_same_priority_is_fifo_by_creation_time():
    queue = TaskQueue(10)
    queue.push(make_task("second", offset=2))
    queue.push(make_task("first", offset=1))
    queue.push(make_task("third", offset=3))
    assert [queue.pop(timeout=0.1).id for _ in range(3)] == ["first", "second", "third"]


def test_push_rejects_when_full():
    queue = TaskQueue(2)
    queue.push(make_task("a"))
    queue.push(make_task("b"))
    assert queue.is_full()
    with pytest.raises(QueueFull):
        queue.push(make_task("c"))
    assert len(queue) == 2


def test_push_rejects_invalid_tasks():
    queue = TaskQueue(5)
    with pytest.raises(InvalidTask):
        queue.push(None)
    with pytest.raises(InvalidTask):
        queue.push(make_task("empty", payload=b""))
    assert queue.is_empty()


def test_pop_times_out_on_empty_queue():
    queue = TaskQueue(5)
    with pytest.raises(QueueTimeout):
        queue.pop(timeout=0.05)
    assert queue.stats().metrics["error_counts"] == {"pop_timeout": 1}


def test_pop_waits_for_pushed_task():
    queue = TaskQueue(5)
    got = []

    def consumer():
        got.append(queue.pop(timeout=5).id)

    worker = threading.Thread(target=consumer)
    worker.start()
    time.sleep(0.05)
    queue.push(make_task("late"))
    worker.join(timeout=5)
    assert got == ["late"]
    assert queue.is_empty() is True
    assert queue.stats().metrics["operation_counts"] == {"push": 1, "pop": 1}


def test_close_wakes_waiting_consumer():
    queue = TaskQueue(5)
    errors = []

    def consumer():
        try:
            queue.pop()
        except QueueClosed as exc:
            errors.append(exc)

    worker = threading.Thread(target=consumer)
    worker.start()
    time.sleep(0.05)
    queue.close()
    worker.join(timeout=5)
    assert len(errors) == 1
    with pytest.raises(QueueClosed):
        queue.pop()


def test_closed_queue_still_hands_out_remaining_tasks():
    queue = TaskQueue(5)
    queue.push(make_task("left"))
    queue.close()
    assert queue.pop().id == "left"
    with pytest.raises(QueueClosed):
        queue.pop()
    with pytest.raises(QueueClosed):
        queue.push(make_task("new"))


def test_peek_does_not_remove():
    queue = TaskQueue(5)
    with pytest.raises(QueueEmpty):
        queue.peek()
    queue.push(make_task("a", priority=3))
    queue.push(make_task("b", priority=7))
    assert queue.peek().id == "b"
    assert len(queue) == 2


def test_remove_task():
    queue = TaskQueue(5)
    queue.push(make_task("a", priority=2))
    queue.push(make_task("b", priority=8))
    queue.push(make_task("c", priority=5))
    assert queue.remove_task("b") is True
    assert queue.remove_task("missing") is False
    assert [t.id for t in queue.drain()] == ["c", "a"]


def test_update_task_reorders():
    queue = TaskQueue(5)
    queue.push(make_task("a", priority=1))
    queue.push(make_task("b", priority=5))

    def boost(task):
        task.priority = 10

    assert queue.update_task("a", boost) is True
    assert queue.update_task("nope", boost) is False
    assert queue.peek().id == "a"


def test_clear_empties_queue():
    queue = TaskQueue(5)
    queue.push(make_task("a"))
    queue.push(make_task("b"))
    queue.clear()
    assert queue.is_empty()
    assert queue.stats().metrics["operation_counts"]["clear"] == 1


def test_stats_reflect_contents():
    queue = TaskQueue(4)
    queue.push(make_task("a", status=TaskStatus.PENDING))
    queue.push(make_task("b", status=TaskStatus.RUNNING))
    queue.push(make_task("c", status=TaskStatus.PENDING))
    queue.pop(timeout=0.1)
    stats = queue.stats()
    assert stats.size == 2
    assert stats.capacity == 4
    assert sum(stats.status.values()) == 2
    assert stats.metrics["peak_size"] == 3
    assert stats.metrics["operation_counts"] == {"push": 3, "pop": 1}
    assert stats.metrics["utilization_percentage"] == 50.0
    data = stats.to_dict()
    assert data["size"] == 2
    assert isinstance(data["metrics"]["avg_wait_time"], int)


def test_tasks_by_status_and_priority():
    queue = TaskQueue(10)
    queue.push(make_task("a", priority=1, status=TaskStatus.RUNNING))
    queue.push(make_task("b", priority=1))
    queue.push(make_task("c", priority=4))
    assert {t.id for t in queue.tasks_by_status("pending")} == {"b", "c"}
    assert {t.id for t in queue.tasks_by_priority(1)} == {"a", "b"}
    assert queue.priority_distribution() == {1: 2, 4: 1}


def test_oldest_and_newest():
    queue = TaskQueue(10)
    with pytest.raises(QueueEmpty):
        queue.oldest_task()
    with pytest.raises(QueueEmpty):
        queue.newest_task()
    queue.push(make_task("mid", offset=5))
    queue.push(make_task("old", offset=1, priority=9))
    queue.push(make_task("new", offset=9))
    assert queue.oldest_task().id == "old"
    assert queue.newest_task().id == "new"


def test_tasks_older_than():
    queue = TaskQueue(10)
    queue.push(Task(id="fresh", payload=b"x"))
    queue.push(Task(id="stale", payload=b"x", created_at=datetime.now(timezone.utc) - timedelta(hours=2)))
    assert [t.id for t in queue.tasks_older_than(timedelta(hours=1))] == ["stale"]
    assert [t.id for t in queue.tasks_older_than(3600)] == ["stale"]


def test_tasks_by_size_boundaries():
    queue = TaskQueue(10)
    queue.push(make_task("s", payload=b"x" * 1023))
    queue.push(make_task("m1", payload=b"x" * 1024))
    queue.push(make_task("m2", payload=b"x" * (10 * 1024 - 1)))
    queue.push(make_task("l", payload=b"x" * (10 * 1024)))
    assert queue.tasks_by_size() == {"small": 1, "medium": 2, "large": 1}


def test_drain_returns_all_in_order():
    queue = TaskQueue(10)
    for index, priority in enumerate([3, 7, 1]):
        queue.push(make_task(f"t{priority}", priority=priority, offset=index))
    drained = queue.drain()
    assert [t.priority for t in drained] == sorted([3, 7, 1], reverse=True)
    assert queue.is_empty()


def test_is_healthy_capacity_threshold():
    queue = TaskQueue(10)
    for index in range(9):
        queue.push(make_task(f"t{index}"))
    assert queue.is_healthy() is True
    queue.push(make_task("t9"))
    assert queue.is_healthy() is False


def test_is_healthy_error_rate():
    queue = TaskQueue(10)
    queue.push(make_task("ok"))
    with pytest.raises(InvalidTask):
        queue.push(None)
    assert queue.is_healthy() is False