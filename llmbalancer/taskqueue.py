"""Thread-safe priority queue of tasks with usage metrics."""

from __future__ import annotations

import itertools
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from heapq import heapify, heappop, heappush
from typing import Any

from llmbalancer.models import Task, TaskStatus

SMALL_PAYLOAD = 1024
MEDIUM_PAYLOAD = 10 * 1024
MAX_ERROR_RATE = 0.1


class QueueError(Exception):
    """Base class for task queue errors."""


class QueueEmpty(QueueError):
    """The queue holds no tasks."""

    def __init__(self, message: str = "queue is empty") -> None:
        super().__init__(message)


class QueueFull(QueueError):
    """The queue is at capacity."""

    def __init__(self, message: str = "queue is full") -> None:
        super().__init__(message)


class QueueClosed(QueueError):
    """The queue has been closed."""

    def __init__(self, message: str = "queue is closed") -> None:
        super().__init__(message)


class QueueTimeout(QueueError):
    """No task arrived before the timeout."""

    def __init__(self, message: str = "operation timed out") -> None:
        super().__init__(message)


class TaskNotFound(QueueError):
    """The task is not in the queue."""

    def __init__(self, message: str = "task not found") -> None:
        super().__init__(message)


class InvalidTask(QueueError):
    """The task cannot be queued."""

    def __init__(self, message: str = "invalid task") -> None:
        super().__init__(message)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_timedelta(value: float | timedelta) -> timedelta:
    return value if isinstance(value, timedelta) else timedelta(seconds=value)


def _nanoseconds(delta: timedelta) -> int:
    return delta // timedelta(microseconds=1) * 1000


class _Entry:
    """Heap entry: higher priority first, then older tasks, then insertion order."""

    __slots__ = ("task", "seq")

    def __init__(self, task: Task, seq: int) -> None:
        self.task = task
        self.seq = seq

    def _key(self) -> tuple[int, datetime, int]:
        return (-self.task.priority, self.task.created_at, self.seq)

    def __lt__(self, other: _Entry) -> bool:
        return self._key() < other._key()


@dataclass
class QueueStats:
    """Snapshot of a queue's size, task states and metrics."""

    size: int
    capacity: int
    status: dict[str, int] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        metrics = dict(self.metrics)
        wait = metrics.get("avg_wait_time")
        if isinstance(wait, timedelta):
            metrics["avg_wait_time"] = _nanoseconds(wait)
        last = metrics.get("last_operation_time")
        if isinstance(last, datetime):
            metrics["last_operation_time"] = last.isoformat()
        elif last is None:
            metrics["last_operation_time"] = None
        metrics["operation_counts"] = dict(metrics.get("operation_counts") or {})
        metrics["error_counts"] = dict(metrics.get("error_counts") or {})
        return {
            "size": self.size,
            "capacity": self.capacity,
            "status": dict(self.status),
            "metrics": metrics,
        }


class TaskQueue:
    """Bounded priority queue; higher priority first, FIFO within a priority."""

    def __init__(self, capacity: int) -> None:
        self.capacity = capacity
        self._heap: list[_Entry] = []
        self._seq = itertools.count()
        self._cond = threading.Condition(threading.Lock())
        self._closed = False
        self._operation_counts: dict[str, int] = {}
        self._error_counts: dict[str, int] = {}
        self._peak_size = 0
        self._avg_wait_time = timedelta(0)
        self._last_operation_time: datetime | None = None

    def __enter__(self) -> TaskQueue:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __len__(self) -> int:
        with self._cond:
            return len(self._heap)

    def __iter__(self) -> Iterator[Task]:
        return iter(self._snapshot())

    def _snapshot(self) -> list[Task]:
        with self._cond:
            return [entry.task for entry in self._heap]

    def _record_operation(self, operation: str) -> None:
        self._operation_counts[operation] = self._operation_counts.get(operation, 0) + 1
        self._last_operation_time = _now()

    def _record_error(self, operation: str, error_type: str) -> None:
        key = f"{operation}_{error_type}"
        self._error_counts[key] = self._error_counts.get(key, 0) + 1

    def _update_wait_time(self, wait: timedelta) -> None:
        if not self._avg_wait_time:
            self._avg_wait_time = wait
        else:
            self._avg_wait_time = (self._avg_wait_time + wait) / 2

    def push(self, task: Task | None) -> None:
        """Add a task; raises InvalidTask, QueueFull or QueueClosed."""
        with self._cond:
            if self._closed:
                self._record_error("push", "queue_closed")
                raise QueueClosed()
            if task is None:
                self._record_error("push", "nil_task")
                raise InvalidTask()
            if not task.payload:
                self._record_error("push", "empty_payload")
                raise InvalidTask()
            if len(self._heap) >= self.capacity:
                self._record_error("push", "queue_full")
                raise QueueFull()
            heappush(self._heap, _Entry(task, next(self._seq)))
            self._record_operation("push")
            self._peak_size = max(self._peak_size, len(self._heap))
            self._cond.notify()

    def pop(self, timeout: float | timedelta | None = None) -> Task:
        """Remove and return the highest priority task.

        Waits without limit when timeout is None; raises QueueTimeout when the
        timeout passes and QueueClosed once the queue is closed and empty.
        """
        started = time.monotonic()
        deadline = None if timeout is None else started + _as_timedelta(timeout).total_seconds()
        with self._cond:
            while not self._heap:
                if self._closed:
                    self._record_error("pop", "context_cancelled")
                    raise QueueClosed()
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._record_error("pop", "timeout")
                    raise QueueTimeout()
                self._cond.wait(remaining)
            task = heappop(self._heap).task
            self._record_operation("pop")
            self._update_wait_time(timedelta(seconds=time.monotonic() - started))
            return task

    def peek(self) -> Task:
        """Return the highest priority task without removing it."""
        with self._cond:
            if not self._heap:
                self._record_error("peek", "queue_empty")
                raise QueueEmpty()
            self._operation_counts["peek"] = self._operation_counts.get("peek", 0) + 1
            return self._heap[0].task

    def is_empty(self) -> bool:
        return len(self) == 0

    def is_full(self) -> bool:
        return len(self) >= self.capacity

    def clear(self) -> None:
        """Remove every task."""
        with self._cond:
            self._heap = []
            self._record_operation("clear")

    def tasks_by_status(self, status: TaskStatus | str) -> list[Task]:
        wanted = TaskStatus(status)
        return [task for task in self._snapshot() if task.status == wanted]

    def remove_task(self, task_id: str) -> bool:
        """Remove the task with this id; False if it is not queued."""
        with self._cond:
            for position, entry in enumerate(self._heap):
                if entry.task.id == task_id:
                    del self._heap[position]
                    heapify(self._heap)
                    self._record_operation("remove")
                    return True
            self._record_error("remove", "task_not_found")
            return False

    def update_task(self, task_id: str, updater: Callable[[Task], None]) -> bool:
        """Apply updater to a queued task and restore the ordering; False if absent."""
        with self._cond:
            for entry in self._heap:
                if entry.task.id == task_id:
                    updater(entry.task)
                    heapify(self._heap)
                    self._record_operation("update")
                    return True
            self._record_error("update", "task_not_found")
            return False

    def close(self) -> None:
        """Close the queue and wake every waiting consumer."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def _metrics(self) -> dict[str, Any]:
        size = len(self._heap)
        utilization = size / self.capacity * 100 if self.capacity > 0 else 0.0
        return {
            "utilization_percentage": utilization,
            "peak_size": self._peak_size,
            "avg_wait_time": self._avg_wait_time,
            "last_operation_time": self._last_operation_time,
            "operation_counts": dict(self._operation_counts),
            "error_counts": dict(self._error_counts),
            "is_empty": size == 0,
            "is_full": size >= self.capacity,
        }

    def stats(self) -> QueueStats:
        with self._cond:
            counts: dict[str, int] = {}
            for entry in self._heap:
                key = TaskStatus(entry.task.status).value
                counts[key] = counts.get(key, 0) + 1
            return QueueStats(
                size=len(self._heap),
                capacity=self.capacity,
                status=counts,
                metrics=self._metrics(),
            )

    def priority_distribution(self) -> dict[int, int]:
        distribution: dict[int, int] = {}
        for task in self._snapshot():
            distribution[task.priority] = distribution.get(task.priority, 0) + 1
        return distribution

    def tasks_by_priority(self, priority: int) -> list[Task]:
        return [task for task in self._snapshot() if task.priority == priority]

    def oldest_task(self) -> Task:
        tasks = self._snapshot()
        if not tasks:
            raise QueueEmpty()
        return min(tasks, key=lambda task: task.created_at)

    def newest_task(self) -> Task:
        tasks = self._snapshot()
        if not tasks:
            raise QueueEmpty()
        return max(tasks, key=lambda task: task.created_at)

    def tasks_older_than(self, age: float | timedelta) -> list[Task]:
        cutoff = _now() - _as_timedelta(age)
        return [task for task in self._snapshot() if task.created_at < cutoff]

    def tasks_by_size(self) -> dict[str, int]:
        """Count tasks by payload size: small under 1 KiB, medium under 10 KiB, large."""
        ranges = {"small": 0, "medium": 0, "large": 0}
        for task in self._snapshot():
            size = len(task.payload)
            if size < SMALL_PAYLOAD:
                ranges["small"] += 1
            elif size < MEDIUM_PAYLOAD:
                ranges["medium"] += 1
            else:
                ranges["large"] += 1
        return ranges

    def drain(self) -> list[Task]:
        """Remove every task and return them in priority order."""
        with self._cond:
            tasks = [heappop(self._heap).task for _ in range(len(self._heap))]
            self._record_operation("drain")
            return tasks

    def is_healthy(self) -> bool:
        """Not more than 90% full and an error rate of at most 10%."""
        with self._cond:
            if len(self._heap) > self.capacity * 9 // 10:
                return False
            errors = sum(self._error_counts.values())
            operations = sum(self._operation_counts.values())
            if operations > 0 and errors / operations > MAX_ERROR_RATE:
                return False
            return True