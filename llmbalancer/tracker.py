"""Keeps track of a node's tasks for status queries and failure recovery."""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from llmbalancer.models import Task, TaskStatus

MAX_TASK_AGE = timedelta(hours=24)
CLEANUP_INTERVAL = timedelta(hours=1)
STALLED_AFTER = timedelta(minutes=5)
ORPHANED_AFTER = timedelta(minutes=10)
OLD_AFTER = timedelta(hours=1)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TaskTracker:
    """Thread-safe registry of tasks with periodic removal of old entries."""

    def __init__(
        self,
        max_task_age: timedelta = MAX_TASK_AGE,
        cleanup_interval: timedelta = CLEANUP_INTERVAL,
    ) -> None:
        self.max_task_age = max_task_age
        self.cleanup_interval = cleanup_interval
        self._tasks: dict[str, Task] = {}
        self._lock = threading.RLock()
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None

    def __enter__(self) -> TaskTracker:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._tasks

    def start(self) -> None:
        """Start the background cleanup thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(
            target=self._cleanup_loop, name="task-tracker-cleanup", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the background cleanup thread and wait for it."""
        self._stopping.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _cleanup_loop(self) -> None:
        while not self._stopping.wait(self.cleanup_interval.total_seconds()):
            self.cleanup()

    def add_task(self, task: Task) -> None:
        with self._lock:
            self._tasks[task.id] = task

    def update_task(self, task_id: str, updater: Callable[[Task], None]) -> bool:
        """Apply updater to the task under the lock; False if the task is unknown."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return False
            updater(task)
            return True

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            return self._tasks.get(task_id)

    def tasks_by_status(self, status: TaskStatus | str) -> list[Task]:
        wanted = TaskStatus(status)
        with self._lock:
            return [task for task in self._tasks.values() if task.status == wanted]

    def failed_tasks(self) -> list[Task]:
        """Failed tasks, and running tasks that started more than five minutes ago."""
        now = _now()
        with self._lock:
            return [
                task
                for task in self._tasks.values()
                if task.status == TaskStatus.FAILED
                or (
                    task.status == TaskStatus.RUNNING
                    and task.started_at is not None
                    and now - task.started_at > STALLED_AFTER
                )
            ]

    def orphaned_tasks(self) -> list[Task]:
        """Pending tasks created more than ten minutes ago."""
        now = _now()
        with self._lock:
            return [
                task
                for task in self._tasks.values()
                if task.status == TaskStatus.PENDING and now - task.created_at > ORPHANED_AFTER
            ]

    def remove_task(self, task_id: str) -> None:
        with self._lock:
            self._tasks.pop(task_id, None)

    def stats(self) -> dict[str, Any]:
        """Task totals, counts by status and counts by age group."""
        now = _now()
        by_status: dict[str, int] = {}
        by_age: dict[str, int] = {}
        with self._lock:
            tasks = list(self._tasks.values())
        for task in tasks:
            key = TaskStatus(task.status).value
            by_status[key] = by_status.get(key, 0) + 1
            age = now - task.created_at
            if age > OLD_AFTER:
                group = "old"
            elif age > ORPHANED_AFTER:
                group = "medium"
            else:
                group = "recent"
            by_age[group] = by_age.get(group, 0) + 1
        return {"total_tasks": len(tasks), "by_status": by_status, "by_age": by_age}

    def cleanup(self) -> int:
        """Remove tasks older than the maximum age; return how many were removed."""
        now = _now()
        with self._lock:
            expired = [
                task_id
                for task_id, task in self._tasks.items()
                if now - task.created_at > self.max_task_age
            ]
            for task_id in expired:
                del self._tasks[task_id]
        return len(expired)

    def mark_for_redistribution(self, task_id: str) -> bool:
        """Reset a task to pending so it can be handed out again."""

        def reset(task: Task) -> None:
            task.status = TaskStatus.PENDING
            task.started_at = None
            task.completed_at = None
            task.result = None
            task.error = ""

        return self.update_task(task_id, reset)

    def tasks_for_redistribution(self) -> list[Task]:
        """Failed and orphaned tasks, each once."""
        unique = {task.id: task for task in (*self.failed_tasks(), *self.orphaned_tasks())}
        return list(unique.values())