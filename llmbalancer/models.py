"""Task and node data types shared by the gateway and the nodes."""

from __future__ import annotations

import base64
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

HEARTBEAT_TIMEOUT = timedelta(seconds=30)

_FRACTION = re.compile(r"\.(\d+)")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.astimezone()


def _zulu(text: str) -> str:
    return text[:-6] + "Z" if text.endswith("+00:00") else text


def _format_rfc3339(moment: datetime) -> str:
    """Format a time with whole seconds and a zone offset."""
    return _zulu(_aware(moment).replace(microsecond=0).isoformat())


def _format_timestamp(moment: datetime) -> str:
    """Format a time at full precision with a zone offset."""
    return _zulu(_aware(moment).isoformat())


def _parse_time(text: str) -> datetime:
    text = text.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
    return datetime.fromisoformat(text)


def _encode_bytes(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def _decode_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return base64.b64decode(value)


def _nanoseconds(delta: timedelta) -> int:
    return delta // timedelta(microseconds=1) * 1000


class TaskStatus(str, Enum):
    """Lifecycle state of a task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class TaskResult:
    """Output of a completed task."""

    response: bytes = b""
    tokens_used: int = 0
    processing_time: timedelta = timedelta(0)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "response": _encode_bytes(self.response),
            "tokens_used": self.tokens_used,
            "processing_time": _nanoseconds(self.processing_time),
            "metadata": dict(self.metadata),
        }


def _result_from_dict(data: dict[str, Any]) -> TaskResult:
    return TaskResult(
        response=_decode_bytes(data.get("response")),
        tokens_used=int(data.get("tokens_used") or 0),
        processing_time=timedelta(microseconds=int(data.get("processing_time") or 0) / 1000),
        metadata=dict(data.get("metadata") or {}),
    )


@dataclass
class Task:
    """A single LLM processing request."""

    id: str
    payload: bytes = b""
    parameters: dict[str, Any] | None = None
    priority: int = 0
    estimated_tokens: int = 0
    created_at: datetime = field(default_factory=_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    status: TaskStatus = TaskStatus.PENDING
    result: TaskResult | None = None
    error: str = ""
    node_id: str = ""
    retry_count: int = 0
    max_retries: int = 3

    def to_dict(self) -> dict[str, Any]:
        """JSON form; times in RFC 3339, payload in base64, empty optionals left out."""
        data: dict[str, Any] = {
            "id": self.id,
            "payload": _encode_bytes(self.payload),
            "parameters": self.parameters,
            "priority": self.priority,
            "estimated_tokens": self.estimated_tokens,
            "created_at": _format_rfc3339(self.created_at),
        }
        if self.started_at is not None:
            data["started_at"] = _format_rfc3339(self.started_at)
        if self.completed_at is not None:
            data["completed_at"] = _format_rfc3339(self.completed_at)
        data["status"] = TaskStatus(self.status).value
        if self.result is not None:
            data["result"] = self.result.to_dict()
        if self.error:
            data["error"] = self.error
        if self.node_id:
            data["node_id"] = self.node_id
        data["retry_count"] = self.retry_count
        data["max_retries"] = self.max_retries
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        """Build a task from its JSON form."""
        created = data.get("created_at")
        started = data.get("started_at")
        completed = data.get("completed_at")
        result = data.get("result")
        return cls(
            id=str(data.get("id", "")),
            payload=_decode_bytes(data.get("payload")),
            parameters=data.get("parameters"),
            priority=int(data.get("priority") or 0),
            estimated_tokens=int(data.get("estimated_tokens") or 0),
            created_at=_parse_time(created) if created else _now(),
            started_at=_parse_time(started) if started else None,
            completed_at=_parse_time(completed) if completed else None,
            status=TaskStatus(data.get("status") or TaskStatus.PENDING.value),
            result=_result_from_dict(result) if isinstance(result, dict) else None,
            error=data.get("error") or "",
            node_id=data.get("node_id") or "",
            retry_count=int(data.get("retry_count") or 0),
            max_retries=int(data.get("max_retries", 3)),
        )


@dataclass
class NodeStatus:
    """Current state of a node as seen by the gateway."""

    id: str
    address: str
    requests_per_min: int = 0
    tokens_per_min: int = 0
    current_load: float = 0.0
    health: bool = True
    last_heartbeat: datetime = field(default_factory=_now)
    active_tasks: int = 0
    queue_length: int = 0
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def update_load(self, load: float) -> None:
        with self._lock:
            self.current_load = load
            self.last_heartbeat = _now()

    def update_health(self, health: bool) -> None:
        with self._lock:
            self.health = health
            self.last_heartbeat = _now()

    def update_task_counts(self, active_tasks: int, queue_length: int) -> None:
        with self._lock:
            self.active_tasks = active_tasks
            self.queue_length = queue_length
            self.last_heartbeat = _now()

    def is_healthy(self) -> bool:
        """Healthy when flagged so and a heartbeat arrived within the last 30 seconds."""
        with self._lock:
            return self.health and _now() - _aware(self.last_heartbeat) < HEARTBEAT_TIMEOUT

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "id": self.id,
                "address": self.address,
                "requests_per_min": self.requests_per_min,
                "tokens_per_min": self.tokens_per_min,
                "current_load": self.current_load,
                "health": self.health,
                "last_heartbeat": _format_timestamp(self.last_heartbeat),
                "active_tasks": self.active_tasks,
                "queue_length": self.queue_length,
            }


@dataclass
class NodeCapacity:
    """Capacity limits of a node and its current usage."""

    max_requests_per_minute: int
    max_tokens_per_minute: int
    max_concurrent_tasks: int
    max_queue_size: int
    current_requests_per_min: int = 0
    current_tokens_per_min: int = 0
    current_concurrent_tasks: int = 0
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def can_accept_task(self, estimated_tokens: int) -> bool:
        with self._lock:
            return (
                self.current_concurrent_tasks < self.max_concurrent_tasks
                and self.current_tokens_per_min + estimated_tokens <= self.max_tokens_per_minute
            )

    def increment_task_counts(self, estimated_tokens: int) -> None:
        with self._lock:
            self.current_concurrent_tasks += 1
            self.current_tokens_per_min += estimated_tokens

    def decrement_task_counts(self, estimated_tokens: int) -> None:
        with self._lock:
            if self.current_concurrent_tasks > 0:
                self.current_concurrent_tasks -= 1
            if self.current_tokens_per_min >= estimated_tokens:
                self.current_tokens_per_min -= estimated_tokens

    def reset_minute_counts(self) -> None:
        """Reset the per-minute counters."""
        with self._lock:
            self.current_requests_per_min = 0
            self.current_tokens_per_min = 0

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "max_requests_per_minute": self.max_requests_per_minute,
                "max_tokens_per_minute": self.max_tokens_per_minute,
                "max_concurrent_tasks": self.max_concurrent_tasks,
                "max_queue_size": self.max_queue_size,
                "current_requests_per_min": self.current_requests_per_min,
                "current_tokens_per_min": self.current_tokens_per_min,
                "current_concurrent_tasks": self.current_concurrent_tasks,
            }