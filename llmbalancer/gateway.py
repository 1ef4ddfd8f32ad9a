"""Gateway logic: accept tasks, route them to nodes and keep a registry of them."""

from __future__ import annotations

import base64
import copy
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import requests

from llmbalancer.balancer import LoadBalancer, NoNodesAvailable
from llmbalancer.models import NodeStatus, Task, TaskStatus

if TYPE_CHECKING:
    from llmbalancer.config import Config

logger = logging.getLogger(__name__)

MIN_PRIORITY = 0
MAX_PRIORITY = 10
MIN_TOKENS = 100
DEFAULT_MAX_RETRIES = 3
HTTP_TIMEOUT = 30.0

_MODEL_FACTORS = {"gpt-4": 1.2, "gpt-3.5-turbo": 1.0}
_DEFAULT_MODEL_FACTOR = 1.1
_FINISHED = (TaskStatus.COMPLETED, TaskStatus.FAILED)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.astimezone()
    text = moment.isoformat()
    return text[:-6] + "Z" if text.endswith("+00:00") else text


class GatewayError(Exception):
    """A request to the gateway could not be served; status_code is the HTTP status."""

    def __init__(self, message: str, status_code: int = 500) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class TaskInfo:
    """What the gateway remembers about a submitted task."""

    task_id: str
    node_id: str
    status: str
    created_at: datetime = field(default_factory=_now)
    last_updated: datetime = field(default_factory=_now)
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    payload: bytes = b""
    parameters: dict[str, Any] | None = None
    priority: int = 0
    result: Any = None
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "task_id": self.task_id,
            "node_id": self.node_id,
            "status": self.status,
            "created_at": _timestamp(self.created_at),
            "last_updated": _timestamp(self.last_updated),
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "payload": base64.b64encode(self.payload).decode("ascii"),
            "parameters": self.parameters,
            "priority": self.priority,
        }
        if self.result is not None:
            to_dict = getattr(self.result, "to_dict", None)
            data["result"] = to_dict() if callable(to_dict) else self.result
        if self.error:
            data["error"] = self.error
        return data


def estimate_tokens(payload: bytes | str, parameters: dict[str, Any] | None) -> int:
    """Rough token estimate: a quarter of the payload, or max_tokens, scaled by model, at least 100."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    tokens = len(payload) // 4
    if parameters is not None:
        max_tokens = parameters.get("max_tokens")
        if isinstance(max_tokens, int) and not isinstance(max_tokens, bool) and max_tokens > 0:
            tokens = max_tokens
        model = parameters.get("model")
        if isinstance(model, str):
            tokens = int(float(tokens) * _MODEL_FACTORS.get(model, _DEFAULT_MODEL_FACTOR))
    return max(tokens, MIN_TOKENS)


def generate_task_id() -> str:
    return f"task-{time.time_ns()}"


class GatewayService:
    """Accepts tasks, forwards them to nodes chosen by the balancer and tracks them."""

    def __init__(
        self,
        balancer: LoadBalancer | None = None,
        *,
        session: requests.Session | None = None,
        http_timeout: float = HTTP_TIMEOUT,
    ) -> None:
        self.balancer = balancer if balancer is not None else LoadBalancer()
        self.http_timeout = http_timeout
        self._session = session or requests.Session()
        self._tasks: dict[str, TaskInfo] = {}
        self._metrics: dict[str, Any] = {}
        self._lock = threading.RLock()

    @classmethod
    def from_config(cls, config: Config, **kwargs: Any) -> GatewayService:
        return cls(LoadBalancer(config.gateway.load_balancing_strategy), **kwargs)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    @property
    def metrics(self) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._metrics)

    # node communication

    def _node_address(self, node_id: str) -> str:
        status = self.balancer.node_statuses().get(node_id)
        if status is None:
            raise LookupError(f"node {node_id} not found")
        return status.address

    def _submit_to_node(self, node_id: str, task: Task) -> bool:
        address = self._node_address(node_id)
        body = {
            "payload": base64.b64encode(task.payload).decode("ascii"),
            "parameters": task.parameters,
            "priority": task.priority,
        }
        resp = self._session.post(
            f"http://{address}/api/v1/tasks", json=body, timeout=self.http_timeout
        )
        with resp:
            return resp.status_code == 200

    def _task_from_node(self, node_id: str, task_id: str) -> Task:
        address = self._node_address(node_id)
        resp = self._session.get(
            f"http://{address}/api/v1/tasks/{task_id}", timeout=self.http_timeout
        )
        with resp:
            if resp.status_code != 200:
                raise ValueError(f"node returned status {resp.status_code}")
            data = resp.json()
        if not isinstance(data, dict):
            raise ValueError("node returned a malformed task")
        return Task.from_dict(data)

    def _fetch_current(self, info: TaskInfo) -> Task | None:
        try:
            return self._task_from_node(info.node_id, info.task_id)
        except (requests.RequestException, LookupError, ValueError, TypeError) as exc:
            logger.warning("Failed to get task status from node: %s", exc)
            return None

    # tasks

    def submit_task(
        self,
        payload: str,
        parameters: dict[str, Any] | None = None,
        priority: int = 0,
    ) -> TaskInfo:
        """Validate, route and forward a task; raises GatewayError with an HTTP status."""
        if not isinstance(payload, str):
            raise GatewayError("Invalid request body", 400)
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise GatewayError("Invalid request body", 400)
        if parameters is not None and not isinstance(parameters, dict):
            raise GatewayError("Invalid request body", 400)
        if not payload:
            raise GatewayError("Payload cannot be empty", 400)
        if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise GatewayError("Priority must be between 0 and 10", 400)

        data = payload.encode("utf-8")
        task = Task(id=generate_task_id(), payload=data, parameters=parameters, priority=priority)
        task.estimated_tokens = estimate_tokens(data, parameters)

        try:
            node_id = self.balancer.route_task(task)
        except NoNodesAvailable as exc:
            logger.error("Failed to route task: %s", exc)
            raise GatewayError("No available nodes to process task", 503) from exc

        try:
            accepted = self._submit_to_node(node_id, task)
        except (requests.RequestException, LookupError) as exc:
            logger.error("Failed to submit task to node %s: %s", node_id, exc)
            raise GatewayError("Failed to submit task to node", 500) from exc
        if not accepted:
            raise GatewayError("Node is not accepting tasks", 503)

        now = _now()
        info = TaskInfo(
            task_id=task.id,
            node_id=node_id,
            status="submitted",
            created_at=now,
            last_updated=now,
            payload=data,
            parameters=parameters,
            priority=priority,
        )
        with self._lock:
            self._tasks[info.task_id] = info
            self._update_task_metrics("submitted", node_id)
        logger.info("Task %s submitted to node %s", task.id, node_id)
        return info

    def _update_task_metrics(self, status: str, node_id: str) -> None:
        metrics = self._metrics.get("task_metrics")
        if isinstance(metrics, dict):
            by_status = metrics.setdefault("by_status", {})
            by_status[status] = by_status.get(status, 0) + 1
            by_node = metrics.setdefault("by_node", {})
            by_node[node_id] = by_node.get(node_id, 0) + 1
        else:
            self._metrics["task_metrics"] = {
                "by_status": {status: 1},
                "by_node": {node_id: 1},
            }

    def get_task(self, task_id: str) -> TaskInfo:
        """The task's record, refreshed from its node when the node can be reached."""
        with self._lock:
            info = self._tasks.get(task_id)
        if info is None:
            raise GatewayError("Task not found", 404)
        current = self._fetch_current(info)
        if current is None:
            return info
        with self._lock:
            info.status = TaskStatus(current.status).value
            info.last_updated = _now()
            if current.status in _FINISHED:
                if current.result is not None:
                    info.result = current.result
                if current.error:
                    info.error = current.error
        return info

    def all_tasks(self) -> dict[str, Any]:
        """Every registered task with its live status where the node answers."""
        with self._lock:
            tasks = list(self._tasks.values())
        entries = []
        for info in tasks:
            entry: dict[str, Any] = {
                "task_id": info.task_id,
                "node_id": info.node_id,
                "status": info.status,
                "created_at": _timestamp(info.created_at),
                "last_updated": _timestamp(info.last_updated),
                "priority": info.priority,
            }
            current = self._fetch_current(info)
            if current is not None:
                entry["status"] = TaskStatus(current.status).value
                entry["last_updated"] = _timestamp(_now())
            entries.append(entry)
        return {
            "tasks": entries,
            "total_tasks": len(tasks),
            "by_status": self.task_counts_by_status(),
        }

    def task_counts_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            for info in self._tasks.values():
                counts[info.status] = counts.get(info.status, 0) + 1
        return counts

    # nodes

    def register_node(self, node_id: str, address: str) -> None:
        self.balancer.register_node(node_id, NodeStatus(id=node_id, address=address))
        logger.info("Registered node %s at %s", node_id, address)

    def unregister_node(self, node_id: str) -> None:
        self.balancer.unregister_node(node_id)
        logger.info("Unregistered node %s", node_id)

    def healthy_nodes(self) -> list[str]:
        """Nodes whose status reports them healthy."""
        return [
            node_id
            for node_id, status in self.balancer.node_statuses().items()
            if status.is_healthy()
        ]