"""Routes tasks to nodes using several strategies and per-node circuit breakers."""

from __future__ import annotations

import copy
import math
import random
import threading
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import Any

from llmbalancer.models import NodeCapacity, NodeStatus, Task

DEFAULT_BREAKER_THRESHOLD = 5
DEFAULT_BREAKER_TIMEOUT = 30.0
STALE_HEARTBEAT = timedelta(seconds=30)
HIGH_LOAD = 0.8
HIGH_LATENCY = timedelta(milliseconds=100)
ASSUMED_LATENCY = timedelta(milliseconds=50)
FEW_NODES = 3
HIGH_PRIORITY = 5

STRATEGIES = ("round_robin", "least_loaded", "weighted", "random", "adaptive", "geographic")


def _seconds(value: float | timedelta) -> float:
    return value.total_seconds() if isinstance(value, timedelta) else float(value)


def _ratio(numerator: float, denominator: float) -> float:
    """Floating division that yields inf or nan instead of raising on a zero divisor."""
    if denominator:
        return numerator / denominator
    if numerator > 0:
        return math.inf
    if numerator < 0:
        return -math.inf
    return math.nan


def _since(moment: datetime) -> timedelta:
    if moment.tzinfo is None:
        moment = moment.astimezone()
    return datetime.now(timezone.utc) - moment


class CircuitState(IntEnum):
    """State of a circuit breaker."""

    CLOSED = 0
    OPEN = 1
    HALF_OPEN = 2


class CircuitBreaker:
    """Counts failures of a node and stops traffic to it for a while once they pile up."""

    def __init__(
        self,
        threshold: int = DEFAULT_BREAKER_THRESHOLD,
        timeout: float | timedelta = DEFAULT_BREAKER_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.timeout = _seconds(timeout)
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self._clock = clock
        self._last_failure: float | None = None
        self._lock = threading.Lock()

    def record_success(self) -> None:
        with self._lock:
            self.success_count += 1
            if self.state == CircuitState.HALF_OPEN and self.success_count >= self.threshold:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                self.success_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self.failure_count += 1
            self._last_failure = self._clock()
            if self.failure_count >= self.threshold:
                self.state = CircuitState.OPEN
                self.success_count = 0

    def is_available(self) -> bool:
        """True unless open; an open breaker turns half-open once its timeout has passed."""
        with self._lock:
            if self.state == CircuitState.OPEN:
                last = self._last_failure if self._last_failure is not None else self._clock()
                if self._clock() - last > self.timeout:
                    self.state = CircuitState.HALF_OPEN
                    return True
                return False
            return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)


class NoNodesAvailable(Exception):
    """No node can take the task."""


class LoadBalancer:
    """Chooses a node for each task, adapting the strategy to current conditions."""

    def __init__(
        self,
        strategy: str = "round_robin",
        *,
        adaptive: bool = True,
        rng: random.Random | None = None,
        breaker_threshold: int = DEFAULT_BREAKER_THRESHOLD,
        breaker_timeout: float | timedelta = DEFAULT_BREAKER_TIMEOUT,
    ) -> None:
        self.strategy = strategy
        self.adaptive = adaptive
        self.breaker_threshold = breaker_threshold
        self.breaker_timeout = breaker_timeout
        self._rng = rng or random.Random()
        self._nodes: dict[str, NodeStatus] = {}
        self._capacities: dict[str, NodeCapacity] = {}
        self._breakers: dict[str, CircuitBreaker] = {}
        self._metrics: dict[str, Any] = {}
        self._last_index = 0
        self._lock = threading.RLock()

    # registry

    def register_node(self, node_id: str, status: NodeStatus) -> None:
        with self._lock:
            self._nodes[node_id] = status
            self._breakers[node_id] = CircuitBreaker(self.breaker_threshold, self.breaker_timeout)

    def unregister_node(self, node_id: str) -> None:
        with self._lock:
            self._nodes.pop(node_id, None)
            self._capacities.pop(node_id, None)
            self._breakers.pop(node_id, None)

    def update_node_status(self, node_id: str, status: NodeStatus) -> None:
        with self._lock:
            self._nodes[node_id] = status

    def update_node_capacity(self, node_id: str, capacity: NodeCapacity) -> None:
        with self._lock:
            self._capacities[node_id] = capacity

    def record_node_success(self, node_id: str) -> None:
        with self._lock:
            breaker = self._breakers.get(node_id)
        if breaker is not None:
            breaker.record_success()

    def record_node_failure(self, node_id: str) -> None:
        with self._lock:
            breaker = self._breakers.get(node_id)
        if breaker is not None:
            breaker.record_failure()

    def node_statuses(self) -> dict[str, NodeStatus]:
        with self._lock:
            return dict(self._nodes)

    def node_capacity(self, node_id: str) -> NodeCapacity | None:
        with self._lock:
            return self._capacities.get(node_id)

    def healthy_nodes(self) -> list[str]:
        """Nodes that report healthy and whose circuit breaker lets traffic through."""
        with self._lock:
            healthy = []
            for node_id, status in self._nodes.items():
                if not status.is_healthy():
                    continue
                breaker = self._breakers.get(node_id)
                if breaker is None or breaker.is_available():
                    healthy.append(node_id)
            return healthy

    # routing

    def route_task(self, task: Task) -> str:
        """Return the id of the node that should run the task."""
        with self._lock:
            healthy = self.healthy_nodes()
            if not healthy:
                raise NoNodesAvailable("no healthy nodes available")
            self._update_routing_metrics(len(healthy))
            strategy = self._optimal_strategy(healthy)
            if strategy == "least_loaded":
                return self._least_loaded(healthy, task)
            if strategy in ("weighted", "geographic"):
                return self._weighted(healthy, task)
            if strategy == "random":
                return self._random(healthy)
            if strategy == "adaptive":
                return self._adaptive(healthy, task)
            return self._round_robin(healthy)

    def _optimal_strategy(self, healthy: list[str]) -> str:
        if not self.adaptive:
            return self.strategy
        if len(healthy) < FEW_NODES:
            return "least_loaded"
        if self._system_load(healthy) > HIGH_LOAD:
            return "weighted"
        if ASSUMED_LATENCY > HIGH_LATENCY:
            return "geographic"
        return "adaptive"

    def _system_load(self, healthy: list[str]) -> float:
        if not healthy:
            return 0.0
        total = sum(self._nodes[node_id].current_load for node_id in healthy if node_id in self._nodes)
        return total / len(healthy)

    def _update_routing_metrics(self, available: int) -> None:
        routing = self._metrics.get("task_routing")
        now = datetime.now(timezone.utc)
        if isinstance(routing, dict):
            routing["total_tasks"] = routing.get("total_tasks", 0) + 1
            routing["available_nodes"] = available
            routing["last_routing_time"] = now
        else:
            self._metrics["task_routing"] = {
                "total_tasks": 1,
                "available_nodes": available,
                "last_routing_time": now,
            }

    def _record_selection(self, node_id: str, strategy: str) -> None:
        selections = self._metrics.setdefault("node_selections", {})
        selections[node_id] = selections.get(node_id, 0) + 1
        usage = self._metrics.setdefault("strategy_usage", {})
        usage[strategy] = usage.get(strategy, 0) + 1

    def _round_robin(self, healthy: list[str]) -> str:
        self._last_index = (self._last_index + 1) % len(healthy)
        selected = healthy[self._last_index]
        self._record_selection(selected, "round_robin")
        return selected

    def _accepting(self, healthy: list[str], task: Task):
        for node_id in healthy:
            capacity = self._capacities.get(node_id)
            if capacity is None or not capacity.can_accept_task(task.estimated_tokens):
                continue
            yield node_id, self._nodes[node_id], capacity

    @staticmethod
    def _comprehensive_load(status: NodeStatus, capacity: NodeCapacity, task: Task) -> float:
        active = _ratio(status.active_tasks, capacity.max_concurrent_tasks)
        queued = _ratio(status.queue_length, capacity.max_queue_size)
        tokens = _ratio(capacity.current_tokens_per_min, capacity.max_tokens_per_minute)
        load = active * 0.5 + queued * 0.3 + tokens * 0.2
        if task.estimated_tokens > capacity.max_tokens_per_minute // 2:
            load += 0.1
        return load

    @staticmethod
    def _weighted_score(status: NodeStatus, capacity: NodeCapacity) -> float:
        capacity_score = capacity.max_tokens_per_minute / 10000.0
        load_score = 1.0 - _ratio(status.active_tasks, capacity.max_concurrent_tasks)
        queue_score = 1.0 - _ratio(status.queue_length, capacity.max_queue_size)
        token_score = 1.0 - _ratio(capacity.current_tokens_per_min, capacity.max_tokens_per_minute)
        health_score = 0.5 if _since(status.last_heartbeat) > STALE_HEARTBEAT else 1.0
        return (
            capacity_score * 0.25
            + load_score * 0.25
            + queue_score * 0.2
            + token_score * 0.2
            + health_score * 0.1
        )

    def _least_loaded(self, healthy: list[str], task: Task) -> str:
        best, lowest = "", 1.0
        for node_id, status, capacity in self._accepting(healthy, task):
            load = self._comprehensive_load(status, capacity, task)
            if load < lowest:
                best, lowest = node_id, load
        if not best:
            raise NoNodesAvailable(
                f"no nodes can accept task with {task.estimated_tokens} estimated tokens"
            )
        self._record_selection(best, "least_loaded")
        return best

    def _weighted(self, healthy: list[str], task: Task) -> str:
        best, best_score = "", -1.0
        for node_id, status, capacity in self._accepting(healthy, task):
            score = self._weighted_score(status, capacity)
            if score > best_score:
                best, best_score = node_id, score
        if not best:
            raise NoNodesAvailable(
                f"no nodes can accept task with {task.estimated_tokens} estimated tokens"
            )
        self._record_selection(best, "weighted")
        return best

    def _random(self, healthy: list[str]) -> str:
        weights = []
        for node_id in healthy:
            capacity = self._capacities.get(node_id)
            weights.append(capacity.max_tokens_per_minute // 1000 if capacity is not None else 1)
        total = sum(weights)
        selected = None
        if total > 0:
            target = self._rng.randrange(total)
            running = 0
            for node_id, weight in zip(healthy, weights):
                running += weight
                if target < running:
                    selected = node_id
                    break
        if selected is None:
            selected = self._rng.choice(healthy)
        self._record_selection(selected, "random")
        return selected

    def _adaptive(self, healthy: list[str], task: Task) -> str:
        if self._system_load(healthy) > HIGH_LOAD:
            return self._least_loaded(healthy, task)
        if len(healthy) < FEW_NODES:
            return self._weighted(healthy, task)
        if task.priority > HIGH_PRIORITY:
            return self._least_loaded(healthy, task)
        return self._weighted_random(healthy, task)

    def _weighted_random(self, healthy: list[str], task: Task) -> str:
        scores = []
        for node_id in healthy:
            capacity = self._capacities.get(node_id)
            if capacity is None:
                scores.append(0.1)
            elif not capacity.can_accept_task(task.estimated_tokens):
                scores.append(0.0)
            else:
                scores.append(self._weighted_score(self._nodes[node_id], capacity))
        total = sum(scores)
        if total == 0:
            raise NoNodesAvailable("no suitable nodes available")
        target = self._rng.random() * total
        running = 0.0
        selected = healthy[0]
        for node_id, score in zip(healthy, scores):
            running += score
            if target <= running:
                selected = node_id
                break
        self._record_selection(selected, "adaptive")
        return selected

    # reporting

    def stats(self) -> dict[str, Any]:
        """Strategy, node counts, per-node state and routing metrics."""
        with self._lock:
            healthy = self.healthy_nodes()
            nodes: dict[str, Any] = {}
            for node_id, status in self._nodes.items():
                entry: dict[str, Any] = {
                    "healthy": status.is_healthy(),
                    "active_tasks": status.active_tasks,
                    "queue_length": status.queue_length,
                    "load": status.current_load,
                }
                capacity = self._capacities.get(node_id)
                if capacity is not None:
                    entry["capacity"] = {
                        "max_concurrent_tasks": capacity.max_concurrent_tasks,
                        "max_tokens_per_minute": capacity.max_tokens_per_minute,
                        "current_concurrent_tasks": capacity.current_concurrent_tasks,
                        "current_tokens_per_minute": capacity.current_tokens_per_min,
                    }
                breaker = self._breakers.get(node_id)
                if breaker is not None:
                    available = breaker.is_available()
                    entry["circuit_breaker"] = {"state": breaker.state, "available": available}
                nodes[node_id] = entry
            return {
                "strategy": self.strategy,
                "total_nodes": len(self._nodes),
                "healthy_nodes": len(healthy),
                "system_load": self._system_load(healthy),
                "nodes": nodes,
                "metrics": copy.deepcopy(self._metrics),
                "circuit_breakers": {},
            }