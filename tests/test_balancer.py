import random
from datetime import datetime, timedelta, timezone

import pytest

from llmbalancer.balancer import (
    CircuitBreaker,
    CircuitState,
    LoadBalancer,
    NoNodesAvailable,
)
from llmbalancer.models import NodeCapacity, NodeStatus, Task


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def capacity(max_tokens=10000, max_concurrent=10, max_queue=100):
    return NodeCapacity(100, max_tokens, max_concurrent, max_queue)


def make_balancer(node_ids, strategy="round_robin", adaptive=True, with_capacity=True, seed=7):
    lb = LoadBalancer(strategy, adaptive=adaptive, rng=random.Random(seed))
    for node_id in node_ids:
        lb.register_node(node_id, NodeStatus(node_id, f"{node_id}:9000"))
        if with_capacity:
            lb.update_node_capacity(node_id, capacity())
    return lb


def test_breaker_starts_closed_and_available():
    breaker = CircuitBreaker(3, 10)
    assert breaker.state == CircuitState.CLOSED
    assert breaker.is_available() is True


def test_breaker_opens_at_threshold():
    clock = FakeClock()
    breaker = CircuitBreaker(3, 10, clock=clock)
    breaker.record_failure()
    breaker.record_failure()
    assert breaker.state == CircuitState.CLOSED
    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN
    assert breaker.is_available() is False


def test_breaker_half_opens_after_timeout_and_closes_on_successes():
    clock = FakeClock()
    breaker = CircuitBreaker(2, 10, clock=clock)
    breaker.record_failure()
    breaker.record_failure()
    clock.now += 11
    assert breaker.is_available() is True
    assert breaker.state == CircuitState.HALF_OPEN
    breaker.record_success()
    assert breaker.state == CircuitState.HALF_OPEN
    breaker.record_success()
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0


def test_breaker_stays_open_before_timeout():
    clock = FakeClock()
    breaker = CircuitBreaker(1, timedelta(seconds=10), clock=clock)
    breaker.record_failure()
    clock.now += 5
    assert breaker.is_available() is False


def test_route_without_nodes_raises():
    lb = LoadBalancer()
    with pytest.raises(NoNodesAvailable, match="no healthy nodes available"):
        lb.route_task(Task("t1"))


def test_unhealthy_and_stale_nodes_are_excluded():
    lb = make_balancer(["a", "b", "c"])
    lb.node_statuses()["a"].health = False
    lb.node_statuses()["b"].last_heartbeat = datetime.now(timezone.utc) - timedelta(seconds=60)
    assert lb.healthy_nodes() == ["c"]


def test_open_breaker_excludes_node():
    lb = make_balancer(["a", "b"])
    for _ in range(5):
        lb.record_node_failure("a")
    assert lb.healthy_nodes() == ["b"]
    lb.record_node_failure("missing")
    assert lb.healthy_nodes() == ["b"]


def test_few_nodes_without_capacity_cannot_route():
    lb = make_balancer(["a", "b"], with_capacity=False)
    task = Task("t1", payload=b"hi", estimated_tokens=42)
    with pytest.raises(NoNodesAvailable, match="42 estimated tokens"):
        lb.route_task(task)


def test_least_loaded_prefers_less_busy_node():
    lb = make_balancer(["a", "b"])
    lb.node_statuses()["a"].active_tasks = 5
    lb.node_statuses()["b"].active_tasks = 1
    assert lb.route_task(Task("t1", payload=b"x")) == "b"
    assert lb.stats()["metrics"]["strategy_usage"] == {"least_loaded": 1}


def test_node_that_cannot_accept_is_skipped():
    lb = make_balancer(["a", "b"])
    full = lb.node_capacity("a")
    full.current_concurrent_tasks = full.max_concurrent_tasks
    lb.node_statuses()["b"].active_tasks = 8
    for number in range(5):
        assert lb.route_task(Task(f"t{number}", payload=b"x")) == "b"


def test_round_robin_rotates_through_nodes():
    lb = make_balancer(["a", "b", "c"], strategy="round_robin", adaptive=False)
    picks = [lb.route_task(Task(f"t{n}", payload=b"x")) for n in range(3)]
    assert picks == ["b", "c", "a"]


def test_random_never_picks_zero_weight_node():
    lb = make_balancer(["a", "b"], strategy="random", adaptive=False, with_capacity=False)
    lb.update_node_capacity("a", capacity(max_tokens=500))
    picks = {lb.route_task(Task(f"t{n}", payload=b"x")) for n in range(20)}
    assert picks == {"b"}


def test_weighted_prefers_emptier_queue():
    lb = make_balancer(["a", "b"], strategy="weighted", adaptive=False)
    lb.node_statuses()["a"].queue_length = 90
    assert lb.route_task(Task("t1", payload=b"x")) == "b"
    assert lb.stats()["metrics"]["strategy_usage"] == {"weighted": 1}


def test_geographic_falls_back_to_weighted():
    lb = make_balancer(["a", "b"], strategy="geographic", adaptive=False)
    lb.update_node_capacity("b", capacity(max_tokens=20000))
    assert lb.route_task(Task("t1", payload=b"x")) == "b"
    assert "weighted" in lb.stats()["metrics"]["strategy_usage"]


def test_high_load_uses_weighted():
    lb = make_balancer(["a", "b", "c"])
    for status in lb.node_statuses().values():
        status.current_load = 0.9
    chosen = lb.route_task(Task("t1", payload=b"x"))
    assert chosen in {"a", "b", "c"}
    assert lb.stats()["metrics"]["strategy_usage"] == {"weighted": 1}


def test_adaptive_high_priority_uses_least_loaded():
    lb = make_balancer(["a", "b", "c"])
    task = Task("t1", payload=b"x", priority=6)
    lb.route_task(task)
    assert lb.stats()["metrics"]["strategy_usage"] == {"least_loaded": 1}


def test_adaptive_normal_uses_weighted_random_and_skips_full_nodes():
    lb = make_balancer(["a", "b", "c"])
    full = lb.node_capacity("b")
    full.current_concurrent_tasks = full.max_concurrent_tasks
    picks = {lb.route_task(Task(f"t{n}", payload=b"x")) for n in range(30)}
    assert "b" not in picks
    assert picks <= {"a", "c"}
    assert lb.stats()["metrics"]["strategy_usage"] == {"adaptive": 30}


def test_weighted_random_with_nothing_suitable_raises():
    lb = make_balancer(["a", "b", "c"])
    for node_id in ("a", "b", "c"):
        cap = lb.node_capacity(node_id)
        cap.current_concurrent_tasks = cap.max_concurrent_tasks
    with pytest.raises(NoNodesAvailable, match="no suitable nodes available"):
        lb.route_task(Task("t1", payload=b"x"))


def test_routing_metrics_count_tasks():
    lb = make_balancer(["a", "b"])
    lb.route_task(Task("t1", payload=b"x"))
    lb.route_task(Task("t2", payload=b"x"))
    routing = lb.stats()["metrics"]["task_routing"]
    assert routing["total_tasks"] == 2
    assert routing["available_nodes"] == 2
    selections = lb.stats()["metrics"]["node_selections"]
    assert sum(selections.values()) == 2


def test_stats_reports_nodes_capacity_and_breakers():
    lb = make_balancer(["a", "b"], strategy="least_loaded")
    lb.node_statuses()["a"].health = False
    stats = lb.stats()
    assert stats["strategy"] == "least_loaded"
    assert stats["total_nodes"] == 2
    assert stats["healthy_nodes"] == 1
    assert stats["nodes"]["a"]["healthy"] is False
    assert stats["nodes"]["b"]["capacity"]["max_tokens_per_minute"] == 10000
    assert stats["nodes"]["b"]["circuit_breaker"] == {
        "state": CircuitState.CLOSED,
        "available": True,
    }
    assert stats["circuit_breakers"] == {}


def test_unregister_removes_node_and_capacity():
    lb = make_balancer(["a", "b"])
    lb.unregister_node("a")
    assert list(lb.node_statuses()) == ["b"]
    assert lb.node_capacity("a") is None


def test_update_node_status_replaces_status():
    lb = make_balancer(["a"])
    replacement = NodeStatus("a", "elsewhere:9000")
    lb.update_node_status("a", replacement)
    assert lb.node_statuses()["a"].address == "elsewhere:9000"


def test_success_recorded_on_half_open_breaker_keeps_node_available():
    lb = LoadBalancer(breaker_threshold=1, breaker_timeout=0.0)
    lb.register_node("a", NodeStatus("a", "a:9000"))
    lb.record_node_failure("a")
    assert lb.healthy_nodes() == ["a"]
    lb.record_node_success("a")
    assert lb.stats()["nodes"]["a"]["circuit_breaker"]["state"] == CircuitState.CLOSED