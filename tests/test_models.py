import base64
import json
from datetime import datetime, timedelta, timezone

from llmbalancer.models import NodeCapacity, NodeStatus, Task, TaskResult, TaskStatus

UTC = timezone.utc


def test_new_task_defaults():
    task = Task("t1", b"hello")
    assert task.status is TaskStatus.PENDING
    assert task.priority == 0
    assert task.estimated_tokens == 0
    assert task.retry_count == 0
    assert task.max_retries == 3
    assert task.created_at.tzinfo is not None


def test_to_dict_formats_created_at_as_rfc3339():
    task = Task("t1", b"x", created_at=datetime(2024, 1, 2, 3, 4, 5, 678, tzinfo=UTC))
    assert task.to_dict()["created_at"] == "2024-01-02T03:04:05Z"


def test_to_dict_keeps_zone_offset():
    zone = timezone(timedelta(hours=2))
    task = Task("t1", b"x", created_at=datetime(2024, 1, 2, 3, 4, 5, tzinfo=zone))
    assert task.to_dict()["created_at"] == "2024-01-02T03:04:05+02:00"


def test_to_dict_omits_empty_optional_fields():
    data = Task("t1", b"x").to_dict()
    for key in ("started_at", "completed_at", "result", "error", "node_id"):
        assert key not in data
    assert data["status"] == "pending"
    assert data["max_retries"] == 3


def test_to_dict_payload_is_base64():
    payload = b"What is the capital of France?"
    data = Task("t1", payload).to_dict()
    assert base64.b64decode(data["payload"]) == payload


def test_round_trip_through_json():
    started = datetime(2024, 5, 6, 7, 8, 9, tzinfo=UTC)
    result = TaskResult(
        response=b"Paris",
        tokens_used=7,
        processing_time=timedelta(seconds=1, microseconds=250),
        metadata={"model": "qwen2.5"},
    )
    task = Task(
        "t9",
        b"prompt",
        {"model": "qwen2.5"},
        priority=5,
        estimated_tokens=120,
        created_at=started,
        started_at=started,
        completed_at=started + timedelta(seconds=3),
        status=TaskStatus.COMPLETED,
        result=result,
        node_id="node-1",
    )
    restored = Task.from_dict(json.loads(json.dumps(task.to_dict())))
    assert restored == task


def test_result_processing_time_in_nanoseconds_round_trips():
    result = TaskResult(processing_time=timedelta(milliseconds=1500))
    data = result.to_dict()
    restored = Task.from_dict({"id": "t", "result": data}).result
    assert restored.processing_time == timedelta(milliseconds=1500)
    assert data["processing_time"] == timedelta(milliseconds=1500) // timedelta(microseconds=1) * 1000


def test_from_dict_accepts_nanosecond_fractions():
    task = Task.from_dict({"id": "x", "created_at": "2024-01-02T03:04:05.123456789Z"})
    assert task.created_at == datetime(2024, 1, 2, 3, 4, 5, 123456, tzinfo=UTC)


def test_from_dict_defaults_missing_fields():
    task = Task.from_dict({"id": "x", "payload": None})
    assert task.payload == b""
    assert task.status is TaskStatus.PENDING
    assert task.result is None
    assert task.max_retries == 3


def test_new_node_status_is_healthy():
    status = NodeStatus("node-1", "localhost:8081")
    assert status.is_healthy()


def test_node_status_unhealthy_when_flagged():
    status = NodeStatus("node-1", "localhost:8081")
    status.update_health(False)
    assert not status.is_healthy()


def test_node_status_unhealthy_after_stale_heartbeat():
    status = NodeStatus(
        "node-1", "localhost:8081", last_heartbeat=datetime.now(UTC) - timedelta(seconds=31)
    )
    assert not status.is_healthy()


def test_update_task_counts_refreshes_heartbeat():
    old = datetime.now(UTC) - timedelta(minutes=5)
    status = NodeStatus("node-1", "localhost:8081", last_heartbeat=old)
    status.update_task_counts(3, 7)
    assert (status.active_tasks, status.queue_length) == (3, 7)
    assert status.last_heartbeat > old
    assert status.is_healthy()


def test_update_load():
    status = NodeStatus("node-1", "localhost:8081")
    status.update_load(0.75)
    assert status.current_load == 0.75
    assert status.to_dict()["current_load"] == 0.75


def test_node_status_to_dict_fields():
    status = NodeStatus("node-1", "localhost:8081")
    data = status.to_dict()
    assert data["id"] == "node-1"
    assert data["address"] == "localhost:8081"
    assert data["health"] is True
    assert "_lock" not in data
    assert json.loads(json.dumps(data)) == data


def test_capacity_accepts_up_to_token_limit():
    capacity = NodeCapacity(100, 10000, 10, 1000)
    assert capacity.can_accept_task(10000)
    capacity.increment_task_counts(6000)
    assert capacity.can_accept_task(4000)
    assert not capacity.can_accept_task(4001)


def test_capacity_rejects_when_concurrency_full():
    capacity = NodeCapacity(100, 10000, 2, 1000)
    capacity.increment_task_counts(0)
    capacity.increment_task_counts(0)
    assert not capacity.can_accept_task(0)
    capacity.decrement_task_counts(0)
    assert capacity.can_accept_task(0)


def test_decrement_never_goes_negative():
    capacity = NodeCapacity(100, 10000, 10, 1000)
    capacity.decrement_task_counts(50)
    assert capacity.current_concurrent_tasks == 0
    assert capacity.current_tokens_per_min == 0


def test_decrement_skips_tokens_larger_than_current():
    capacity = NodeCapacity(100, 10000, 10, 1000)
    capacity.increment_task_counts(100)
    capacity.decrement_task_counts(500)
    assert capacity.current_tokens_per_min == 100
    assert capacity.current_concurrent_tasks == 0


def test_reset_minute_counts():
    capacity = NodeCapacity(100, 10000, 10, 1000, current_requests_per_min=40)
    capacity.increment_task_counts(300)
    capacity.reset_minute_counts()
    assert capacity.current_requests_per_min == 0
    assert capacity.current_tokens_per_min == 0
    assert capacity.current_concurrent_tasks == 1


def test_capacity_to_dict():
    capacity = NodeCapacity(100, 10000, 10, 1000)
    data = capacity.to_dict()
    assert data["max_tokens_per_minute"] == 10000
    assert data["max_queue_size"] == 1000
    assert set(data) == {
        "max_requests_per_minute",
        "max_tokens_per_minute",
        "max_concurrent_tasks",
        "max_queue_size",
        "current_requests_per_min",
        "current_tokens_per_min",
        "current_concurrent_tasks",
    }