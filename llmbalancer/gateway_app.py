"""HTTP front end of the gateway: routes, monitoring views and the command entry point."""

from __future__ import annotations

import json
import logging
import math
import sys
import time
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from flask import Flask, jsonify, request

from llmbalancer.config import ConfigError, load_config
from llmbalancer.gateway import GatewayError, GatewayService
from llmbalancer.models import NodeCapacity, NodeStatus

logger = logging.getLogger(__name__)

_STARTED = time.monotonic()


def _timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.astimezone()
    text = moment.isoformat()
    return text[:-6] + "Z" if text.endswith("+00:00") else text


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _jsonable(value: Any) -> Any:
    """Turn a result into plain JSON values."""
    if isinstance(value, Enum):
        return _jsonable(value.value)
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(item) for item in value]
    if isinstance(value, datetime):
        return _timestamp(value)
    if isinstance(value, timedelta):
        return value // timedelta(microseconds=1) * 1000
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return _jsonable(to_dict())
    return value


def _percent(part: float, whole: float) -> float:
    return part / whole * 100 if whole else 0.0


def _node_entry(node_id: str, status: NodeStatus) -> dict[str, Any]:
    return {
        "node_id": node_id,
        "address": status.address,
        "healthy": status.is_healthy(),
        "last_heartbeat": _timestamp(status.last_heartbeat),
        "active_tasks": status.active_tasks,
        "queue_length": status.queue_length,
        "load": status.current_load,
    }


def _capacity_dict(capacity: NodeCapacity) -> dict[str, Any]:
    return {
        "max_requests_per_minute": capacity.max_requests_per_minute,
        "max_tokens_per_minute": capacity.max_tokens_per_minute,
        "max_concurrent_tasks": capacity.max_concurrent_tasks,
        "max_queue_size": capacity.max_queue_size,
        "current_requests_per_min": capacity.current_requests_per_min,
        "current_tokens_per_min": capacity.current_tokens_per_min,
        "current_concurrent_tasks": capacity.current_concurrent_tasks,
    }


def _system_section(total: int, healthy: int) -> dict[str, Any]:
    return {
        "total_nodes": total,
        "healthy_nodes": healthy,
        "unhealthy_nodes": total - healthy,
        "health_percentage": _percent(healthy, total),
    }


def _task_section(service: GatewayService, nodes: dict[str, NodeStatus]) -> dict[str, Any]:
    active = sum(status.active_tasks for status in nodes.values())
    queued = sum(status.queue_length for status in nodes.values())
    return {
        "total_active": active,
        "total_queued": queued,
        "total_tasks": active + queued,
        "registry_tasks": len(service),
        "by_status": service.task_counts_by_status(),
    }


def node_list(service: GatewayService) -> dict[str, Any]:
    """Every registered node with its state."""
    nodes = service.balancer.node_statuses()
    return {
        "nodes": [_node_entry(node_id, status) for node_id, status in nodes.items()],
        "total_nodes": len(nodes),
        "healthy_nodes": len(service.healthy_nodes()),
    }


def _node_count(service: GatewayService) -> dict[str, Any]:
    total = len(service.balancer.node_statuses())
    healthy = len(service.healthy_nodes())
    return {"total_nodes": total, "healthy_nodes": healthy, "unhealthy_nodes": total - healthy}


def _node_health(service: GatewayService) -> dict[str, Any]:
    nodes = service.balancer.node_statuses()
    return {
        "nodes": [_node_entry(node_id, status) for node_id, status in nodes.items()],
        "total_nodes": len(nodes),
        "healthy_count": len(service.healthy_nodes()),
    }


def node_details(service: GatewayService, node_id: str) -> dict[str, Any]:
    """State and capacity of one node; GatewayError 404 if it is unknown."""
    status = service.balancer.node_statuses().get(node_id)
    if status is None:
        raise GatewayError("Node not found", 404)
    entry = _node_entry(node_id, status)
    details: dict[str, Any] = {
        "node_id": node_id,
        "address": status.address,
        "status": {key: entry[key] for key in entry if key not in ("node_id", "address")},
    }
    capacity = service.balancer.node_capacity(node_id)
    if capacity is not None:
        details["capacity"] = _capacity_dict(capacity)
    return details


def stats(service: GatewayService) -> dict[str, Any]:
    """Balancer statistics together with system and task totals."""
    nodes = service.balancer.node_statuses()
    healthy = service.healthy_nodes()
    return {
        "balancer": _jsonable(service.balancer.stats()),
        "system": _system_section(len(nodes), len(healthy)),
        "tasks": _task_section(service, nodes),
        "gateway_metrics": _jsonable(service.metrics),
        "timestamp": _timestamp(_now()),
    }


def system_overview(service: GatewayService) -> dict[str, Any]:
    """System-wide node, task and load figures."""
    nodes = service.balancer.node_statuses()
    healthy = service.healthy_nodes()
    total_load = sum(status.current_load for status in nodes.values())
    return {
        "system": _system_section(len(nodes), len(healthy)),
        "tasks": _task_section(service, nodes),
        "performance": {
            "average_load": total_load / len(nodes) if nodes else 0.0,
            "total_load": total_load,
        },
        "balancer": {
            "strategy": service.balancer.strategy,
            "last_updated": _timestamp(_now()),
        },
    }


def task_stats(service: GatewayService) -> dict[str, Any]:
    """Active and queued tasks per node, with totals."""
    nodes = service.balancer.node_statuses()
    per_node = [
        {
            "node_id": node_id,
            "address": status.address,
            "active_tasks": status.active_tasks,
            "queue_length": status.queue_length,
            "total_tasks": status.active_tasks + status.queue_length,
        }
        for node_id, status in nodes.items()
    ]
    total_active = sum(entry["active_tasks"] for entry in per_node)
    total_queued = sum(entry["queue_length"] for entry in per_node)
    total_tasks = sum(entry["total_tasks"] for entry in per_node)
    return {
        "nodes": per_node,
        "totals": {
            "active_tasks": total_active,
            "queued_tasks": total_queued,
            "total_tasks": total_tasks,
        },
        "registry": {
            "total_tasks": len(service),
            "by_status": service.task_counts_by_status(),
        },
        "summary": {
            "nodes_with_tasks": len(per_node),
            "average_tasks_per_node": total_tasks / len(nodes) if nodes else 0.0,
        },
    }


def capacity_stats(service: GatewayService) -> dict[str, Any]:
    """Capacity and utilisation per node and for the whole system."""
    per_node = []
    totals = dict.fromkeys(
        (
            "max_requests_per_minute",
            "max_tokens_per_minute",
            "max_concurrent_tasks",
            "max_queue_size",
            "current_requests_per_min",
            "current_tokens_per_min",
            "current_concurrent_tasks",
        ),
        0,
    )
    for node_id, status in service.balancer.node_statuses().items():
        entry: dict[str, Any] = {
            "node_id": node_id,
            "address": status.address,
            "healthy": status.is_healthy(),
        }
        capacity = service.balancer.node_capacity(node_id)
        if capacity is not None:
            figures = _capacity_dict(capacity)
            for key, value in figures.items():
                totals[key] += value
            figures["utilization_percentage"] = _percent(
                capacity.current_concurrent_tasks, capacity.max_concurrent_tasks
            )
            entry["capacity"] = figures
        per_node.append(entry)
    system = dict(totals)
    system["utilization_percentage"] = _percent(
        totals["current_concurrent_tasks"], totals["max_concurrent_tasks"]
    )
    return {"nodes": per_node, "system_capacity": system}


def _uptime() -> str:
    seconds = int(time.monotonic() - _STARTED)
    hours, rest = divmod(seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours}h {minutes}m {seconds}s"


def system_status(service: GatewayService) -> dict[str, Any]:
    """Overall state: healthy, degraded when some nodes are down, down when none are up."""
    nodes = service.balancer.node_statuses()
    healthy = service.healthy_nodes()
    if not healthy:
        state = "down"
    elif len(healthy) < len(nodes):
        state = "degraded"
    else:
        state = "healthy"
    return {
        "status": state,
        "timestamp": _timestamp(_now()),
        "nodes": {
            "total": len(nodes),
            "healthy": len(healthy),
            "unhealthy": len(nodes) - len(healthy),
        },
        "tasks": {"total": len(service), "by_status": service.task_counts_by_status()},
        "balancer": {"strategy": service.balancer.strategy, "available": bool(healthy)},
        "uptime": _uptime(),
    }


def health(service: GatewayService) -> dict[str, Any]:
    """Health report of the gateway."""
    healthy = len(service.healthy_nodes())
    return {
        "status": "healthy",
        "time": _timestamp(_now()),
        "checks": {"balancer_healthy": healthy > 0, "registry_healthy": True},
        "metrics": {
            "total_nodes": len(service.balancer.node_statuses()),
            "healthy_nodes": healthy,
            "total_tasks": len(service),
        },
    }


def _json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise GatewayError("Invalid request body", 400)
    return data


def create_app(service: GatewayService | None = None) -> Flask:
    """The gateway's Flask application serving the given service."""
    service = service if service is not None else GatewayService()
    app = Flask(__name__)
    app.config["GATEWAY_SERVICE"] = service

    @app.errorhandler(GatewayError)
    def _gateway_error(exc: GatewayError):
        return jsonify({"error": exc.message}), exc.status_code

    @app.post("/api/v1/tasks")
    def submit_task():
        data = _json_body()
        payload = data.get("payload")
        priority = data.get("priority")
        info = service.submit_task(
            "" if payload is None else payload,
            data.get("parameters"),
            0 if priority is None else priority,
        )
        return jsonify(
            {
                "task_id": info.task_id,
                "node_id": info.node_id,
                "status": "submitted",
                "message": "Task submitted to node",
            }
        )

    @app.get("/api/v1/tasks/<task_id>")
    def get_task(task_id: str):
        return jsonify(_jsonable(service.get_task(task_id).to_dict()))

    @app.get("/api/v1/tasks")
    def all_tasks():
        return jsonify(_jsonable(service.all_tasks()))

    @app.get("/api/v1/nodes")
    def nodes():
        return jsonify(node_list(service))

    @app.get("/api/v1/nodes/count")
    def nodes_count():
        return jsonify(_node_count(service))

    @app.get("/api/v1/nodes/health")
    def nodes_health():
        return jsonify(_node_health(service))

    @app.get("/api/v1/nodes/<node_id>")
    def node(node_id: str):
        return jsonify(node_details(service, node_id))

    @app.post("/api/v1/nodes")
    def register_node():
        data = _json_body()
        node_id = data.get("node_id") or ""
        address = data.get("address") or ""
        if not isinstance(node_id, str) or not isinstance(address, str):
            raise GatewayError("Invalid request body", 400)
        service.register_node(node_id, address)
        return jsonify({"message": "Node registered successfully"})

    @app.delete("/api/v1/nodes/<node_id>")
    def unregister_node(node_id: str):
        service.unregister_node(node_id)
        return jsonify({"message": "Node unregistered successfully"})

    @app.get("/api/v1/stats")
    def stats_view():
        return jsonify(stats(service))

    @app.get("/api/v1/stats/overview")
    def overview_view():
        return jsonify(system_overview(service))

    @app.get("/api/v1/stats/tasks")
    def task_stats_view():
        return jsonify(task_stats(service))

    @app.get("/api/v1/stats/capacity")
    def capacity_view():
        return jsonify(capacity_stats(service))

    @app.get("/api/v1/status")
    def status_view():
        return jsonify(system_status(service))

    @app.get("/api/v1/health")
    @app.get("/health")
    def health_view():
        return jsonify(health(service))

    return app


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "level": record.levelname.lower(),
            "msg": record.getMessage(),
            "time": _timestamp(datetime.fromtimestamp(record.created, timezone.utc)),
        }
        return json.dumps(entry)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the gateway with the configuration file named on the command line."""
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        raise SystemExit("Usage: llmbalancer-gateway <config-file>")
    try:
        config = load_config(args[0])
    except ConfigError as exc:
        raise SystemExit(f"Failed to load config: {exc}") from exc

    handler = logging.StreamHandler()
    if config.logging.format == "json":
        handler.setFormatter(_JsonFormatter())
    logging.basicConfig(level=logging.INFO, handlers=[handler], force=True)

    service = GatewayService.from_config(config)
    app = create_app(service)
    logger.info("Starting gateway server on %s:%d", config.gateway.host, config.gateway.port)
    try:
        app.run(host=config.gateway.host, port=config.gateway.port)
    except KeyboardInterrupt:
        pass
    logger.info("Gateway server exited")
    return 0