# llmbalancer

`llmbalancer` spreads LLM generation tasks over a pool of worker nodes. Clients send each task to one HTTP gateway. The gateway picks a node, forwards the task to it, and keeps a record of the task. When asked about the task, it refreshes that record from the node.

## What is inside

- **`llmbalancer.models`**: `Task`, `TaskResult`, `TaskStatus`, `NodeStatus` and `NodeCapacity`. Each has a `to_dict()` that gives its JSON form, and `Task.from_dict()` reads that form back. A `NodeStatus` counts as healthy while its `health` flag is set and its last heartbeat was less than 30 seconds ago.
- **`llmbalancer.taskqueue`**: `TaskQueue` is a bounded, thread-safe priority queue.
  - Higher priority comes out first. Tasks of equal priority come out oldest first.
  - `pop(timeout=None)` blocks until a task arrives. It raises `QueueTimeout` when the timeout passes and `QueueClosed` after `close()`. `push` raises `InvalidTask` or `QueueFull`.
  - `stats()`, `priority_distribution()`, `tasks_by_size()`, `drain()` and `is_healthy()` report on the contents and on usage.
- **`llmbalancer.balancer`**: `LoadBalancer` routes tasks to nodes, with a `CircuitBreaker` for each registered node. `route_task(task)` returns a node id or raises `NoNodesAvailable`.
- **`llmbalancer.tracker`**: `TaskTracker` is a registry of tasks.
  - `failed_tasks()` returns failed tasks and tasks that have been running for more than 5 minutes. `orphaned_tasks()` returns tasks that have been pending for more than 10 minutes. `tasks_for_redistribution()` gives both, with no task listed twice.
  - `start()` and `stop()` run a background cleanup that drops tasks older than 24 hours. The tracker also works as a context manager.
- **`llmbalancer.ollama`**: `OllamaClient` talks to an Ollama server and offers `generate`, `list_models` and `health_check`. It raises `OllamaError` on failure.
- **`llmbalancer.config`**: `load_config(path)` reads a `.yaml`, `.yml` or `.json` file. It fills in defaults for every key and validates the result, raising `ConfigError` if something is wrong. `parse_duration` parses Go-style durations such as `500ms` or `1m30s`.
- **`llmbalancer.gateway`**: `GatewayService` holds the gateway logic. `estimate_tokens` gives the token estimate used for routing.
- **`llmbalancer.gateway_app`**: `create_app(service)` builds the Flask application. `main()` runs the gateway.

## Installation

```
pip install .
```

## Running the gateway

```
llmbalancer-gateway config-gateway.yaml
```

A minimal configuration:

```yaml
gateway:
  host: 0.0.0.0
  port: 8081
  load_balancing_strategy: round_robin
logging:
  format: json
```

With `logging.format: json`, log lines are written as JSON objects.

## HTTP API

All routes are under `/api/v1`. Errors come back as `{"error": "..."}` with a matching HTTP status.

| Method | Path                 | Purpose                              |
|--------|----------------------|--------------------------------------|
| POST   | `/tasks`             | Submit a task (`payload`, `parameters`, `priority` from 0 to 10) |
| GET    | `/tasks/<id>`        | Task record, refreshed from its node when the node answers |
| GET    | `/tasks`             | All known tasks, with counts by status |
| GET    | `/nodes`             | Registered nodes                     |
| GET    | `/nodes/count`, `/nodes/health` | Node counts and node health |
| POST   | `/nodes`             | Register a node (`node_id`, `address`) |
| DELETE | `/nodes/<id>`        | Unregister a node                    |
| GET    | `/nodes/<id>`        | Node details and capacity            |
| GET    | `/stats`, `/stats/overview`, `/stats/tasks`, `/stats/capacity` | Monitoring |
| GET    | `/health`, `/status` | Gateway health and overall system status |

`/health` is also served at the root path.

Submitting a task:

```
curl -X POST localhost:8081/api/v1/tasks \
  -H 'Content-Type: application/json' \
  -d '{"payload": "What is the capital of France?", "parameters": {"model": "qwen2.5"}, "priority": 5}'
```

## Routing

`LoadBalancer` is adaptive by default, and the strategy it uses depends on the current state:

- Fewer than three healthy nodes: least-loaded routing.
- Average load above 0.8: weighted routing.
- Otherwise: a mix of least-loaded, weighted and score-weighted random choice.

To always use the strategy you give, pass `adaptive=False`. The available strategies are `round_robin`, `least_loaded`, `weighted`, `random` and `adaptive`.

Least-loaded and weighted routing only consider nodes that have a capacity set with `update_node_capacity`.

```python
from llmbalancer.balancer import LoadBalancer
from llmbalancer.models import NodeCapacity, NodeStatus, Task

balancer = LoadBalancer("least_loaded")
balancer.register_node("node-1", NodeStatus("node-1", "localhost:9001"))
balancer.update_node_capacity("node-1", NodeCapacity(100, 10000, 10, 1000))

task = Task(id="task-1", payload=b"hello")
node_id = balancer.route_task(task)
```

## What this package does not do

The package contains the gateway, but it has no worker node server and no client command. The gateway forwards each task to the node's `POST /api/v1/tasks` endpoint, with the payload base64-encoded. It reads task state back from `GET /api/v1/tasks/<id>`. Those nodes must be provided separately.

Nodes do not discover each other or detect each other's failures. A task is never moved off a failed node automatically. `TaskTracker.tasks_for_redistribution()` only reports which tasks would need to be moved.

## Tests

```
pip install .[test]
pytest
```