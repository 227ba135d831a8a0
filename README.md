# nodeproblem

Exporters that take the problems a node reports, as events and conditions, and deliver them to the Kubernetes API server. The package also prepares the settings for metric export to Stackdriver. It needs nothing beyond the standard library.

## Installing

```
pip install .
pip install ".[test]"   # adds pytest
```

## Modules

### `nodeproblem.registry`

A process-wide registry of exporter factories.

- `ExporterHandler(create_exporter, options=None)`: `create_exporter(options)` returns an exporter, or `None` when that exporter is disabled.
- `register(exporter_type, handler)` adds a handler. A later call with the same type replaces the earlier handler.
- `get_exporter_names()` lists the registered types.
- `get_exporter_handler(exporter_type)` returns the handler for a type. It raises `ExporterNotFoundError`, a `LookupError`, when the type is unknown.
- `new_exporters()` calls every handler and returns the exporters that are not `None`.
- `reset()` empties the registry.

### `nodeproblem.condition_manager`

- `Condition(type, status, transition, reason="", message="")`. `status` is a `ConditionStatus` (`TRUE`, `FALSE` or `UNKNOWN`).
- `convert_to_api_condition(condition)` returns a `problemclient.NodeCondition`.
- `ConditionManager(client, heartbeat_period, clock=None)` keeps a client's node conditions in step with the ones reported to it.
  - `update_condition()` queues a condition. A newer condition of the same type replaces the queued one.
  - `need_updates()` applies the queued conditions. It returns True if any of them changed.
  - `need_resync()` is True when 10 seconds (`RESYNC_PERIOD`) have passed since a failed `sync()`.
  - `need_heartbeat()` is True once `heartbeat_period` has passed since the last sync.
  - `sync()` sends every held condition through `client.set_conditions()`. If that fails, the failure is logged and a resync is marked as needed.
  - `start(stop_event)` runs these checks in a daemon thread every second (`UPDATE_PERIOD`) until `stop_event` is set. It returns the thread.
- `ManualClock(start=None)` has `now()` and `step(seconds)`, so tests can move time by hand.

### `nodeproblem.problemclient`

- `NodeProblemClient(node_name, api_server_override="", *, event_namespace="", qps=5.0, burst=10, clock=None, api=None)` works with the node object over the Kubernetes REST API.
  - It provides `get_node()`, `get_conditions(condition_types)`, `set_conditions(conditions)` and `eventf(event_type, source, reason, message_fmt, *args)`.
  - `set_conditions` stamps each condition with a heartbeat time. It then sends a strategic-merge status patch, with up to five attempts.
  - `eventf` posts the event from a background thread.
  - The override URI takes these query options: `inClusterConfig`, `insecure`, `auth` and `useServiceAccount`. `auth` gives the path of a kubeconfig file, which must be written as JSON.
  - With in-cluster configuration, the client reads `KUBERNETES_SERVICE_HOST`, `KUBERNETES_SERVICE_PORT` and the service-account token.
  - Passing `api`, an object with `request(method, path, body, content_type)`, skips all connection setup.
- `FakeProblemClient` keeps conditions in memory.
  - `inject_error("set_conditions" | "get_conditions", exc)` makes that method raise `exc`.
  - `assert_conditions(expected)` raises `AssertionError` when the stored conditions differ from `expected`.
  - `get_node()` always raises `ProblemClientError`.
- Helpers:
  - `generate_patch(conditions)` returns the patch body as bytes.
  - `get_node_ref(namespace, node_name)` returns an `ObjectReference`.
  - `get_config_overrides(uri)` returns `ConfigOverrides(server, insecure_skip_tls_verify)`.
- Errors from the API server are raised as `ProblemClientError`.

### `nodeproblem.k8s_exporter`

- `Status(source, events, conditions)` holds what one source reports. Each `Event` has a `severity` (`Severity.INFO` or `Severity.WARN`), a `timestamp`, a `reason` and a `message`.
- `K8sExporter(client, heartbeat_period, *, write_events=True, update_conditions=True, clock=None, start_manager=True)` builds a `ConditionManager` around `client`. Unless `start_manager` is False, it starts the manager's sync loop.
  - `export_problems(status)` writes the events through `client.eventf`. It also queues the conditions.
  - `start_http_reporting(address, port)` serves `GET /healthz`, which returns `ok`, and `GET /conditions`, which returns JSON. It returns the bound address, or None if `port <= 0`.
  - `stop()` stops the sync loop and the HTTP server.
- `convert_to_api_event_type(severity)` maps a severity to `"Warning"` or `"Normal"`.
- `wait_for_api_server(client, interval, timeout)` polls `client.get_node()` until it succeeds. It raises `TimeoutError` when `timeout` runs out.

### `nodeproblem.stackdriver_config`, `nodeproblem.gce`, `nodeproblem.stackdriver_exporter`

- `StackdriverExporterConfig.from_dict(data)` reads a decoded JSON configuration. Key case is ignored, for example `exportPeriod` or `gceMetadata`.
- `apply_configuration()` fills in the defaults for empty settings:

  | Setting | Default |
  | --- | --- |
  | export period | `1m0s` |
  | metadata fetch timeout | `10m0s` |
  | metadata fetch interval | `10s` |
  | API endpoint | `monitoring.googleapis.com:443` |

- `gce.Metadata` holds the project, zone, instance id and instance name.
  - `has_missing_field()` is True while any of these is empty.
  - `populate_from_gce(fetch=None)` fills the empty ones through `fetch_metadata`, which queries the metadata server. The server's host can be set with `GCE_METADATA_HOST`.
- `stackdriver_exporter.new_exporter(CommandLineOptions(config_path))` reads the JSON file and returns a `StackdriverExporter`. It returns None when the path is empty.
  - The exporter retries filling missing metadata (`populate_metadata`). If the configuration sets `panicOnMetadataFetchFailure`, a lasting failure raises `MetadataError`.
  - The exporter records the monitored resource, the `instance_name` label, the export period and a metric-type converter (`metric_type_converter`).
  - Importing the module registers the exporter under `"stackdriver"` with `register_stackdriver()`.

### `nodeproblem.durations`

`parse_duration("1m30s")` returns seconds (`90.0`). `format_duration(90)` writes `"1m30s"`. Malformed strings raise `ValueError`.

## Example

```python
from datetime import datetime, timezone

from nodeproblem.condition_manager import Condition, ConditionManager, ConditionStatus
from nodeproblem.problemclient import FakeProblemClient

client = FakeProblemClient()
manager = ConditionManager(client, heartbeat_period=60)
manager.update_condition(Condition(
    type="KernelDeadlock",
    status=ConditionStatus.TRUE,
    transition=datetime.now(timezone.utc),
    reason="DockerHung",
    message="task docker blocked",
))
if manager.need_updates():
    manager.sync()
print(client.get_conditions(["KernelDeadlock"]))
```

```python
from nodeproblem.stackdriver_config import StackdriverExporterConfig

config = StackdriverExporterConfig.from_dict({})
config.apply_configuration()
print(config.export_period)   # 1m0s
```

## What it does not do

- There is no command-line program and no daemon. Nothing here watches logs or detects problems; you hand `Status` objects to an exporter yourself.
- `StackdriverExporter` does not send metric data anywhere. It only prepares and holds the settings for it, and its `export_problems` ignores problem reports. There is no Prometheus endpoint either.
- Kubeconfig files for `NodeProblemClient` must be JSON; YAML is not read.

## Running the tests

```
pytest
```