"""Client that reports node conditions and events to the Kubernetes API server."""

from __future__ import annotations

import base64
import copy
import json
import logging
import os
import random
import ssl
import sys
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from importlib import metadata
from typing import Any, Callable, Iterable, Optional, Protocol

__all__ = [
    "API_VERSION",
    "NodeCondition",
    "ObjectReference",
    "ConfigOverrides",
    "ProblemClientError",
    "FakeProblemClient",
    "NodeProblemClient",
    "get_config_overrides",
    "generate_patch",
    "get_node_ref",
]

logger = logging.getLogger(__name__)

API_VERSION = "v1"

_DEFAULT_IN_CLUSTER_CONFIG = True
_DEFAULT_USE_SERVICE_ACCOUNT = False
_SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"
_DEFAULT_SERVICE_ACCOUNT_FILE = f"{_SERVICE_ACCOUNT_DIR}/token"
_IN_CLUSTER_CA_FILE = f"{_SERVICE_ACCOUNT_DIR}/ca.crt"

_DEFAULT_QPS = 5.0
_DEFAULT_BURST = 10
_REQUEST_TIMEOUT = 30.0

# Retry schedule for status patches: five attempts, 10ms apart, 10% jitter.
_RETRY_STEPS = 5
_RETRY_DELAY = 0.010
_RETRY_JITTER = 0.1

_TRUE_WORDS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_WORDS = {"0", "f", "F", "FALSE", "false", "False"}


class ProblemClientError(Exception):
    """Raised when the API server cannot be reached or rejects a request."""


@dataclass
class NodeCondition:
    """A node condition in the form the API server stores it."""

    type: str
    status: str
    last_heartbeat_time: Optional[datetime] = None
    last_transition_time: Optional[datetime] = None
    reason: str = ""
    message: str = ""


@dataclass
class ObjectReference:
    """A reference to the object events are attached to."""

    kind: str = ""
    name: str = ""
    uid: str = ""
    namespace: str = ""


@dataclass
class ConfigOverrides:
    """Cluster settings taken from the API server override URI."""

    server: str = ""
    insecure_skip_tls_verify: bool = False


class EventRecorder(Protocol):
    def eventf(
        self, ref: ObjectReference, event_type: str, reason: str, message_fmt: str, *args: Any
    ) -> None: ...


def _parse_bool(text: str) -> bool:
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise ValueError(f"invalid boolean value {text!r}")


def _format_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def _condition_to_api(condition: NodeCondition) -> dict[str, Any]:
    data: dict[str, Any] = {
        "type": condition.type,
        "status": condition.status,
        "lastHeartbeatTime": _format_time(condition.last_heartbeat_time),
        "lastTransitionTime": _format_time(condition.last_transition_time),
    }
    if condition.reason:
        data["reason"] = condition.reason
    if condition.message:
        data["message"] = condition.message
    return data


def _condition_from_api(data: dict[str, Any]) -> NodeCondition:
    return NodeCondition(
        type=data.get("type", ""),
        status=data.get("status", ""),
        last_heartbeat_time=_parse_time(data.get("lastHeartbeatTime")),
        last_transition_time=_parse_time(data.get("lastTransitionTime")),
        reason=data.get("reason", ""),
        message=data.get("message", ""),
    )


def _reference_to_api(ref: ObjectReference) -> dict[str, str]:
    data = {
        "kind": ref.kind,
        "namespace": ref.namespace,
        "name": ref.name,
        "uid": ref.uid,
    }
    return {key: value for key, value in data.items() if value}


def _marshal(value: Any) -> str:
    """Encode JSON compactly, escaping HTML-sensitive characters."""
    text = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    for char, escaped in (
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("&", "\\u0026"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        text = text.replace(char, escaped)
    return text


def generate_patch(conditions: Iterable[NodeCondition]) -> bytes:
    """Build the status patch that replaces the node's conditions."""
    raw = _marshal([_condition_to_api(c) for c in conditions])
    return f'{{"status":{{"conditions":{raw}}}}}'.encode("utf-8")


def get_node_ref(namespace: str, node_name: str) -> ObjectReference:
    """Return the reference events about ``node_name`` are attached to."""
    return ObjectReference(kind="Node", name=node_name, uid=node_name, namespace=namespace)


def get_config_overrides(uri: str) -> ConfigOverrides:
    """Read the server address and the ``insecure`` flag from an override URI.

    Raises ValueError if ``insecure`` is not a boolean.
    """
    parts = urllib.parse.urlsplit(uri)
    host = parts.netloc.rpartition("@")[2]
    overrides = ConfigOverrides()
    if parts.scheme and host:
        overrides.server = f"{parts.scheme}://{host}"
    opts = urllib.parse.parse_qs(parts.query, keep_blank_values=True)
    if opts.get("insecure"):
        overrides.insecure_skip_tls_verify = _parse_bool(opts["insecure"][0])
    return overrides


@dataclass
class _RestConfig:
    host: str = ""
    bearer_token: str = ""
    ca_file: str = ""
    ca_data: str = ""
    cert_file: str = ""
    key_file: str = ""
    insecure: bool = False
    content_type: str = "application/json"


def _join_host_port(host: str, port: str) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _in_cluster_config() -> _RestConfig:
    host = os.environ.get("KUBERNETES_SERVICE_HOST", "")
    port = os.environ.get("KUBERNETES_SERVICE_PORT", "")
    if not host or not port:
        raise ProblemClientError(
            "unable to load in-cluster configuration, KUBERNETES_SERVICE_HOST "
            "and KUBERNETES_SERVICE_PORT must be defined"
        )
    try:
        with open(_DEFAULT_SERVICE_ACCOUNT_FILE, encoding="utf-8") as fh:
            token = fh.read()
    except OSError as exc:
        raise ProblemClientError(f"failed to read service account token: {exc}") from exc
    ca_file = ""
    if os.path.exists(_IN_CLUSTER_CA_FILE):
        ca_file = _IN_CLUSTER_CA_FILE
    else:
        logger.error("Expected to load root CA config from %s, but it is missing", _IN_CLUSTER_CA_FILE)
    return _RestConfig(
        host="https://" + _join_host_port(host, port), bearer_token=token, ca_file=ca_file
    )


def _named(entries: Any, name: str, key: str, kind: str) -> dict[str, Any]:
    for entry in entries or []:
        if entry.get("name") == name:
            return entry.get(key) or {}
    raise ProblemClientError(f"invalid configuration: {kind} {name!r} was not found")


def _load_kubeconfig(path: str) -> _RestConfig:
    try:
        with open(path, encoding="utf-8") as fh:
            loaded = json.load(fh)
    except OSError as exc:
        raise ProblemClientError(f"failed to read kubeconfig {path!r}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ProblemClientError(f"kubeconfig {path!r} is not JSON-formatted: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ProblemClientError(f"kubeconfig {path!r} must hold an object")

    current = loaded.get("current-context", "")
    if not current:
        raise ProblemClientError("invalid configuration: no configuration has been provided")
    context = _named(loaded.get("contexts"), current, "context", "context")
    cluster = _named(loaded.get("clusters"), context.get("cluster", ""), "cluster", "cluster")
    user: dict[str, Any] = {}
    if context.get("user"):
        user = _named(loaded.get("users"), context["user"], "user", "user")

    base = os.path.dirname(os.path.abspath(path))

    def resolve(value: str) -> str:
        return value if not value or os.path.isabs(value) else os.path.join(base, value)

    token = user.get("token", "")
    if not token and user.get("tokenFile"):
        with open(resolve(user["tokenFile"]), encoding="utf-8") as fh:
            token = fh.read().strip()
    ca_data = cluster.get("certificate-authority-data", "")
    return _RestConfig(
        host=cluster.get("server", ""),
        bearer_token=token,
        ca_file=resolve(cluster.get("certificate-authority", "")),
        ca_data=base64.b64decode(ca_data).decode("ascii") if ca_data else "",
        cert_file=resolve(user.get("client-certificate", "")),
        key_file=resolve(user.get("client-key", "")),
        insecure=bool(cluster.get("insecure-skip-tls-verify", False)),
    )


def _get_kube_client_config(uri: str) -> _RestConfig:
    opts = urllib.parse.parse_qs(urllib.parse.urlsplit(uri).query, keep_blank_values=True)
    overrides = get_config_overrides(uri)

    in_cluster = _DEFAULT_IN_CLUSTER_CONFIG
    if opts.get("inClusterConfig"):
        in_cluster = _parse_bool(opts["inClusterConfig"][0])

    if in_cluster:
        config = _in_cluster_config()
        if overrides.server:
            config.host = overrides.server
        config.insecure = overrides.insecure_skip_tls_verify
        if overrides.insecure_skip_tls_verify:
            config.ca_file = ""
    else:
        auth_file = opts["auth"][0] if opts.get("auth") else ""
        if auth_file:
            config = _load_kubeconfig(auth_file)
        else:
            config = _RestConfig(
                host=overrides.server, insecure=overrides.insecure_skip_tls_verify
            )
    if not config.host:
        raise ProblemClientError("invalid kubernetes master url specified")

    use_service_account = _DEFAULT_USE_SERVICE_ACCOUNT
    if opts.get("useServiceAccount"):
        use_service_account = _parse_bool(opts["useServiceAccount"][0])
    if use_service_account:
        try:
            with open(_DEFAULT_SERVICE_ACCOUNT_FILE, encoding="utf-8") as fh:
                config.bearer_token = fh.read()
        except OSError:
            pass
    return config


def _version() -> str:
    try:
        return metadata.version("nodeproblem")
    except metadata.PackageNotFoundError:
        return "UNKNOWN"


class _RateLimiter:
    """Token bucket allowing ``burst`` requests at once and ``qps`` on average."""

    def __init__(self, qps: float, burst: int) -> None:
        self._qps = qps if qps > 0 else _DEFAULT_QPS
        self._capacity = float(burst if burst > 0 else _DEFAULT_BURST)
        self._tokens = self._capacity
        self._last = time.monotonic()
        self._lock = threading.Lock()

    def acquire(self) -> None:
        with self._lock:
            now = time.monotonic()
            self._tokens = min(self._capacity, self._tokens + (now - self._last) * self._qps)
            self._last = now
            self._tokens -= 1
            wait = -self._tokens / self._qps if self._tokens < 0 else 0.0
        if wait:
            time.sleep(wait)


class _KubeApi:
    """Minimal JSON client for the Kubernetes REST API."""

    def __init__(self, config: _RestConfig, user_agent: str, qps: float, burst: int) -> None:
        self._config = config
        self._user_agent = user_agent
        self._limiter = _RateLimiter(qps, burst)
        self._context: Optional[ssl.SSLContext] = None
        if config.host.startswith("https"):
            context = ssl.create_default_context(
                cafile=config.ca_file or None, cadata=config.ca_data or None
            )
            if config.insecure:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
            if config.cert_file:
                context.load_cert_chain(config.cert_file, config.key_file or None)
            self._context = context

    def request(
        self,
        method: str,
        path: str,
        body: Optional[bytes] = None,
        content_type: str = "application/json",
    ) -> Any:
        self._limiter.acquire()
        headers = {"Accept": "application/json", "User-Agent": self._user_agent}
        if body is not None:
            headers["Content-Type"] = content_type
        if self._config.bearer_token:
            headers["Authorization"] = f"Bearer {self._config.bearer_token.strip()}"
        url = self._config.host.rstrip("/") + path
        request = urllib.request.Request(url, data=body, headers=headers, method=method)
        try:
            with urllib.request.urlopen(
                request, timeout=_REQUEST_TIMEOUT, context=self._context
            ) as response:
                payload = response.read()
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise ProblemClientError(f"{method} {path}: HTTP {exc.code}: {detail}") from exc
        except (urllib.error.URLError, OSError) as exc:
            raise ProblemClientError(f"{method} {path}: {exc}") from exc
        return json.loads(payload) if payload else {}


class _ApiEventRecorder:
    """Posts events to the API server in the background."""

    def __init__(self, api: Any, namespace: str, node_name: str, source: str, clock) -> None:
        self._api = api
        self._namespace = namespace
        self._node_name = node_name
        self._source = source
        self._clock = clock

    def eventf(
        self, ref: ObjectReference, event_type: str, reason: str, message_fmt: str, *args: Any
    ) -> None:
        message = message_fmt % args if args else message_fmt
        now = self._clock()
        namespace = ref.namespace or "default"
        stamp = int(now.timestamp() * 1_000_000_000)
        event = {
            "apiVersion": API_VERSION,
            "kind": "Event",
            "metadata": {"name": f"{ref.name}.{stamp:x}", "namespace": namespace},
            "involvedObject": _reference_to_api(ref),
            "reason": reason,
            "message": message,
            "source": {"component": self._source, "host": self._node_name},
            "firstTimestamp": _format_time(now),
            "lastTimestamp": _format_time(now),
            "count": 1,
            "type": event_type,
        }
        logger.debug("Event(%s): type: %r reason: %r %s", ref, event_type, reason, message)
        threading.Thread(target=self._post, args=(namespace, event), daemon=True).start()

    def _post(self, namespace: str, event: dict[str, Any]) -> None:
        path = f"/api/{API_VERSION}/namespaces/{urllib.parse.quote(namespace)}/events"
        try:
            self._api.request("POST", path, _marshal(event).encode("utf-8"))
        except ProblemClientError as exc:
            logger.error("Unable to write event: %s", exc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class NodeProblemClient:
    """Reads and patches the node object and writes events about it.

    ``api_server_override`` is a URI such as
    ``http://host:8080?inClusterConfig=false&insecure=true``. Passing ``api``,
    an object with a ``request(method, path, body, content_type)`` method,
    bypasses the connection setup.
    """

    def __init__(
        self,
        node_name: str,
        api_server_override: str = "",
        *,
        event_namespace: str = "",
        qps: float = _DEFAULT_QPS,
        burst: int = _DEFAULT_BURST,
        clock: Optional[Callable[[], datetime]] = None,
        api: Any = None,
    ) -> None:
        self.node_name = node_name
        self.event_namespace = event_namespace
        self.clock = clock or _utc_now
        if api is None:
            config = _get_kube_client_config(api_server_override)
            user_agent = f"{os.path.basename(sys.argv[0] or 'nodeproblem')}/{_version()}"
            api = _KubeApi(config, user_agent, qps, burst)
        self.api = api
        self.node_ref = get_node_ref(event_namespace, node_name)
        self.recorders: dict[str, EventRecorder] = {}

    def _node_path(self) -> str:
        return f"/api/{API_VERSION}/nodes/{urllib.parse.quote(self.node_name)}"

    def get_node(self) -> dict[str, Any]:
        """Return the node object, served from the API server's cache."""
        return self.api.request("GET", self._node_path() + "?resourceVersion=0")

    def get_conditions(self, condition_types: Iterable[str]) -> list[NodeCondition]:
        """Return the node's conditions of the given types, in the order asked."""
        node = self.get_node()
        current = [
            _condition_from_api(c) for c in (node.get("status") or {}).get("conditions") or []
        ]
        return [c for wanted in condition_types for c in current if c.type == wanted]

    def set_conditions(self, conditions: list[NodeCondition]) -> None:
        """Set or update the node's conditions, stamping each with a heartbeat."""
        for condition in conditions:
            condition.last_heartbeat_time = self.clock()
        patch = generate_patch(conditions)
        path = self._node_path() + "/status"
        for attempt in range(_RETRY_STEPS):
            try:
                self.api.request(
                    "PATCH", path, patch, "application/strategic-merge-patch+json"
                )
                return
            except Exception:
                if attempt == _RETRY_STEPS - 1:
                    raise
                time.sleep(_RETRY_DELAY * (1 + random.random() * _RETRY_JITTER))

    def eventf(
        self, event_type: str, source: str, reason: str, message_fmt: str, *args: Any
    ) -> None:
        """Record an event about the node on behalf of ``source``."""
        recorder = self.recorders.get(source)
        if recorder is None:
            recorder = _ApiEventRecorder(
                self.api, self.event_namespace, self.node_name, source, self.clock
            )
            self.recorders[source] = recorder
        recorder.eventf(self.node_ref, event_type, reason, message_fmt, *args)


class FakeProblemClient:
    """In-memory stand-in for NodeProblemClient."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.conditions: dict[str, NodeCondition] = {}
        self.errors: dict[str, Exception] = {}

    def inject_error(self, fun: str, err: Exception) -> None:
        """Make the method named ``fun`` raise ``err``."""
        with self._lock:
            self.errors[fun] = err

    def assert_conditions(self, expected: Iterable[NodeCondition]) -> None:
        """Raise AssertionError unless the stored conditions equal ``expected``."""
        wanted = {c.type: c for c in expected}
        with self._lock:
            if wanted != self.conditions:
                raise AssertionError(f"expected {wanted!r}, got {self.conditions!r}")

    def set_conditions(self, conditions: Iterable[NodeCondition]) -> None:
        """Store the conditions, replacing earlier ones of the same type."""
        with self._lock:
            if "set_conditions" in self.errors:
                raise self.errors["set_conditions"]
            for condition in conditions:
                self.conditions[condition.type] = copy.copy(condition)

    def get_conditions(self, condition_types: Iterable[str]) -> list[NodeCondition]:
        """Return the stored conditions of the given types."""
        with self._lock:
            if "get_conditions" in self.errors:
                raise self.errors["get_conditions"]
            return [
                copy.copy(self.conditions[t]) for t in condition_types if t in self.conditions
            ]

    def eventf(
        self, event_type: str, source: str, reason: str, message_fmt: str, *args: Any
    ) -> None:
        """Discard the event."""

    def get_node(self) -> dict[str, Any]:
        """The fake client holds no node object."""
        raise ProblemClientError("the fake problem client holds no node object")