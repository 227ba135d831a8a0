"""Exporter that labels node metrics for Stackdriver (Cloud Monitoring)."""

from __future__ import annotations

import json
import logging
import posixpath
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Union

from . import registry
from .durations import parse_duration
from .gce import MetadataError
from .stackdriver_config import StackdriverExporterConfig

__all__ = [
    "EXPORTER_NAME",
    "NPD_METRIC_TO_SD_METRIC",
    "CommandLineOptions",
    "StackdriverExporter",
    "metric_type_converter",
    "new_exporter",
    "register_stackdriver",
]

logger = logging.getLogger(__name__)

EXPORTER_NAME = "stackdriver"

_GUEST = "compute.googleapis.com/guest"
_INTERNAL = "kubernetes.io/internal/node/guest"

# Detector metric identifiers and the Stackdriver metric types they map to.
NPD_METRIC_TO_SD_METRIC: dict[str, str] = {
    "cpu/runnable_task_count": f"{_GUEST}/cpu/runnable_task_count",
    "cpu/usage_time": f"{_GUEST}/cpu/usage_time",
    "cpu/load_1m": f"{_GUEST}/cpu/load_1m",
    "cpu/load_5m": f"{_GUEST}/cpu/load_5m",
    "cpu/load_15m": f"{_GUEST}/cpu/load_15m",
    "disk/avg_queue_len": f"{_GUEST}/disk/queue_length",
    "disk/bytes_used": f"{_GUEST}/disk/bytes_used",
    "disk/percent_used": f"{_GUEST}/disk/percent_used",
    "disk/io_time": f"{_GUEST}/disk/io_time",
    "disk/merged_operation_count": f"{_GUEST}/disk/merged_operation_count",
    "disk/operation_bytes_count": f"{_GUEST}/disk/operation_bytes_count",
    "disk/operation_count": f"{_GUEST}/disk/operation_count",
    "disk/operation_time": f"{_GUEST}/disk/operation_time",
    "disk/weighted_io": f"{_GUEST}/disk/weighted_io_time",
    "host/uptime": f"{_GUEST}/system/uptime",
    "memory/anonymous_used": f"{_GUEST}/memory/anonymous_used",
    "memory/bytes_used": f"{_GUEST}/memory/bytes_used",
    "memory/dirty_used": f"{_GUEST}/memory/dirty_used",
    "memory/page_cache_used": f"{_GUEST}/memory/page_cache_used",
    "memory/unevictable_used": f"{_GUEST}/memory/unevictable_used",
    "memory/percent_used": f"{_GUEST}/memory/percent_used",
    "problem_counter": f"{_GUEST}/system/problem_count",
    "problem_gauge": f"{_GUEST}/system/problem_state",
    "system/os_feature": f"{_GUEST}/system/os_feature_enabled",
    "system/processes_total": f"{_INTERNAL}/system/processes_total",
    "system/procs_running": f"{_INTERNAL}/system/procs_running",
    "system/procs_blocked": f"{_INTERNAL}/system/procs_blocked",
    "system/interrupts_total": f"{_INTERNAL}/system/interrupts_total",
    "system/cpu_stat": f"{_INTERNAL}/system/cpu_stat",
    "net/rx_bytes": f"{_INTERNAL}/net/rx_bytes",
    "net/rx_packets": f"{_INTERNAL}/net/rx_packets",
    "net/rx_errors": f"{_INTERNAL}/net/rx_errors",
    "net/rx_dropped": f"{_INTERNAL}/net/rx_dropped",
    "net/rx_fifo": f"{_INTERNAL}/net/rx_fifo",
    "net/rx_frame": f"{_INTERNAL}/net/rx_frame",
    "net/rx_compressed": f"{_INTERNAL}/net/rx_compressed",
    "net/rx_multicast": f"{_INTERNAL}/net/rx_multicast",
    "net/tx_bytes": f"{_INTERNAL}/net/tx_bytes",
    "net/tx_packets": f"{_INTERNAL}/net/tx_packets",
    "net/tx_errors": f"{_INTERNAL}/net/tx_errors",
    "net/tx_dropped": f"{_INTERNAL}/net/tx_dropped",
    "net/tx_fifo": f"{_INTERNAL}/net/tx_fifo",
    "net/tx_collisions": f"{_INTERNAL}/net/tx_collisions",
    "net/tx_carrier": f"{_INTERNAL}/net/tx_carrier",
    "net/tx_compressed": f"{_INTERNAL}/net/tx_compressed",
}

ViewLookup = Union[Mapping[str, str], Callable[[str], Optional[str]]]


def _join_path(*parts: str) -> str:
    joined = "/".join(p for p in parts if p)
    return posixpath.normpath(joined) if joined else ""


def metric_type_converter(
    custom_metric_prefix: str, view_name_to_metric_id: ViewLookup
) -> Callable[[str], str]:
    """Return a function mapping a view name onto its Stackdriver metric type.

    Views whose metric has no Stackdriver type fall back to
    ``<custom_metric_prefix>/<view name>``, or to "" without a prefix.
    """
    if callable(view_name_to_metric_id):
        lookup = view_name_to_metric_id
    else:
        lookup = view_name_to_metric_id.get

    def convert(view_name: str) -> str:
        fallback = ""
        if custom_metric_prefix:
            fallback = _join_path(custom_metric_prefix, view_name)
        metric_id = lookup(view_name)
        if metric_id is None:
            return fallback
        return NPD_METRIC_TO_SD_METRIC.get(metric_id, fallback)

    return convert


def _nanoseconds(text: str) -> int:
    return round(parse_duration(text) * 1_000_000_000)


@dataclass
class CommandLineOptions:
    """Options of the Stackdriver exporter; an empty path disables it."""

    config_path: str = ""


class StackdriverExporter:
    """Holds what metric export to Stackdriver needs: resource, labels and period."""

    def __init__(
        self,
        config: StackdriverExporterConfig,
        *,
        view_name_to_metric_id: Optional[ViewLookup] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.view_name_to_metric_id: ViewLookup = view_name_to_metric_id or {}
        self.sleep = sleep
        self.export_period: Optional[float] = None
        self.metric_type: Optional[Callable[[str], str]] = None
        self.monitored_resource: dict[str, str] = {}
        self.default_labels: dict[str, tuple[str, str]] = {}
        self.ignored_statuses = 0

    def _setup_view_exporter(self) -> None:
        metadata = self.config.gce_metadata
        self.default_labels = {
            "instance_name": (metadata.instance_name, "The name of the VM instance")
        }
        self.monitored_resource = {
            "type": "gce_instance",
            "project_id": metadata.project_id,
            "instance_id": metadata.instance_id,
            "zone": metadata.zone,
        }
        self.metric_type = metric_type_converter(
            self.config.custom_metric_prefix, self.view_name_to_metric_id
        )
        try:
            self.export_period = parse_duration(self.config.export_period)
        except ValueError as exc:
            raise ValueError(
                f"Failed to parse ExportPeriod {self.config.export_period!r}: {exc}"
            ) from exc

    def populate_metadata(self, fetch: Optional[Callable[[str], str]] = None) -> None:
        """Fill missing GCE metadata from the metadata server, retrying.

        Raises MetadataError when fetching keeps failing and the configuration
        asks to fail on it; otherwise the failure is only logged.
        """
        metadata = self.config.gce_metadata
        if not metadata.has_missing_field():
            logger.info("Using GCE metadata specified in the config file: %s", metadata)
            return
        try:
            timeout = _nanoseconds(self.config.metadata_fetch_timeout)
        except ValueError as exc:
            raise ValueError(
                f"Failed to parse MetadataFetchTimeout {self.config.metadata_fetch_timeout!r}: {exc}"
            ) from exc
        try:
            interval = _nanoseconds(self.config.metadata_fetch_interval)
        except ValueError as exc:
            raise ValueError(
                f"Failed to parse MetadataFetchInterval {self.config.metadata_fetch_interval!r}: {exc}"
            ) from exc
        if interval <= 0:
            raise ValueError(
                f"MetadataFetchInterval must be positive, got {self.config.metadata_fetch_interval!r}"
            )
        attempts = timeout // interval

        logger.info("Populating GCE metadata by querying GCE metadata server.")
        last_error: Optional[Exception] = None
        attempt = 0
        while attempts == 0 or attempt < attempts:
            if attempt:
                self.sleep(interval / 1_000_000_000)
            attempt += 1
            try:
                metadata.populate_from_gce(fetch)
            except Exception as exc:
                last_error = exc
                continue
            logger.info("Using GCE metadata: %s", metadata)
            return

        message = f"Failed to populate GCE metadata: {last_error}"
        if self.config.panic_on_metadata_fetch_failure:
            raise MetadataError(message) from last_error
        logger.error(message)

    def export_problems(self, status: Any) -> int:
        """Skip a problem status, since only metrics are exported.

        Returns how many statuses have been skipped so far.
        """
        self.ignored_statuses += 1
        logger.debug("Stackdriver exporter skips problem status %r", status)
        return self.ignored_statuses


def new_exporter(options: CommandLineOptions) -> Optional[StackdriverExporter]:
    """Create the exporter from its configuration file, or None if disabled.

    Raises TypeError for options of the wrong type, OSError if the file
    cannot be read and ValueError if its contents are invalid.
    """
    if not isinstance(options, CommandLineOptions):
        raise TypeError(
            "Wrong type for the command line options of Stackdriver Exporter: "
            f"{type(options).__name__}."
        )
    if not options.config_path:
        return None

    with open(options.config_path, encoding="utf-8") as fh:
        raw = fh.read()
    try:
        data = json.loads(raw)
        config = StackdriverExporterConfig.from_dict(data)
    except ValueError as exc:
        raise ValueError(
            f"Failed to unmarshal configuration file {options.config_path!r}: {exc}"
        ) from exc
    config.apply_configuration()

    logger.info("Starting Stackdriver exporter %s", options.config_path)
    exporter = StackdriverExporter(config)
    exporter.populate_metadata()
    exporter._setup_view_exporter()
    return exporter


def register_stackdriver() -> registry.ExporterHandler:
    """Register the Stackdriver exporter factory and return its handler."""
    handler = registry.ExporterHandler(
        create_exporter=new_exporter, options=CommandLineOptions()
    )
    registry.register(EXPORTER_NAME, handler)
    return handler


register_stackdriver()