"""Configuration of the Stackdriver metrics exporter."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Mapping

from .durations import format_duration
from .gce import Metadata

__all__ = [
    "StackdriverExporterConfig",
    "DEFAULT_EXPORT_PERIOD",
    "DEFAULT_ENDPOINT",
    "DEFAULT_METADATA_FETCH_TIMEOUT",
    "DEFAULT_METADATA_FETCH_INTERVAL",
]

DEFAULT_EXPORT_PERIOD = format_duration(60)
DEFAULT_ENDPOINT = "monitoring.googleapis.com:443"
DEFAULT_METADATA_FETCH_TIMEOUT = format_duration(600)
DEFAULT_METADATA_FETCH_INTERVAL = format_duration(10)

_CONFIG_KEYS = {
    "exportperiod": "export_period",
    "apiendpoint": "api_endpoint",
    "gcemetadata": "gce_metadata",
    "metadatafetchtimeout": "metadata_fetch_timeout",
    "metadatafetchinterval": "metadata_fetch_interval",
    "paniconmetadatafetchfailure": "panic_on_metadata_fetch_failure",
    "custommetricprefix": "custom_metric_prefix",
}

_METADATA_KEYS = {
    "projectid": "project_id",
    "zone": "zone",
    "instanceid": "instance_id",
    "instancename": "instance_name",
}


def _string(value: Any, key: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{key!r} must be a string, got {value!r}")
    return value


def _metadata_from_dict(data: Any) -> Metadata:
    if data is None:
        return Metadata()
    if not isinstance(data, Mapping):
        raise ValueError(f"'gceMetadata' must be an object, got {data!r}")
    values = {}
    for key, value in data.items():
        name = _METADATA_KEYS.get(str(key).lower())
        if name is not None and value is not None:
            values[name] = _string(value, key)
    return Metadata(**values)


@dataclass
class StackdriverExporterConfig:
    """Settings read from the exporter's JSON configuration file."""

    export_period: str = ""
    api_endpoint: str = ""
    gce_metadata: Metadata = field(default_factory=Metadata)
    metadata_fetch_timeout: str = ""
    metadata_fetch_interval: str = ""
    panic_on_metadata_fetch_failure: bool = False
    custom_metric_prefix: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StackdriverExporterConfig":
        """Build a configuration from decoded JSON; key case is ignored.

        Unknown keys are ignored; values of the wrong type raise ValueError.
        """
        if not isinstance(data, Mapping):
            raise ValueError(f"configuration must be an object, got {data!r}")
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in data.items():
            name = _CONFIG_KEYS.get(str(key).lower())
            if name is None or name not in known or value is None:
                continue
            if name == "gce_metadata":
                values[name] = _metadata_from_dict(value)
            elif name == "panic_on_metadata_fetch_failure":
                if not isinstance(value, bool):
                    raise ValueError(f"{key!r} must be a boolean, got {value!r}")
                values[name] = value
            else:
                values[name] = _string(value, key)
        return cls(**values)

    def apply_configuration(self) -> None:
        """Fill empty settings with their defaults."""
        if not self.export_period:
            self.export_period = DEFAULT_EXPORT_PERIOD
        if not self.metadata_fetch_timeout:
            self.metadata_fetch_timeout = DEFAULT_METADATA_FETCH_TIMEOUT
        if not self.metadata_fetch_interval:
            self.metadata_fetch_interval = DEFAULT_METADATA_FETCH_INTERVAL
        if not self.api_endpoint:
            self.api_endpoint = DEFAULT_ENDPOINT