import json

import pytest

from nodeproblem import registry
from nodeproblem.gce import Metadata, MetadataError
from nodeproblem.stackdriver_config import StackdriverExporterConfig
from nodeproblem.stackdriver_exporter import (
    EXPORTER_NAME,
    CommandLineOptions,
    StackdriverExporter,
    metric_type_converter,
    new_exporter,
    register_stackdriver,
)

FULL_METADATA = {
    "projectID": "some-gcp-project",
    "zone": "us-central1-a",
    "instanceID": "56781234",
    "instanceName": "some-gce-instance",
}


def test_registration():
    register_stackdriver()
    handler = registry.get_exporter_handler(EXPORTER_NAME)
    assert handler.create_exporter is new_exporter
    assert handler.options == CommandLineOptions()


def test_converter_known_metric():
    convert = metric_type_converter("", {"host_uptime": "host/uptime"})
    assert convert("host_uptime") == "compute.googleapis.com/guest/system/uptime"


def test_converter_callable_lookup():
    convert = metric_type_converter("", lambda name: "net/rx_bytes" if name == "rx" else None)
    assert convert("rx") == "kubernetes.io/internal/node/guest/net/rx_bytes"
    assert convert("other") == ""


def test_converter_unknown_view_uses_prefix():
    convert = metric_type_converter("custom.googleapis.com/npd", {})
    assert convert("host/uptime") == "custom.googleapis.com/npd/host/uptime"


def test_converter_unmapped_metric_id_falls_back():
    convert = metric_type_converter("custom.googleapis.com/npd/", {"x": "no/such/id"})
    assert convert("x") == "custom.googleapis.com/npd/x"


def test_converter_without_prefix_returns_empty():
    convert = metric_type_converter("", {})
    assert convert("anything") == ""


def test_new_exporter_disabled_without_path():
    assert new_exporter(CommandLineOptions()) is None


def test_new_exporter_wrong_options_type():
    with pytest.raises(TypeError):
        new_exporter("config.json")


def test_new_exporter_reads_config(tmp_path):
    path = tmp_path / "stackdriver.json"
    path.write_text(json.dumps({"gceMetadata": FULL_METADATA, "customMetricPrefix": "p"}))
    exporter = new_exporter(CommandLineOptions(config_path=str(path)))
    assert exporter.export_period == 60.0
    assert exporter.config.api_endpoint == "monitoring.googleapis.com:443"
    assert exporter.monitored_resource == {
        "type": "gce_instance",
        "project_id": "some-gcp-project",
        "instance_id": "56781234",
        "zone": "us-central1-a",
    }
    assert exporter.default_labels["instance_name"][0] == "some-gce-instance"
    assert exporter.metric_type("host/uptime") == "p/host/uptime"


def test_new_exporter_invalid_json(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text("{not json")
    with pytest.raises(ValueError):
        new_exporter(CommandLineOptions(config_path=str(path)))


def test_new_exporter_bad_export_period(tmp_path):
    path = tmp_path / "stackdriver.json"
    path.write_text(json.dumps({"gceMetadata": FULL_METADATA, "exportPeriod": "soon"}))
    with pytest.raises(ValueError):
        new_exporter(CommandLineOptions(config_path=str(path)))


def test_new_exporter_missing_file(tmp_path):
    with pytest.raises(OSError):
        new_exporter(CommandLineOptions(config_path=str(tmp_path / "missing.json")))


def _config(**kwargs):
    config = StackdriverExporterConfig(**kwargs)
    config.apply_configuration()
    return config


def test_populate_metadata_skips_when_complete():
    metadata = Metadata("p", "z", "1", "n")

    def fetch(path):
        raise AssertionError("should not fetch")

    exporter = StackdriverExporter(_config(gce_metadata=metadata))
    exporter.populate_metadata(fetch)
    assert exporter.config.gce_metadata == Metadata("p", "z", "1", "n")


def test_populate_metadata_retries_until_success():
    calls = []
    sleeps = []
    values = {
        "project/project-id": "proj",
        "instance/zone": "projects/1/zones/us-east1-b",
        "instance/id": "42",
        "instance/name": "node-a",
    }

    def fetch(path):
        calls.append(path)
        if len(calls) <= 2:
            raise MetadataError("unavailable")
        return values[path]

    exporter = StackdriverExporter(
        _config(metadata_fetch_timeout="50s", metadata_fetch_interval="10s"),
        sleep=sleeps.append,
    )
    exporter.populate_metadata(fetch)
    assert exporter.config.gce_metadata == Metadata("proj", "us-east1-b", "42", "node-a")
    assert sleeps == [10.0, 10.0]


def _failing(path):
    raise MetadataError("unavailable")


def test_populate_metadata_failure_raises_when_asked():
    sleeps = []
    exporter = StackdriverExporter(
        _config(
            metadata_fetch_timeout="30s",
            metadata_fetch_interval="10s",
            panic_on_metadata_fetch_failure=True,
        ),
        sleep=sleeps.append,
    )
    with pytest.raises(MetadataError):
        exporter.populate_metadata(_failing)
    assert sleeps == [10.0, 10.0]


def test_populate_metadata_failure_logged_otherwise():
    exporter = StackdriverExporter(
        _config(metadata_fetch_timeout="20s", metadata_fetch_interval="10s"),
        sleep=lambda seconds: None,
    )
    exporter.populate_metadata(_failing)
    assert exporter.config.gce_metadata.has_missing_field() is True
    assert exporter.config.gce_metadata.project_id == ""


def test_populate_metadata_bad_interval():
    exporter = StackdriverExporter(_config(metadata_fetch_interval="often"))
    with pytest.raises(ValueError):
        exporter.populate_metadata(_failing)