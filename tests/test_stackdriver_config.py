import pytest

from nodeproblem.gce import Metadata
from nodeproblem.stackdriver_config import DEFAULT_ENDPOINT, StackdriverExporterConfig


def _metadata():
    return Metadata(
        project_id="some-gcp-project",
        zone="us-central1-a",
        instance_id="56781234",
        instance_name="some-gce-instance",
    )


@pytest.mark.parametrize(
    "original, wanted",
    [
        pytest.param(
            StackdriverExporterConfig(
                export_period="60s",
                metadata_fetch_timeout="600s",
                metadata_fetch_interval="10s",
                api_endpoint="monitoring.googleapis.com:443",
                gce_metadata=_metadata(),
            ),
            StackdriverExporterConfig(
                export_period="60s",
                metadata_fetch_timeout="600s",
                metadata_fetch_interval="10s",
                api_endpoint=DEFAULT_ENDPOINT,
                gce_metadata=_metadata(),
            ),
            id="normal",
        ),
        pytest.param(
            StackdriverExporterConfig(
                export_period="60s",
                metadata_fetch_timeout="600s",
                metadata_fetch_interval="10s",
                api_endpoint="staging-monitoring.sandbox.googleapis.com:443",
                gce_metadata=_metadata(),
            ),
            StackdriverExporterConfig(
                export_period="60s",
                metadata_fetch_timeout="600s",
                metadata_fetch_interval="10s",
                api_endpoint="staging-monitoring.sandbox.googleapis.com:443",
                gce_metadata=_metadata(),
            ),
            id="staging API endpoint",
        ),
        pytest.param(
            StackdriverExporterConfig(),
            StackdriverExporterConfig(
                export_period="1m0s",
                metadata_fetch_timeout="10m0s",
                metadata_fetch_interval="10s",
                api_endpoint="monitoring.googleapis.com:443",
                gce_metadata=Metadata(),
            ),
            id="empty",
        ),
    ],
)
def test_apply_configuration(original, wanted):
    original.apply_configuration()
    assert original == wanted


def test_from_dict_reads_json_keys():
    config = StackdriverExporterConfig.from_dict(
        {
            "exportPeriod": "60s",
            "apiEndpoint": "monitoring.googleapis.com:443",
            "gceMetadata": {
                "projectID": "some-gcp-project",
                "zone": "us-central1-a",
                "instanceID": "56781234",
                "instanceName": "some-gce-instance",
            },
            "metadataFetchTimeout": "600s",
            "metadataFetchInterval": "10s",
            "panicOnMetadataFetchFailure": True,
            "customMetricPrefix": "custom.googleapis.com/npd",
        }
    )
    assert config == StackdriverExporterConfig(
        export_period="60s",
        api_endpoint="monitoring.googleapis.com:443",
        gce_metadata=_metadata(),
        metadata_fetch_timeout="600s",
        metadata_fetch_interval="10s",
        panic_on_metadata_fetch_failure=True,
        custom_metric_prefix="custom.googleapis.com/npd",
    )


def test_from_dict_ignores_key_case_and_unknown_keys():
    config = StackdriverExporterConfig.from_dict(
        {"EXPORTPERIOD": "60s", "unrelated": 1, "gcemetadata": {"ProjectId": "p"}}
    )
    assert config.export_period == "60s"
    assert config.gce_metadata == Metadata(project_id="p")
    assert config.api_endpoint == ""


def test_from_dict_then_defaults():
    config = StackdriverExporterConfig.from_dict({})
    config.apply_configuration()
    assert config.export_period == "1m0s"
    assert config.metadata_fetch_timeout == "10m0s"
    assert config.api_endpoint == DEFAULT_ENDPOINT
    assert config.gce_metadata.has_missing_field() is True


@pytest.mark.parametrize(
    "data",
    [
        {"exportPeriod": 60},
        {"panicOnMetadataFetchFailure": "yes"},
        {"gceMetadata": "not-an-object"},
        {"gceMetadata": {"zone": 5}},
        ["not", "a", "mapping"],
    ],
)
def test_from_dict_rejects_wrong_types(data):
    with pytest.raises(ValueError):
        StackdriverExporterConfig.from_dict(data)