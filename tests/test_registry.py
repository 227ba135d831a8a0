import pytest

from nodeproblem import registry
from nodeproblem.registry import ExporterHandler, ExporterNotFoundError


@pytest.fixture(autouse=True)
def clean_registry():
    registry.reset()
    yield
    registry.reset()


def _none_factory(options):
    return None


def test_registration():
    registry.register("foo", ExporterHandler(_none_factory, None))
    registry.register("bar", ExporterHandler(_none_factory, None))
    assert sorted(registry.get_exporter_names()) == sorted(["foo", "bar"])


def test_get_exporter_handler():
    handler = ExporterHandler(_none_factory, None)
    registry.register("foo", handler)
    assert registry.get_exporter_handler("foo") is handler
    with pytest.raises(ExporterNotFoundError, match="bar"):
        registry.get_exporter_handler("bar")


def test_register_replaces_previous_handler():
    first = ExporterHandler(_none_factory, "first")
    second = ExporterHandler(_none_factory, "second")
    registry.register("foo", first)
    registry.register("foo", second)
    assert registry.get_exporter_names() == ["foo"]
    assert registry.get_exporter_handler("foo").options == "second"


def test_new_exporters_skips_disabled_and_passes_options():
    seen = []

    def factory(options):
        seen.append(options)
        return {"built_from": options}

    registry.register("enabled", ExporterHandler(factory, "opts"))
    registry.register("disabled", ExporterHandler(_none_factory, None))
    exporters = registry.new_exporters()
    assert exporters == [{"built_from": "opts"}]
    assert seen == ["opts"]


def test_reset_clears_everything():
    registry.register("foo", ExporterHandler(_none_factory))
    registry.reset()
    assert registry.get_exporter_names() == []
    assert registry.new_exporters() == []