"""Registry of exporter factories keyed by exporter type."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

__all__ = [
    "ExporterHandler",
    "ExporterNotFoundError",
    "register",
    "get_exporter_names",
    "get_exporter_handler",
    "new_exporters",
    "reset",
]


@dataclass
class ExporterHandler:
    """A factory for one kind of exporter and the options it is built from.

    ``create_exporter`` is called with ``options`` and returns an exporter,
    or ``None`` when the exporter is not enabled.
    """

    create_exporter: Callable[[Any], Any]
    options: Any = None


class ExporterNotFoundError(LookupError):
    """Raised when no handler is registered for an exporter type."""


_handlers: dict[str, ExporterHandler] = {}


def register(exporter_type: str, handler: ExporterHandler) -> None:
    """Register ``handler`` for ``exporter_type``, replacing any earlier one."""
    _handlers[exporter_type] = handler


def get_exporter_names() -> list[str]:
    """Return every registered exporter type."""
    return list(_handlers)


def get_exporter_handler(exporter_type: str) -> ExporterHandler:
    """Return the handler for ``exporter_type``.

    Raises ExporterNotFoundError if none is registered.
    """
    try:
        return _handlers[exporter_type]
    except KeyError:
        raise ExporterNotFoundError(
            f"Exporter handler for {exporter_type} does not exist"
        ) from None


def new_exporters() -> list[Any]:
    """Create an exporter from every registered handler, skipping disabled ones."""
    exporters = []
    for handler in _handlers.values():
        exporter = handler.create_exporter(handler.options)
        if exporter is not None:
            exporters.append(exporter)
    return exporters


def reset() -> None:
    """Forget every registered handler."""
    _handlers.clear()