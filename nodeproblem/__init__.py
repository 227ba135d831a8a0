"""Exporters for node problem events and conditions, with Stackdriver exporter settings."""

__version__ = "0.1.0"