"""Datadog integration package: incident and service-catalog collectors."""

from .client import DatadogClient, DatadogClientError

__all__ = [
    "DatadogClient",
    "DatadogClientError",
]
