"""Upstream collectors (GitHub, Datadog) and the shared pagination walker."""
