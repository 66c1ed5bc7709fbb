"""Prometheus instrumentation for the launcher service."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge


class LauncherMetrics:
    """Counters and gauges describing browser server activity."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.launches = Counter(
            "chromium_launcher_launches_total",
            "Browser servers launched successfully.",
            registry=self.registry,
        )
        self.launch_failures = Counter(
            "chromium_launcher_launch_failures_total",
            "Browser server launches that failed, by error type.",
            ["reason"],
            registry=self.registry,
        )
        self.closes = Counter(
            "chromium_launcher_closes_total",
            "Browser servers shut down, by trigger.",
            ["trigger"],
            registry=self.registry,
        )
        self.live_servers = Gauge(
            "chromium_launcher_live_servers",
            "Browser servers currently managed.",
            registry=self.registry,
        )


__all__ = ["LauncherMetrics"]
