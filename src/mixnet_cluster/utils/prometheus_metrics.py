"""Prometheus metrics for the cluster orchestrator."""

from __future__ import annotations

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class ClusterMetrics:
    """Per-orchestrator metric set, registered on its own registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self._server_started = False

        self.instances = Gauge(
            "mixnet_cluster_instances",
            "Role instances by lifecycle state",
            ["role", "state"],
            registry=self.registry,
        )
        self.log_lines = Counter(
            "mixnet_cluster_log_lines",
            "Log lines forwarded to the aggregated sink",
            ["instance"],
            registry=self.registry,
        )
        self.launch_time = Histogram(
            "mixnet_cluster_launch_seconds",
            "Time taken to launch a role instance",
            ["role"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0),
            registry=self.registry,
        )
        self.provisioned_users = Counter(
            "mixnet_cluster_provisioned_users",
            "Accounts provisioned over the management protocol",
            ["provider"],
            registry=self.registry,
        )

    def start_server(self, port: int) -> None:
        """Expose the registry over HTTP for scraping."""
        if self._server_started:
            return
        start_http_server(port, registry=self.registry)
        self._server_started = True

    def transition(self, role: str, old_state: Optional[str], new_state: str) -> None:
        if old_state is not None:
            self.instances.labels(role=role, state=old_state).dec()
        self.instances.labels(role=role, state=new_state).inc()

    def add_log_line(self, instance: str) -> None:
        self.log_lines.labels(instance=instance).inc()

    def observe_launch(self, role: str, duration: float) -> None:
        self.launch_time.labels(role=role).observe(duration)

    def add_provisioned_user(self, provider: str) -> None:
        self.provisioned_users.labels(provider=provider).inc()
