"""
Prometheus metric families exported by the agent.

All families are registered on an explicit CollectorRegistry handed in by
the caller, so tests can use a private registry per test.
"""

import logging

from prometheus_client import Counter, Gauge, Histogram, start_http_server
from prometheus_client.core import CollectorRegistry

logger = logging.getLogger(__name__)

SERIES_LABELS = ['pid', 'pod']


class ExporterMetrics:
    """Metric families, registered once for the lifetime of the process."""

    def __init__(self, registry: CollectorRegistry):
        self.registry = registry

        # Per-pod attribution
        self.memory_used = Gauge(
            'pod_gpu_memory_usage',
            'GPU memory used by Kubernetes Pod in bytes',
            SERIES_LABELS,
            registry=registry,
        )
        self.memory_percent = Gauge(
            'pod_gpu_memory_perc_usage',
            'GPU memory in percentage of device total used by pod',
            SERIES_LABELS,
            registry=registry,
        )

        # Agent diagnostics
        self.pods = Gauge(
            'pod_gpu_agent_pods',
            'Pods returned by the cluster API in the last completed cycle',
            registry=registry,
        )
        self.unmatched_processes = Gauge(
            'pod_gpu_agent_unmatched_processes',
            'GPU processes not owned by any known pod in the last cycle',
            registry=registry,
        )
        self.cycle_duration = Histogram(
            'pod_gpu_agent_cycle_duration_seconds',
            'Duration of one refresh cycle',
            registry=registry,
        )
        self.cycle_failures = Counter(
            'pod_gpu_agent_cycle_failures_total',
            'Refresh cycles skipped without publishing',
            ['reason'],
            registry=registry,
        )
        self.item_failures = Counter(
            'pod_gpu_agent_item_failures_total',
            'Containers or devices left out of a cycle',
            ['kind'],
            registry=registry,
        )


def serve_metrics(registry: CollectorRegistry, port: int, addr: str = '0.0.0.0'):
    """Start the pull endpoint in a daemon thread."""
    start_http_server(port, addr=addr, registry=registry)
    logger.info(f"Serving metrics on http://{addr}:{port}/metrics")
