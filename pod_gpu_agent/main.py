"""
Pod GPU Agent - Main Entry Point

Attributes GPU memory used by compute processes to the Kubernetes pods
owning them and exports the result as Prometheus gauges.
"""

import argparse
import enum
import logging
import signal
import sys
import threading
import time
from typing import Optional

from prometheus_client.core import CollectorRegistry
from rich.console import Console
from rich.table import Table

from . import __version__, config
from .attribution import AttributionResult, collect_pid_sets, run_attribution
from .collector import GPUCollector
from .enumerators import ProcessEnumerator, detect_enumerator
from .errors import (
    ClusterClientError,
    ClusterUnreachable,
    DriverUnavailable,
    EnumerationFailed,
)
from .inventory import KubernetesPodLister
from .metrics import ExporterMetrics, serve_metrics
from .publisher import MetricsPublisher

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class AgentState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"


class ExporterAgent:
    """Main agent class: runs one refresh cycle per tick"""

    def __init__(
        self,
        interval: float = config.REFRESH_INTERVAL,
        port: Optional[int] = config.EXPORTER_PORT,
        address: str = config.EXPORTER_ADDRESS,
        max_cycles: Optional[int] = None,
        quiet: bool = False,
        collector: Optional[GPUCollector] = None,
        pod_lister: Optional[KubernetesPodLister] = None,
        enumerator: Optional[ProcessEnumerator] = None,
        registry: Optional[CollectorRegistry] = None,
        node_name: str = config.NODE_NAME,
        enumerator_type: str = config.PROCESS_ENUMERATOR,
    ):
        """
        Initialize the agent.

        Args:
            interval: Seconds between the start of two cycles (default: 30)
            port: Metrics port, None to skip starting the HTTP endpoint
            address: Metrics bind address
            max_cycles: Stop after this many cycles (None = infinite)
            quiet: Suppress console output
            collector, pod_lister, enumerator: Collaborators, built on
                demand when not given
            registry: Prometheus registry holding the agent's metrics
            node_name: Only list pods on this node (empty = cluster-wide)
            enumerator_type: Process enumerator built when none is given
        """
        self.interval = interval
        self.port = port
        self.address = address
        self.max_cycles = max_cycles
        self.quiet = quiet

        self.collector = collector
        self.pod_lister = pod_lister
        self.enumerator = enumerator
        self.node_name = node_name
        self.enumerator_type = enumerator_type

        self.registry = registry if registry is not None else CollectorRegistry()
        self.metrics = ExporterMetrics(self.registry)
        self.publisher = MetricsPublisher(self.metrics)

        self.state = AgentState.IDLE
        self.cycle_count = 0
        self._stop = threading.Event()

        self.console = None if quiet else Console()

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully"""
        logger.info(f"Received signal {signum}, shutting down agent")
        self.stop()

    def stop(self):
        self._stop.set()

    def _setup(self):
        """Build collaborators that were not injected.

        Raises:
            DriverUnavailable, ClusterClientError
        """
        if self.collector is None:
            self.collector = GPUCollector(query_timeout=config.DEVICE_QUERY_TIMEOUT)
        if self.pod_lister is None:
            self.pod_lister = KubernetesPodLister(
                node_name=self.node_name,
                request_timeout=config.CLUSTER_API_TIMEOUT,
            )
        if self.enumerator is None:
            self.enumerator = detect_enumerator(self.enumerator_type)

    def run_cycle(self) -> Optional[AttributionResult]:
        """
        Execute one list-enumerate-query-join-publish cycle.

        Returns:
            The attribution result, or None if the cycle was skipped

        Raises:
            DriverUnavailable: fatal, the caller must terminate
        """
        self.state = AgentState.RUNNING
        start = time.monotonic()
        try:
            try:
                pods = self.pod_lister.list_pods()
            except ClusterUnreachable as e:
                logger.error(f"{e}; skipping cycle")
                self.metrics.cycle_failures.labels(reason='cluster_unreachable').inc()
                return None

            logger.info(f"There are {len(pods)} pods in the cluster")
            self.metrics.pods.set(len(pods))

            try:
                self.enumerator.begin_cycle()
            except EnumerationFailed as e:
                logger.warning(f"Process enumerator not ready: {e}")
            pid_sets, failed_containers = collect_pid_sets(
                pods,
                self.enumerator,
                timeout=config.ENUMERATION_TIMEOUT,
                max_workers=config.ENUMERATION_WORKERS,
            )
            if failed_containers:
                self.metrics.item_failures.labels(kind='container').inc(failed_containers)

            devices, excluded_devices = self.collector.collect()
            if excluded_devices:
                self.metrics.item_failures.labels(kind='device').inc(excluded_devices)

            result = run_attribution(pid_sets, devices)
            self.metrics.unmatched_processes.set(result.unmatched)
            published = self.publisher.publish(result.records)

            logger.info(
                f"Cycle {self.cycle_count + 1}: {published} series published, "
                f"{result.unmatched} unmatched processes on {len(devices)} GPUs"
            )
            return result
        finally:
            self.cycle_count += 1
            self.metrics.cycle_duration.observe(time.monotonic() - start)
            self.state = AgentState.IDLE

    def run(self) -> int:
        """Main agent loop. Returns the process exit code."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        try:
            self._setup()
        except DriverUnavailable as e:
            logger.critical(f"Unable to initialize NVML: {e}")
            return 1
        except ClusterClientError as e:
            logger.critical(f"Unable to create Kubernetes client: {e}")
            self.collector.shutdown()
            return 1

        try:
            if not self.quiet:
                self._print_header()

            if self.port is not None:
                try:
                    serve_metrics(self.registry, self.port, self.address)
                except OSError as e:
                    logger.critical(
                        f"Unable to serve metrics on {self.address}:{self.port}: {e}"
                    )
                    return 1

            while not self._stop.is_set():
                loop_start = time.monotonic()

                result = self.run_cycle()
                if result is not None and not self.quiet:
                    self._display_result(result)

                if self.max_cycles and self.cycle_count >= self.max_cycles:
                    logger.info(f"Cycle limit reached ({self.max_cycles})")
                    break

                # An overrunning cycle delays the next tick instead of overlapping it
                elapsed = time.monotonic() - loop_start
                self._stop.wait(max(0.0, self.interval - elapsed))

        except DriverUnavailable as e:
            logger.critical(f"GPU driver unavailable, terminating: {e}")
            return 1

        finally:
            self.collector.shutdown()

        logger.info(f"Agent stopped after {self.cycle_count} cycles")
        return 0

    def _print_header(self):
        """Print startup header"""
        self.console.print(f"\n[bold green]Pod GPU Agent v{__version__}[/bold green]")
        self.console.print(f"📊 Monitoring [cyan]{self.collector.get_gpu_count()}[/cyan] GPUs")
        self.console.print(f"🔗 Pods: [cyan]{self.pod_lister.name}[/cyan]")
        self.console.print(f"🔎 Process enumerator: [cyan]{self.enumerator.name}[/cyan]")
        self.console.print(f"⏱️  Refresh interval: [cyan]{self.interval}s[/cyan]")
        if self.port is not None:
            self.console.print(f"📈 Metrics: [cyan]http://{self.address}:{self.port}/metrics[/cyan]")
        self.console.print()

    def _display_result(self, result: AttributionResult):
        """Display the cycle's attributed usage to console"""
        table = Table(title=f"Cycle #{self.cycle_count}")
        table.add_column("Pod", style="cyan")
        table.add_column("PID", justify="right")
        table.add_column("GPU", justify="right")
        table.add_column("Memory", justify="right")
        table.add_column("% of GPU", justify="right")

        for r in sorted(result.records, key=lambda r: (r.pod, r.pid, r.device_index)):
            percent = r.percent_of_device_total
            table.add_row(
                str(r.pod),
                str(r.pid),
                str(r.device_index),
                f"{r.used_memory_bytes / 1024 / 1024:.0f} MiB",
                f"{percent:.1f}%" if percent is not None else "N/A",
            )

        self.console.print(table)
        if result.unmatched:
            self.console.print(f"[dim]{result.unmatched} GPU processes not owned by any pod[/dim]")


def main(argv=None) -> int:
    """CLI entry point"""
    parser = argparse.ArgumentParser(
        description='Per-pod GPU memory exporter',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Export on :8000 with the default 30s refresh
  pod-gpu-agent

  # Use host cgroups instead of kubectl exec, only pods of this node
  pod-gpu-agent --enumerator cgroup --node-name $NODE_NAME

  # Single cycle printed to the console, no HTTP endpoint
  pod-gpu-agent --once --no-serve
        """
    )

    parser.add_argument(
        '--interval', '-i',
        type=float,
        default=config.REFRESH_INTERVAL,
        help=f'Refresh interval in seconds (default: {config.REFRESH_INTERVAL})'
    )

    parser.add_argument(
        '--port', '-p',
        type=int,
        default=config.EXPORTER_PORT,
        help=f'Metrics port (default: {config.EXPORTER_PORT})'
    )

    parser.add_argument(
        '--address',
        type=str,
        default=config.EXPORTER_ADDRESS,
        help=f'Metrics bind address (default: {config.EXPORTER_ADDRESS})'
    )

    parser.add_argument(
        '--no-serve',
        action='store_true',
        help='Do not start the metrics HTTP endpoint'
    )

    parser.add_argument(
        '--enumerator', '-e',
        choices=['kubectl', 'cgroup', 'none'],
        default=config.PROCESS_ENUMERATOR,
        help=f'How container PIDs are listed (default: {config.PROCESS_ENUMERATOR})'
    )

    parser.add_argument(
        '--node-name',
        type=str,
        default=config.NODE_NAME,
        help='Only list pods scheduled on this node (default: cluster-wide)'
    )

    parser.add_argument(
        '--once',
        action='store_true',
        help='Run a single cycle and exit'
    )

    parser.add_argument(
        '--quiet', '-q',
        action='store_true',
        help='Suppress console output'
    )

    parser.add_argument(
        '--log-level',
        type=str,
        default=config.LOG_LEVEL,
        help=f'Logging level (default: {config.LOG_LEVEL})'
    )

    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format=LOG_FORMAT)

    # Validate arguments
    if args.interval < 1:
        logger.error("Interval must be >= 1s")
        return 1

    agent = ExporterAgent(
        interval=args.interval,
        port=None if args.no_serve else args.port,
        address=args.address,
        max_cycles=1 if args.once else None,
        quiet=args.quiet,
        node_name=args.node_name,
        enumerator_type=args.enumerator,
    )

    return agent.run()


def cli():
    sys.exit(main())


if __name__ == '__main__':
    cli()
