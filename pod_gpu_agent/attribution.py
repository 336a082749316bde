"""
Attribution engine: joins pod ownership with driver-reported GPU processes.

Each cycle:
  1. Enumerate the PIDs of every container, union them per pod.
  2. Build a pid -> pod ownership map.
  3. For every device and every running process, look the PID up by value
     and emit an AttributedUsage record for each match.

PIDs are only unique within one PID namespace at one point in time, so the
same PID can surface in two pods within a cycle (process exit racing with
enumeration, PID recycling). Such conflicts are resolved deterministically:
pods are visited in sorted (namespace, name) order and the last pod visited
owns the PID. Input ordering never changes the outcome.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from .enumerators.base import ProcessEnumerator
from .errors import EnumerationFailed
from .models import (
    AttributedUsage,
    ContainerRef,
    DeviceUsage,
    OwnershipMap,
    Pod,
    PodKey,
)
from .workers import run_bounded

logger = logging.getLogger(__name__)


@dataclass
class AttributionResult:
    """Output of one attribution pass."""

    records: list[AttributedUsage] = field(default_factory=list)
    unmatched: int = 0          # driver processes owned by no known pod
    conflicts: int = 0          # PIDs claimed by more than one pod


def collect_pid_sets(
    pods: Iterable[Pod],
    enumerator: ProcessEnumerator,
    timeout: float = 10.0,
    max_workers: int = 8,
) -> tuple[dict[PodKey, set[int]], int]:
    """
    Enumerate the PIDs of every container and union them per pod.

    Containers run in parallel. A container that fails or does not answer
    within its share of the time budget contributes no PIDs; its pod still
    gets whatever its other containers returned.

    Returns:
        (pid sets keyed by pod, number of failed containers)
    """
    pods = list(pods)
    pid_sets: dict[PodKey, set[int]] = {pod.key: set() for pod in pods}
    containers: list[ContainerRef] = [c for pod in pods for c in pod.containers]
    if not containers:
        return pid_sets, 0

    workers = max(1, min(max_workers, len(containers)))
    # Queued containers wait for a free worker, so the budget scales with rounds
    budget = timeout * math.ceil(len(containers) / workers)

    outcomes, pending = run_bounded(
        enumerator.pids_for_container, containers,
        timeout=budget, max_workers=workers, name='pid-enum',
    )

    failed = len(pending)
    for container in pending:
        logger.warning(
            f"Timed out getting PIDs for container {container.container_id} "
            f"in pod {container.pod_key}"
        )

    for outcome in outcomes:
        container = outcome.item
        error = outcome.error
        if error is not None:
            failed += 1
            message = (
                f"Failed to get PIDs for container {container.container_id} "
                f"in pod {container.pod_key}: {error}"
            )
            if isinstance(error, EnumerationFailed):
                logger.warning(message)
            else:
                # Unexpected errors stay local to the container too
                logger.warning(message, exc_info=error)
            continue
        pid_sets[container.pod_key].update(outcome.value)

    return pid_sets, failed


def build_ownership(
    pid_sets: Mapping[PodKey, Iterable[int]],
) -> tuple[OwnershipMap, int]:
    """
    Build the pid -> pod map.

    Pods are visited in sorted PodKey order; when a PID is already owned by
    another pod, the pod visited later wins and the conflict is logged.

    Returns:
        (ownership map, number of conflicting PIDs)
    """
    ownership: OwnershipMap = {}
    conflicts = 0

    for pod_key in sorted(pid_sets):
        for pid in sorted(int(p) for p in pid_sets[pod_key]):
            previous = ownership.get(pid)
            if previous is not None and previous != pod_key:
                conflicts += 1
                logger.warning(
                    f"PID {pid} claimed by both {previous} and {pod_key}, "
                    f"attributing to {pod_key}"
                )
            ownership[pid] = pod_key

    return ownership, conflicts


def attribute(
    ownership: Mapping[int, PodKey],
    devices: Iterable[DeviceUsage],
) -> AttributionResult:
    """
    Join driver-reported processes against the ownership map by PID value.

    Devices reporting a non-positive total get records without a
    percentage; unmatched processes are counted, never treated as errors.
    """
    result = AttributionResult()

    for device in devices:
        total = device.total_memory_bytes
        if total <= 0 and device.processes:
            logger.warning(
                f"GPU {device.device_index} reports total memory {total}, "
                f"skipping percentage metric"
            )

        for proc in device.processes:
            pod_key = ownership.get(int(proc.pid))
            if pod_key is None:
                result.unmatched += 1
                logger.debug(
                    f"GPU {device.device_index}: pid {proc.pid} not owned by any pod"
                )
                continue

            percent = None
            if total > 0:
                percent = proc.used_memory_bytes * 100 / total

            result.records.append(AttributedUsage(
                pid=int(proc.pid),
                pod=pod_key,
                device_index=device.device_index,
                used_memory_bytes=proc.used_memory_bytes,
                device_total_bytes=total,
                percent_of_device_total=percent,
            ))

    return result


def run_attribution(
    pid_sets: Mapping[PodKey, Iterable[int]],
    devices: Iterable[DeviceUsage],
) -> AttributionResult:
    """Build ownership from per-pod PID sets and join it with device usage."""
    ownership, conflicts = build_ownership(pid_sets)
    result = attribute(ownership, devices)
    result.conflicts = conflicts
    return result
