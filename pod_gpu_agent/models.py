"""
Data models shared by the collector, the pod lister and the attribution engine.

Every object here is rebuilt on each refresh cycle and discarded afterwards.
"""

from dataclasses import dataclass, field
from typing import NamedTuple, Optional


class PodKey(NamedTuple):
    """Identity of a pod: (namespace, name)."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


def normalize_container_id(raw: Optional[str]) -> str:
    """Strip the runtime prefix, e.g. "containerd://abc" -> "abc"."""
    if not raw:
        return ""
    _, sep, rest = raw.partition("://")
    return rest if sep else raw


@dataclass(frozen=True)
class ContainerRef:
    """A running container inside a pod."""

    namespace: str
    pod_name: str
    container_name: str
    container_id: str           # normalized, no "<runtime>://" prefix

    @property
    def pod_key(self) -> PodKey:
        return PodKey(self.namespace, self.pod_name)


@dataclass(frozen=True)
class Pod:
    namespace: str
    name: str
    containers: tuple[ContainerRef, ...] = ()

    @property
    def key(self) -> PodKey:
        return PodKey(self.namespace, self.name)

    @property
    def container_ids(self) -> frozenset[str]:
        return frozenset(c.container_id for c in self.containers)


@dataclass(frozen=True)
class ProcessUsage:
    """One compute process reported by the driver."""

    pid: int
    used_memory_bytes: int


@dataclass(frozen=True)
class DeviceUsage:
    """Memory snapshot of a single GPU."""

    device_index: int
    total_memory_bytes: int
    processes: tuple[ProcessUsage, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class AttributedUsage:
    """GPU memory used by one pid on one device, attributed to a pod."""

    pid: int
    pod: PodKey
    device_index: int
    used_memory_bytes: int
    device_total_bytes: int
    percent_of_device_total: Optional[float] = None

    @property
    def series_key(self) -> tuple[str, str]:
        """Label values (pid, pod) under which this record is published."""
        return (str(self.pid), str(self.pod))


# pid -> owning pod, valid for a single cycle
OwnershipMap = dict[int, PodKey]
