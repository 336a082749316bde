"""
Shared fixtures and fakes for the agent tests.

NVML and the Kubernetes API are never touched: collaborators are replaced
with the small fakes below or with mocks.
"""

from types import SimpleNamespace

import pytest
from prometheus_client.core import CollectorRegistry

from pod_gpu_agent.enumerators.base import ProcessEnumerator
from pod_gpu_agent.errors import EnumerationFailed
from pod_gpu_agent.metrics import ExporterMetrics
from pod_gpu_agent.models import ContainerRef, DeviceUsage, Pod, ProcessUsage


def make_pod(name, container_ids=("c1",), namespace="default"):
    return Pod(
        namespace=namespace,
        name=name,
        containers=tuple(
            ContainerRef(namespace, name, f"ctr-{cid}", cid) for cid in container_ids
        ),
    )


def make_device(index=0, total=1000, processes=None):
    return DeviceUsage(
        device_index=index,
        total_memory_bytes=total,
        processes=tuple(
            ProcessUsage(pid, used) for pid, used in (processes or {}).items()
        ),
    )


def nvml_process(pid, used):
    return SimpleNamespace(pid=pid, usedGpuMemory=used)


class FakeEnumerator(ProcessEnumerator):
    """Returns canned PIDs per container ID; IDs in ``failing`` raise.

    ``failing`` may be a set of IDs (raising EnumerationFailed) or a dict
    mapping IDs to the exception to raise.
    """

    def __init__(self, pids_by_container, failing=()):
        self.pids_by_container = pids_by_container
        self.failing = failing if isinstance(failing, dict) else set(failing)
        self.cycles = 0

    def begin_cycle(self):
        self.cycles += 1

    def pids_for_container(self, container):
        if container.container_id in self.failing:
            if isinstance(self.failing, dict):
                raise self.failing[container.container_id]
            raise EnumerationFailed(f"boom {container.container_id}")
        return set(self.pids_by_container.get(container.container_id, ()))


class FakePodLister:
    name = "fake"

    def __init__(self, pods):
        self.pods = pods
        self.error = None

    def list_pods(self):
        if self.error is not None:
            raise self.error
        return list(self.pods)


class FakeCollector:
    def __init__(self, devices, gpu_count=None):
        self.devices = devices
        self.gpu_count = gpu_count
        self.error = None
        self.shut_down = False

    def get_gpu_count(self):
        return self.gpu_count if self.gpu_count is not None else len(self.devices)

    def collect(self, timeout=None):
        if self.error is not None:
            raise self.error
        return list(self.devices), self.get_gpu_count() - len(self.devices)

    def shutdown(self):
        self.shut_down = True


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def metrics(registry):
    return ExporterMetrics(registry)


@pytest.fixture
def sample(registry):
    """Read one sample value from the test registry."""
    def _sample(name, **labels):
        return registry.get_sample_value(name, labels)
    return _sample
