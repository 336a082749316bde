"""
GPU memory collector using NVIDIA Management Library (NVML)

Reports, per device, total memory and the compute processes currently
holding memory on it.
"""

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

import pynvml

from .errors import DeviceQueryFailed, DriverUnavailable
from .models import DeviceUsage, ProcessUsage
from .workers import run_bounded

logger = logging.getLogger(__name__)

# NVML return codes that mean the driver itself is gone, not one device
DRIVER_FATAL_CODES = frozenset({
    pynvml.NVML_ERROR_UNINITIALIZED,
    pynvml.NVML_ERROR_DRIVER_NOT_LOADED,
    pynvml.NVML_ERROR_LIBRARY_NOT_FOUND,
})


def is_driver_fatal(error: pynvml.NVMLError) -> bool:
    return getattr(error, 'value', None) in DRIVER_FATAL_CODES


@dataclass(frozen=True)
class DeviceHandle:
    index: int
    handle: Any


class GPUCollector:
    """
    Collects per-process memory usage from all NVIDIA GPUs using NVML.

    Device handles are re-enumerated every cycle so hot-removed or lost
    GPUs drop out of the results instead of failing the whole cycle.
    """

    def __init__(self, query_timeout: float = 5.0):
        """
        Initialize GPU collector.

        Args:
            query_timeout: Upper bound in seconds for querying all devices
        """
        self.query_timeout = query_timeout
        self.initialized = False
        self._initialize()

    def _initialize(self):
        """Initialize NVML"""
        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as e:
            raise DriverUnavailable(f"Failed to initialize NVML: {e}") from e

        self.initialized = True
        try:
            version = pynvml.nvmlSystemGetDriverVersion()
            if isinstance(version, bytes):
                version = version.decode('utf-8')
            logger.info(f"NVML initialized, driver version {version}")
        except pynvml.NVMLError as e:
            logger.debug(f"Could not read driver version: {e}")

    def get_gpu_count(self) -> int:
        """Return number of GPUs currently visible to the driver"""
        try:
            return pynvml.nvmlDeviceGetCount()
        except pynvml.NVMLError as e:
            raise DriverUnavailable(f"Unable to get device count: {e}") from e

    def list_devices(self, count: Optional[int] = None) -> List[DeviceHandle]:
        """
        Enumerate installed devices.

        Args:
            count: Device count already read this cycle, queried when None

        Raises:
            DriverUnavailable: device count or a driver-global lookup failed
        """
        if not self.initialized:
            raise DriverUnavailable("Collector not initialized")

        if count is None:
            count = self.get_gpu_count()

        handles = []
        for i in range(count):
            try:
                handles.append(DeviceHandle(i, pynvml.nvmlDeviceGetHandleByIndex(i)))
            except pynvml.NVMLError as e:
                if is_driver_fatal(e):
                    raise DriverUnavailable(
                        f"Unable to get device at index {i}: {e}"
                    ) from e
                logger.warning(f"Skipping GPU {i}: unable to get handle: {e}")
        return handles

    def device_usage(self, device: DeviceHandle) -> DeviceUsage:
        """
        Query total memory and running compute processes of one device.

        Raises:
            DriverUnavailable: the driver stopped answering
            DeviceQueryFailed: only this device could not be queried
        """
        try:
            mem_info = pynvml.nvmlDeviceGetMemoryInfo(device.handle)
            running = pynvml.nvmlDeviceGetComputeRunningProcesses(device.handle)
        except pynvml.NVMLError as e:
            if is_driver_fatal(e):
                raise DriverUnavailable(
                    f"Unable to query GPU {device.index}: {e}"
                ) from e
            raise DeviceQueryFailed(device.index, str(e)) from e

        processes = []
        for proc in running:
            used = proc.usedGpuMemory
            if used is None:
                # Not available under some virtualization / WDDM modes
                logger.debug(
                    f"GPU {device.index}: memory usage unavailable for pid {proc.pid}"
                )
                used = 0
            processes.append(ProcessUsage(pid=int(proc.pid), used_memory_bytes=int(used)))

        return DeviceUsage(
            device_index=device.index,
            total_memory_bytes=int(mem_info.total),
            processes=tuple(processes),
        )

    def collect(self, timeout: Optional[float] = None) -> Tuple[List[DeviceUsage], int]:
        """
        Query every device, bounded by ``timeout`` seconds overall.

        Devices that fail or time out are left out of the result.

        Returns:
            (DeviceUsage list ordered by device index, number of excluded devices)

        Raises:
            DriverUnavailable: the driver stopped answering
        """
        timeout = self.query_timeout if timeout is None else timeout
        count = self.get_gpu_count()
        devices = self.list_devices(count)
        if not devices:
            return [], count

        outcomes, pending = run_bounded(
            self.device_usage, devices,
            timeout=timeout, max_workers=len(devices), name='nvml-query',
        )

        for device in pending:
            logger.warning(f"GPU {device.index}: query timed out after {timeout}s")

        usages = []
        for outcome in outcomes:
            error = outcome.error
            if error is None:
                usages.append(outcome.value)
            elif isinstance(error, DriverUnavailable):
                raise error
            elif isinstance(error, DeviceQueryFailed):
                logger.warning(f"Failed to collect memory usage for {error}")
            else:
                logger.warning(
                    f"Failed to collect memory usage for GPU {outcome.item.index}: {error}",
                    exc_info=error,
                )

        return sorted(usages, key=lambda u: u.device_index), count - len(usages)

    def shutdown(self):
        """Cleanup NVML resources"""
        if self.initialized:
            try:
                pynvml.nvmlShutdown()
            except pynvml.NVMLError as e:
                logger.warning(f"Unable to shutdown NVML: {e}")
            self.initialized = False

    def __enter__(self):
        """Context manager support"""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Cleanup on context exit"""
        self.shutdown()
