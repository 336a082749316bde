"""
Exception hierarchy for the Pod GPU Agent.

Fatal:         DriverUnavailable, ClusterClientError
Cycle skipped: ClusterUnreachable
Item degraded: DeviceQueryFailed, EnumerationFailed
"""


class AgentError(Exception):
    """Base exception for the agent."""

    pass


class DriverUnavailable(AgentError):
    """NVML cannot be initialized or queried. The process must exit."""

    pass


class ClusterClientError(AgentError):
    """The Kubernetes client could not be constructed."""

    pass


class ClusterUnreachable(AgentError):
    """Listing pods failed. The current cycle is skipped."""

    pass


class DeviceQueryFailed(AgentError):
    """One device could not be queried."""

    def __init__(self, device_index: int, message: str):
        super().__init__(f"GPU {device_index}: {message}")
        self.device_index = device_index


class EnumerationFailed(AgentError):
    """PIDs of one container could not be enumerated."""

    pass
