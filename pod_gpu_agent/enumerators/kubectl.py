"""
kubectl exec process enumerator.

Runs `ps` inside the container through `kubectl exec` and parses the PID
column. PIDs are therefore those of the container's own PID namespace.

Requires RBAC: pods/exec (create) and a `ps` binary in the target image.
"""

import subprocess
import logging

from .base import ProcessEnumerator, parse_pids
from ..errors import EnumerationFailed
from ..models import ContainerRef

logger = logging.getLogger(__name__)


class KubectlExecEnumerator(ProcessEnumerator):
    """Lists container PIDs with `kubectl exec ... -- ps -e -o pid=`."""

    def __init__(self, kubectl_path: str = "kubectl", timeout: float = 10.0):
        self._kubectl = kubectl_path
        self._timeout = timeout

    def command_for(self, container: ContainerRef) -> list[str]:
        return [
            self._kubectl, "exec",
            "-n", container.namespace,
            container.pod_name,
            "-c", container.container_name,
            "--", "ps", "-e", "-o", "pid=",
        ]

    def pids_for_container(self, container: ContainerRef) -> set[int]:
        target = (
            f"container {container.container_id} in pod "
            f"{container.namespace}/{container.pod_name}"
        )
        try:
            result = subprocess.run(
                self.command_for(container),
                capture_output=True,
                timeout=self._timeout,
            )
        except FileNotFoundError as e:
            raise EnumerationFailed(f"{self._kubectl} not found") from e
        except subprocess.TimeoutExpired as e:
            raise EnumerationFailed(
                f"kubectl exec timed out after {self._timeout}s for {target}"
            ) from e
        except OSError as e:
            raise EnumerationFailed(f"Unable to run {self._kubectl} for {target}: {e}") from e

        # Container output is not guaranteed to be valid UTF-8
        stdout = result.stdout.decode('utf-8', errors='replace')
        if result.returncode != 0:
            stderr = result.stderr.decode('utf-8', errors='replace')
            raise EnumerationFailed(f"Failed to get PIDs for {target}: {stderr.strip()}")

        pids = parse_pids(stdout)
        logger.debug(f"PIDs in {target}: {sorted(pids)}")
        return pids

    @property
    def name(self) -> str:
        return "kubectl exec"
