"""
cgroup process enumerator.

Scans /proc/<pid>/cgroup on the host and indexes every process by the
64-hex container ID found in its cgroup path. Works for both the cgroupfs
and systemd cgroup drivers and for docker, containerd and cri-o:

  /kubepods/burstable/pod<uid>/<container-id>
  /kubepods.slice/.../cri-containerd-<container-id>.scope

PIDs are host PIDs, which is what NVML reports. Needs the host PID
namespace (hostPID: true) or the host /proc mounted at /host/proc.
"""

import re
import logging
from collections import defaultdict
from pathlib import Path
from typing import Optional

from .base import ProcessEnumerator
from ..errors import EnumerationFailed
from ..models import ContainerRef

logger = logging.getLogger(__name__)

CONTAINER_ID_RE = re.compile(r"([a-f0-9]{64})")


class CgroupEnumerator(ProcessEnumerator):
    """Maps container IDs to host PIDs through the cgroup filesystem."""

    def __init__(self, proc_root: Path = Path("/proc")):
        self._proc_root = Path(proc_root)
        self._index: Optional[dict[str, set[int]]] = None
        self._scan_error: Optional[EnumerationFailed] = None

    def begin_cycle(self) -> None:
        self._index = None
        self._scan_error = None
        try:
            self._index = self._build_index()
        except EnumerationFailed as e:
            # Remembered so every container of this cycle fails without rescanning
            self._scan_error = e
            raise

    def pids_for_container(self, container: ContainerRef) -> set[int]:
        if self._scan_error is not None:
            raise EnumerationFailed(str(self._scan_error)) from self._scan_error
        if self._index is None:
            self._index = self._build_index()
        return set(self._index.get(container.container_id, ()))

    def _build_index(self) -> dict[str, set[int]]:
        try:
            entries = list(self._proc_root.iterdir())
        except OSError as e:
            raise EnumerationFailed(f"Cannot read {self._proc_root}: {e}") from e

        index: dict[str, set[int]] = defaultdict(set)
        for entry in entries:
            if not entry.name.isdigit():
                continue
            try:
                content = (entry / "cgroup").read_text(errors="replace")
            except OSError:
                # Process exited between listing and read
                continue
            match = CONTAINER_ID_RE.search(content)
            if match:
                index[match.group(1)].add(int(entry.name))

        logger.debug(
            f"Indexed {sum(len(p) for p in index.values())} PIDs "
            f"across {len(index)} containers from {self._proc_root}"
        )
        return dict(index)

    @property
    def name(self) -> str:
        return f"cgroup ({self._proc_root})"
