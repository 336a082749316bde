"""
Base classes for process enumerators.

Every enumerator must implement ProcessEnumerator to answer one question:
which process IDs are running inside a given container.
"""

from abc import ABC, abstractmethod
import logging

from ..models import ContainerRef

logger = logging.getLogger(__name__)


def parse_pids(output: str) -> set[int]:
    """Parse whitespace-separated PIDs, dropping anything non-numeric."""
    pids: set[int] = set()
    for token in output.split():
        try:
            pid = int(token)
        except ValueError:
            logger.debug(f"Ignoring non-numeric PID token {token!r}")
            continue
        if pid > 0:
            pids.add(pid)
    return pids


class ProcessEnumerator(ABC):
    """
    Abstract base class for process enumerators.

    Implementations may be slow and may fail; callers bound them with a
    timeout and treat failures as affecting only the one container.
    """

    def begin_cycle(self) -> None:
        """Called once at the start of every refresh cycle."""

    @abstractmethod
    def pids_for_container(self, container: ContainerRef) -> set[int]:
        """
        Return the PIDs running inside ``container``.

        Raises:
            EnumerationFailed: the container could not be inspected
        """
        ...

    @property
    def name(self) -> str:
        """Human-readable enumerator name."""
        return self.__class__.__name__


class NullEnumerator(ProcessEnumerator):
    """
    Fallback enumerator: reports no processes for any container.

    The agent keeps running, nothing gets attributed.
    """

    def pids_for_container(self, container: ContainerRef) -> set[int]:
        return set()

    @property
    def name(self) -> str:
        return "none"
