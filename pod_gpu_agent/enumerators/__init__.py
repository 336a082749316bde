"""
Process enumerators for pod attribution.

Given a container, return the process IDs running inside it so GPU
processes reported by the driver can be traced back to their pod.
"""

from .base import ProcessEnumerator, NullEnumerator, parse_pids
from .cgroup import CgroupEnumerator
from .kubectl import KubectlExecEnumerator
from .detect import detect_enumerator

__all__ = [
    'ProcessEnumerator',
    'NullEnumerator',
    'CgroupEnumerator',
    'KubectlExecEnumerator',
    'parse_pids',
    'detect_enumerator',
]
