"""
Process enumerator selection.

Supported values for PROCESS_ENUMERATOR / --enumerator:
  "kubectl" — kubectl exec + ps inside each container (default)
  "cgroup"  — host /proc cgroup scan
  "none"    — NullEnumerator (nothing is attributed)
"""

import shutil
import logging

from .base import ProcessEnumerator, NullEnumerator
from .. import config

logger = logging.getLogger(__name__)


def detect_enumerator(
    enumerator_type: str = config.PROCESS_ENUMERATOR,
) -> ProcessEnumerator:
    """Instantiate the requested enumerator, falling back to NullEnumerator."""
    enumerator_type = (enumerator_type or "").lower().strip()

    if enumerator_type == "kubectl":
        from .kubectl import KubectlExecEnumerator
        if not shutil.which(config.KUBECTL_PATH):
            logger.warning(
                f"{config.KUBECTL_PATH} not found on PATH, "
                f"every container enumeration will fail"
            )
        enumerator = KubectlExecEnumerator(
            kubectl_path=config.KUBECTL_PATH,
            timeout=config.ENUMERATION_TIMEOUT,
        )

    elif enumerator_type == "cgroup":
        from .cgroup import CgroupEnumerator
        enumerator = CgroupEnumerator(proc_root=config.PROC_ROOT)

    elif enumerator_type == "none":
        logger.info("Process enumeration explicitly disabled")
        return NullEnumerator()

    else:
        logger.warning(f"Unknown process enumerator '{enumerator_type}', using none")
        return NullEnumerator()

    logger.info(f"Process enumerator: {enumerator.name}")
    return enumerator
