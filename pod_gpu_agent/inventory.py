"""
Kubernetes pod inventory.

Lists pods through the cluster API and extracts, per pod, the runtime
identifiers of its running containers.

Deployment: runs inside the agent DaemonSet pod.
Requires RBAC: pods (list) cluster-wide.
"""

import os
import logging
from typing import Optional

from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from .errors import ClusterClientError, ClusterUnreachable
from .models import ContainerRef, Pod, normalize_container_id

logger = logging.getLogger(__name__)


def load_core_v1_api() -> client.CoreV1Api:
    """Build a CoreV1Api from in-cluster config, or the local kubeconfig."""
    try:
        if os.getenv("KUBERNETES_SERVICE_HOST"):
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes config")
        else:
            config.load_kube_config()
            logger.info("Loaded local kubeconfig")
    except (ConfigException, OSError) as e:
        raise ClusterClientError(f"Unable to load Kubernetes config: {e}") from e
    return client.CoreV1Api()


class KubernetesPodLister:
    """
    Lists pods cluster-wide (or on one node) and their container IDs.
    """

    def __init__(
        self,
        api: Optional[client.CoreV1Api] = None,
        node_name: str = "",
        request_timeout: float = 10.0,
    ):
        self._v1 = api if api is not None else load_core_v1_api()
        self._node_name = node_name
        self._request_timeout = request_timeout

    def list_pods(self) -> list[Pod]:
        """
        Return every pod with at least its started containers.

        Raises:
            ClusterUnreachable: the API call failed or timed out
        """
        kwargs = {"watch": False, "_request_timeout": self._request_timeout}
        if self._node_name:
            kwargs["field_selector"] = f"spec.nodeName={self._node_name}"

        try:
            pod_list = self._v1.list_pod_for_all_namespaces(**kwargs)
        except (client.ApiException, HTTPError, OSError) as e:
            raise ClusterUnreachable(f"Failed to list pods: {e}") from e

        return [self._to_pod(item) for item in (pod_list.items or [])]

    # ── Private helpers ──────────────────────────────────────────────

    def _to_pod(self, item) -> Pod:
        namespace = item.metadata.namespace
        name = item.metadata.name

        containers = []
        statuses = (item.status.container_statuses if item.status else None) or []
        for status in statuses:
            container_id = normalize_container_id(status.container_id)
            if not container_id:
                # Container not started yet
                logger.debug(
                    f"Pod {namespace}/{name}: container {status.name} has no ID yet"
                )
                continue
            containers.append(ContainerRef(
                namespace=namespace,
                pod_name=name,
                container_name=status.name,
                container_id=container_id,
            ))

        return Pod(namespace=namespace, name=name, containers=tuple(containers))

    @property
    def name(self) -> str:
        scope = f"node={self._node_name}" if self._node_name else "cluster-wide"
        return f"kubernetes ({scope})"
