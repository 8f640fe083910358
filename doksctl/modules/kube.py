"""Kubernetes API access for the reconciler, health checks and add-ons."""
import base64
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..utils.kube import load_kubeconfig
from .models import GPU_BRAND_LABEL, GPU_RESOURCE, INSTANCE_TYPE_LABEL

logger = logging.getLogger("doksctl.kube")


def _quantity(value: Optional[str]) -> int:
    """Parse an integer extended-resource quantity such as nvidia.com/gpu."""
    if value in (None, ""):
        return 0
    try:
        return int(str(value))
    except ValueError:
        return 0


def _node_ready(node) -> bool:
    conditions = (node.status and node.status.conditions) or []
    return any(c.type == "Ready" and c.status == "True" for c in conditions)


class KubeClient:
    """Lazily-configured Kubernetes API client."""

    def __init__(self, kubeconfig: Optional[str] = None):
        self.kubeconfig = kubeconfig
        self._api_client: Optional[client.ApiClient] = None

    def _api(self) -> client.ApiClient:
        if self._api_client is None:
            load_kubeconfig(self.kubeconfig)
            self._api_client = client.ApiClient()
        return self._api_client

    def reload(self) -> None:
        """Drop the cached client so the next call re-reads the kubeconfig."""
        self._api_client = None

    @property
    def core(self) -> client.CoreV1Api:
        return client.CoreV1Api(self._api())

    @property
    def apps(self) -> client.AppsV1Api:
        return client.AppsV1Api(self._api())

    @property
    def custom(self) -> client.CustomObjectsApi:
        return client.CustomObjectsApi(self._api())

    # Cluster

    def is_reachable(self) -> bool:
        try:
            client.VersionApi(self._api()).get_code()
            return True
        except Exception as e:
            logger.debug(f"Kubernetes API not reachable: {e}")
            return False

    def server_version(self) -> str:
        return client.VersionApi(self._api()).get_code().git_version

    # Nodes

    def list_nodes(self, label_selector: Optional[str] = None) -> List[Any]:
        kwargs = {"label_selector": label_selector} if label_selector else {}
        return self.core.list_node(**kwargs).items

    def gpu_nodes(self) -> List[str]:
        """Names of GPU nodes, preferring the DigitalOcean GPU brand label."""
        nodes = self.list_nodes(label_selector=f"{GPU_BRAND_LABEL}=nvidia")
        if not nodes:
            nodes = [
                n for n in self.list_nodes()
                if "gpu-" in ((n.metadata.labels or {}).get(INSTANCE_TYPE_LABEL) or "")
            ]
        return sorted(n.metadata.name for n in nodes)

    def ready_node_count(self) -> Tuple[int, int]:
        """Return (ready, total) node counts."""
        nodes = self.list_nodes()
        return sum(1 for n in nodes if _node_ready(n)), len(nodes)

    def node_labels(self, name: str) -> Dict[str, str]:
        return self.core.read_node(name).metadata.labels or {}

    def label_node(self, name: str, labels: Dict[str, str]) -> None:
        self.core.patch_node(name, {"metadata": {"labels": labels}})

    def gpu_capacity(self, name: str) -> Tuple[int, int]:
        """Return (capacity, allocatable) of nvidia.com/gpu on a node."""
        status = self.core.read_node(name).status
        capacity = (status.capacity or {}).get(GPU_RESOURCE)
        allocatable = (status.allocatable or {}).get(GPU_RESOURCE)
        return _quantity(capacity), _quantity(allocatable)

    def node_taint_keys(self, name: str) -> List[str]:
        taints = self.core.read_node(name).spec.taints or []
        return [t.key for t in taints]

    def node_summary(self) -> List[Dict[str, Any]]:
        summary = []
        for node in self.list_nodes():
            allocatable = (node.status.allocatable or {}) if node.status else {}
            summary.append({
                "name": node.metadata.name,
                "ready": _node_ready(node),
                "instance_type": (node.metadata.labels or {}).get(INSTANCE_TYPE_LABEL, ""),
                "gpus": _quantity(allocatable.get(GPU_RESOURCE)),
            })
        return summary

    # Namespaces

    def namespace_phase(self, name: str) -> Optional[str]:
        """Namespace phase, or None if the namespace does not exist."""
        try:
            ns = self.core.read_namespace(name)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return (ns.status and ns.status.phase) or "Active"

    def create_namespace(self, name: str) -> bool:
        """Create a namespace. Returns False if it already existed."""
        body = client.V1Namespace(metadata=client.V1ObjectMeta(name=name))
        try:
            self.core.create_namespace(body)
        except ApiException as e:
            if e.status == 409:
                logger.info(f"↪️ Namespace {name} already exists")
                return False
            raise
        logger.info(f"✅ Namespace {name} created")
        return True

    def delete_namespace(self, name: str) -> bool:
        try:
            self.core.delete_namespace(name)
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        return True

    # Pods

    def plugin_pod_ready(self, namespace: str, node: str) -> bool:
        """Whether the first pod scheduled on ``node`` reports a ready container."""
        pods = self.core.list_namespaced_pod(
            namespace, field_selector=f"spec.nodeName={node}"
        ).items
        if not pods:
            return False
        statuses = (pods[0].status and pods[0].status.container_statuses) or []
        return bool(statuses) and bool(statuses[0].ready)

    def count_running_pods(self, namespace: str, label_selector: str) -> int:
        pods = self.core.list_namespaced_pod(namespace, label_selector=label_selector).items
        return sum(1 for p in pods if p.status and p.status.phase == "Running")

    def pod_summary(self, namespace: str) -> List[Dict[str, str]]:
        return [
            {"name": p.metadata.name, "phase": (p.status.phase if p.status else "") or "Unknown"}
            for p in self.core.list_namespaced_pod(namespace).items
        ]

    def service_summary(self, namespace: str) -> List[Dict[str, str]]:
        return [
            {"name": s.metadata.name, "type": s.spec.type, "cluster_ip": s.spec.cluster_ip or ""}
            for s in self.core.list_namespaced_service(namespace).items
        ]

    # Secrets and config maps

    def read_secret_value(self, name: str, namespace: str, key: str) -> Optional[str]:
        try:
            secret = self.core.read_namespaced_secret(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        raw = (secret.data or {}).get(key)
        return base64.b64decode(raw).decode() if raw else None

    def replace_config_map(
        self,
        name: str,
        namespace: str,
        data: Dict[str, str],
        labels: Optional[Dict[str, str]] = None,
        annotations: Optional[Dict[str, str]] = None,
    ) -> None:
        try:
            self.core.delete_namespaced_config_map(name, namespace)
        except ApiException as e:
            if e.status != 404:
                raise
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(
                name=name, namespace=namespace, labels=labels, annotations=annotations
            ),
            data=data,
        )
        self.core.create_namespaced_config_map(namespace, body)

    # Workloads

    def restart_deployment(self, name: str, namespace: str) -> None:
        stamp = datetime.now(timezone.utc).isoformat()
        patch = {
            "spec": {"template": {"metadata": {"annotations": {
                "kubectl.kubernetes.io/restartedAt": stamp
            }}}}
        }
        self.apps.patch_namespaced_deployment(name, namespace, patch)

    def deployment_available(self, name: str, namespace: str) -> bool:
        try:
            status = self.apps.read_namespaced_deployment_status(name, namespace).status
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        desired = status.replicas or 0
        return desired > 0 and (status.available_replicas or 0) >= desired

    def apply_custom_object(
        self, group: str, version: str, plural: str, namespace: str, body: Dict[str, Any]
    ) -> None:
        """Create a namespaced custom object, patching it if it already exists."""
        name = body["metadata"]["name"]
        try:
            self.custom.create_namespaced_custom_object(group, version, namespace, plural, body)
            logger.info(f"📄 Created {body['kind']} {name} in {namespace}")
        except ApiException as e:
            if e.status != 409:
                raise
            logger.info(f"↪️ {body['kind']} {name} exists. Patching...")
            self.custom.patch_namespaced_custom_object(group, version, namespace, plural, name, body)
