"""Read-only status probes for every resource in the GPU cluster chain.

Each probe folds the answers of doctl, helm and the Kubernetes API into one
of absent / creating / ready / degraded. A query that fails for any reason
other than "not found" is reported as degraded so that callers retry instead
of re-creating something that may well exist.
"""
import logging
import subprocess
from typing import Callable, Dict, List, Optional

import urllib3
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from .doctl import DoctlClient
from .helm import HelmClient
from .kube import KubeClient
from .models import (
    DEFAULT_VPC,
    DesiredState,
    ObservedState,
    ResourceKind,
    ResourceRef,
    Status,
)

logger = logging.getLogger("doksctl.probe")

TRANSIENT_ERRORS = (
    subprocess.CalledProcessError,
    subprocess.TimeoutExpired,
    ApiException,
    ConfigException,
    urllib3.exceptions.HTTPError,
    OSError,
    ValueError,
)

CLOUD_KINDS = (ResourceKind.VPC, ResourceKind.CLUSTER, ResourceKind.NODE_POOL)

_CLUSTER_STATES = {
    'running': Status.READY,
    'provisioning': Status.CREATING,
}

_POOL_NODE_PENDING = ('provisioning', 'pending', 'new')


class ResourceProbe:
    """Answers "does X exist and is it ready?" without changing anything."""

    def __init__(self, desired: DesiredState, doctl: DoctlClient, kube: KubeClient, helm: HelmClient):
        self.desired = desired
        self.doctl = doctl
        self.kube = kube
        self.helm = helm
        self._gpu_nodes: Optional[List[str]] = None
        self._probers: Dict[ResourceKind, Callable[[str], Status]] = {
            ResourceKind.VPC: self._vpc,
            ResourceKind.CLUSTER: self._cluster,
            ResourceKind.NODE_POOL: self._node_pool,
            ResourceKind.NODES: self._nodes,
            ResourceKind.NAMESPACE: self._namespace,
            ResourceKind.HELM_RELEASE: self._helm_release,
            ResourceKind.DAEMONSET: self._daemonset,
            ResourceKind.NODE_LABELS: self._node_labels,
            ResourceKind.GPU_RESOURCES: self._gpu_resources,
        }

    def probe(self, kind: ResourceKind, name: Optional[str] = None) -> Status:
        """Current status of one resource; transient query errors yield DEGRADED."""
        if name is None:
            name = self._default_name(kind)
        try:
            status = self._probers[kind](name)
        except TRANSIENT_ERRORS as e:
            logger.debug(f"Probe of {kind.value}/{name} failed: {e}")
            status = Status.DEGRADED
        logger.debug(f"🔍 {kind.value}/{name}: {status.value}")
        return status

    def observe(self) -> ObservedState:
        """Probe the whole dependency chain once."""
        observed = ObservedState()
        refs = self.desired.resources()
        cloud_refs = [r for r in refs if r.kind in CLOUD_KINDS]
        kube_refs = [r for r in refs if r.kind not in CLOUD_KINDS]

        for ref in cloud_refs:
            observed.set(ref, self.probe(ref.kind, ref.name))

        if self.desired.create_cluster and not observed.is_ready(self.desired.cluster_ref):
            # Nothing inside a cluster that is not running yet
            for ref in kube_refs:
                observed.set(ref, Status.ABSENT)
            return observed

        observed.cluster_reachable = self.kube.is_reachable()
        if not observed.cluster_reachable:
            for ref in kube_refs:
                observed.set(ref, Status.DEGRADED)
            return observed

        try:
            self._gpu_nodes = self.kube.gpu_nodes()
            observed.gpu_nodes = list(self._gpu_nodes)
        except TRANSIENT_ERRORS as e:
            logger.debug(f"Listing GPU nodes failed: {e}")
            self._gpu_nodes = None

        try:
            for ref in kube_refs:
                observed.set(ref, self.probe(ref.kind, ref.name))
        finally:
            self._gpu_nodes = None

        return observed

    def gpu_nodes(self) -> List[str]:
        if self._gpu_nodes is not None:
            return self._gpu_nodes
        return self.kube.gpu_nodes()

    def _default_name(self, kind: ResourceKind) -> str:
        for ref in self.desired.resources():
            if ref.kind == kind:
                return ref.name
        if kind == ResourceKind.VPC:
            return self.desired.vpc_ref.name
        if kind == ResourceKind.CLUSTER:
            return self.desired.cluster_name
        raise ValueError(f"No default resource name for {kind.value}")

    # Cloud control plane

    def _vpc(self, name: str) -> Status:
        if name == DEFAULT_VPC:
            return Status.READY
        return Status.READY if self.doctl.find_vpc(name) else Status.ABSENT

    def _cluster(self, name: str) -> Status:
        cluster = self.doctl.get_cluster(name)
        if cluster is None:
            return Status.ABSENT
        state = ((cluster.get('status') or {}).get('state') or '').lower()
        return _CLUSTER_STATES.get(state, Status.DEGRADED)

    def _node_pool(self, name: str) -> Status:
        cluster = self._cluster(self.desired.cluster_name)
        if cluster == Status.ABSENT:
            return Status.ABSENT
        pool = self.doctl.get_node_pool(self.desired.cluster_name, name)
        if pool is None:
            return Status.ABSENT
        if cluster != Status.READY:
            # Pools of a cluster that is not running are not usable yet
            return Status.CREATING
        states = [
            ((node.get('status') or {}).get('state') or '').lower()
            for node in pool.get('nodes') or []
        ]
        if states and all(s == 'running' for s in states):
            return Status.READY
        if not states or any(s in _POOL_NODE_PENDING for s in states):
            return Status.CREATING
        return Status.DEGRADED

    # Kubernetes

    def _nodes(self, name: str) -> Status:
        ready, total = self.kube.ready_node_count()
        expected = self.desired.expected_nodes or total
        if expected > 0 and ready >= expected:
            return Status.READY
        return Status.CREATING

    def _namespace(self, name: str) -> Status:
        phase = self.kube.namespace_phase(name)
        if phase is None:
            return Status.ABSENT
        return Status.READY if phase == 'Active' else Status.DEGRADED

    def _helm_release(self, name: str) -> Status:
        namespace = self.desired.plugin.namespace
        if self.kube.namespace_phase(namespace) is None:
            return Status.ABSENT
        release = self.helm.get_release(name, namespace)
        if release is None:
            return Status.ABSENT
        state = (release.get('status') or '').lower()
        if state == 'deployed':
            return Status.READY
        if state.startswith('pending'):
            return Status.CREATING
        return Status.DEGRADED

    def _daemonset(self, name: str) -> Status:
        if self._helm_release(self.desired.plugin.release) == Status.ABSENT:
            return Status.ABSENT
        gpu_nodes = self.gpu_nodes()
        if not gpu_nodes:
            return Status.ABSENT
        ready = sum(
            1 for node in gpu_nodes
            if self.kube.plugin_pod_ready(self.desired.plugin.namespace, node)
        )
        logger.debug(f"Device plugin ready on {ready}/{len(gpu_nodes)} GPU nodes")
        return Status.READY if ready == len(gpu_nodes) else Status.DEGRADED

    def _node_labels(self, name: str) -> Status:
        gpu_nodes = self.gpu_nodes()
        if not gpu_nodes:
            return Status.ABSENT
        labeled = len(gpu_nodes) - len(self.unlabeled_nodes(gpu_nodes))
        if labeled == len(gpu_nodes):
            return Status.READY
        return Status.DEGRADED if labeled else Status.ABSENT

    def _gpu_resources(self, name: str) -> Status:
        gpu_nodes = self.gpu_nodes()
        if not gpu_nodes:
            return Status.ABSENT
        total = sum(self.kube.gpu_capacity(node)[0] for node in gpu_nodes)
        return Status.READY if total > 0 else Status.DEGRADED

    def unlabeled_nodes(self, gpu_nodes: List[str]) -> List[str]:
        """GPU nodes missing at least one of the target labels."""
        wanted = self.desired.gpu_labels
        missing = []
        for node in gpu_nodes:
            labels = self.kube.node_labels(node)
            if any(labels.get(k) != v for k, v in wanted.items()):
                missing.append(node)
        return missing
