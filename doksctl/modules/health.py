"""GPU verification and post-setup health checks."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .kube import KubeClient
from .models import GPU_RESOURCE, DesiredState

logger = logging.getLogger("doksctl.health")


@dataclass
class GpuInventory:
    """Per-node nvidia.com/gpu capacity and allocatable counts."""
    nodes: Dict[str, Dict[str, int]] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(n['capacity'] for n in self.nodes.values())

    @property
    def allocatable(self) -> int:
        return sum(n['allocatable'] for n in self.nodes.values())


def gpu_inventory(kube: KubeClient, gpu_nodes: List[str]) -> GpuInventory:
    inventory = GpuInventory()
    for node in gpu_nodes:
        capacity, allocatable = kube.gpu_capacity(node)
        inventory.nodes[node] = {'capacity': capacity, 'allocatable': allocatable}
        logger.info(f"Node {node}: {capacity} GPU(s) capacity, {allocatable} allocatable")
    logger.info(f"Total GPU capacity: {inventory.total}, allocatable: {inventory.allocatable}")
    return inventory


def plugin_ready_nodes(kube: KubeClient, desired: DesiredState, gpu_nodes: List[str]) -> List[str]:
    """GPU nodes whose device plugin pod reports a ready container."""
    return [
        node for node in gpu_nodes
        if kube.plugin_pod_ready(desired.plugin.namespace, node)
    ]


def check_health(kube: KubeClient, desired: DesiredState, gpu_nodes: List[str]) -> Dict[str, Any]:
    """Run the non-fatal health checks.

    Returns a mapping with the running plugin pod count, the GPU taint state
    of every GPU node and a list of human-readable findings. Nothing here
    raises on an unhealthy cluster; callers decide what is fatal.
    """
    findings: List[str] = []

    plugin_pods = kube.count_running_pods(desired.plugin.namespace, desired.plugin.pod_label)
    if plugin_pods < len(gpu_nodes):
        findings.append(
            f"Only {plugin_pods} device plugin pod(s) running for {len(gpu_nodes)} GPU node(s)"
        )
    else:
        logger.info(f"✅ {plugin_pods} device plugin pod(s) running")

    taints = {}
    for node in gpu_nodes:
        taints[node] = GPU_RESOURCE in kube.node_taint_keys(node)
        if taints[node]:
            logger.info(f"✅ Node {node} has GPU taint")
        else:
            findings.append(f"Node {node} has no {GPU_RESOURCE} taint")

    for finding in findings:
        logger.warning(f"⚠️  {finding}")

    return {'plugin_pods': plugin_pods, 'gpu_taints': taints, 'findings': findings}
