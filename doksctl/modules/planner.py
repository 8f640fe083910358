"""Turns desired vs. observed state into an ordered execution plan.

The plan follows a fixed dependency table:

    VPC -> cluster -> CPU pool -> GPU pool -> nodes -> namespace
        -> device plugin release -> device plugin pods -> GPU node labels
        -> GPU resources

Ready resources are skipped; everything else gets exactly the step that moves
it towards ready. The planner is a pure function of its inputs.
"""
import logging
from typing import Dict, List, Optional, Tuple

from .models import (
    DesiredState,
    ObservedState,
    Operation,
    PlannedAction,
    ResourceKind,
    ResourceRef,
    Status,
)

logger = logging.getLogger("doksctl.planner")

# Kinds that only ever converge on their own; the reconciler can only wait.
_WAIT_ONLY = (ResourceKind.NODES, ResourceKind.DAEMONSET)

_NOT_READY_OPERATION: Dict[ResourceKind, Operation] = {
    ResourceKind.NODE_LABELS: Operation.LABEL,
    ResourceKind.GPU_RESOURCES: Operation.VERIFY,
}

# Kinds that make no sense on a cluster without GPU nodes.
GPU_DEPENDENT_KINDS = (
    ResourceKind.NAMESPACE,
    ResourceKind.HELM_RELEASE,
    ResourceKind.DAEMONSET,
    ResourceKind.NODE_LABELS,
    ResourceKind.GPU_RESOURCES,
)

# What each kind needs to be ready before it can be acted on. Waits that only
# warn (nodes, plugin pods) are not prerequisites.
PREREQUISITES: Dict[ResourceKind, Tuple[ResourceKind, ...]] = {
    ResourceKind.VPC: (),
    ResourceKind.CLUSTER: (ResourceKind.VPC,),
    ResourceKind.NODE_POOL: (ResourceKind.CLUSTER,),
    ResourceKind.NODES: (ResourceKind.CLUSTER,),
    ResourceKind.NAMESPACE: (ResourceKind.CLUSTER,),
    ResourceKind.HELM_RELEASE: (ResourceKind.CLUSTER,),
    ResourceKind.DAEMONSET: (ResourceKind.HELM_RELEASE,),
    ResourceKind.NODE_LABELS: (ResourceKind.CLUSTER,),
    ResourceKind.GPU_RESOURCES: (ResourceKind.HELM_RELEASE,),
}


class ActionPlanner:
    """Computes the actions still required to reach the desired state."""

    def plan(
        self,
        desired: DesiredState,
        observed: ObservedState,
        force: bool = False,
        dry_run: bool = False,
    ) -> List[PlannedAction]:
        actions: List[PlannedAction] = []
        release_reinstalled = False

        for ref in desired.resources():
            if ref.kind in GPU_DEPENDENT_KINDS and observed.gpu_nodes == []:
                # The node wait is the last step until GPU nodes show up
                break
            status = observed.get(ref)

            if ref.kind == ResourceKind.HELM_RELEASE and force and status != Status.ABSENT:
                actions.append(PlannedAction(ref, Operation.DELETE, dry_run))
                actions.append(PlannedAction(ref, Operation.CREATE, dry_run))
                release_reinstalled = True
                continue

            if ref.kind == ResourceKind.DAEMONSET and release_reinstalled:
                # Pods of the old release go away with it
                actions.append(PlannedAction(ref, Operation.WAIT, dry_run))
                continue

            if status == Status.READY:
                continue

            operation = self._operation_for(desired, ref, status, actions)
            actions.append(PlannedAction(ref, operation, dry_run))

        logger.debug(f"Planned {len(actions)} action(s): {[a.describe() for a in actions]}")
        return actions

    def _operation_for(
        self,
        desired: DesiredState,
        ref: ResourceRef,
        status: Status,
        planned: List[PlannedAction],
    ) -> Operation:
        if ref.kind in _NOT_READY_OPERATION:
            return _NOT_READY_OPERATION[ref.kind]
        if ref.kind in _WAIT_ONLY:
            return Operation.WAIT
        if status != Status.ABSENT:
            return Operation.WAIT
        if ref == desired.cpu_pool_ref and self._creates(planned, desired.cluster_ref):
            # The CPU pool is created together with the cluster
            return Operation.WAIT
        return Operation.CREATE

    @staticmethod
    def _creates(planned: List[PlannedAction], ref: ResourceRef) -> bool:
        return any(a.ref == ref and a.operation == Operation.CREATE for a in planned)


def first_unready(desired: DesiredState, observed: ObservedState) -> Optional[ResourceRef]:
    """The earliest resource of the chain that is not ready, if any."""
    return next((r for r in desired.resources() if not observed.is_ready(r)), None)


def prerequisites(desired: DesiredState, ref: ResourceRef) -> List[ResourceRef]:
    """Managed resources that must be ready before ``ref`` can be acted on."""
    kinds = PREREQUISITES[ref.kind]
    return [r for r in desired.resources() if r.kind in kinds]
