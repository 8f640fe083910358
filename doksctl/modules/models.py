"""Data models for the GPU cluster reconciler."""

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..config import Config


class ResourceKind(str, Enum):
    """Kinds of external objects the reconciler checks and acts on."""
    VPC = 'vpc'
    CLUSTER = 'cluster'
    NODE_POOL = 'node_pool'
    NODES = 'nodes'
    NAMESPACE = 'namespace'
    HELM_RELEASE = 'helm_release'
    DAEMONSET = 'daemonset'
    NODE_LABELS = 'node_labels'
    GPU_RESOURCES = 'gpu_resources'


class Status(str, Enum):
    """Observed existence/readiness of a resource."""
    ABSENT = 'absent'
    CREATING = 'creating'
    READY = 'ready'
    DEGRADED = 'degraded'


class Operation(str, Enum):
    CREATE = 'create'
    DELETE = 'delete'
    LABEL = 'label'
    WAIT = 'wait'
    VERIFY = 'verify'


class OutcomeResult(str, Enum):
    SUCCEEDED = 'succeeded'
    WARNING = 'warning'
    FAILED = 'failed'
    SKIPPED = 'skipped'


class RunPhase(str, Enum):
    """Phases of a reconciliation run."""
    INIT = 'init'
    PROBING = 'probing'
    PLANNING = 'planning'
    EXECUTING = 'executing'
    VERIFYING = 'verifying'
    DONE = 'done'
    ABORTED = 'aborted'


GPU_BRAND_LABEL = 'doks.digitalocean.com/gpu-brand'
INSTANCE_TYPE_LABEL = 'node.kubernetes.io/instance-type'
GPU_RESOURCE = 'nvidia.com/gpu'

GPU_NODE_LABELS = {
    'feature.node.kubernetes.io/pci-10de.present': 'true',
    'nvidia.com/gpu.present': 'true',
}

DEFAULT_VPC = 'default'
ALL_NODES = 'all'
GPU_NODE_SET = 'gpu-nodes'

_DO_NAME = re.compile(r'^[a-z0-9]([a-z0-9-]*[a-z0-9])?$')


@dataclass(frozen=True)
class ResourceRef:
    """A named resource of a given kind."""
    kind: ResourceKind
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.name}"


class NodePoolSpec(BaseModel):
    """A homogeneously-sized group of worker nodes."""
    model_config = ConfigDict(frozen=True)

    name: str
    size: str
    count: int = Field(ge=1)


class DevicePluginSpec(BaseModel):
    """Where and how the NVIDIA device plugin chart is installed."""
    model_config = ConfigDict(frozen=True)

    namespace: str = 'nvidia-device-plugin'
    release: str = 'nvdp'
    repo_name: str = 'nvdp'
    repo_url: str = 'https://nvidia.github.io/k8s-device-plugin'
    chart: str = 'nvdp/nvidia-device-plugin'
    version: str = Field(default_factory=lambda: Config.PLUGIN_VERSION)
    node_selector: Dict[str, str] = Field(default_factory=lambda: {GPU_BRAND_LABEL: 'nvidia'})
    pod_label: str = 'app.kubernetes.io/name=nvidia-device-plugin'


class DesiredState(BaseModel):
    """Target configuration for one run. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    cluster_name: str = 'llm-d-cluster'
    region: str = 'tor1'
    kubernetes_version: Optional[str] = None
    create_cluster: bool = False
    use_default_vpc: bool = True
    vpc_name: str = 'llm-d-vpc'
    vpc_ip_range: str = '172.16.0.0/16'
    cpu_pool: NodePoolSpec = Field(
        default_factory=lambda: NodePoolSpec(name='cpu-pool', size='s-2vcpu-4gb', count=2)
    )
    gpu_pool: NodePoolSpec = Field(
        default_factory=lambda: NodePoolSpec(name='gpu-pool', size='gpu-6000adax1-48gb', count=2)
    )
    plugin: DevicePluginSpec = Field(default_factory=DevicePluginSpec)
    gpu_labels: Dict[str, str] = Field(default_factory=lambda: dict(GPU_NODE_LABELS))

    @field_validator('cluster_name', 'vpc_name')
    @classmethod
    def check_name(cls, v: str) -> str:
        if not _DO_NAME.match(v):
            raise ValueError(f"invalid name '{v}' (lowercase alphanumerics and hyphens only)")
        return v

    @property
    def vpc_ref(self) -> ResourceRef:
        return ResourceRef(ResourceKind.VPC, DEFAULT_VPC if self.use_default_vpc else self.vpc_name)

    @property
    def cluster_ref(self) -> ResourceRef:
        return ResourceRef(ResourceKind.CLUSTER, self.cluster_name)

    @property
    def cpu_pool_ref(self) -> ResourceRef:
        return ResourceRef(ResourceKind.NODE_POOL, self.cpu_pool.name)

    @property
    def gpu_pool_ref(self) -> ResourceRef:
        return ResourceRef(ResourceKind.NODE_POOL, self.gpu_pool.name)

    @property
    def expected_nodes(self) -> Optional[int]:
        """Node count to wait for, or None when the pools are not managed here."""
        if not self.create_cluster:
            return None
        return self.cpu_pool.count + self.gpu_pool.count

    def resources(self) -> List[ResourceRef]:
        """The dependency chain in the order it has to be satisfied."""
        refs = []
        if self.create_cluster:
            refs += [self.vpc_ref, self.cluster_ref, self.cpu_pool_ref, self.gpu_pool_ref]
        refs += [
            ResourceRef(ResourceKind.NODES, ALL_NODES),
            ResourceRef(ResourceKind.NAMESPACE, self.plugin.namespace),
            ResourceRef(ResourceKind.HELM_RELEASE, self.plugin.release),
            ResourceRef(ResourceKind.DAEMONSET, self.plugin.release),
            ResourceRef(ResourceKind.NODE_LABELS, GPU_NODE_SET),
            ResourceRef(ResourceKind.GPU_RESOURCES, GPU_RESOURCE),
        ]
        return refs


class RetryPolicy(BaseModel):
    """Fixed-interval confirmation budget for one resource kind."""
    model_config = ConfigDict(frozen=True)

    interval: float = Field(ge=0)
    attempts: int = Field(ge=1)
    fatal: bool = False


DEFAULT_RETRY_POLICIES: Dict[ResourceKind, RetryPolicy] = {
    ResourceKind.VPC: RetryPolicy(interval=5, attempts=6),
    ResourceKind.CLUSTER: RetryPolicy(interval=30, attempts=10),
    ResourceKind.NODE_POOL: RetryPolicy(interval=30, attempts=6),
    ResourceKind.NODES: RetryPolicy(interval=20, attempts=15),
    ResourceKind.NAMESPACE: RetryPolicy(interval=2, attempts=10),
    ResourceKind.HELM_RELEASE: RetryPolicy(interval=5, attempts=12),
    ResourceKind.DAEMONSET: RetryPolicy(interval=10, attempts=30),
    ResourceKind.NODE_LABELS: RetryPolicy(interval=5, attempts=6),
    ResourceKind.GPU_RESOURCES: RetryPolicy(interval=10, attempts=6, fatal=True),
}


class RunConfig(BaseModel):
    """Per-run switches. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    dry_run: bool = False
    force_reinstall: bool = False
    kubeconfig: Optional[str] = None
    strict: bool = False
    max_cycles: int = Field(default_factory=lambda: Config.MAX_CYCLES, ge=1)
    batch_size: int = Field(default_factory=lambda: Config.BATCH_SIZE, ge=1)
    retry_policies: Dict[ResourceKind, RetryPolicy] = Field(
        default_factory=lambda: dict(DEFAULT_RETRY_POLICIES)
    )

    def policy_for(self, kind: ResourceKind) -> RetryPolicy:
        """Retry policy for a kind; strict mode turns every exhaustion fatal."""
        policy = self.retry_policies.get(kind) or DEFAULT_RETRY_POLICIES[kind]
        if self.strict and not policy.fatal:
            return policy.model_copy(update={'fatal': True})
        return policy


@dataclass
class ObservedState:
    """Live status of every resource in the chain, rebuilt on each probe cycle.

    ``gpu_nodes`` is None when GPU nodes could not be listed (cluster not
    reachable yet, or the query failed).
    """
    statuses: Dict[ResourceRef, Status] = field(default_factory=dict)
    gpu_nodes: Optional[List[str]] = None
    cluster_reachable: bool = False

    def get(self, ref: ResourceRef) -> Status:
        return self.statuses.get(ref, Status.ABSENT)

    def set(self, ref: ResourceRef, status: Status) -> None:
        self.statuses[ref] = status

    def is_ready(self, ref: ResourceRef) -> bool:
        return self.get(ref) == Status.READY


_VERBS = {
    Operation.CREATE: 'Create',
    Operation.DELETE: 'Delete',
    Operation.LABEL: 'Label',
    Operation.WAIT: 'Wait for',
    Operation.VERIFY: 'Verify',
}

_NOUNS = {
    ResourceKind.VPC: 'VPC',
    ResourceKind.CLUSTER: 'Kubernetes cluster',
    ResourceKind.NODE_POOL: 'node pool',
    ResourceKind.NODES: 'nodes',
    ResourceKind.NAMESPACE: 'namespace',
    ResourceKind.HELM_RELEASE: 'device plugin release',
    ResourceKind.DAEMONSET: 'device plugin pods',
    ResourceKind.NODE_LABELS: 'GPU node labels',
    ResourceKind.GPU_RESOURCES: 'GPU resources',
}


@dataclass(frozen=True)
class PlannedAction:
    """One step of an execution plan."""
    ref: ResourceRef
    operation: Operation
    dry_run: bool = False

    @property
    def kind(self) -> ResourceKind:
        return self.ref.kind

    def describe(self) -> str:
        return f"{_VERBS[self.operation]} {_NOUNS[self.kind]} '{self.ref.name}'"

    def __str__(self) -> str:
        return self.describe()


@dataclass
class ActionOutcome:
    """What happened when a planned action was executed."""
    action: PlannedAction
    result: OutcomeResult
    message: str = ''
    status: Optional[Status] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.result in (OutcomeResult.SUCCEEDED, OutcomeResult.SKIPPED)


@dataclass
class RunResult:
    """Aggregate report of one run. Never persisted."""
    phase: RunPhase = RunPhase.INIT
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    outcomes: List[ActionOutcome] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    cycles: int = 0
    converged: bool = False
    gpu_total: int = 0
    gpu_allocatable: int = 0
    plugin_ready: Optional[bool] = None
    health: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def record(self, outcome: ActionOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.result == OutcomeResult.WARNING:
            self.warnings.append(f"{outcome.action.describe()}: {outcome.message}")

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    @property
    def succeeded(self) -> bool:
        return self.phase == RunPhase.DONE and self.error is None

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def summary(self) -> Dict[str, Any]:
        return {
            'phase': self.phase.value,
            'converged': self.converged,
            'cycles': self.cycles,
            'actions': [
                {'action': o.action.describe(), 'result': o.result.value, 'message': o.message}
                for o in self.outcomes
            ],
            'warnings': list(self.warnings),
            'gpu_total': self.gpu_total,
            'gpu_allocatable': self.gpu_allocatable,
            'plugin_ready': self.plugin_ready,
            'error': self.error,
            'duration': round((self.finished_at or time.time()) - self.started_at, 2),
        }
