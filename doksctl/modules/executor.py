"""Executes planned actions and confirms that they converged."""
import logging
import subprocess
import time
from typing import Callable, Dict, Tuple

from kubernetes.client.rest import ApiException

from ..errors import ConvergenceError, NoGpuNodesError, NoGpuResourcesError, ResourceNotFoundError
from ..utils import poll_until
from .doctl import DoctlClient, node_pool_spec
from .helm import HelmClient
from .kube import KubeClient
from .models import (
    DEFAULT_VPC,
    ActionOutcome,
    DesiredState,
    Operation,
    OutcomeResult,
    PlannedAction,
    ResourceKind,
    RunConfig,
    Status,
)
from .probe import ResourceProbe

logger = logging.getLogger("doksctl.executor")

Handler = Callable[[PlannedAction], str]

# ValueError covers doctl and helm output that is not valid JSON
COMMAND_ERRORS = (
    subprocess.CalledProcessError,
    subprocess.TimeoutExpired,
    ApiException,
    ValueError,
)


class ActionExecutor:
    """Runs one planned action at a time against the external services."""

    def __init__(
        self,
        desired: DesiredState,
        run_config: RunConfig,
        probe: ResourceProbe,
        doctl: DoctlClient,
        kube: KubeClient,
        helm: HelmClient,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.desired = desired
        self.run_config = run_config
        self.probe = probe
        self.doctl = doctl
        self.kube = kube
        self.helm = helm
        self.sleep = sleep
        self._handlers: Dict[Tuple[ResourceKind, Operation], Handler] = {
            (ResourceKind.VPC, Operation.CREATE): self._create_vpc,
            (ResourceKind.CLUSTER, Operation.CREATE): self._create_cluster,
            (ResourceKind.NODE_POOL, Operation.CREATE): self._create_node_pool,
            (ResourceKind.NAMESPACE, Operation.CREATE): self._create_namespace,
            (ResourceKind.HELM_RELEASE, Operation.CREATE): self._install_plugin,
            (ResourceKind.HELM_RELEASE, Operation.DELETE): self._uninstall_plugin,
            (ResourceKind.NODE_LABELS, Operation.LABEL): self._label_gpu_nodes,
        }

    def execute(self, action: PlannedAction) -> ActionOutcome:
        """Issue an action and re-probe until it converged or the budget ran out.

        Fatal conditions (missing VPC, no GPU nodes, exhausted fatal budget)
        raise; command failures and unreadable CLI output come back as a
        FAILED outcome.
        """
        start = time.time()
        logger.info(f"🔹 {action.describe()}")

        if self.run_config.dry_run or action.dry_run:
            logger.info(f"[DRY RUN] Would {action.describe().lower()}")
            return ActionOutcome(action, OutcomeResult.SKIPPED, "dry run")

        handler = self._handlers.get((action.kind, action.operation))
        message = ""
        if handler is not None:
            try:
                message = handler(action)
            except COMMAND_ERRORS as e:
                reason = _failure_reason(e)
                logger.error(f"❌ {action.describe()} failed: {reason}")
                return ActionOutcome(
                    action, OutcomeResult.FAILED, reason, duration=time.time() - start
                )
            if message == "noop":
                logger.info(f"✅ {action.describe()}: nothing to do")
                return ActionOutcome(
                    action, OutcomeResult.SUCCEEDED, "already satisfied",
                    status=Status.READY, duration=time.time() - start
                )

        return self._confirm(action, message, start)

    def _confirm(self, action: PlannedAction, message: str, start: float) -> ActionOutcome:
        target = Status.ABSENT if action.operation == Operation.DELETE else Status.READY
        policy = self.run_config.policy_for(action.kind)
        seen = {}

        def converged() -> bool:
            seen['status'] = self.probe.probe(action.kind, action.ref.name)
            return seen['status'] == target

        ok = poll_until(
            converged,
            policy.interval,
            policy.attempts,
            description=action.describe().lower().replace("wait for ", ""),
            sleep=self.sleep,
        )
        status = seen.get('status')
        duration = time.time() - start

        if ok:
            logger.info(f"✅ {action.describe()}: done")
            return ActionOutcome(action, OutcomeResult.SUCCEEDED, message, status=status, duration=duration)

        budget = f"{policy.attempts} x {policy.interval:g}s"
        if policy.fatal:
            if action.kind == ResourceKind.GPU_RESOURCES:
                raise NoGpuResourcesError(
                    "No GPU resources detected, please check NVIDIA Device Plugin installation"
                )
            raise ConvergenceError(f"{action.describe()} did not converge within {budget}")

        warning = f"not {target.value} after {budget} (last seen: {status.value if status else 'unknown'}), continuing"
        logger.warning(f"⚠️  {action.describe()}: {warning}")
        return ActionOutcome(action, OutcomeResult.WARNING, warning, status=status, duration=duration)

    # Handlers return a short message, or "noop" when nothing had to be done.

    def _create_vpc(self, action: PlannedAction) -> str:
        if action.ref.name == DEFAULT_VPC:
            logger.info("🚀 Using default VPC (recommended)")
            return "noop"
        if self.doctl.find_vpc(action.ref.name):
            logger.warning(f"⚠️  VPC {action.ref.name} already exists, skipping creation")
            return "noop"
        vpc = self.doctl.create_vpc(action.ref.name, self.desired.region, self.desired.vpc_ip_range)
        return f"created VPC {vpc.get('id', action.ref.name)}"

    def _create_cluster(self, action: PlannedAction) -> str:
        desired = self.desired
        if self.doctl.get_cluster(desired.cluster_name) is not None:
            logger.warning(f"⚠️  Cluster {desired.cluster_name} already exists, skipping creation")
            return "noop"

        version = desired.kubernetes_version or self.doctl.latest_kubernetes_version()
        logger.info(f"✅ Using Kubernetes version: {version}")

        vpc_uuid = None
        if not desired.use_default_vpc:
            vpc = self.doctl.find_vpc(desired.vpc_name)
            if not vpc:
                raise ResourceNotFoundError(f"VPC {desired.vpc_name} not found")
            vpc_uuid = vpc["id"]
            logger.info(f"Using custom VPC ID: {vpc_uuid}")

        logger.info(
            f"🚀 Creating Kubernetes cluster: {desired.cluster_name} "
            f"({desired.region}, {desired.cpu_pool.count}x {desired.cpu_pool.size})"
        )
        self.doctl.create_cluster(
            desired.cluster_name,
            desired.region,
            version,
            node_pool_spec(desired.cpu_pool.name, desired.cpu_pool.size, desired.cpu_pool.count),
            vpc_uuid=vpc_uuid,
        )
        self.doctl.save_kubeconfig(desired.cluster_name)
        self.kube.reload()
        return f"created cluster {desired.cluster_name} ({version})"

    def _create_node_pool(self, action: PlannedAction) -> str:
        pool = self.desired.gpu_pool if action.ref == self.desired.gpu_pool_ref else self.desired.cpu_pool
        if self.doctl.get_node_pool(self.desired.cluster_name, pool.name) is not None:
            logger.warning(f"⚠️  Node pool {pool.name} already exists, skipping creation")
            return "noop"
        logger.info(f"🚀 Creating node pool: {pool.name} ({pool.count}x {pool.size})")
        self.doctl.create_node_pool(self.desired.cluster_name, pool.name, pool.size, pool.count)
        return f"created node pool {pool.name}"

    def _create_namespace(self, action: PlannedAction) -> str:
        created = self.kube.create_namespace(action.ref.name)
        return f"created namespace {action.ref.name}" if created else "noop"

    def _install_plugin(self, action: PlannedAction) -> str:
        plugin = self.desired.plugin
        self.kube.create_namespace(plugin.namespace)
        self.helm.repo_add(plugin.repo_name, plugin.repo_url)
        self.helm.repo_update()
        self.helm.install(
            plugin.release,
            plugin.chart,
            plugin.namespace,
            version=plugin.version,
            set_values={'nodeSelector': dict(plugin.node_selector)},
        )
        return f"installed {plugin.chart} {plugin.version}"

    def _uninstall_plugin(self, action: PlannedAction) -> str:
        namespace = self.desired.plugin.namespace
        logger.info("Removing existing NVIDIA Device Plugin...")
        self.helm.uninstall(action.ref.name, namespace)
        if self.kube.delete_namespace(namespace):
            policy = self.run_config.policy_for(ResourceKind.NAMESPACE)
            gone = poll_until(
                lambda: self.kube.namespace_phase(namespace) is None,
                policy.interval,
                policy.attempts,
                description=f"namespace {namespace} deletion",
                sleep=self.sleep,
            )
            if not gone:
                # A terminating namespace rejects the reinstall
                raise ConvergenceError(f"Namespace {namespace} is still terminating, retry later")
        return f"uninstalled {action.ref.name} and removed namespace {namespace}"

    def _label_gpu_nodes(self, action: PlannedAction) -> str:
        gpu_nodes = self.kube.gpu_nodes()
        if not gpu_nodes:
            raise NoGpuNodesError("No GPU nodes found")
        pending = self.probe.unlabeled_nodes(gpu_nodes)
        if not pending:
            return "noop"
        # One node at a time
        for node in pending:
            logger.info(f"🏷️  Labeling node {node}")
            self.kube.label_node(node, dict(self.desired.gpu_labels))
            logger.info(f"✅ Node {node} labels fixed successfully")
        return f"labeled {len(pending)} node(s)"


def _failure_reason(error: Exception) -> str:
    if isinstance(error, subprocess.CalledProcessError):
        detail = (error.stderr or "").strip().splitlines()
        return detail[-1] if detail else f"exit code {error.returncode}"
    if isinstance(error, ApiException):
        return f"API error {error.status}: {error.reason}"
    if isinstance(error, ValueError):
        return f"unexpected command output: {error}"
    return str(error)
