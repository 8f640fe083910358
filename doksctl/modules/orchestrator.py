"""Probe -> plan -> execute loop that drives a GPU cluster to its desired state."""
import logging
import time
from typing import Callable, List, Optional, Tuple

from ..config import Config
from ..errors import (
    ActionFailedError,
    ClusterUnreachableError,
    ConvergenceError,
    DoksctlError,
    NoGpuNodesError,
    NoGpuResourcesError,
)
from ..utils import require_commands
from . import health
from .doctl import DoctlClient
from .executor import ActionExecutor
from .helm import HelmClient
from .kube import KubeClient
from .models import (
    ALL_NODES,
    DesiredState,
    ObservedState,
    OutcomeResult,
    PlannedAction,
    ResourceKind,
    ResourceRef,
    RunConfig,
    RunPhase,
    RunResult,
    Status,
)
from .planner import GPU_DEPENDENT_KINDS, ActionPlanner, prerequisites
from .probe import ResourceProbe

logger = logging.getLogger("doksctl.orchestrator")

PlanCallback = Callable[[List[PlannedAction], ObservedState], None]


class Orchestrator:
    """Runs one reconciliation: init, probe/plan/execute cycles, verification.

    Nothing is persisted; every cycle starts from fresh observations, so an
    interrupted run is resumed simply by running again.
    """

    def __init__(
        self,
        desired: DesiredState,
        run_config: RunConfig,
        doctl: Optional[DoctlClient] = None,
        kube: Optional[KubeClient] = None,
        helm: Optional[HelmClient] = None,
        planner: Optional[ActionPlanner] = None,
        on_plan: Optional[PlanCallback] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.desired = desired
        self.run_config = run_config
        self.doctl = doctl or DoctlClient(kubeconfig=run_config.kubeconfig)
        self.kube = kube or KubeClient(run_config.kubeconfig)
        self.helm = helm or HelmClient(kubeconfig=run_config.kubeconfig)
        self.planner = planner or ActionPlanner()
        self.probe = ResourceProbe(desired, self.doctl, self.kube, self.helm)
        self.executor = ActionExecutor(
            desired, run_config, self.probe, self.doctl, self.kube, self.helm, sleep=sleep
        )
        self.on_plan = on_plan
        self.result = RunResult()
        self._force = run_config.force_reinstall
        self._kubeconfig_saved = False

    def _transition(self, phase: RunPhase) -> None:
        logger.debug(f"Run phase: {self.result.phase.value} -> {phase.value}")
        self.result.phase = phase

    # Entry points

    def run(self) -> RunResult:
        """Reconcile until converged (or the cycle budget is spent) and verify.

        Fatal errors end the run in the ABORTED phase with ``error`` set;
        they are not re-raised.
        """
        try:
            self._transition(RunPhase.INIT)
            self.preflight()
            if self.run_config.dry_run:
                self._dry_run()
            else:
                self._reconcile()
                self._verify()
            self._transition(RunPhase.DONE)
        except DoksctlError as e:
            self.result.error = str(e)
            logger.error(f"❌ {e}")
            self._transition(RunPhase.ABORTED)
        finally:
            self.result.finished_at = time.time()
        return self.result

    def preview(self) -> Tuple[ObservedState, List[PlannedAction]]:
        """One read-only probe and plan pass."""
        observed = self.probe.observe()
        plan = self.planner.plan(self.desired, observed, force=self._force, dry_run=True)
        return observed, plan

    # Phases

    def preflight(self) -> None:
        logger.info("Checking prerequisites...")
        commands = [Config.HELM_BIN]
        if self.desired.create_cluster:
            commands.append(Config.DOCTL_BIN)
        require_commands(commands)

        if self.desired.create_cluster:
            self.doctl.check_auth()
        elif not self.kube.is_reachable():
            raise ClusterUnreachableError(
                "Cannot connect to Kubernetes cluster. "
                "Check your kubeconfig or use --create-cluster to create a new cluster"
            )
        logger.info("✅ All prerequisites met")

    def observe(self) -> ObservedState:
        self._transition(RunPhase.PROBING)
        observed = self.probe.observe()

        if (
            self.desired.create_cluster
            and not self.run_config.dry_run
            and not self._kubeconfig_saved
            and observed.is_ready(self.desired.cluster_ref)
        ):
            # First sight of a running cluster: point the clients at it
            self.doctl.save_kubeconfig(self.desired.cluster_name)
            self.kube.reload()
            self._kubeconfig_saved = True
            observed = self.probe.observe()

        return observed

    def _guard_gpu_nodes(self, observed: ObservedState) -> None:
        """Abort when the cluster has settled without any GPU node."""
        if observed.gpu_nodes is None or observed.gpu_nodes:
            return
        if self.desired.create_cluster:
            nodes_ref = ResourceRef(ResourceKind.NODES, ALL_NODES)
            settled = observed.is_ready(self.desired.gpu_pool_ref) and observed.is_ready(nodes_ref)
            if not settled:
                return
        raise NoGpuNodesError(
            "No GPU nodes found. Please ensure your cluster has GPU nodes "
            "or use --create-cluster to create a new cluster"
        )

    def _plan(self, observed: ObservedState, dry_run: bool = False) -> List[PlannedAction]:
        self._transition(RunPhase.PLANNING)
        return self.planner.plan(self.desired, observed, force=self._force, dry_run=dry_run)

    def _dry_run(self) -> None:
        self.result.cycles = 1
        observed = self.observe()
        self._guard_gpu_nodes(observed)
        plan = self._plan(observed, dry_run=True)
        if self.on_plan:
            self.on_plan(plan, observed)

        self._transition(RunPhase.EXECUTING)
        for action in plan:
            self.result.record(self.executor.execute(action))
        self.result.converged = not plan
        logger.info("[DRY RUN] No changes were made")

    def _reconcile(self) -> None:
        max_cycles = self.run_config.max_cycles
        for cycle in range(1, max_cycles + 1):
            self.result.cycles = cycle
            observed = self.observe()
            self._guard_gpu_nodes(observed)
            plan = self._plan(observed)

            if cycle == 1 and self.on_plan:
                self.on_plan(plan, observed)
            if not plan:
                self.result.converged = True
                logger.info("✅ Desired state reached")
                return

            logger.info(f"🔄 Cycle {cycle}/{max_cycles}: {len(plan)} action(s) pending")
            self._transition(RunPhase.EXECUTING)
            self._execute_batch(plan[:self.run_config.batch_size], observed)

        observed = self.observe()
        self._guard_gpu_nodes(observed)
        remaining = self._plan(observed)
        if not remaining:
            self.result.converged = True
            logger.info("✅ Desired state reached")
            return

        message = (
            f"Desired state not reached after {max_cycles} cycle(s), "
            f"{len(remaining)} action(s) outstanding: {remaining[0].describe()}"
        )
        if self.run_config.strict:
            raise ConvergenceError(message)
        logger.warning(f"⚠️  {message}")
        self.result.warn(message)

    def _execute_batch(self, actions: List[PlannedAction], observed: ObservedState) -> None:
        """Run actions in order; stop early when the next one is not safe to run yet."""
        for action in actions:
            if not self._ready_to_run(action, observed):
                logger.info(f"⏳ {action.describe()}: waiting for prerequisites, re-probing")
                return
            outcome = self.executor.execute(action)
            self.result.record(outcome)

            if action.kind == ResourceKind.HELM_RELEASE:
                self._force = False
            if outcome.result == OutcomeResult.FAILED:
                raise ActionFailedError(f"{action.describe()} failed: {outcome.message}")

    def _ready_to_run(self, action: PlannedAction, observed: ObservedState) -> bool:
        """Whether the prerequisites of an action hold right now.

        GPU-dependent actions also need GPU nodes to have been seen when the
        batch was planned, so the no-GPU guard gets another look first.
        """
        if action.kind in GPU_DEPENDENT_KINDS and not observed.gpu_nodes:
            return False
        for ref in prerequisites(self.desired, action.ref):
            status = self.probe.probe(ref.kind, ref.name)
            if status != Status.READY:
                logger.debug(f"{action.describe()} blocked: {ref} is {status.value}")
                return False
        return True

    def _verify(self) -> None:
        self._transition(RunPhase.VERIFYING)
        logger.info("Verifying GPU resources...")

        gpu_nodes = self.kube.gpu_nodes()
        if not gpu_nodes:
            raise NoGpuNodesError("No GPU nodes found")

        inventory = health.gpu_inventory(self.kube, gpu_nodes)
        self.result.gpu_total = inventory.total
        self.result.gpu_allocatable = inventory.allocatable
        if inventory.total == 0:
            raise NoGpuResourcesError(
                "No GPU resources detected, please check NVIDIA Device Plugin installation"
            )
        logger.info(f"✅ GPU resources verified: {inventory.total} GPU(s) available")

        ready = health.plugin_ready_nodes(self.kube, self.desired, gpu_nodes)
        self.result.plugin_ready = len(ready) == len(gpu_nodes)
        if self.result.plugin_ready:
            logger.info("✅ NVIDIA Device Plugin is running on all GPU nodes")
        else:
            message = f"NVIDIA Device Plugin ready on {len(ready)}/{len(gpu_nodes)} GPU nodes"
            if self.run_config.strict:
                raise ConvergenceError(message)
            logger.warning(f"⚠️  {message}")
            self.result.warn(message)

        self.result.health = health.check_health(self.kube, self.desired, gpu_nodes)
        for finding in self.result.health['findings']:
            self.result.warn(finding)
