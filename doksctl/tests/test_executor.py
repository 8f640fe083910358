import json
import subprocess

import pytest

from doksctl.errors import ConvergenceError, NoGpuNodesError, NoGpuResourcesError, ResourceNotFoundError
from doksctl.modules.executor import ActionExecutor
from doksctl.modules.models import (
    GPU_NODE_LABELS,
    Operation,
    OutcomeResult,
    PlannedAction,
    ResourceKind,
    ResourceRef,
    RunConfig,
    Status,
)
from doksctl.modules.probe import ResourceProbe

from .conftest import FAST_POLICIES, no_sleep

NAMESPACE = ResourceRef(ResourceKind.NAMESPACE, 'nvidia-device-plugin')
RELEASE = ResourceRef(ResourceKind.HELM_RELEASE, 'nvdp')
LABELS = ResourceRef(ResourceKind.NODE_LABELS, 'gpu-nodes')
GPUS = ResourceRef(ResourceKind.GPU_RESOURCES, 'nvidia.com/gpu')
NODES = ResourceRef(ResourceKind.NODES, 'all')


def make_executor(desired, doctl, kube, helm, **run_options):
    run_options.setdefault('retry_policies', FAST_POLICIES)
    probe = ResourceProbe(desired, doctl, kube, helm)
    return ActionExecutor(desired, RunConfig(**run_options), probe, doctl, kube, helm, sleep=no_sleep)


def test_dry_run_skips_without_touching_anything(desired, doctl, gpu_cluster, helm):
    executor = make_executor(desired, doctl, gpu_cluster, helm, dry_run=True)
    probe = ResourceProbe(desired, doctl, gpu_cluster, helm)
    before = probe.observe().statuses

    for ref, op in [(NAMESPACE, Operation.CREATE), (RELEASE, Operation.CREATE), (LABELS, Operation.LABEL)]:
        outcome = executor.execute(PlannedAction(ref, op, dry_run=True))
        assert outcome.result == OutcomeResult.SKIPPED

    assert probe.observe().statuses == before
    assert gpu_cluster.mutations == [] and helm.mutations == []


def test_create_namespace_is_confirmed(desired, doctl, gpu_cluster, helm):
    executor = make_executor(desired, doctl, gpu_cluster, helm)

    outcome = executor.execute(PlannedAction(NAMESPACE, Operation.CREATE))

    assert outcome.result == OutcomeResult.SUCCEEDED
    assert outcome.status == Status.READY
    assert gpu_cluster.namespaces['nvidia-device-plugin'] == 'Active'


def test_existing_namespace_is_a_noop(desired, doctl, gpu_cluster, helm):
    gpu_cluster.namespaces['nvidia-device-plugin'] = 'Active'
    executor = make_executor(desired, doctl, gpu_cluster, helm)

    outcome = executor.execute(PlannedAction(NAMESPACE, Operation.CREATE))

    assert outcome.ok
    assert outcome.message == 'already satisfied'
    assert gpu_cluster.mutations == []


def test_install_plugin_pins_version_and_node_selector(desired, doctl, gpu_cluster, helm):
    executor = make_executor(desired, doctl, gpu_cluster, helm)

    outcome = executor.execute(PlannedAction(RELEASE, Operation.CREATE))

    assert outcome.result == OutcomeResult.SUCCEEDED
    install = helm.installs[0]
    assert install['chart'] == 'nvdp/nvidia-device-plugin'
    assert install['version'] == 'v0.14.5'
    assert install['set_values'] == {'nodeSelector': {'doks.digitalocean.com/gpu-brand': 'nvidia'}}
    assert helm.repos['nvdp'] == 'https://nvidia.github.io/k8s-device-plugin'


def test_delete_release_waits_for_absent(desired, doctl, gpu_cluster, helm):
    gpu_cluster.namespaces['nvidia-device-plugin'] = 'Active'
    helm.releases[('nvidia-device-plugin', 'nvdp')] = {'name': 'nvdp', 'status': 'deployed'}
    executor = make_executor(desired, doctl, gpu_cluster, helm)

    outcome = executor.execute(PlannedAction(RELEASE, Operation.DELETE))

    assert outcome.result == OutcomeResult.SUCCEEDED
    assert outcome.status == Status.ABSENT
    assert ('uninstall', 'nvdp') in helm.mutations
    assert 'nvidia-device-plugin' not in gpu_cluster.namespaces


def test_delete_release_gives_up_on_terminating_namespace(desired, doctl, gpu_cluster, helm, monkeypatch):
    gpu_cluster.namespaces['nvidia-device-plugin'] = 'Active'
    helm.releases[('nvidia-device-plugin', 'nvdp')] = {'name': 'nvdp', 'status': 'deployed'}

    def stuck(name):
        gpu_cluster.namespaces[name] = 'Terminating'
        return True
    monkeypatch.setattr(gpu_cluster, 'delete_namespace', stuck)
    executor = make_executor(desired, doctl, gpu_cluster, helm)

    with pytest.raises(ConvergenceError) as exc:
        executor.execute(PlannedAction(RELEASE, Operation.DELETE))
    assert 'still terminating' in str(exc.value)


def test_label_nodes_one_by_one(desired, doctl, gpu_cluster, helm):
    gpu_cluster.nodes['gpu-pool-0']['labels'].update(GPU_NODE_LABELS)
    executor = make_executor(desired, doctl, gpu_cluster, helm)

    outcome = executor.execute(PlannedAction(LABELS, Operation.LABEL))

    assert outcome.result == OutcomeResult.SUCCEEDED
    assert gpu_cluster.mutations == [('label', 'gpu-pool-1')]
    for node in ('gpu-pool-0', 'gpu-pool-1'):
        labels = gpu_cluster.nodes[node]['labels']
        assert all(labels[k] == v for k, v in GPU_NODE_LABELS.items())


def test_label_without_gpu_nodes_is_fatal(desired, doctl, kube, helm):
    kube.add_node('cpu-0')
    executor = make_executor(desired, doctl, kube, helm)

    with pytest.raises(NoGpuNodesError):
        executor.execute(PlannedAction(LABELS, Operation.LABEL))


def test_exhausted_wait_is_a_warning(desired, doctl, gpu_cluster, helm):
    gpu_cluster.nodes['cpu-pool-0']['ready'] = False
    executor = make_executor(desired, doctl, gpu_cluster, helm)

    outcome = executor.execute(PlannedAction(NODES, Operation.WAIT))

    assert outcome.result == OutcomeResult.WARNING
    assert outcome.status == Status.CREATING
    assert 'continuing' in outcome.message


def test_exhausted_wait_is_fatal_in_strict_mode(desired, doctl, gpu_cluster, helm):
    gpu_cluster.nodes['cpu-pool-0']['ready'] = False
    executor = make_executor(desired, doctl, gpu_cluster, helm, strict=True)

    with pytest.raises(ConvergenceError):
        executor.execute(PlannedAction(NODES, Operation.WAIT))


def test_zero_gpu_capacity_is_fatal(desired, doctl, gpu_cluster, helm):
    executor = make_executor(desired, doctl, gpu_cluster, helm)

    with pytest.raises(NoGpuResourcesError):
        executor.execute(PlannedAction(GPUS, Operation.VERIFY))


def test_command_failure_returns_failed(desired, doctl, gpu_cluster, helm, monkeypatch):
    def broken_install(*args, **kwargs):
        raise subprocess.CalledProcessError(1, ['helm', 'install'], stderr='Error: chart not found\n')
    monkeypatch.setattr(helm, 'install', broken_install)
    executor = make_executor(desired, doctl, gpu_cluster, helm)

    outcome = executor.execute(PlannedAction(RELEASE, Operation.CREATE))

    assert outcome.result == OutcomeResult.FAILED
    assert outcome.message == 'Error: chart not found'


def test_unreadable_cli_output_returns_failed(desired_create, doctl, kube, helm, monkeypatch):
    def garbled():
        raise json.JSONDecodeError('Expecting value', '', 0)
    monkeypatch.setattr(doctl, 'latest_kubernetes_version', garbled)
    executor = make_executor(desired_create, doctl, kube, helm)

    outcome = executor.execute(PlannedAction(desired_create.cluster_ref, Operation.CREATE))

    assert outcome.result == OutcomeResult.FAILED
    assert outcome.message.startswith('unexpected command output')
    assert doctl.mutations == []


def test_create_cluster_resolves_version_and_saves_kubeconfig(desired_create, doctl, kube, helm):
    kube.reachable = False
    executor = make_executor(desired_create, doctl, kube, helm)

    outcome = executor.execute(PlannedAction(desired_create.cluster_ref, Operation.CREATE))

    assert outcome.result == OutcomeResult.SUCCEEDED
    assert doctl.clusters['test']['version'] == '1.31.1-do.0'
    assert doctl.pools['cpu-pool']['count'] == 2
    assert doctl.saved_kubeconfigs == ['test']
    assert kube.reloads == 1


def test_custom_vpc_missing_is_fatal(desired_create, doctl, kube, helm):
    desired = desired_create.model_copy(update={'use_default_vpc': False})
    executor = make_executor(desired, doctl, kube, helm)

    with pytest.raises(ResourceNotFoundError):
        executor.execute(PlannedAction(desired.cluster_ref, Operation.CREATE))


def test_custom_vpc_is_created_and_used(desired_create, doctl, kube, helm):
    desired = desired_create.model_copy(update={'use_default_vpc': False})
    executor = make_executor(desired, doctl, kube, helm)

    assert executor.execute(PlannedAction(desired.vpc_ref, Operation.CREATE)).ok
    assert executor.execute(PlannedAction(desired.cluster_ref, Operation.CREATE)).ok

    assert doctl.clusters['test']['vpc_uuid'] == 'vpc-llm-d-vpc'


def test_default_vpc_needs_no_action(desired_create, doctl, kube, helm):
    executor = make_executor(desired_create, doctl, kube, helm)

    outcome = executor.execute(PlannedAction(desired_create.vpc_ref, Operation.CREATE))

    assert outcome.ok
    assert doctl.mutations == []
