import subprocess

import pytest
from kubernetes.client.rest import ApiException

from doksctl.modules.models import GPU_NODE_LABELS, ResourceKind, Status
from doksctl.modules.probe import ResourceProbe


@pytest.fixture
def probe(desired, doctl, gpu_cluster, helm):
    return ResourceProbe(desired, doctl, gpu_cluster, helm)


def test_fresh_cluster_statuses(probe):
    observed = probe.observe()
    by_kind = {ref.kind: status for ref, status in observed.statuses.items()}

    assert observed.cluster_reachable
    assert observed.gpu_nodes == ['gpu-pool-0', 'gpu-pool-1']
    assert by_kind == {
        ResourceKind.NODES: Status.READY,
        ResourceKind.NAMESPACE: Status.ABSENT,
        ResourceKind.HELM_RELEASE: Status.ABSENT,
        ResourceKind.DAEMONSET: Status.ABSENT,
        ResourceKind.NODE_LABELS: Status.ABSENT,
        ResourceKind.GPU_RESOURCES: Status.DEGRADED,
    }


def test_probe_never_mutates(probe, gpu_cluster, helm):
    probe.observe()
    assert gpu_cluster.mutations == []
    assert helm.mutations == []


def test_nodes_creating_until_all_ready(probe, gpu_cluster):
    gpu_cluster.nodes['gpu-pool-1']['ready'] = False
    assert probe.probe(ResourceKind.NODES) == Status.CREATING


def test_namespace_terminating_is_degraded(probe, gpu_cluster):
    gpu_cluster.namespaces['nvidia-device-plugin'] = 'Terminating'
    assert probe.probe(ResourceKind.NAMESPACE) == Status.DEGRADED


@pytest.mark.parametrize('helm_status, expected', [
    ('deployed', Status.READY),
    ('pending-install', Status.CREATING),
    ('failed', Status.DEGRADED),
])
def test_helm_release_status(probe, gpu_cluster, helm, helm_status, expected):
    gpu_cluster.namespaces['nvidia-device-plugin'] = 'Active'
    helm.releases[('nvidia-device-plugin', 'nvdp')] = {'name': 'nvdp', 'status': helm_status}
    assert probe.probe(ResourceKind.HELM_RELEASE) == expected


def test_plugin_partially_ready_is_degraded(probe, gpu_cluster, helm):
    gpu_cluster.namespaces['nvidia-device-plugin'] = 'Active'
    helm.releases[('nvidia-device-plugin', 'nvdp')] = {'name': 'nvdp', 'status': 'deployed'}
    gpu_cluster.plugin_ready = {'gpu-pool-0'}

    assert probe.probe(ResourceKind.DAEMONSET) == Status.DEGRADED

    gpu_cluster.plugin_ready.add('gpu-pool-1')
    assert probe.probe(ResourceKind.DAEMONSET) == Status.READY


def test_node_labels_absent_partial_ready(probe, gpu_cluster):
    assert probe.probe(ResourceKind.NODE_LABELS) == Status.ABSENT

    gpu_cluster.nodes['gpu-pool-0']['labels'].update(GPU_NODE_LABELS)
    assert probe.probe(ResourceKind.NODE_LABELS) == Status.DEGRADED

    gpu_cluster.nodes['gpu-pool-1']['labels'].update(GPU_NODE_LABELS)
    assert probe.probe(ResourceKind.NODE_LABELS) == Status.READY


def test_gpu_nodes_fall_back_to_instance_type(desired, doctl, kube, helm):
    kube.add_node('cpu-0')
    kube.add_node('gpu-unbranded-0', gpu=True, brand=False)
    probe = ResourceProbe(desired, doctl, kube, helm)

    assert probe.observe().gpu_nodes == ['gpu-unbranded-0']


def test_no_gpu_nodes_makes_gpu_resources_absent(desired, doctl, kube, helm):
    kube.add_node('cpu-0')
    kube.namespaces['nvidia-device-plugin'] = 'Active'
    helm.releases[('nvidia-device-plugin', 'nvdp')] = {'name': 'nvdp', 'status': 'deployed'}
    observed = ResourceProbe(desired, doctl, kube, helm).observe()

    assert observed.gpu_nodes == []
    for ref, status in observed.statuses.items():
        if ref.kind in (ResourceKind.DAEMONSET, ResourceKind.NODE_LABELS, ResourceKind.GPU_RESOURCES):
            assert status == Status.ABSENT


def test_transient_errors_are_degraded_not_absent(probe, gpu_cluster, helm, monkeypatch):
    def boom(name, namespace):
        raise subprocess.CalledProcessError(1, ['helm', 'list'], stderr='Kubernetes cluster unreachable')
    monkeypatch.setattr(helm, 'get_release', boom)
    gpu_cluster.namespaces['nvidia-device-plugin'] = 'Active'
    assert probe.probe(ResourceKind.HELM_RELEASE) == Status.DEGRADED

    def api_error(name):
        raise ApiException(status=500, reason='Internal Server Error')
    monkeypatch.setattr(gpu_cluster, 'namespace_phase', api_error)
    assert probe.probe(ResourceKind.NAMESPACE) == Status.DEGRADED


def test_unreachable_cluster_marks_kube_resources_degraded(probe, gpu_cluster):
    gpu_cluster.reachable = False
    observed = probe.observe()

    assert not observed.cluster_reachable
    assert observed.gpu_nodes is None
    assert set(observed.statuses.values()) == {Status.DEGRADED}


def test_create_mode_without_cluster_skips_kubernetes(desired_create, doctl, kube, helm):
    kube.reachable = False
    observed = ResourceProbe(desired_create, doctl, kube, helm).observe()

    statuses = {ref.kind: status for ref, status in observed.statuses.items()}
    assert statuses[ResourceKind.VPC] == Status.READY
    assert statuses[ResourceKind.CLUSTER] == Status.ABSENT
    assert statuses[ResourceKind.NODE_POOL] == Status.ABSENT
    assert statuses[ResourceKind.GPU_RESOURCES] == Status.ABSENT
    assert observed.gpu_nodes is None


@pytest.mark.parametrize('state, expected', [
    ('running', Status.READY),
    ('provisioning', Status.CREATING),
    ('degraded', Status.DEGRADED),
])
def test_cluster_states(desired_create, doctl, kube, helm, state, expected):
    doctl.clusters['test'] = {'name': 'test', 'status': {'state': state}}
    probe = ResourceProbe(desired_create, doctl, kube, helm)
    assert probe.probe(ResourceKind.CLUSTER, 'test') == expected


@pytest.mark.parametrize('node_states, expected', [
    (['running', 'running'], Status.READY),
    (['running', 'provisioning'], Status.CREATING),
    ([], Status.CREATING),
    (['running', 'deleting'], Status.DEGRADED),
])
def test_node_pool_states(desired_create, doctl, kube, helm, node_states, expected):
    doctl.clusters['test'] = {'name': 'test', 'status': {'state': 'running'}}
    doctl.pools['gpu-pool'] = {'name': 'gpu-pool', 'nodes': [{'status': {'state': s}} for s in node_states]}
    probe = ResourceProbe(desired_create, doctl, kube, helm)
    assert probe.probe(ResourceKind.NODE_POOL, 'gpu-pool') == expected


def test_node_pool_of_provisioning_cluster_is_not_ready(desired_create, doctl, kube, helm):
    doctl.clusters['test'] = {'name': 'test', 'status': {'state': 'provisioning'}}
    doctl.pools['cpu-pool'] = {'name': 'cpu-pool', 'nodes': [{'status': {'state': 'running'}}]}
    probe = ResourceProbe(desired_create, doctl, kube, helm)

    assert probe.probe(ResourceKind.NODE_POOL, 'cpu-pool') == Status.CREATING
    assert probe.probe(ResourceKind.NODE_POOL, 'gpu-pool') == Status.ABSENT


def test_custom_vpc_absent_until_created(doctl, kube, helm, desired_create):
    desired = desired_create.model_copy(update={'use_default_vpc': False})
    probe = ResourceProbe(desired, doctl, kube, helm)

    assert probe.probe(ResourceKind.VPC) == Status.ABSENT
    doctl.create_vpc('llm-d-vpc', 'tor1', '172.16.0.0/16')
    assert probe.probe(ResourceKind.VPC) == Status.READY
