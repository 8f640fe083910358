import pytest

from doksctl.errors import AuthenticationError
from doksctl.modules.models import (
    GPU_BRAND_LABEL,
    INSTANCE_TYPE_LABEL,
    DesiredState,
    NodePoolSpec,
    RetryPolicy,
    RunConfig,
)
from doksctl.modules import orchestrator as orchestrator_module
from doksctl.modules.orchestrator import Orchestrator


class FakeKube:
    """In-memory Kubernetes API."""

    def __init__(self, reachable=True):
        self.reachable = reachable
        self.nodes = {}
        self.namespaces = {}
        self.plugin_ready = set()
        self.config_maps = {}
        self.custom_objects = {}
        self.secrets = {}
        self.deployments = {}
        self.restarts = []
        self.mutations = []
        self.reloads = 0

    def add_node(self, name, gpu=False, ready=True, labels=None, taints=(), brand=True):
        node_labels = {INSTANCE_TYPE_LABEL: 'gpu-6000adax1-48gb' if gpu else 's-2vcpu-4gb'}
        if gpu and brand:
            node_labels[GPU_BRAND_LABEL] = 'nvidia'
        node_labels.update(labels or {})
        self.nodes[name] = {
            'labels': node_labels,
            'ready': ready,
            'gpus': 0,
            'taints': list(taints),
            'gpu': gpu,
        }

    # Cluster

    def is_reachable(self):
        return self.reachable

    def reload(self):
        self.reloads += 1

    def server_version(self):
        return 'v1.31.1'

    # Nodes

    def gpu_nodes(self):
        nodes = [n for n, d in self.nodes.items() if d['labels'].get(GPU_BRAND_LABEL) == 'nvidia']
        if not nodes:
            nodes = [n for n, d in self.nodes.items() if 'gpu-' in d['labels'].get(INSTANCE_TYPE_LABEL, '')]
        return sorted(nodes)

    def ready_node_count(self):
        return sum(1 for d in self.nodes.values() if d['ready']), len(self.nodes)

    def node_labels(self, name):
        return dict(self.nodes[name]['labels'])

    def label_node(self, name, labels):
        self.mutations.append(('label', name))
        self.nodes[name]['labels'].update(labels)

    def gpu_capacity(self, name):
        gpus = self.nodes[name]['gpus']
        return gpus, gpus

    def node_taint_keys(self, name):
        return list(self.nodes[name]['taints'])

    def node_summary(self):
        return [
            {'name': n, 'ready': d['ready'], 'instance_type': d['labels'][INSTANCE_TYPE_LABEL], 'gpus': d['gpus']}
            for n, d in sorted(self.nodes.items())
        ]

    # Namespaces

    def namespace_phase(self, name):
        return self.namespaces.get(name)

    def create_namespace(self, name):
        if name in self.namespaces:
            return False
        self.mutations.append(('create_namespace', name))
        self.namespaces[name] = 'Active'
        return True

    def delete_namespace(self, name):
        if name not in self.namespaces:
            return False
        self.mutations.append(('delete_namespace', name))
        del self.namespaces[name]
        return True

    # Pods

    def plugin_pod_ready(self, namespace, node):
        return node in self.plugin_ready

    def count_running_pods(self, namespace, label_selector):
        return len(self.plugin_ready)

    def pod_summary(self, namespace):
        return [{'name': 'ms-llama-decode-0', 'phase': 'Running'}]

    def service_summary(self, namespace):
        return [{'name': 'llm-d-inference-gateway', 'type': 'ClusterIP', 'cluster_ip': '10.0.0.10'}]

    # Secrets, config maps, workloads

    def read_secret_value(self, name, namespace, key):
        return self.secrets.get((namespace, name, key))

    def replace_config_map(self, name, namespace, data, labels=None, annotations=None):
        self.mutations.append(('config_map', name))
        self.config_maps[(namespace, name)] = {'data': data, 'labels': labels, 'annotations': annotations}

    def restart_deployment(self, name, namespace):
        self.restarts.append((namespace, name))

    def deployment_available(self, name, namespace):
        return self.deployments.get((namespace, name), True)

    def apply_custom_object(self, group, version, plural, namespace, body):
        self.mutations.append(('custom_object', body['metadata']['name']))
        self.custom_objects[(plural, namespace, body['metadata']['name'])] = body


class FakeHelm:
    """In-memory helm; installing the device plugin makes GPUs schedulable."""

    def __init__(self, kube, gpus_per_node=1, install_status='deployed'):
        self.kube = kube
        self.gpus_per_node = gpus_per_node
        self.install_status = install_status
        self.releases = {}
        self.repos = {}
        self.installs = []
        self.mutations = []

    def repo_add(self, name, url):
        self.repos[name] = url

    def repo_update(self):
        pass

    def get_release(self, name, namespace):
        return self.releases.get((namespace, name))

    def install(self, release, chart, namespace, **kwargs):
        self.mutations.append(('install', release))
        self.installs.append({'release': release, 'chart': chart, 'namespace': namespace, **kwargs})
        self.releases[(namespace, release)] = {'name': release, 'status': self.install_status}
        if chart.endswith('nvidia-device-plugin') and self.install_status == 'deployed':
            for node in self.kube.gpu_nodes():
                self.kube.plugin_ready.add(node)
                self.kube.nodes[node]['gpus'] = self.gpus_per_node

    def uninstall(self, release, namespace, ignore_missing=True):
        if (namespace, release) not in self.releases:
            return False
        self.mutations.append(('uninstall', release))
        del self.releases[(namespace, release)]
        if release == 'nvdp':
            self.kube.plugin_ready.clear()
            for data in self.kube.nodes.values():
                data['gpus'] = 0
        return True


class FakeDoctl:
    """In-memory DigitalOcean control plane wired to a FakeKube."""

    def __init__(self, kube, authenticated=True, cluster_state='running'):
        self.kube = kube
        self.authenticated = authenticated
        self.cluster_state = cluster_state
        self.vpcs = []
        self.clusters = {}
        self.pools = {}
        self.mutations = []
        self.saved_kubeconfigs = []

    def check_auth(self):
        if not self.authenticated:
            raise AuthenticationError("doctl is not authenticated. Please run: doctl auth init")
        return {'email': 'ops@example.com'}

    def find_vpc(self, name):
        return next((v for v in self.vpcs if v['name'] == name), None)

    def create_vpc(self, name, region, ip_range):
        self.mutations.append(('create_vpc', name))
        vpc = {'id': f'vpc-{name}', 'name': name, 'region': region, 'ip_range': ip_range}
        self.vpcs.append(vpc)
        return vpc

    def get_cluster(self, name):
        return self.clusters.get(name)

    def latest_kubernetes_version(self):
        return '1.31.1-do.0'

    def create_cluster(self, name, region, version, node_pool, vpc_uuid=None):
        self.mutations.append(('create_cluster', name))
        spec = dict(part.split('=', 1) for part in node_pool.split(';'))
        self.clusters[name] = {
            'name': name,
            'region': region,
            'version': version,
            'vpc_uuid': vpc_uuid,
            'status': {'state': self.cluster_state},
        }
        self._add_pool(spec['name'], spec['size'], int(spec['count']))
        return self.clusters[name]

    def save_kubeconfig(self, name):
        self.saved_kubeconfigs.append(name)
        self.kube.reachable = True

    def get_node_pool(self, cluster, pool):
        if cluster not in self.clusters:
            return None
        return self.pools.get(pool)

    def create_node_pool(self, cluster, name, size, count):
        self.mutations.append(('create_node_pool', name))
        return self._add_pool(name, size, count)

    def _add_pool(self, name, size, count):
        self.pools[name] = {
            'name': name,
            'size': size,
            'count': count,
            'nodes': [{'name': f'{name}-{i}', 'status': {'state': 'running'}} for i in range(count)],
        }
        for i in range(count):
            self.kube.add_node(f'{name}-{i}', gpu='gpu' in size)
        return self.pools[name]


def no_sleep(seconds):
    pass


FAST_POLICIES = {
    kind: RetryPolicy(interval=0, attempts=2, fatal=policy.fatal)
    for kind, policy in RunConfig().retry_policies.items()
}


@pytest.fixture
def kube():
    return FakeKube()


@pytest.fixture
def helm(kube):
    return FakeHelm(kube)


@pytest.fixture
def doctl(kube):
    return FakeDoctl(kube)


@pytest.fixture
def desired():
    return DesiredState()


@pytest.fixture
def desired_create():
    return DesiredState(
        cluster_name='test',
        create_cluster=True,
        cpu_pool=NodePoolSpec(name='cpu-pool', size='s-2vcpu-4gb', count=2),
        gpu_pool=NodePoolSpec(name='gpu-pool', size='gpu-6000adax1-48gb', count=2),
    )


@pytest.fixture
def gpu_cluster(kube):
    """A reachable cluster with two CPU and two GPU nodes and nothing installed."""
    kube.add_node('cpu-pool-0')
    kube.add_node('cpu-pool-1')
    kube.add_node('gpu-pool-0', gpu=True)
    kube.add_node('gpu-pool-1', gpu=True)
    return kube


@pytest.fixture
def tools_present(monkeypatch):
    monkeypatch.setattr(orchestrator_module, 'require_commands', lambda commands: None)


@pytest.fixture
def make_orchestrator(doctl, kube, helm, tools_present):
    def factory(desired, **run_options):
        run_options.setdefault('retry_policies', FAST_POLICIES)
        plans = []
        orch = Orchestrator(
            desired,
            RunConfig(**run_options),
            doctl=doctl,
            kube=kube,
            helm=helm,
            on_plan=lambda plan, observed: plans.append(list(plan)),
            sleep=no_sleep,
        )
        orch.previewed_plans = plans
        return orch
    return factory
