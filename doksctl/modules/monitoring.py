"""Prometheus / Grafana monitoring stack for LLM-D workloads."""
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml

from ..config import Config
from ..errors import ClusterUnreachableError
from ..utils import poll_until, require_commands
from .helm import HelmClient
from .kube import KubeClient

logger = logging.getLogger("doksctl.monitoring")

REPO_NAME = "prometheus-community"
REPO_URL = "https://prometheus-community.github.io/helm-charts"
CHART = "prometheus-community/kube-prometheus-stack"
RELEASE = "prometheus"
STORAGE_CLASS = "do-block-storage"

GRAFANA_DEPLOYMENT = "prometheus-grafana"
GRAFANA_SECRET = "prometheus-grafana"
DASHBOARD_CONFIG_MAP = "llm-d-dashboard"

SERVICE_MONITOR_NAME = "llm-d-modelservice"


def _pvc(size: str) -> Dict[str, Any]:
    return {
        'volumeClaimTemplate': {
            'spec': {
                'storageClassName': STORAGE_CLASS,
                'accessModes': ['ReadWriteOnce'],
                'resources': {'requests': {'storage': size}},
            }
        }
    }


def _dashboard(gnet_id: int, revision: int) -> Dict[str, Any]:
    return {'gnetId': gnet_id, 'revision': revision, 'datasource': 'Prometheus'}


def prometheus_values(llmd_namespace: Optional[str] = None) -> Dict[str, Any]:
    """Values for kube-prometheus-stack tuned for LLM-D on DOKS."""
    llmd_namespace = llmd_namespace or Config.LLMD_NAMESPACE
    scrape_job = {
        'job_name': 'llm-d-modelservice',
        'kubernetes_sd_configs': [{'role': 'pod', 'namespaces': {'names': [llmd_namespace]}}],
        'relabel_configs': [
            {
                'source_labels': ['__meta_kubernetes_pod_annotation_prometheus_io_scrape'],
                'action': 'keep',
                'regex': 'true',
            },
            {
                'source_labels': ['__meta_kubernetes_pod_annotation_prometheus_io_path'],
                'action': 'replace',
                'target_label': '__metrics_path__',
                'regex': '(.+)',
            },
            {
                'source_labels': ['__meta_kubernetes_pod_annotation_prometheus_io_port'],
                'action': 'replace',
                'regex': r'(\d+)',
                'target_label': '__meta_kubernetes_pod_container_port_number',
            },
            {
                'source_labels': ['__address__', '__meta_kubernetes_pod_annotation_prometheus_io_port'],
                'action': 'replace',
                'regex': r'([^:]+)(?::\d+)?;(\d+)',
                'replacement': '$1:$2',
                'target_label': '__address__',
            },
        ],
    }
    return {
        'global': {'imageRegistry': ''},
        'prometheus': {
            'prometheusSpec': {
                'retention': '7d',
                'retentionSize': '10GB',
                'storageSpec': _pvc('20Gi'),
                'serviceMonitorSelectorNilUsesHelmValues': False,
                'serviceMonitorSelector': {},
                'additionalScrapeConfigs': [scrape_job],
            }
        },
        'grafana': {
            'persistence': {'enabled': True, 'storageClassName': STORAGE_CLASS, 'size': '5Gi'},
            'grafana.ini': {'server': {'root_url': 'http://localhost:3000'}},
            'dashboardProviders': {
                'dashboardproviders.yaml': {
                    'apiVersion': 1,
                    'providers': [{
                        'name': 'default',
                        'orgId': 1,
                        'folder': '',
                        'type': 'file',
                        'disableDeletion': False,
                        'editable': True,
                        'options': {'path': '/var/lib/grafana/dashboards/default'},
                    }],
                }
            },
            'dashboards': {
                'default': {
                    'kubernetes-cluster': _dashboard(7249, 1),
                    'node-exporter': _dashboard(1860, 29),
                    'kubernetes-pods': _dashboard(6336, 1),
                }
            },
        },
        'alertmanager': {'alertmanagerSpec': {'storage': _pvc('5Gi')}},
        'nodeExporter': {'enabled': True},
        'kubeStateMetrics': {'enabled': True},
        'additionalServiceMonitors': [{
            'name': 'vllm-metrics',
            'selector': {'matchLabels': {'app': 'llm-d-modelservice'}},
            'endpoints': [{'port': 'metrics', 'interval': '15s', 'path': '/metrics'}],
        }],
    }


def service_monitor(namespace: str, llmd_namespace: Optional[str] = None) -> Dict[str, Any]:
    return {
        'apiVersion': 'monitoring.coreos.com/v1',
        'kind': 'ServiceMonitor',
        'metadata': {
            'name': SERVICE_MONITOR_NAME,
            'namespace': namespace,
            'labels': {'app': 'llm-d-monitoring'},
        },
        'spec': {
            'selector': {'matchLabels': {'app.kubernetes.io/name': 'modelservice'}},
            'namespaceSelector': {'matchNames': [llmd_namespace or Config.LLMD_NAMESPACE]},
            'endpoints': [{
                'port': 'metrics',
                'interval': '15s',
                'path': '/metrics',
                'honorLabels': True,
            }],
        },
    }


class MonitoringStack:
    """Installs, removes and describes the monitoring stack."""

    def __init__(
        self,
        kube: KubeClient,
        helm: HelmClient,
        namespace: Optional[str] = None,
        chart_version: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.kube = kube
        self.helm = helm
        self.namespace = namespace or Config.MONITORING_NAMESPACE
        self.chart_version = chart_version or Config.PROMETHEUS_CHART_VERSION
        self.sleep = sleep

    def check_prerequisites(self) -> None:
        logger.info("Checking prerequisites...")
        require_commands([Config.KUBECTL_BIN, Config.HELM_BIN])
        if not self.kube.is_reachable():
            raise ClusterUnreachableError("Cannot connect to Kubernetes cluster")
        logger.info("✅ Prerequisites check passed")

    def install(self, dashboard: Optional[Path] = None) -> Dict[str, str]:
        """Install or upgrade the stack and return its access information."""
        logger.info("🚀 Setting up LLM-D Monitoring Stack...")
        self.check_prerequisites()

        self.helm.repo_add(REPO_NAME, REPO_URL)
        self.helm.repo_update()
        if not self.kube.create_namespace(self.namespace):
            logger.warning(f"⚠️  Namespace {self.namespace} already exists")

        self._install_chart()
        self.kube.apply_custom_object(
            'monitoring.coreos.com', 'v1', 'servicemonitors', self.namespace,
            service_monitor(self.namespace),
        )
        logger.info("✅ LLM-D ServiceMonitor created")

        if dashboard and Path(dashboard).is_file():
            self.import_dashboard(Path(dashboard))
        else:
            logger.warning(f"⚠️  {dashboard or 'Dashboard file'} not found, skipping dashboard import")

        info = self.access_info()
        logger.info("🎉 Monitoring setup completed successfully!")
        return info

    def _install_chart(self) -> None:
        logger.info("Installing Prometheus Stack...")
        with tempfile.NamedTemporaryFile(
            mode='w', encoding='utf-8', suffix='.yaml', prefix='prometheus-values-', delete=False
        ) as f:
            yaml.safe_dump(prometheus_values(), f, default_flow_style=False, sort_keys=False)
            values_file = f.name
        try:
            self.helm.install(
                RELEASE, CHART, self.namespace,
                version=self.chart_version,
                values_file=Path(values_file),
                upgrade=True,
                wait=True,
                timeout="600s",
            )
        finally:
            os.unlink(values_file)
            logger.debug(f"Removed temporary values file {values_file}")
        logger.info("✅ Prometheus Stack installed successfully")

    def wait_for_grafana(self, interval: float = 10, attempts: int = 30) -> bool:
        return poll_until(
            lambda: self.kube.deployment_available(GRAFANA_DEPLOYMENT, self.namespace),
            interval,
            attempts,
            description="Grafana",
            sleep=self.sleep,
        )

    def import_dashboard(self, path: Path) -> None:
        """Load a dashboard JSON into a ConfigMap picked up by the Grafana sidecar."""
        logger.info("Importing LLM-D Dashboard...")
        content = path.read_text()
        json.loads(content)  # reject malformed dashboards early

        if not self.wait_for_grafana():
            logger.warning("⚠️  Grafana is not ready yet, importing dashboard anyway")

        self.kube.replace_config_map(
            DASHBOARD_CONFIG_MAP,
            self.namespace,
            {path.name: content},
            labels={'grafana_dashboard': '1'},
            annotations={'grafana_folder': 'LLM-D'},
        )
        self.kube.restart_deployment(GRAFANA_DEPLOYMENT, self.namespace)
        if not self.wait_for_grafana():
            logger.warning("⚠️  Grafana restart did not finish in time")
        logger.info("✅ LLM-D Dashboard imported and Grafana restarted")

    def access_info(self) -> Dict[str, str]:
        password = self.kube.read_secret_value(GRAFANA_SECRET, self.namespace, 'admin-password')
        ns = self.namespace
        return {
            'prometheus': f"kubectl port-forward -n {ns} svc/prometheus-kube-prometheus-prometheus 9090:9090",
            'prometheus_url': "http://localhost:9090",
            'grafana': f"kubectl port-forward -n {ns} svc/prometheus-grafana 3000:80",
            'grafana_url': "http://localhost:3000",
            'grafana_user': "admin",
            'grafana_password': password or "Unable to retrieve",
            'alertmanager': f"kubectl port-forward -n {ns} svc/prometheus-kube-prometheus-alertmanager 9093:9093",
            'alertmanager_url': "http://localhost:9093",
        }

    def uninstall(self) -> None:
        logger.info("🗑️  Removing monitoring stack...")
        self.helm.uninstall(RELEASE, self.namespace)
        if not self.kube.delete_namespace(self.namespace):
            logger.warning(f"⚠️  Namespace {self.namespace} not found")
        logger.info("✅ Monitoring stack removed")
