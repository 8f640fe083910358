import subprocess
from pathlib import Path
from typing import Optional

import typer
from kubernetes.client.rest import ApiException

from doksctl import modules
from doksctl.errors import DoksctlError
from doksctl.modules import report
from doksctl.modules.monitoring import MonitoringStack
from doksctl.utils.kube import resolve_kubeconfig

app = typer.Typer(help="Prometheus / Grafana monitoring stack")

DEFAULT_DASHBOARD = "llm-d-dashboard.json"


def _stack(context: Optional[str]) -> MonitoringStack:
    try:
        kubeconfig = resolve_kubeconfig(context)
    except FileNotFoundError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)
    _, kube, helm = modules.build_clients(kubeconfig)
    return MonitoringStack(kube, helm)


@app.command("install")
def install_monitoring(
    dashboard: Path = typer.Option(Path(DEFAULT_DASHBOARD), "--dashboard", help="Grafana dashboard JSON to import"),
    context: Optional[str] = typer.Option(None, "--context", "-g", help="Path to a kubeconfig file"),
):
    """Install kube-prometheus-stack with LLM-D scraping and dashboards."""
    stack = _stack(context)
    try:
        info = stack.install(dashboard=dashboard)
    except (DoksctlError, subprocess.CalledProcessError, ApiException, ValueError) as e:
        typer.echo(f"❌ Monitoring installation failed: {e}", err=True)
        raise typer.Exit(code=1)
    report.render_access_info(info)


@app.command("uninstall")
def uninstall_monitoring(
    context: Optional[str] = typer.Option(None, "--context", "-g", help="Path to a kubeconfig file"),
):
    """Remove the monitoring stack and its namespace."""
    stack = _stack(context)
    try:
        stack.uninstall()
    except (subprocess.CalledProcessError, ApiException) as e:
        typer.echo(f"❌ Monitoring uninstall failed: {e}", err=True)
        raise typer.Exit(code=1)


@app.command("info")
def monitoring_info(
    context: Optional[str] = typer.Option(None, "--context", "-g", help="Path to a kubeconfig file"),
):
    """Print port-forward commands and the Grafana admin password."""
    stack = _stack(context)
    try:
        info = stack.access_info()
    except ApiException as e:
        typer.echo(f"❌ Could not read monitoring access info: {e.reason}", err=True)
        raise typer.Exit(code=1)
    report.render_access_info(info)
