import subprocess
from typing import Optional

import typer
from kubernetes.client.rest import ApiException

from doksctl import modules
from doksctl.errors import DoksctlError
from doksctl.modules import report
from doksctl.modules.llmd import GPU_PROFILES, LlmdDeployer, resolve_token
from doksctl.modules.monitoring import MonitoringStack
from doksctl.utils.kube import resolve_kubeconfig

app = typer.Typer(help="LLM-D workload deployment")


def _clients(context: Optional[str]):
    try:
        kubeconfig = resolve_kubeconfig(context)
    except FileNotFoundError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)
    _, kube, helm = modules.build_clients(kubeconfig)
    return kube, helm


@app.command("llm-d")
def deploy_llmd(
    gpu: str = typer.Option(..., "--gpu", "-g", help=f"GPU type ({', '.join(GPU_PROFILES)})"),
    token: Optional[str] = typer.Option(None, "--token", "-t", help="HuggingFace token (or set HF_TOKEN)"),
    no_monitoring: bool = typer.Option(False, "--no-monitoring", "-m", help="Skip monitoring installation"),
    quickstart_dir: Optional[str] = typer.Option(None, "--quickstart-dir", help="Directory containing llmd-installer.sh"),
    context: Optional[str] = typer.Option(None, "--context", help="Path to a kubeconfig file"),
):
    """Deploy LLM-D tuned for a GPU type, optionally with monitoring."""
    kube, helm = _clients(context)
    deployer = LlmdDeployer(kube, quickstart_dir=quickstart_dir)
    monitoring = None if no_monitoring else MonitoringStack(kube, helm)

    try:
        hf_token = resolve_token(token)
        deployer.check_prerequisites()
        status = deployer.install(gpu, hf_token, monitoring=monitoring)
    except (DoksctlError, subprocess.CalledProcessError, ApiException) as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)

    report.render_workload_status(status)
    if monitoring is not None:
        report.render_access_info(monitoring.access_info())
    typer.echo("🎉 Deployment completed successfully!")
    typer.echo(f"💡 Test the deployment: cd {deployer.quickstart_dir} && ./test-request.sh")


@app.command("uninstall")
def uninstall_llmd(
    quickstart_dir: Optional[str] = typer.Option(None, "--quickstart-dir", help="Directory containing llmd-installer.sh"),
    context: Optional[str] = typer.Option(None, "--context", help="Path to a kubeconfig file"),
):
    """Uninstall LLM-D and the monitoring stack."""
    kube, helm = _clients(context)
    deployer = LlmdDeployer(kube, quickstart_dir=quickstart_dir)
    try:
        deployer.check_prerequisites()
        deployer.uninstall(monitoring=MonitoringStack(kube, helm))
    except (DoksctlError, subprocess.CalledProcessError, ApiException) as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)
    typer.echo("🎉 Uninstallation completed!")


@app.command("profiles")
def list_profiles():
    """List supported GPU types."""
    report.render_profiles(GPU_PROFILES)
