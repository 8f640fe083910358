"""Console rendering of plans, cluster information and run results."""
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from .models import DesiredState, ObservedState, OutcomeResult, PlannedAction, RunResult, Status

console = Console()

_STATUS_STYLE = {
    Status.READY: "green",
    Status.CREATING: "yellow",
    Status.DEGRADED: "red",
    Status.ABSENT: "bright_black",
}

_RESULT_ICON = {
    OutcomeResult.SUCCEEDED: "✅",
    OutcomeResult.WARNING: "⚠️ ",
    OutcomeResult.FAILED: "❌",
    OutcomeResult.SKIPPED: "⏭️ ",
}


def render_plan(
    desired: DesiredState,
    observed: ObservedState,
    plan: List[PlannedAction],
    out: Optional[Console] = None,
) -> None:
    """Print the observed chain followed by the actions still required."""
    out = out or console

    state = Table(title="Observed state", title_justify="left")
    state.add_column("Resource")
    state.add_column("Status")
    for ref in desired.resources():
        status = observed.get(ref)
        state.add_row(str(ref), f"[{_STATUS_STYLE[status]}]{status.value}[/]")
    out.print(state)

    if not plan:
        out.print("✅ Nothing to do: the cluster matches the desired state")
        return

    table = Table(title="Execution plan", title_justify="left")
    table.add_column("#", justify="right")
    table.add_column("Action")
    table.add_column("Target")
    for i, action in enumerate(plan, 1):
        table.add_row(str(i), action.operation.value, action.describe())
    out.print(table)


def render_cluster_info(
    desired: DesiredState,
    version: str = "",
    nodes: Optional[List[Dict[str, Any]]] = None,
    out: Optional[Console] = None,
) -> None:
    out = out or console
    overview = Table(show_header=False, box=None, padding=(0, 2), title="Cluster", title_justify="left")
    overview.add_column("key", style="bright_black", min_width=12)
    overview.add_column("value")
    overview.add_row("Name", desired.cluster_name)
    overview.add_row("Region", desired.region)
    if version:
        overview.add_row("Version", version)
    if desired.create_cluster:
        overview.add_row("VPC", desired.vpc_ref.name)
        overview.add_row("CPU pool", f"{desired.cpu_pool.count}x {desired.cpu_pool.size}")
        overview.add_row("GPU pool", f"{desired.gpu_pool.count}x {desired.gpu_pool.size}")
    overview.add_row("Device plugin", f"{desired.plugin.chart} {desired.plugin.version}")
    out.print(overview)

    if nodes:
        table = Table("Node", "Ready", "Instance type", "GPUs")
        for node in nodes:
            table.add_row(
                node["name"],
                "yes" if node["ready"] else "no",
                node["instance_type"],
                str(node["gpus"]),
            )
        out.print(table)


def render_result(result: RunResult, out: Optional[Console] = None) -> None:
    out = out or console
    if result.outcomes:
        table = Table("", "Action", "Result", "Details", title="Actions", title_justify="left")
        for outcome in result.outcomes:
            table.add_row(
                _RESULT_ICON[outcome.result],
                outcome.action.describe(),
                outcome.result.value,
                outcome.message,
            )
        out.print(table)

    for warning in result.warnings:
        out.print(f"⚠️  {warning}")

    if result.succeeded:
        out.print(
            f"✅ Done in {result.cycles} cycle(s): "
            f"{result.gpu_total} GPU(s), {result.gpu_allocatable} allocatable"
        )
    else:
        out.print(f"❌ Aborted during {result.phase.value}: {result.error}")


def render_next_steps(out: Optional[Console] = None) -> None:
    out = out or console
    out.print("\nNext steps:")
    out.print("  1. Install monitoring:  doksctl monitoring install")
    out.print("  2. Deploy LLM-D:        doksctl deploy llm-d -g <gpu-type> -t <hf-token>")
    out.print("  3. Check GPU nodes:     kubectl get nodes -l doks.digitalocean.com/gpu-brand=nvidia")


def render_access_info(info: Dict[str, str], out: Optional[Console] = None) -> None:
    out = out or console
    out.print("\n🎉 Monitoring Stack Ready!\n")
    out.print("📊 Prometheus:")
    out.print(f"  Port-forward: {info['prometheus']}")
    out.print(f"  URL: {info['prometheus_url']}")
    out.print("📈 Grafana:")
    out.print(f"  Port-forward: {info['grafana']}")
    out.print(f"  URL: {info['grafana_url']}")
    out.print(f"  Username: {info['grafana_user']}")
    out.print(f"  Password: {info['grafana_password']}")
    out.print("🚨 AlertManager:")
    out.print(f"  Port-forward: {info['alertmanager']}")
    out.print(f"  URL: {info['alertmanager_url']}")


def render_workload_status(status: Dict[str, Any], out: Optional[Console] = None) -> None:
    out = out or console
    pods = Table("Pod", "Phase", title="LLM-D pods", title_justify="left")
    for pod in status.get('pods', []):
        pods.add_row(pod['name'], pod['phase'])
    out.print(pods)

    services = Table("Service", "Type", "Cluster IP", title="LLM-D services", title_justify="left")
    for svc in status.get('services', []):
        services.add_row(svc['name'], svc['type'], svc['cluster_ip'])
    out.print(services)


def render_profiles(profiles: Dict[str, Any], out: Optional[Console] = None) -> None:
    out = out or console
    table = Table("GPU type", "Model", "VRAM", "Values file")
    for profile in profiles.values():
        table.add_row(profile.name, profile.description, f"{profile.vram_gb}GB", profile.values_file.name)
    out.print(table)
