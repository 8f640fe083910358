import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer
import yaml
from jsonschema import ValidationError, validate
from pydantic import ValidationError as ModelValidationError

from doksctl import modules
from doksctl.errors import ConfigurationError, DoksctlError
from doksctl.modules import report
from doksctl.modules.models import DesiredState, DevicePluginSpec, NodePoolSpec, RunConfig
from doksctl.modules.orchestrator import Orchestrator
from doksctl.utils.kube import resolve_kubeconfig

app = typer.Typer(help="GPU cluster setup and status")

logger = logging.getLogger("doksctl.commands.cluster")

_POOL_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "size": {"type": "string"},
        "count": {"type": "integer", "minimum": 1},
    },
    "additionalProperties": False,
}

CLUSTER_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "region": {"type": "string"},
        "kubernetes_version": {"type": "string"},
        "create_cluster": {"type": "boolean"},
        "vpc": {
            "type": "object",
            "properties": {
                "custom": {"type": "boolean"},
                "name": {"type": "string"},
                "ip_range": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "cpu_pool": _POOL_SCHEMA,
        "gpu_pool": _POOL_SCHEMA,
        "device_plugin": {
            "type": "object",
            "properties": {
                "version": {"type": "string"},
                "namespace": {"type": "string"},
            },
            "additionalProperties": False,
        },
    },
    "required": ["name"],
    "additionalProperties": False,
}


def load_cluster_file(path: Path) -> Dict[str, Any]:
    """Read and validate a cluster definition file."""
    if not path.is_file():
        raise ConfigurationError(f"Cluster definition not found: {path}")
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    try:
        validate(instance=data, schema=CLUSTER_SCHEMA)
    except ValidationError as ve:
        raise ConfigurationError(f"YAML validation error: {ve.message}") from ve
    logger.info(f"📄 Loaded config from {path}")
    return data


def build_desired_state(
    data: Optional[Dict[str, Any]] = None,
    *,
    cluster_name: Optional[str] = None,
    region: Optional[str] = None,
    create_cluster: bool = False,
    custom_vpc: bool = False,
) -> DesiredState:
    """Merge a cluster definition with CLI flags; flags win."""
    data = data or {}
    fields: Dict[str, Any] = {}

    name = cluster_name or data.get("name")
    if name:
        fields["cluster_name"] = name
    if region or data.get("region"):
        fields["region"] = region or data["region"]
    if data.get("kubernetes_version"):
        fields["kubernetes_version"] = data["kubernetes_version"]
    fields["create_cluster"] = create_cluster or bool(data.get("create_cluster"))

    vpc = data.get("vpc") or {}
    fields["use_default_vpc"] = not (custom_vpc or vpc.get("custom", False))
    if vpc.get("name"):
        fields["vpc_name"] = vpc["name"]
    if vpc.get("ip_range"):
        fields["vpc_ip_range"] = vpc["ip_range"]

    try:
        defaults = DesiredState()
        for key in ("cpu_pool", "gpu_pool"):
            if data.get(key):
                base = getattr(defaults, key).model_dump()
                fields[key] = NodePoolSpec(**{**base, **data[key]})
        if data.get("device_plugin"):
            fields["plugin"] = DevicePluginSpec(**data["device_plugin"])
        return DesiredState(**fields)
    except ModelValidationError as e:
        raise ConfigurationError(str(e)) from e


def _run_config_kubeconfig(context: Optional[str]) -> Optional[str]:
    try:
        return resolve_kubeconfig(context)
    except FileNotFoundError as e:
        raise ConfigurationError(str(e)) from e


@app.command("setup")
def setup_cluster(
    create_cluster: bool = typer.Option(False, "--create-cluster", "-c", help="Create a new DOKS cluster with GPU nodes"),
    cluster_name: Optional[str] = typer.Option(None, "--cluster-name", "-n", help="Cluster name (default: llm-d-cluster)"),
    region: Optional[str] = typer.Option(None, "--region", "-r", help="DigitalOcean region (default: tor1)"),
    custom_vpc: bool = typer.Option(False, "--custom-vpc", "-v", help="Create and use a custom VPC instead of the default"),
    context: Optional[str] = typer.Option(None, "--context", "-g", help="Path to a kubeconfig file"),
    force_reinstall: bool = typer.Option(False, "--force-reinstall", "-f", help="Reinstall the NVIDIA device plugin"),
    dry_run: bool = typer.Option(False, "--dry-run", "-d", help="Show what would be done without making changes"),
    strict: bool = typer.Option(False, "--strict", help="Treat every exhausted wait as fatal"),
    file: Optional[Path] = typer.Option(None, "--file", help="Cluster definition YAML"),
):
    """Set up (or create) a DOKS cluster with GPU support."""
    try:
        data = load_cluster_file(file) if file else None
        desired = build_desired_state(
            data,
            cluster_name=cluster_name,
            region=region,
            create_cluster=create_cluster,
            custom_vpc=custom_vpc,
        )
        run_config = RunConfig(
            dry_run=dry_run,
            force_reinstall=force_reinstall,
            kubeconfig=_run_config_kubeconfig(context),
            strict=strict,
        )
    except DoksctlError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)

    if dry_run:
        typer.echo("🔍 DRY RUN MODE: No changes will be made")
    report.render_cluster_info(desired)

    doctl, kube, helm = modules.build_clients(run_config.kubeconfig)
    orchestrator = Orchestrator(
        desired,
        run_config,
        doctl=doctl,
        kube=kube,
        helm=helm,
        on_plan=lambda plan, observed: report.render_plan(desired, observed, plan),
    )
    result = orchestrator.run()
    report.render_result(result)
    logger.debug(f"Run summary: {result.summary()}")

    if not result.succeeded:
        raise typer.Exit(code=result.exit_code)
    if not dry_run:
        typer.echo("🎉 GPU cluster setup completed successfully!")
        report.render_cluster_info(desired, version=kube.server_version(), nodes=kube.node_summary())
        report.render_next_steps()


@app.command("status")
def cluster_status(
    create_cluster: bool = typer.Option(False, "--create-cluster", "-c", help="Include cloud resources (VPC, cluster, node pools)"),
    cluster_name: Optional[str] = typer.Option(None, "--cluster-name", "-n", help="Cluster name"),
    region: Optional[str] = typer.Option(None, "--region", "-r", help="DigitalOcean region"),
    custom_vpc: bool = typer.Option(False, "--custom-vpc", "-v", help="Expect a custom VPC"),
    context: Optional[str] = typer.Option(None, "--context", "-g", help="Path to a kubeconfig file"),
    file: Optional[Path] = typer.Option(None, "--file", help="Cluster definition YAML"),
):
    """Show observed state and the actions a setup run would take."""
    try:
        data = load_cluster_file(file) if file else None
        desired = build_desired_state(
            data,
            cluster_name=cluster_name,
            region=region,
            create_cluster=create_cluster,
            custom_vpc=custom_vpc,
        )
        run_config = RunConfig(dry_run=True, kubeconfig=_run_config_kubeconfig(context))
    except DoksctlError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)

    doctl, kube, helm = modules.build_clients(run_config.kubeconfig)
    orchestrator = Orchestrator(desired, run_config, doctl=doctl, kube=kube, helm=helm)
    observed, plan = orchestrator.preview()
    report.render_plan(desired, observed, plan)
