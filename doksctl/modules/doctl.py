"""DigitalOcean control-plane access through the doctl CLI.

All parsing of doctl output lives here so the probe and executor only deal
with plain dictionaries.
"""
import json
import logging
import os
import subprocess
from typing import Any, Dict, List, Optional

from ..config import Config
from ..errors import AuthenticationError, ResourceNotFoundError
from ..utils import run_command

logger = logging.getLogger("doksctl.doctl")

_NOT_FOUND_MARKERS = ("404", "not found", "could not be found")


def is_not_found(error: subprocess.CalledProcessError) -> bool:
    """Whether a failed doctl call means the resource does not exist."""
    stderr = (error.stderr or "").lower()
    return any(marker in stderr for marker in _NOT_FOUND_MARKERS)


def _first(data: Any) -> Optional[Dict[str, Any]]:
    # doctl prints single objects as one-element lists
    if isinstance(data, list):
        return data[0] if data else None
    return data


class DoctlClient:
    """Thin wrapper around the doctl commands used for cluster provisioning."""

    def __init__(self, binary: Optional[str] = None, kubeconfig: Optional[str] = None):
        self.binary = binary or Config.DOCTL_BIN
        self.kubeconfig = kubeconfig

    def _run(self, *args: str, json_output: bool = True) -> Any:
        cmd = [self.binary, *args]
        if json_output:
            cmd += ["--output", "json"]
        env = None
        if self.kubeconfig:
            # `kubeconfig save` writes to $KUBECONFIG
            env = {**os.environ, "KUBECONFIG": self.kubeconfig}
        result = run_command(cmd, capture_output=True, env=env)
        if not json_output:
            return result.stdout
        return json.loads(result.stdout or "null")

    def _get_or_none(self, *args: str) -> Optional[Dict[str, Any]]:
        try:
            return _first(self._run(*args))
        except subprocess.CalledProcessError as e:
            if is_not_found(e):
                return None
            raise

    # Account

    def check_auth(self) -> Dict[str, Any]:
        """Return the authenticated account or raise AuthenticationError."""
        try:
            account = _first(self._run("account", "get"))
        except subprocess.CalledProcessError as e:
            raise AuthenticationError(
                "doctl is not authenticated. Please run: doctl auth init"
            ) from e
        except ValueError as e:
            raise AuthenticationError(f"Unexpected output from doctl account get: {e}") from e
        logger.info("✅ doctl authentication verified")
        return account or {}

    # VPCs

    def list_vpcs(self) -> List[Dict[str, Any]]:
        return self._run("vpcs", "list") or []

    def find_vpc(self, name: str) -> Optional[Dict[str, Any]]:
        return next((v for v in self.list_vpcs() if v.get("name") == name), None)

    def create_vpc(self, name: str, region: str, ip_range: str) -> Dict[str, Any]:
        logger.info(f"🚀 Creating custom VPC: {name} in region {region}")
        return _first(self._run(
            "vpcs", "create",
            "--name", name,
            "--region", region,
            "--ip-range", ip_range,
        )) or {}

    # Clusters

    def get_cluster(self, name: str) -> Optional[Dict[str, Any]]:
        return self._get_or_none("kubernetes", "cluster", "get", name)

    def latest_kubernetes_version(self) -> str:
        versions = self._run("kubernetes", "options", "versions") or []
        if not versions:
            raise ResourceNotFoundError("doctl returned no Kubernetes version options")
        return versions[0]["slug"]

    def create_cluster(
        self,
        name: str,
        region: str,
        version: str,
        node_pool: str,
        vpc_uuid: Optional[str] = None,
    ) -> Dict[str, Any]:
        args = [
            "kubernetes", "cluster", "create", name,
            "--region", region,
            "--version", version,
            "--node-pool", node_pool,
            "--wait",
        ]
        if vpc_uuid:
            args += ["--vpc-uuid", vpc_uuid]
        return _first(self._run(*args)) or {}

    def save_kubeconfig(self, name: str) -> None:
        self._run("kubernetes", "cluster", "kubeconfig", "save", name, json_output=False)
        logger.info(f"✅ Kubeconfig updated for cluster {name}")

    # Node pools

    def get_node_pool(self, cluster: str, pool: str) -> Optional[Dict[str, Any]]:
        return self._get_or_none("kubernetes", "cluster", "node-pool", "get", cluster, pool)

    def create_node_pool(self, cluster: str, name: str, size: str, count: int) -> Dict[str, Any]:
        return _first(self._run(
            "kubernetes", "cluster", "node-pool", "create", cluster,
            "--name", name,
            "--size", size,
            "--count", str(count),
        )) or {}


def node_pool_spec(name: str, size: str, count: int) -> str:
    """Format a --node-pool argument for `doctl kubernetes cluster create`."""
    return f"name={name};size={size};count={count};auto-scale=false"
