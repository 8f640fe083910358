"""Helm package manager access."""
import json
import logging
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..config import Config
from ..utils import run_command

logger = logging.getLogger("doksctl.helm")


def _escape_key(key: str) -> str:
    # dots inside a --set key must be escaped
    return key.replace(".", "\\.")


def flatten_set_values(values: Dict[str, Any], prefix: str = "") -> List[str]:
    """Turn a nested mapping into helm ``--set`` expressions.

    >>> flatten_set_values({"nodeSelector": {"doks.digitalocean.com/gpu-brand": "nvidia"}})
    ['nodeSelector.doks\\\\.digitalocean\\\\.com/gpu-brand=nvidia']
    """
    items = []
    for key, value in values.items():
        path = f"{prefix}.{_escape_key(key)}" if prefix else _escape_key(key)
        if isinstance(value, dict):
            items += flatten_set_values(value, path)
        else:
            items.append(f"{path}={value}")
    return items


class HelmClient:
    """Wrapper around the helm CLI, optionally bound to a kubeconfig."""

    def __init__(self, binary: Optional[str] = None, kubeconfig: Optional[str] = None):
        self.binary = binary or Config.HELM_BIN
        self.kubeconfig = kubeconfig

    def _cmd(self, *args: str) -> List[str]:
        cmd = [self.binary, *args]
        if self.kubeconfig:
            cmd += ["--kubeconfig", self.kubeconfig]
        return cmd

    def repo_add(self, name: str, url: str) -> None:
        run_command(self._cmd("repo", "add", name, url, "--force-update"), capture_output=True)

    def repo_update(self) -> None:
        run_command(self._cmd("repo", "update"), capture_output=True)

    def list_releases(self, namespace: str) -> List[Dict[str, Any]]:
        result = run_command(
            self._cmd("list", "--namespace", namespace, "--all", "--output", "json"),
            capture_output=True,
        )
        return json.loads(result.stdout or "[]") or []

    def get_release(self, name: str, namespace: str) -> Optional[Dict[str, Any]]:
        return next((r for r in self.list_releases(namespace) if r.get("name") == name), None)

    def install(
        self,
        release: str,
        chart: str,
        namespace: str,
        *,
        version: Optional[str] = None,
        set_values: Optional[Dict[str, Any]] = None,
        values_file: Optional[Path] = None,
        upgrade: bool = False,
        create_namespace: bool = False,
        wait: bool = False,
        timeout: str = "300s",
    ) -> None:
        if values_file and not Path(values_file).exists():
            raise FileNotFoundError(f"Missing Helm values file: {values_file}")

        action = ["upgrade", "--install"] if upgrade else ["install"]
        args = [*action, release, chart, "--namespace", namespace]
        if version:
            args += ["--version", version]
        if create_namespace:
            args.append("--create-namespace")
        if values_file:
            args += ["--values", str(values_file)]
        for expr in flatten_set_values(set_values or {}):
            args += ["--set", expr]
        if wait:
            args += ["--wait", "--timeout", timeout]

        logger.info(f"🚀 Installing Helm release '{release}' in namespace '{namespace}'")
        run_command(self._cmd(*args), capture_output=True)
        logger.info(f"✅ Helm release '{release}' installed successfully.")

    def uninstall(self, release: str, namespace: str, ignore_missing: bool = True) -> bool:
        """Uninstall a release. Returns False when it was not installed."""
        try:
            run_command(self._cmd("uninstall", release, "--namespace", namespace), capture_output=True)
        except subprocess.CalledProcessError as e:
            if ignore_missing and "not found" in (e.stderr or "").lower():
                logger.info(f"↪️ Helm release '{release}' not installed")
                return False
            raise
        logger.info(f"🗑️  Helm release '{release}' uninstalled from '{namespace}'")
        return True
