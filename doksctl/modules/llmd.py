"""LLM-D deployment through the quickstart installer script."""
import logging
import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ..config import Config
from ..errors import (
    ActionFailedError,
    ClusterUnreachableError,
    ConfigurationError,
    ConvergenceError,
    ResourceNotFoundError,
)
from ..utils import poll_until, redact_sensitive_data, require_commands, run_command
from .kube import KubeClient
from .monitoring import MonitoringStack

logger = logging.getLogger("doksctl.llmd")

GPU_CONFIGS_DIR = Path(__file__).resolve().parent.parent / "gpu_configs"
INSTALLER = "llmd-installer.sh"


@dataclass(frozen=True)
class GpuProfile:
    name: str
    description: str
    vram_gb: int

    @property
    def values_file(self) -> Path:
        return GPU_CONFIGS_DIR / f"{self.name}-values.yaml"


GPU_PROFILES: Dict[str, GpuProfile] = {
    p.name: p for p in (
        GpuProfile("rtx-4000-ada", "NVIDIA RTX 4000 Ada", 20),
        GpuProfile("rtx-6000-ada", "NVIDIA RTX 6000 Ada", 48),
        GpuProfile("l40s", "NVIDIA L40S", 48),
    )
}


def get_profile(gpu_type: str) -> GpuProfile:
    """Look up a GPU profile and make sure its values file is bundled."""
    profile = GPU_PROFILES.get(gpu_type)
    if profile is None:
        raise ConfigurationError(
            f"Invalid GPU type: {gpu_type}. Supported types: {', '.join(GPU_PROFILES)}"
        )
    if not profile.values_file.is_file():
        raise ConfigurationError(f"Configuration file not found: {profile.values_file}")
    return profile


def resolve_token(token: Optional[str]) -> str:
    token = token or Config.hf_token()
    if not token:
        raise ConfigurationError(
            "HuggingFace token is required. Use -t or set HF_TOKEN environment variable"
        )
    return token


class LlmdDeployer:
    """Drives llmd-installer.sh and waits for the resulting workload."""

    def __init__(
        self,
        kube: KubeClient,
        quickstart_dir: Optional[str] = None,
        namespace: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.kube = kube
        self.quickstart_dir = Path(quickstart_dir or Config.QUICKSTART_DIR).expanduser().resolve()
        self.namespace = namespace or Config.LLMD_NAMESPACE
        self.sleep = sleep

    @property
    def installer(self) -> Path:
        return self.quickstart_dir / INSTALLER

    def check_prerequisites(self) -> None:
        logger.info("Checking prerequisites...")
        require_commands([Config.KUBECTL_BIN, Config.HELM_BIN])
        if not self.kube.is_reachable():
            raise ClusterUnreachableError("Cannot connect to Kubernetes cluster")
        if not self.quickstart_dir.is_dir():
            raise ResourceNotFoundError(f"Quickstart directory not found: {self.quickstart_dir}")
        if not self.installer.is_file():
            raise ResourceNotFoundError(f"{INSTALLER} not found in: {self.quickstart_dir}")
        logger.info("✅ Prerequisites check passed")

    def install(
        self,
        gpu_type: str,
        token: str,
        monitoring: Optional[MonitoringStack] = None,
    ) -> Dict[str, Any]:
        profile = get_profile(gpu_type)
        logger.info("Deployment configuration:")
        settings = {
            'gpu_type': profile.name,
            'monitoring': monitoring is not None,
            'config': str(profile.values_file),
            'hf_token': token,
        }
        for key, value in redact_sensitive_data(settings).items():
            logger.info(f"  {key}: {value}")

        logger.info(f"🚀 Installing LLM-D with GPU configuration: {profile.name}")
        try:
            run_command(
                [str(self.installer), "-f", str(profile.values_file)],
                cwd=self.quickstart_dir,
                env={**os.environ, "HF_TOKEN": token},
            )
        except subprocess.CalledProcessError as e:
            raise ActionFailedError(f"LLM-D installation failed (exit code: {e.returncode})") from e
        logger.info("✅ LLM-D installed successfully")

        self.wait_for_deployment()

        if monitoring is not None:
            monitoring.install()

        return self.status()

    def wait_for_deployment(self) -> None:
        logger.info("⏳ Waiting for LLM-D deployment to be ready...")
        found = poll_until(
            lambda: self.kube.namespace_phase(self.namespace) is not None,
            2,
            150,
            description=f"namespace {self.namespace}",
            sleep=self.sleep,
        )
        if not found:
            raise ConvergenceError(f"Timeout waiting for {self.namespace} namespace")

        logger.info("Waiting for pods to be ready (this may take several minutes)...")
        try:
            run_command(
                [
                    Config.KUBECTL_BIN, "wait", "--for=condition=available", "deployment",
                    "--all", "-n", self.namespace, "--timeout=900s",
                ],
                capture_output=True,
            )
        except subprocess.CalledProcessError as e:
            raise ConvergenceError(
                f"LLM-D deployments in {self.namespace} did not become available"
            ) from e
        logger.info("✅ LLM-D deployment is ready")

    def status(self) -> Dict[str, Any]:
        return {
            'pods': self.kube.pod_summary(self.namespace),
            'services': self.kube.service_summary(self.namespace),
        }

    def uninstall(self, monitoring: Optional[MonitoringStack] = None) -> bool:
        """Remove LLM-D (and the monitoring stack). Returns False if the installer reported problems."""
        logger.info("🗑️  Uninstalling LLM-D...")
        clean = True
        try:
            run_command([str(self.installer), "-u"], cwd=self.quickstart_dir)
            logger.info("✅ LLM-D uninstalled successfully")
        except subprocess.CalledProcessError:
            logger.warning("⚠️  LLM-D uninstall had some issues")
            clean = False

        if monitoring is not None:
            monitoring.uninstall()
        return clean
