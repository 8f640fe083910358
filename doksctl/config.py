"""Configuration management for the doksctl application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()


class Config:
    """Application configuration with sensible defaults."""

    # External tools
    DOCTL_BIN: str = os.getenv("DOKSCTL_DOCTL", "doctl")
    HELM_BIN: str = os.getenv("DOKSCTL_HELM", "helm")
    KUBECTL_BIN: str = os.getenv("DOKSCTL_KUBECTL", "kubectl")

    # Timeouts (in seconds)
    COMMAND_TIMEOUT: int = int(os.getenv("DOKSCTL_COMMAND_TIMEOUT", "1800"))
    API_TIMEOUT: int = int(os.getenv("DOKSCTL_API_TIMEOUT", "30"))

    # Reconciler budget
    MAX_CYCLES: int = int(os.getenv("DOKSCTL_MAX_CYCLES", "5"))
    BATCH_SIZE: int = int(os.getenv("DOKSCTL_BATCH_SIZE", "4"))

    # NVIDIA device plugin
    PLUGIN_VERSION: str = os.getenv("DOKSCTL_PLUGIN_VERSION", "v0.14.5")

    # Monitoring
    MONITORING_NAMESPACE: str = os.getenv("DOKSCTL_MONITORING_NAMESPACE", "llm-d-monitoring")
    PROMETHEUS_CHART_VERSION: str = os.getenv("DOKSCTL_PROMETHEUS_CHART_VERSION", "62.3.1")

    # LLM-D
    LLMD_NAMESPACE: str = os.getenv("DOKSCTL_LLMD_NAMESPACE", "llm-d")
    QUICKSTART_DIR: str = os.getenv("DOKSCTL_QUICKSTART_DIR", ".")

    # Logging
    LOG_LEVEL: str = os.getenv("DOKSCTL_LOG_LEVEL", "INFO").upper()
    LOG_FILE: str = os.getenv("DOKSCTL_LOG_FILE", "")
    LOG_FORMAT: str = os.getenv(
        "DOKSCTL_LOG_FORMAT",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Security
    REDACT_KEYS: tuple = ("token", "password", "secret", "api_key")

    @classmethod
    def hf_token(cls) -> str:
        """HuggingFace token from the environment, if any."""
        return os.getenv("HF_TOKEN", "")
