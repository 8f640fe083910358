import os
from pathlib import Path
from typing import Optional

from kubernetes import config


def resolve_kubeconfig(path: Optional[str] = None) -> Optional[str]:
    """
    Resolve an explicit kubeconfig path override.
    Returns None when no override was given so the client falls back to
    KUBECONFIG / ~/.kube/config.
    """
    if not path:
        return None
    resolved = Path(os.path.expanduser(path)).resolve()
    if not resolved.exists():
        raise FileNotFoundError(f"Kubeconfig not found: {resolved}")
    return str(resolved)


def load_kubeconfig(path: Optional[str] = None) -> Optional[str]:
    """
    Load the kubeconfig from a given path, the KUBECONFIG_CONTENT env var, or
    the default client configuration. Returns the path used, if any.
    """
    # CI/CD secret-based loading
    if "KUBECONFIG_CONTENT" in os.environ and not path:
        temp_path = "/tmp/ci-kubeconfig.yaml"
        with open(temp_path, "w") as f:
            f.write(os.environ["KUBECONFIG_CONTENT"])
        config.load_kube_config(config_file=temp_path)
        return temp_path

    resolved = resolve_kubeconfig(path)
    config.load_kube_config(config_file=resolved)
    return resolved
