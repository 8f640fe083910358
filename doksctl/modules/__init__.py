"""
GPU cluster provisioning modules.
"""
from typing import Optional, Tuple

from .doctl import DoctlClient
from .helm import HelmClient
from .kube import KubeClient


def build_clients(kubeconfig: Optional[str] = None) -> Tuple[DoctlClient, KubeClient, HelmClient]:
    """Create the doctl, Kubernetes and helm adapters bound to one kubeconfig."""
    return (
        DoctlClient(kubeconfig=kubeconfig),
        KubeClient(kubeconfig),
        HelmClient(kubeconfig=kubeconfig),
    )


__all__ = [
    'DoctlClient',
    'HelmClient',
    'KubeClient',
    'build_clients',
]
