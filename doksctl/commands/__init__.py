from . import cluster, deploy, monitoring

__all__ = ['cluster', 'deploy', 'monitoring']
