"""doksctl - GPU cluster automation for DigitalOcean Kubernetes."""

__version__ = "0.1.0"
