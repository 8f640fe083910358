"""Exception hierarchy for doksctl.

Fatal errors abort the whole run with a non-zero exit code. Everything else
is either reported as a warning or retried by re-running the tool.
"""


class DoksctlError(Exception):
    """Base class for all doksctl errors."""
    pass


class ConfigurationError(DoksctlError):
    """Invalid user input or cluster definition file."""
    pass


class FatalError(DoksctlError):
    """An error that must abort the run immediately."""
    pass


class MissingDependencyError(FatalError):
    """A required CLI tool is not installed or not on PATH."""

    def __init__(self, command: str):
        self.command = command
        super().__init__(f"Required command not found: {command}")


class AuthenticationError(FatalError):
    """The cloud CLI has no usable credentials."""
    pass


class ClusterUnreachableError(FatalError):
    """The Kubernetes API did not answer."""
    pass


class NoGpuNodesError(FatalError):
    """No node matched any GPU selector."""
    pass


class NoGpuResourcesError(FatalError):
    """GPU nodes exist but none exposes nvidia.com/gpu capacity."""
    pass


class ResourceNotFoundError(FatalError):
    """An explicitly named resource (e.g. a custom VPC) does not exist."""
    pass


class ConvergenceError(FatalError):
    """A wait ran out of attempts under a fatal retry policy."""
    pass


class ActionFailedError(FatalError):
    """A mutating command issued for a planned action failed."""
    pass
