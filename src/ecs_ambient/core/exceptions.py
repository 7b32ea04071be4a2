"""Custom exceptions for ecs-ambient."""


class DemoError(Exception):
    """Base exception for all ecs-ambient errors."""


class ConfigurationError(DemoError):
    """Configuration-related errors."""


class AWSError(DemoError):
    """AWS operation failed."""


class KubernetesError(DemoError):
    """Kubernetes operation failed."""


class IstioError(DemoError):
    """Istio operation failed."""


class CommandError(DemoError):
    """External command (eksctl, az, openssl, kubectl, aws) failed."""


class ResourceConflictError(DemoError):
    """An existing cloud resource conflicts with the requested one."""


class WaitTimeoutError(DemoError):
    """Timed out waiting for a resource to reach the desired state."""


class StepError(DemoError):
    """A workflow step failed."""

    def __init__(self, step: str, message: str):
        super().__init__(message)
        self.step = step
