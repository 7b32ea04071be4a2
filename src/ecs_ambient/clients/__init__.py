"""Clients for AWS, Kubernetes and the external command-line tools."""

from ecs_ambient.clients.aws_client import AWSClient, AWSSessions
from ecs_ambient.clients.istioctl import IstioctlWrapper
from ecs_ambient.clients.kubernetes_client import KubernetesClient

__all__ = [
    "AWSClient",
    "AWSSessions",
    "IstioctlWrapper",
    "KubernetesClient",
]
