"""Teardown of everything the demo creates, in reverse dependency order."""

import re
from pathlib import Path

from pydantic import BaseModel, Field

from ecs_ambient.clients.aws_client import AWSSessions
from ecs_ambient.clients.istioctl import IstioctlWrapper
from ecs_ambient.clients.kubernetes_client import (
    AUTHORIZATION_POLICY,
    GATEWAY,
    HTTP_ROUTE,
    KubernetesClient,
)
from ecs_ambient.core.config import DemoConfig
from ecs_ambient.core.exceptions import IstioError
from ecs_ambient.core.models import DeletedResource
from ecs_ambient.provisioning import ecs, eks, iam, network
from ecs_ambient.provisioning.mesh import EASTWEST_NAMESPACE, ISTIO_NAMESPACE
from ecs_ambient.testing.progress import progress_file
from ecs_ambient.utils.logging import get_logger
from ecs_ambient.utils.retry import poll_until

logger = get_logger(__name__)

_COMPLETED_STEPS_LINE = re.compile(r"^(export\s+)?COMPLETED_STEPS=.*\n?", re.MULTILINE)


class CleanupResult(BaseModel):
    deleted: list[DeletedResource] = Field(default_factory=list)
    eks_deleted: bool = False


def planned_deletions(config: DemoConfig, delete_eks: bool = False) -> list[str]:
    """What the confirmation prompt lists before anything is deleted."""
    layout = config.layout
    lines = [
        "Istio installation (istiod, ztunnel, east-west gateway + load balancer)",
        "Istio resources (authorization policies, waypoints)",
        f"Kubernetes namespaces (ecs-{config.cluster_name}-*)",
        "EKS test deployments (eks-shell, eks-echo)",
    ]
    lines += [f"ECS cluster: {config.ecs_cluster_name(n)} (local account)" for n in layout.local_clusters]
    lines += [f"ECS cluster: {config.ecs_cluster_name(n)} (external account)" for n in layout.external_clusters]
    lines.append("IAM roles and policies")
    if layout.is_multi_account:
        lines += ["VPC peering connection", "External VPC and all networking resources"]
    if delete_eks:
        lines.append(f"EKS cluster: {config.cluster_name} (and all CloudFormation stacks)")
    return lines


def cleanup_istio_resources(
    config: DemoConfig, k8s: KubernetesClient, istioctl: IstioctlWrapper
) -> list[DeletedResource]:
    """Authorization policies, waypoints and the EKS test pods."""
    deleted = []
    for namespace in config.ecs_namespaces():
        k8s.delete_all_custom_objects(AUTHORIZATION_POLICY, namespace)
        deleted.append(DeletedResource(kind="AuthorizationPolicy", identifier=f"{namespace}/*"))
        try:
            istioctl.waypoint_delete_all(namespace)
        except IstioError as e:
            logger.warning("waypoint_delete_failed", namespace=namespace, error=str(e))

    for name in ("eks-shell", "eks-echo"):
        k8s.delete_deployment(name, "default")
    k8s.delete_service("eks-echo", "default")
    if k8s.namespace_exists("default"):
        k8s.label_namespace("default", {"istio.io/dataplane-mode": None})
    deleted.append(DeletedResource(kind="Deployment", identifier="eks-shell, eks-echo"))
    return deleted


def cleanup_namespaces(config: DemoConfig, k8s: KubernetesClient) -> list[DeletedResource]:
    deleted = []
    for namespace in config.ecs_namespaces():
        if k8s.delete_namespace(namespace):
            deleted.append(DeletedResource(kind="Namespace", identifier=namespace))
    return deleted


def uninstall_istio(k8s: KubernetesClient, istioctl: IstioctlWrapper) -> list[DeletedResource]:
    """Purge Istio and wait for the east-west load balancer service to go.

    The load balancer must be released before the EKS VPC can be deleted.
    """
    if not k8s.namespace_exists(ISTIO_NAMESPACE):
        logger.info("istio_not_installed")
        return []

    deleted = []
    try:
        istioctl.uninstall_purge()
        deleted.append(DeletedResource(kind="Istio installation", identifier="including east-west gateway"))
    except IstioError as e:
        logger.warning("istio_uninstall_failed", error=str(e))

    gone = poll_until(
        lambda: not k8s.service_exists(EASTWEST_NAMESPACE, ISTIO_NAMESPACE),
        timeout=300,
        interval=10,
        description="east-west gateway load balancer deletion",
        raise_on_timeout=False,
    )
    if not gone:
        logger.warning("eastwest_service_delete_timeout")

    for namespace in (ISTIO_NAMESPACE, EASTWEST_NAMESPACE):
        if k8s.delete_namespace(namespace):
            deleted.append(DeletedResource(kind="Namespace", identifier=namespace))

    k8s.delete_all_custom_objects(GATEWAY)
    k8s.delete_all_custom_objects(HTTP_ROUTE)
    logger.info("istio_uninstalled")
    return deleted


def clear_progress(config: DemoConfig, root: Path = Path(".")) -> list[DeletedResource]:
    """Drop COMPLETED_STEPS from the config file and remove the scenario's progress file."""
    path = config.path
    if path is not None and path.exists():
        text = path.read_text()
        cleared = _COMPLETED_STEPS_LINE.sub("", text)
        if cleared != text:
            path.write_text(cleared)

    progress = root / progress_file(config.scenario)
    if not progress.exists():
        return []
    progress.unlink()
    return [DeletedResource(kind="Progress file", identifier=str(progress))]


def run_cleanup(
    config: DemoConfig,
    sessions: AWSSessions,
    k8s: KubernetesClient,
    istioctl: IstioctlWrapper,
    delete_eks: bool = False,
    wait_for_deletion: bool = True,
) -> CleanupResult:
    """Delete the scenario's Kubernetes, Istio, ECS, IAM and network resources.

    Missing resources are skipped; only what was actually removed ends up
    in the result.
    """
    config.require("CLUSTER_NAME", "LOCAL_ACCOUNT_PROFILE", "AWS_REGION")
    layout = config.layout
    result = CleanupResult()
    deleted = result.deleted

    deleted += cleanup_istio_resources(config, k8s, istioctl)
    deleted += cleanup_namespaces(config, k8s)
    deleted += uninstall_istio(k8s, istioctl)

    local = sessions.local
    if layout.local_clusters:
        deleted += ecs.delete_ecs_account(config, local, layout.local_clusters)
        deleted += iam.delete_task_role(local, "local")
        deleted += network.delete_local_ecs_security_group(config, local)

    deleted += iam.delete_istiod_local(config, local)

    if layout.external_clusters:
        external = sessions.external
        deleted += ecs.delete_ecs_account(config, external, layout.external_clusters)
        deleted += iam.delete_task_role(external, "external")
        deleted += iam.delete_istiod_external(external)
        deleted += network.delete_vpc_peerings(config, local, external)
        deleted += network.delete_external_vpc(config, external)

    if delete_eks:
        eks_deleted = eks.delete_eks_cluster(config, local, wait=wait_for_deletion)
        result.eks_deleted = bool(eks_deleted)
        deleted += eks_deleted

    deleted += clear_progress(config)
    logger.info("cleanup_completed", deleted=len(deleted))
    return result
