"""Istio control plane and mesh membership for the ECS workloads.

Covers the Istio install, the east-west gateway ECS tasks use to reach
istiod, the per-cluster namespaces and the ``istioctl ecs add-service``
registrations.
"""

from ecs_ambient.clients.cli_runner import GATEWAY_API_CRDS_URL, kubectl_apply_url
from ecs_ambient.clients.istioctl import IstioctlWrapper
from ecs_ambient.clients.kubernetes_client import KubernetesClient
from ecs_ambient.core.config import DemoConfig
from ecs_ambient.core.exceptions import ConfigurationError, IstioError, KubernetesError, WaitTimeoutError
from ecs_ambient.core.models import ECS_SERVICES
from ecs_ambient.provisioning import iam, manifests
from ecs_ambient.utils.logging import get_logger
from ecs_ambient.utils.retry import pause, poll_until

logger = get_logger(__name__)

ISTIO_NAMESPACE = "istio-system"
EASTWEST_NAMESPACE = "istio-eastwest"
NETWORK_LABEL = "topology.istio.io/network"
ROLE_ARN_ANNOTATION = "ecs.solo.io/role-arn"


def istio_installed(k8s: KubernetesClient) -> bool:
    return k8s.get_deployment("istiod", ISTIO_NAMESPACE) is not None


def ecs_accounts(config: DemoConfig) -> list[dict[str, str]]:
    """``platforms.ecs.accounts`` for the scenario.

    The cross-account scenario uses LOCAL_ROLE/EXTERNAL_ROLE from
    ``setup-infra``, falling back to the conventional role names.
    """
    local_role = iam.role_arn(config.local_account, iam.ISTIOD_LOCAL_ROLE)
    if not config.layout.is_multi_account:
        return [manifests.ecs_account(local_role, "ecs.local")]

    return [
        manifests.ecs_account(config.local_role or local_role, "ecs.local"),
        manifests.ecs_account(
            config.external_role or iam.role_arn(config.external_account, iam.ISTIOD_EXTERNAL_ROLE),
            "ecs.external",
        ),
    ]


def install_istio(
    config: DemoConfig,
    k8s: KubernetesClient,
    istioctl: IstioctlWrapper,
    cluster_name: str | None = None,
    network: str = "eks",
) -> bool:
    """Install Istio ambient with ECS discovery unless istiod already runs.

    Args:
        config: Demo configuration
        k8s: Client for the target cluster
        istioctl: istioctl bound to the same context
        cluster_name: Multicluster name (multicloud only)
        network: Mesh network of the cluster

    Returns:
        True if an install was performed
    """
    istioctl.check_solo_build(config.istio_tag)
    if istio_installed(k8s):
        logger.info("istio_already_installed", context=k8s.context)
        return False

    operator = manifests.istio_operator(config, ecs_accounts(config), network=network, cluster_name=cluster_name)
    istioctl.install(operator)
    return True


def apply_gateway_api_crds(context: str | None = None) -> None:
    kubectl_apply_url(GATEWAY_API_CRDS_URL, context=context)


def deploy_eastwest_gateway(k8s: KubernetesClient, istioctl: IstioctlWrapper, config: DemoConfig) -> str:
    """Expose istiod through an east-west gateway load balancer.

    Returns:
        The gateway's load balancer hostname or IP

    Raises:
        IstioError: If no address is assigned within three minutes
    """
    istioctl.check_solo_build(config.istio_tag)

    address = k8s.get_service_address(EASTWEST_NAMESPACE, EASTWEST_NAMESPACE)
    if address:
        logger.info("eastwest_gateway_exists", address=address)
        return address

    k8s.ensure_namespace(EASTWEST_NAMESPACE)
    istioctl.multicluster_expose(EASTWEST_NAMESPACE)

    try:
        address = poll_until(
            lambda: k8s.first_service_address(EASTWEST_NAMESPACE),
            timeout=180,
            interval=10,
            description="east-west gateway address",
        )
    except WaitTimeoutError as e:
        raise IstioError(
            "East-West Gateway did not get an address within 180s. "
            "Check gateway status: kubectl get svc -n istio-eastwest. "
            "Common issue: AWS CLB quota exceeded - check with: aws elb describe-load-balancers"
        ) from e

    logger.info("eastwest_gateway_ready", address=address)
    return address


def label_network(k8s: KubernetesClient, network: str = "eks") -> None:
    k8s.label_namespace(ISTIO_NAMESPACE, {NETWORK_LABEL: network})


def verify_istio(k8s: KubernetesClient) -> int:
    """Wait for istiod and ztunnel to be Ready.

    Returns:
        Number of pods in istio-system

    Raises:
        KubernetesError: If fewer than two Istio pods are running
    """
    k8s.wait_for_pods_ready(ISTIO_NAMESPACE, "app=istiod", timeout=120)
    k8s.wait_for_pods_ready(ISTIO_NAMESPACE, "app=ztunnel", timeout=120)

    count = len(k8s.list_pods(ISTIO_NAMESPACE))
    if count < 2:
        raise KubernetesError(f"Expected at least 2 Istio pods, found {count}")
    logger.info("istio_verified", pods=count)
    return count


def create_namespaces(config: DemoConfig, k8s: KubernetesClient) -> list[str]:
    """Ambient namespaces and workload-identity service accounts per ECS cluster.

    Raises:
        ConfigurationError: If a task role needed for the scenario is unset
    """
    config.require("CLUSTER_NAME")
    namespaces = []
    for target in config.account_targets():
        if not target.task_role_arn:
            var = "EXTERNAL_TASK_ROLE_ARN" if target.is_external else "LOCAL_TASK_ROLE_ARN"
            raise ConfigurationError(f"Required variable {var} is not set in config file")

        for number in target.clusters:
            namespace = config.ecs_cluster_name(number)
            k8s.ensure_namespace(namespace, labels=manifests.AMBIENT_LABEL)
            k8s.ensure_service_account(
                namespace,
                target.service_account,
                annotations={ROLE_ARN_ANNOTATION: target.task_role_arn},
            )
            logger.info("ecs_namespace_ready", namespace=namespace, service_account=target.service_account)
            namespaces.append(namespace)
    return namespaces


def service_hostnames(config: DemoConfig) -> list[str]:
    """Mesh DNS names (``<service>.<namespace>.<domain>:<port>``) of every ECS service."""
    names = []
    for target in config.account_targets():
        for number in target.clusters:
            namespace = config.ecs_cluster_name(number)
            for spec in ECS_SERVICES:
                names.append(f"{spec.name}.{namespace}.{target.mesh_domain}:{spec.port}")
    return names


def add_services_to_mesh(config: DemoConfig, istioctl: IstioctlWrapper) -> list[str]:
    """Register each ECS service with istiod.

    A failed registration is logged and the remaining services are still
    added.

    Returns:
        ``cluster/service`` pairs that failed to register
    """
    required = ["CLUSTER_NAME", "LOCAL_ACCOUNT_PROFILE", "LOCAL_ECS_SERVICE_ACCOUNT_NAME"]
    if config.layout.is_multi_account:
        required += ["EXTERNAL_ACCOUNT_PROFILE", "EXTERNAL_ECS_SERVICE_ACCOUNT_NAME"]
    config.require(*required)
    istioctl.check_solo_build()

    failed = []
    for target in config.account_targets():
        for number in target.clusters:
            cluster = config.ecs_cluster_name(number)
            for spec in ECS_SERVICES:
                try:
                    istioctl.ecs_add_service(
                        spec.name,
                        cluster=cluster,
                        namespace=cluster,
                        service_account=target.service_account,
                        profile=target.profile,
                    )
                    logger.info("ecs_service_added_to_mesh", cluster=cluster, service=spec.name)
                except IstioError as e:
                    logger.warning("add_service_failed", cluster=cluster, service=spec.name, error=str(e))
                    failed.append(f"{cluster}/{spec.name}")
            pause(10, f"services in {cluster} to register")
    return failed
