"""EKS + AKS multicloud mesh: shared root CA, per-cluster Istio and remote secrets."""

from pathlib import Path
from typing import Any

from ecs_ambient.clients.aws_client import AWSClient
from ecs_ambient.clients.cli_runner import AwsCli, AzureCli, kubectl_apply_manifest, openssl
from ecs_ambient.clients.istioctl import IstioctlWrapper
from ecs_ambient.clients.kubernetes_client import GATEWAY, KubernetesClient
from ecs_ambient.core.config import DemoConfig
from ecs_ambient.provisioning import manifests
from ecs_ambient.provisioning.mesh import ISTIO_NAMESPACE, NETWORK_LABEL, apply_gateway_api_crds, install_istio
from ecs_ambient.utils.logging import get_logger
from ecs_ambient.utils.retry import pause

logger = get_logger(__name__)

EKS_MESH_CLUSTER = "eks-cluster"
AKS_MESH_CLUSTER = "aks-cluster"
AKS_NAMESPACE = "app-a"
CERTS_DIR = Path("certs")


def cloud_login(config: DemoConfig, aws: AWSClient, az: AzureCli | None = None) -> None:
    """Log in to AWS SSO and Azure unless already logged in, then select the subscription.

    Raises:
        CommandError: If a login fails
    """
    if aws.has_valid_credentials():
        logger.info("aws_already_logged_in", profile=aws.profile)
    else:
        AwsCli(config.aws_region).sso_login(config.local_profile)

    az = az or AzureCli()
    if az.is_logged_in():
        logger.info("azure_already_logged_in")
    else:
        az.login()
    az.set_subscription(config.azure_subscription)


def _intermediate_ca(name: str, label: str, serial: int, certs_dir: Path) -> None:
    openssl(
        [
            "req", "-newkey", "rsa:4096", "-sha256", "-nodes",
            "-subj", f"/O=Istio/CN=Intermediate CA {label}",
            "-keyout", f"{name}-ca-key.pem", "-out", f"{name}-ca-csr.pem",
        ],
        cwd=certs_dir,
    )  # fmt: skip
    openssl(
        [
            "x509", "-req", "-sha256", "-days", "1825",
            "-CA", "root-cert.pem", "-CAkey", "root-key.pem",
            "-set_serial", str(serial),
            "-in", f"{name}-ca-csr.pem", "-out", f"{name}-ca-cert.pem",
        ],
        cwd=certs_dir,
    )  # fmt: skip
    chain = (certs_dir / f"{name}-ca-cert.pem").read_text() + (certs_dir / "root-cert.pem").read_text()
    (certs_dir / f"{name}-cert-chain.pem").write_text(chain)


def create_shared_certificates(certs_dir: Path = CERTS_DIR) -> bool:
    """Root CA plus one intermediate CA per cluster so both meshes share trust.

    Returns:
        False if the certificates already existed
    """
    if (certs_dir / "root-cert.pem").exists():
        logger.info("certificates_exist", path=str(certs_dir))
        return False

    certs_dir.mkdir(parents=True, exist_ok=True)
    openssl(
        [
            "req", "-x509", "-sha256", "-nodes", "-days", "3650", "-newkey", "rsa:4096",
            "-subj", "/O=Istio/CN=Root CA",
            "-keyout", "root-key.pem", "-out", "root-cert.pem",
        ],
        cwd=certs_dir,
    )  # fmt: skip
    _intermediate_ca("eks", "EKS", 1, certs_dir)
    _intermediate_ca("aks", "AKS", 2, certs_dir)
    logger.info("certificates_created", path=str(certs_dir))
    return True


def ca_secret_data(name: str, certs_dir: Path = CERTS_DIR) -> dict[str, str]:
    """``cacerts`` secret contents for the ``eks`` or ``aks`` intermediate."""
    files = {
        "ca-cert.pem": f"{name}-ca-cert.pem",
        "ca-key.pem": f"{name}-ca-key.pem",
        "root-cert.pem": "root-cert.pem",
        "cert-chain.pem": f"{name}-cert-chain.pem",
    }
    return {key: (certs_dir / filename).read_text() for key, filename in files.items()}


def install_ca_secrets(
    config: DemoConfig,
    eks: KubernetesClient,
    aks: KubernetesClient,
    certs_dir: Path = CERTS_DIR,
) -> None:
    """Plug the intermediate CAs into istio-system and label each cluster's network."""
    for name, k8s, network in (("eks", eks, config.eks_network), ("aks", aks, config.aks_network)):
        k8s.ensure_namespace(ISTIO_NAMESPACE)
        k8s.apply_secret(ISTIO_NAMESPACE, "cacerts", ca_secret_data(name, certs_dir))
        k8s.label_namespace(ISTIO_NAMESPACE, {NETWORK_LABEL: network})
        logger.info("ca_secret_installed", cluster=name, network=network)


def apply_eastwest_gateway_resource(k8s: KubernetesClient, network: str) -> None:
    """Apply the east-west Gateway and wait for istiod to be Ready."""
    k8s.apply_custom_object(GATEWAY, manifests.eastwest_gateway(network))
    pause(10, "east-west gateway to be programmed")
    k8s.wait_for_pods_ready(ISTIO_NAMESPACE, "app=istiod", timeout=120)


def install_istio_eks(config: DemoConfig, k8s: KubernetesClient, istioctl: IstioctlWrapper) -> None:
    install_istio(config, k8s, istioctl, cluster_name=EKS_MESH_CLUSTER, network=config.eks_network)
    apply_eastwest_gateway_resource(k8s, config.eks_network)


def install_istio_aks(config: DemoConfig, k8s: KubernetesClient, istioctl: IstioctlWrapper) -> None:
    """Install the AKS control plane (no ECS discovery) with the same mesh ID."""
    istioctl.check_solo_build()
    if k8s.get_deployment("istiod", ISTIO_NAMESPACE) is not None:
        logger.info("istio_already_installed", context=k8s.context)
    else:
        istioctl.install(manifests.remote_istio_operator(config.mesh_id, AKS_MESH_CLUSTER, config.aks_network))
    apply_eastwest_gateway_resource(k8s, config.aks_network)


def connect_clusters(config: DemoConfig, istioctl: IstioctlWrapper) -> None:
    """Exchange remote secrets so each istiod discovers the other cluster's endpoints."""
    istioctl.check_solo_build()
    aks_secret = istioctl.with_context(config.ctx_aks).create_remote_secret(AKS_MESH_CLUSTER)
    kubectl_apply_manifest(aks_secret, context=config.ctx_eks)

    eks_secret = istioctl.with_context(config.ctx_eks).create_remote_secret(EKS_MESH_CLUSTER)
    kubectl_apply_manifest(eks_secret, context=config.ctx_aks)

    pause(30, "cross-cluster discovery to propagate")
    logger.info("clusters_connected", eks=config.ctx_eks, aks=config.ctx_aks)


def apply_workloads(k8s: KubernetesClient, objects: list[dict[str, Any]]) -> None:
    """Apply Deployment and Service manifests."""
    for body in objects:
        if body["kind"] == "Deployment":
            k8s.apply_deployment(body)
        else:
            k8s.apply_service(body)


def deploy_aks_workloads(k8s: KubernetesClient, namespace: str = AKS_NAMESPACE) -> None:
    """echo-service and a curl shell in an ambient namespace on AKS."""
    k8s.ensure_namespace(namespace, labels=manifests.AMBIENT_LABEL)
    apply_workloads(k8s, manifests.aks_workloads(namespace))
    k8s.wait_for_pods_ready(namespace, "app=echo-service", timeout=120)
    k8s.wait_for_pods_ready(namespace, "app=shell", timeout=120)
    logger.info("aks_workloads_deployed", namespace=namespace)


def install_gateway_api_crds(config: DemoConfig) -> None:
    for context in (config.ctx_eks, config.ctx_aks):
        apply_gateway_api_crds(context)
