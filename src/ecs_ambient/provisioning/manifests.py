"""Documents sent to AWS, eksctl, istioctl and Kubernetes.

Everything here is a pure function returning a dict, so the provisioning
modules stay focused on ordering and idempotency.
"""

from typing import Any

from ecs_ambient.core.config import DemoConfig
from ecs_ambient.core.models import ECHO_SERVICE, EcsServiceSpec

POLICY_VERSION = "2012-10-17"
ASSUME_ACTIONS = ["sts:AssumeRole", "sts:TagSession"]

ECS_LOG_GROUP = "/ecs/ecs-demo"
ECHO_IMAGE = "public.ecr.aws/j8r2p7b6/echo-server:latest"
CURL_IMAGE = "curlimages/curl:latest"
SHELL_IMAGE = "public.ecr.aws/docker/library/nginx:alpine"

AMBIENT_LABEL = {"istio.io/dataplane-mode": "ambient"}
PILOT_ENV = {
    "PILOT_ENABLE_IP_AUTOALLOCATE": "true",
    "PILOT_ENABLE_ALPHA_GATEWAY_API": "true",
}


# IAM


def service_trust_policy(service: str, actions: list[str] | str = ASSUME_ACTIONS) -> dict[str, Any]:
    """Trust policy letting an AWS service principal assume a role."""
    return {
        "Version": POLICY_VERSION,
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Service": service},
                "Action": actions,
            }
        ],
    }


def role_trust_policy(role_arn: str) -> dict[str, Any]:
    """Trust policy letting another role assume (and tag) a role."""
    return {
        "Version": POLICY_VERSION,
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"AWS": role_arn},
                "Action": ASSUME_ACTIONS,
            }
        ],
    }


def assume_roles_policy(role_arns: list[str]) -> dict[str, Any]:
    """Permission policy allowing sts:AssumeRole on each role, one statement per role."""
    return {
        "Version": POLICY_VERSION,
        "Statement": [
            {"Effect": "Allow", "Action": ASSUME_ACTIONS, "Resource": [arn]} for arn in role_arns
        ],
    }


def task_policy() -> dict[str, Any]:
    """Policy for ECS tasks: ECS Exec channels and CloudWatch logs."""
    return {
        "Version": POLICY_VERSION,
        "Statement": [
            {
                "Effect": "Allow",
                "Action": [
                    "ssmmessages:CreateControlChannel",
                    "ssmmessages:CreateDataChannel",
                    "ssmmessages:OpenControlChannel",
                    "ssmmessages:OpenDataChannel",
                ],
                "Resource": "*",
            },
            {
                "Effect": "Allow",
                "Action": [
                    "logs:CreateLogGroup",
                    "logs:CreateLogStream",
                    "logs:DescribeLogStreams",
                    "logs:PutLogEvents",
                ],
                "Resource": "*",
            },
        ],
    }


# ECS


def _container(spec: EcsServiceSpec) -> dict[str, Any]:
    if spec.name == ECHO_SERVICE.name:
        return {
            "name": spec.container_name,
            "image": ECHO_IMAGE,
            "essential": True,
            "portMappings": [{"containerPort": spec.port, "protocol": "tcp", "name": "http"}],
            "environment": [{"name": "PORT", "value": str(spec.port)}],
        }
    return {
        "name": spec.container_name,
        "image": SHELL_IMAGE,
        "essential": True,
        "portMappings": [{"containerPort": spec.port, "protocol": "tcp", "name": "http"}],
        "linuxParameters": {"initProcessEnabled": True},
    }


def task_definition(
    spec: EcsServiceSpec,
    task_role_arn: str,
    service_account: str,
    region: str,
) -> dict[str, Any]:
    """``register_task_definition`` arguments for one demo service.

    The task role doubles as the execution role, and the
    ``ecs.solo.io/service-account`` tag tells istiod which Kubernetes service
    account the task's workload identity maps to.
    """
    container = _container(spec)
    container["logConfiguration"] = {
        "logDriver": "awslogs",
        "options": {
            "awslogs-group": ECS_LOG_GROUP,
            "awslogs-region": region,
            "awslogs-stream-prefix": spec.log_prefix,
        },
    }
    return {
        "family": spec.family,
        "taskRoleArn": task_role_arn,
        "executionRoleArn": task_role_arn,
        "networkMode": "awsvpc",
        "requiresCompatibilities": ["FARGATE"],
        "cpu": "256",
        "memory": "512",
        "containerDefinitions": [container],
        "tags": [
            {"key": "ecs.solo.io/service-account", "value": service_account},
            {"key": "environment", "value": "ecs-demo"},
        ],
    }


def network_configuration(subnets: list[str], security_group: str) -> dict[str, Any]:
    return {
        "awsvpcConfiguration": {
            "subnets": subnets,
            "securityGroups": [security_group],
            "assignPublicIp": "ENABLED",
        }
    }


# EKS


def eks_cluster_config(config: DemoConfig) -> dict[str, Any]:
    """eksctl ClusterConfig for the demo EKS cluster."""
    tags = {"owner": config.owner_name} if config.owner_name else {}
    return {
        "apiVersion": "eksctl.io/v1alpha5",
        "kind": "ClusterConfig",
        "metadata": {"name": config.cluster_name, "region": config.aws_region, "tags": tags},
        "iam": {
            "withOIDC": True,
            "podIdentityAssociations": [
                {
                    "namespace": "istio-system",
                    "serviceAccountName": "istiod",
                    "roleName": config.pod_identity_role_name,
                    "permissionPolicyARNs": ["arn:aws:iam::aws:policy/AmazonECS_FullAccess"],
                }
            ],
        },
        "managedNodeGroups": [
            {
                "name": "managed-nodes",
                "instanceType": config.node_type,
                "desiredCapacity": config.number_nodes,
                "minSize": config.number_nodes,
                "maxSize": config.number_nodes,
            }
        ],
        "addons": [{"name": "vpc-cni"}, {"name": "eks-pod-identity-agent"}],
    }


# Istio


def ecs_account(role_arn: str, domain: str) -> dict[str, str]:
    return {"role": role_arn, "domain": domain}


def istio_operator(
    config: DemoConfig,
    ecs_accounts: list[dict[str, str]],
    network: str = "eks",
    cluster_name: str | None = None,
) -> dict[str, Any]:
    """IstioOperator for the EKS control plane with ECS discovery.

    Args:
        config: Demo configuration (HUB, ISTIO_TAG, license, MESH_ID)
        ecs_accounts: ``platforms.ecs.accounts`` entries
        network: Mesh network name of the cluster
        cluster_name: Multicluster name; set for the multicloud scenario
    """
    global_values: dict[str, Any] = {"hub": config.hub, "tag": config.istio_tag}
    if cluster_name:
        global_values["meshID"] = config.mesh_id
        global_values["multiCluster"] = {"clusterName": cluster_name}
    global_values["network"] = network

    return {
        "apiVersion": "install.istio.io/v1alpha1",
        "kind": "IstioOperator",
        "spec": {
            "profile": "ambient",
            "meshConfig": {"accessLogFile": "/dev/stdout"},
            "values": {
                "global": global_values,
                "license": {"value": config.gloo_mesh_license_key},
                "cni": {"ambient": {"dnsCapture": True}},
                "platforms": {"ecs": {"accounts": ecs_accounts}},
                "pilot": {"env": {**PILOT_ENV, "REQUIRE_3P_TOKEN": "false"}},
            },
        },
    }


def remote_istio_operator(mesh_id: str, cluster_name: str, network: str) -> dict[str, Any]:
    """IstioOperator for a cluster without ECS workloads (the AKS side)."""
    return {
        "apiVersion": "install.istio.io/v1alpha1",
        "kind": "IstioOperator",
        "spec": {
            "profile": "ambient",
            "meshConfig": {"accessLogFile": "/dev/stdout"},
            "values": {
                "global": {
                    "meshID": mesh_id,
                    "multiCluster": {"clusterName": cluster_name},
                    "network": network,
                },
                "pilot": {"env": dict(PILOT_ENV)},
            },
        },
    }


def eastwest_gateway(network: str) -> dict[str, Any]:
    """Gateway exposing HBONE (15008) and istiod xDS (15012) to other networks."""
    return {
        "apiVersion": "gateway.networking.k8s.io/v1",
        "kind": "Gateway",
        "metadata": {
            "name": "eastwest",
            "namespace": "istio-system",
            "labels": {
                "istio.io/expose-istiod": "15012",
                "topology.istio.io/network": network,
            },
        },
        "spec": {
            "gatewayClassName": "istio-eastwest",
            "listeners": [
                {
                    "name": "cross-network",
                    "port": 15008,
                    "protocol": "HBONE",
                    "tls": {"mode": "Passthrough"},
                },
                {
                    "name": "xds-tls",
                    "port": 15012,
                    "protocol": "TLS",
                    "tls": {"mode": "Passthrough"},
                },
            ],
        },
    }


# Kubernetes workloads


def _deployment(
    name: str,
    namespace: str,
    container: dict[str, Any],
    replicas: int = 1,
    app: str | None = None,
) -> dict[str, Any]:
    labels = {"app": app or name}
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": namespace, "labels": labels},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": labels},
            "template": {"metadata": {"labels": labels}, "spec": {"containers": [container]}},
        },
    }


def _service(name: str, namespace: str, port: int, app: str | None = None) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "namespace": namespace, "labels": {"app": app or name}},
        "spec": {
            "selector": {"app": app or name},
            "ports": [{"name": "http", "port": port, "targetPort": port}],
        },
    }


def echo_container(name: str = "echo") -> dict[str, Any]:
    return {
        "name": name,
        "image": ECHO_IMAGE,
        "ports": [{"containerPort": 8080}],
        "env": [{"name": "PORT", "value": "8080"}],
    }


def shell_container(name: str = "shell") -> dict[str, Any]:
    return {"name": name, "image": CURL_IMAGE, "command": ["sleep", "infinity"]}


def eks_test_workloads(namespace: str = "default") -> list[dict[str, Any]]:
    """``eks-echo`` (deployment plus service on 8080) and ``eks-shell``."""
    return [
        _deployment("eks-echo", namespace, echo_container()),
        _service("eks-echo", namespace, 8080),
        _deployment("eks-shell", namespace, shell_container()),
    ]


def aks_workloads(namespace: str = "app-a") -> list[dict[str, Any]]:
    """``echo-service`` (2 replicas) and a curl shell for the AKS cluster."""
    return [
        _deployment("echo-service", namespace, echo_container(), replicas=2),
        _service("echo-service", namespace, 8080),
        _deployment("shell", namespace, shell_container()),
    ]

