"""EKS (and, for the multicloud scenario, AKS) cluster lifecycle."""

from ecs_ambient.clients.aws_client import AWSClient, try_call
from ecs_ambient.clients.cli_runner import AwsCli, AzureCli, EksctlWrapper, current_context
from ecs_ambient.clients.kubernetes_client import KubernetesClient
from ecs_ambient.core.config import DemoConfig
from ecs_ambient.core.exceptions import AWSError, KubernetesError
from ecs_ambient.core.models import DeletedResource
from ecs_ambient.provisioning import manifests
from ecs_ambient.provisioning.network import delete_security_group, find_eks_vpc
from ecs_ambient.utils.logging import get_logger
from ecs_ambient.utils.retry import pause, poll_until

logger = get_logger(__name__)


def cluster_stack(cluster_name: str) -> str:
    return f"eksctl-{cluster_name}-cluster"


def nodegroup_stack(cluster_name: str) -> str:
    return f"eksctl-{cluster_name}-nodegroup-managed-nodes"


def _eks_status(aws: AWSClient, name: str) -> str | None:
    cluster = aws.describe_eks_cluster(name)
    return cluster["status"] if cluster else None


def create_eks_cluster(config: DemoConfig, aws: AWSClient) -> int:
    """Create the EKS cluster unless it exists, then check it has ready nodes.

    A cluster that is being deleted is waited out and recreated; one that
    is being created is waited on.

    Returns:
        Number of Ready nodes

    Raises:
        CommandError: If eksctl or the kubeconfig update fails
        KubernetesError: If the cluster has no Ready nodes
    """
    config.require("CLUSTER_NAME", "LOCAL_ACCOUNT_PROFILE")
    name = config.cluster_name
    status = _eks_status(aws, name)

    if status == "DELETING":
        logger.info("eks_cluster_deleting", cluster_name=name)
        poll_until(
            lambda: _eks_status(aws, name),
            timeout=3600,
            interval=30,
            description=f"EKS cluster {name} deletion",
            done=lambda s: s is None,
        )
        status = None

    if status == "CREATING":
        aws.wait("eks", "cluster_active", name=name)
        status = "ACTIVE"

    if status == "ACTIVE":
        logger.info("eks_cluster_exists", cluster_name=name)
    else:
        EksctlWrapper(config.local_profile, config.aws_region).create_cluster(
            manifests.eks_cluster_config(config)
        )

    AwsCli(config.aws_region).update_kubeconfig(name, config.local_profile)

    _, ready = KubernetesClient().count_ready_nodes()
    if ready == 0:
        raise KubernetesError(
            f"EKS cluster '{name}' exists but has no ready nodes. Scale up the nodegroup: "
            f"eksctl scale nodegroup --cluster {name} --name managed-nodes --nodes 2 --nodes-min 2 "
            f"--profile {config.local_profile} --region {config.aws_region}"
        )
    logger.info("eks_cluster_ready", cluster_name=name, ready_nodes=ready)
    return ready


def record_eks_context(config: DemoConfig) -> str:
    """Save the current kube context as CTX_EKS."""
    context = current_context()
    config.save_generated("eks-context", {"CTX_EKS": context})
    return context


def create_aks_cluster(config: DemoConfig, az: AzureCli | None = None) -> str:
    """Create the AKS cluster (and resource group) if needed and fetch credentials.

    Returns:
        The AKS kube context, also saved as CTX_AKS
    """
    config.require("AZURE_RESOURCE_GROUP", "AKS_CLUSTER_NAME", "AZURE_REGION")
    az = az or AzureCli()
    group, name = config.azure_resource_group, config.aks_cluster_name

    if az.aks_exists(group, name):
        logger.info("aks_cluster_exists", cluster_name=name)
    else:
        if not az.group_exists(group):
            az.create_group(group, config.azure_region)
        az.create_aks(group, name, config.aks_node_count, config.aks_node_vm_size)

    az.get_credentials(group, name)
    context = current_context()
    config.save_generated("aks-context", {"CTX_AKS": context})
    logger.info("aks_cluster_ready", cluster_name=name, context=context)
    return context


def _stack_status(aws: AWSClient, stack: str) -> str | None:
    response = try_call(aws.cloudformation.describe_stacks, "describe_stacks", StackName=stack)
    if not response or not response.get("Stacks"):
        return None
    return response["Stacks"][0]["StackStatus"]


def wait_for_stack_deletion(aws: AWSClient, stack: str, max_minutes: int = 30) -> bool:
    """Poll a CloudFormation stack every 30 seconds until it is gone.

    Returns:
        False if the deletion timed out

    Raises:
        AWSError: If the stack reaches DELETE_FAILED
    """
    status = poll_until(
        lambda: _stack_status(aws, stack),
        timeout=max_minutes * 60,
        interval=30,
        description=f"stack {stack} deletion",
        done=lambda s: s is None or s == "DELETE_FAILED",
        raise_on_timeout=False,
    )
    if status == "DELETE_FAILED":
        raise AWSError(f"Stack {stack} deletion failed; check the CloudFormation console for details")
    if status is not None:
        logger.warning("stack_deletion_timeout", stack=stack, minutes=max_minutes)
        return False
    logger.info("stack_deleted", stack=stack)
    return True


def _delete_load_balancers(aws: AWSClient, vpc_id: str) -> list[DeletedResource]:
    deleted = []
    classic = aws.elb.describe_load_balancers().get("LoadBalancerDescriptions", [])
    for lb in classic:
        if lb.get("VPCId") == vpc_id:
            try_call(aws.elb.delete_load_balancer, "delete_load_balancer", LoadBalancerName=lb["LoadBalancerName"])
            deleted.append(DeletedResource(kind="Classic LB", identifier=lb["LoadBalancerName"]))

    for lb in aws.elbv2.describe_load_balancers().get("LoadBalancers", []):
        if lb.get("VpcId") == vpc_id:
            try_call(aws.elbv2.delete_load_balancer, "delete_load_balancer", LoadBalancerArn=lb["LoadBalancerArn"])
            deleted.append(DeletedResource(kind="Load Balancer", identifier=lb["LoadBalancerArn"].rsplit("/", 1)[-1]))
    return deleted


def _delete_vpc_security_groups(aws: AWSClient, vpc_id: str) -> list[DeletedResource]:
    """Revoke every non-default group's rules first since groups may reference each other."""
    groups = aws.ec2.describe_security_groups(
        Filters=[{"Name": "vpc-id", "Values": [vpc_id]}]
    )["SecurityGroups"]
    groups = [g for g in groups if g["GroupName"] != "default"]

    for group in groups:
        if group.get("IpPermissions"):
            try_call(
                aws.ec2.revoke_security_group_ingress,
                "revoke_ingress",
                GroupId=group["GroupId"],
                IpPermissions=group["IpPermissions"],
            )
        if group.get("IpPermissionsEgress"):
            try_call(
                aws.ec2.revoke_security_group_egress,
                "revoke_egress",
                GroupId=group["GroupId"],
                IpPermissions=group["IpPermissionsEgress"],
            )

    deleted = []
    for group in groups:
        delete_security_group(aws, group["GroupId"])
        deleted.append(DeletedResource(kind="Security Group", identifier=group["GroupId"]))
    return deleted


def delete_eks_cluster(config: DemoConfig, aws: AWSClient, wait: bool = True) -> list[DeletedResource]:
    """Delete the EKS cluster and its eksctl CloudFormation stacks.

    Load balancers and security groups left in the VPC by Kubernetes
    services block stack deletion, so they are removed first.
    """
    name = config.cluster_name
    if _eks_status(aws, name) is None and _stack_status(aws, cluster_stack(name)) is None:
        logger.info("eks_cluster_not_found", cluster_name=name)
        return []

    deleted: list[DeletedResource] = []
    vpc_id = find_eks_vpc(config, aws)
    if vpc_id:
        balancers = _delete_load_balancers(aws, vpc_id)
        if balancers:
            pause(60, "load balancers to release ENIs and security groups")
        deleted += balancers
        deleted += _delete_vpc_security_groups(aws, vpc_id)

    if not EksctlWrapper(config.local_profile, config.aws_region).delete_cluster(name):
        logger.warning("eksctl_delete_failed", cluster_name=name)
        try_call(aws.cloudformation.delete_stack, "delete_stack", StackName=nodegroup_stack(name))
        wait_for_stack_deletion(aws, nodegroup_stack(name), max_minutes=15)
        try_call(aws.cloudformation.delete_stack, "delete_stack", StackName=cluster_stack(name))
        wait_for_stack_deletion(aws, cluster_stack(name), max_minutes=20)

    if wait:
        stacks = [
            nodegroup_stack(name),
            f"eksctl-{name}-addon-vpc-cni",
            f"eksctl-{name}-podidentityrole-istio-system-istiod",
            cluster_stack(name),
        ]
        for stack in stacks:
            if _stack_status(aws, stack) is not None:
                wait_for_stack_deletion(aws, stack, max_minutes=20)
    else:
        logger.info("stack_deletion_not_awaited")

    deleted.append(DeletedResource(kind="EKS Cluster", identifier=name))
    return deleted
