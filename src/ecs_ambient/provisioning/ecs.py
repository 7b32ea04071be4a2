"""ECS clusters, task definitions and services (``deploy-ecs``)."""

from typing import Any

from botocore.exceptions import ClientError
from pydantic import BaseModel, Field

from ecs_ambient.clients.aws_client import AWSClient, AWSSessions, error_code, is_error, try_call
from ecs_ambient.core.config import DemoConfig
from ecs_ambient.core.exceptions import ConfigurationError, WaitTimeoutError
from ecs_ambient.core.models import ECS_SERVICES, AccountTarget, DeletedResource, EcsServiceSpec
from ecs_ambient.provisioning import manifests
from ecs_ambient.provisioning.network import ensure_local_ecs_security_group, open_eks_cluster_security_group
from ecs_ambient.utils.logging import get_logger
from ecs_ambient.utils.retry import pause, poll_until

logger = get_logger(__name__)

DISCOVERY_TAG = {"key": "ecs.solo.io/discovery-enabled", "value": "true"}

LOCAL_REQUIRED = (
    "LOCAL_ACCOUNT_PROFILE",
    "AWS_REGION",
    "CLUSTER_NAME",
    "OWNER_NAME",
    "LOCAL_TASK_ROLE_ARN",
)
EXTERNAL_REQUIRED = (
    "EXTERNAL_ACCOUNT_PROFILE",
    "AWS_REGION",
    "CLUSTER_NAME",
    "OWNER_NAME",
    "EXTERNAL_TASK_ROLE_ARN",
    "EXTERNAL_SUBNETS",
    "EXTERNAL_SG",
)


class DeploymentResult(BaseModel):
    """Outcome of a ``deploy-ecs`` run."""

    failed_services: list[str] = Field(default_factory=list)
    service_counts: dict[str, int] = Field(default_factory=dict)
    cluster_accounts: dict[str, str] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return not self.failed_services


def cluster_status(aws: AWSClient, name: str) -> str | None:
    """Status of an ECS cluster, or None if ECS does not know it."""
    clusters = aws.ecs.describe_clusters(clusters=[name]).get("clusters", [])
    return clusters[0]["status"] if clusters else None


def describe_service(aws: AWSClient, cluster: str, service: str) -> dict[str, Any] | None:
    try:
        services = aws.ecs.describe_services(cluster=cluster, services=[service]).get("services", [])
    except ClientError as e:
        if is_error(e, "ClusterNotFoundException"):
            return None
        raise
    return services[0] if services else None


def service_status(aws: AWSClient, cluster: str, service: str) -> str | None:
    described = describe_service(aws, cluster, service)
    return described["status"] if described else None


def _gone(status: str | None) -> bool:
    return status in (None, "INACTIVE")


def wait_until_released(check: Any, timeout: int, description: str) -> None:
    """Wait for a draining ECS resource to disappear or turn INACTIVE.

    INACTIVE names are not reusable straight away, so a further 30 seconds
    are allowed once that state is reached.

    Raises:
        WaitTimeoutError: If the resource is still present after ``timeout``
    """
    status = poll_until(check, timeout=timeout, interval=10, description=description, done=_gone)
    if status == "INACTIVE":
        pause(30, f"{description} to be fully processed")


def ensure_log_group(aws: AWSClient) -> None:
    try_call(aws.logs.create_log_group, "create_log_group", logGroupName=manifests.ECS_LOG_GROUP)


def register_task_definitions(aws: AWSClient, target: AccountTarget, region: str) -> list[str]:
    """Register each service's task definition unless its family already exists.

    Returns:
        Families that were newly registered
    """
    registered = []
    for spec in ECS_SERVICES:
        existing = try_call(
            aws.ecs.describe_task_definition, "describe_task_definition", taskDefinition=spec.family
        )
        if existing:
            logger.info("task_definition_exists", family=spec.family)
            continue

        definition = manifests.task_definition(
            spec, target.task_role_arn or "", target.service_account, region
        )
        try:
            aws.ecs.register_task_definition(**definition)
        except ClientError as e:
            logger.error("task_definition_failed", family=spec.family, error_code=error_code(e))
            continue
        logger.info("task_definition_registered", family=spec.family)
        registered.append(spec.family)
    return registered


def ensure_cluster(aws: AWSClient, name: str) -> bool:
    """Create an ECS cluster tagged for Istio discovery.

    Returns:
        False if the cluster could not be created

    Raises:
        WaitTimeoutError: If a previous cluster with this name never clears
    """
    status = cluster_status(aws, name)
    if status == "ACTIVE":
        logger.info("ecs_cluster_exists", cluster=name)
    else:
        if status is not None:
            logger.warning("ecs_cluster_not_active", cluster=name, status=status)
            wait_until_released(lambda: cluster_status(aws, name), 120, f"ECS cluster {name} removal")

        try:
            aws.ecs.create_cluster(clusterName=name, tags=[DISCOVERY_TAG])
        except ClientError as e:
            logger.error("ecs_cluster_create_failed", cluster=name, error_code=error_code(e))
            return False
        logger.info("ecs_cluster_created", cluster=name)

    clusters = aws.ecs.describe_clusters(clusters=[name]).get("clusters", [])
    if clusters:
        try_call(
            aws.ecs.tag_resource,
            "tag_resource",
            resourceArn=clusters[0]["clusterArn"],
            tags=[DISCOVERY_TAG],
        )
    return True


def ensure_service(
    aws: AWSClient, cluster: str, spec: EcsServiceSpec, network: dict[str, Any]
) -> bool:
    """Create a Fargate service with ECS Exec enabled.

    Returns:
        False if a previous service never cleared or creation failed
    """
    status = service_status(aws, cluster, spec.name)
    if status == "ACTIVE":
        logger.info("ecs_service_exists", cluster=cluster, service=spec.name)
        return True

    if status is not None:
        logger.warning("ecs_service_not_active", cluster=cluster, service=spec.name, status=status)
        try:
            wait_until_released(
                lambda: service_status(aws, cluster, spec.name), 180, f"service {spec.name} removal"
            )
        except WaitTimeoutError:
            return False

    try:
        aws.ecs.create_service(
            cluster=cluster,
            serviceName=spec.name,
            taskDefinition=spec.family,
            desiredCount=1,
            launchType="FARGATE",
            enableExecuteCommand=True,
            networkConfiguration=network,
        )
    except ClientError as e:
        logger.error("ecs_service_create_failed", cluster=cluster, service=spec.name, error_code=error_code(e))
        return False

    logger.info("ecs_service_created", cluster=cluster, service=spec.name)
    return True


def deploy_to_account(
    config: DemoConfig, aws: AWSClient, target: AccountTarget, result: DeploymentResult
) -> None:
    """Deploy both services into each of an account's clusters."""
    required = EXTERNAL_REQUIRED if target.is_external else LOCAL_REQUIRED
    missing = config.missing(*required)
    if missing:
        raise ConfigurationError(
            f"Missing required variables for {target.account_type} account: {', '.join(missing)}"
        )

    if target.is_external:
        subnets, security_group = target.subnets, target.security_group or ""
    else:
        security_group, subnets = ensure_local_ecs_security_group(config, aws)

    logger.info(
        "deploying_ecs_account",
        account=target.account_type,
        profile=target.profile,
        subnets=subnets,
        security_group=security_group,
    )
    network = manifests.network_configuration(subnets, security_group)

    ensure_log_group(aws)
    register_task_definitions(aws, target, config.aws_region)

    for number in target.clusters:
        cluster = config.ecs_cluster_name(number)
        result.cluster_accounts[cluster] = str(target.account_type)
        if not ensure_cluster(aws, cluster):
            continue
        for spec in ECS_SERVICES:
            if not ensure_service(aws, cluster, spec, network):
                result.failed_services.append(f"{cluster}/{spec.name}")

    if not target.is_external:
        open_eks_cluster_security_group(config, aws)


def count_services(aws: AWSClient, cluster: str) -> int:
    response = try_call(aws.ecs.list_services, "list_services", cluster=cluster)
    return len(response["serviceArns"]) if response else 0


def deploy_ecs(config: DemoConfig, sessions: AWSSessions) -> DeploymentResult:
    """Deploy the scenario's ECS clusters and services in every account.

    Returns:
        Result listing failed ``cluster/service`` pairs and per-cluster service counts
    """
    result = DeploymentResult()
    for target in config.account_targets():
        aws = sessions.for_profile(target.profile)
        deploy_to_account(config, aws, target, result)

    for target in config.account_targets():
        aws = sessions.for_profile(target.profile)
        for number in target.clusters:
            cluster = config.ecs_cluster_name(number)
            result.service_counts[cluster] = count_services(aws, cluster)

    if result.failed_services:
        logger.error("ecs_deployment_failed", failed_services=result.failed_services)
    else:
        logger.info("ecs_deployment_completed", clusters=list(result.service_counts))
    return result


def service_is_stable(described: dict[str, Any] | None) -> bool:
    if not described:
        return False
    running = described.get("runningCount", 0)
    return (
        running >= described.get("desiredCount", 1)
        and described.get("pendingCount", 0) == 0
        and running > 0
    )


def wait_for_service_stable(aws: AWSClient, cluster: str, service: str, timeout: int = 300) -> bool:
    """Wait for a service's tasks to be running.

    A service that still has running tasks at the timeout counts as stable.
    """
    if describe_service(aws, cluster, service) is None:
        logger.warning("ecs_service_not_found", cluster=cluster, service=service)
        return False

    described = poll_until(
        lambda: describe_service(aws, cluster, service),
        timeout=timeout,
        interval=10,
        description=f"{service} in {cluster} to be running",
        done=service_is_stable,
        raise_on_timeout=False,
        log_every=30,
    )
    if service_is_stable(described):
        logger.info(
            "ecs_service_stable",
            service=service,
            running=described["runningCount"],
            desired=described["desiredCount"],
        )
        return True

    running = (described or {}).get("runningCount", 0)
    if running > 0:
        logger.warning("ecs_service_running_after_timeout", service=service, running=running)
        return True
    logger.warning("ecs_service_not_running", cluster=cluster, service=service, timeout=timeout)
    return False


def wait_for_services_stable(config: DemoConfig, sessions: AWSSessions, timeout: int = 300) -> bool:
    """Wait for every demo service in the scenario's clusters to run tasks."""
    all_stable = True
    for number in config.layout.all_clusters:
        cluster = config.ecs_cluster_name(number)
        aws = sessions.for_profile(config.profile_for_cluster(number))
        for spec in ECS_SERVICES:
            if not wait_for_service_stable(aws, cluster, spec.name, timeout):
                all_stable = False

    if all_stable:
        logger.info("ecs_services_stable")
    else:
        logger.warning("ecs_services_not_all_stable")
    return all_stable


# Deletion


def delete_ecs_account(config: DemoConfig, aws: AWSClient, clusters: list[int]) -> list[DeletedResource]:
    """Scale down and delete services, then clusters, task definitions and the log group."""
    deleted: list[DeletedResource] = []

    for number in clusters:
        cluster = config.ecs_cluster_name(number)
        response = try_call(aws.ecs.list_services, "list_services", cluster=cluster) or {}
        names = [arn.rsplit("/", 1)[-1] for arn in response.get("serviceArns", [])]

        for name in names:
            try_call(aws.ecs.update_service, "update_service", cluster=cluster, service=name, desiredCount=0)
            try_call(aws.ecs.delete_service, "delete_service", cluster=cluster, service=name, force=True)
            deleted.append(DeletedResource(kind="ECS Service", identifier=f"{cluster}/{name}"))

        for name in names:
            status = poll_until(
                lambda name=name: service_status(aws, cluster, name),
                timeout=180,
                interval=10,
                description=f"service {name} to become INACTIVE",
                done=_gone,
                raise_on_timeout=False,
            )
            if not _gone(status):
                logger.warning("ecs_service_still_draining", cluster=cluster, service=name)

        try_call(aws.ecs.delete_cluster, "delete_cluster", cluster=cluster)
        try:
            wait_until_released(lambda: cluster_status(aws, cluster), 120, f"ECS cluster {cluster} deletion")
        except WaitTimeoutError:
            logger.warning("ecs_cluster_delete_timeout", cluster=cluster)
        deleted.append(DeletedResource(kind="ECS Cluster", identifier=cluster))
        logger.info("ecs_cluster_deleted", cluster=cluster)

    for spec in ECS_SERVICES:
        paginator = aws.ecs.get_paginator("list_task_definitions")
        for page in paginator.paginate(familyPrefix=spec.family):
            for arn in page.get("taskDefinitionArns", []):
                try_call(aws.ecs.deregister_task_definition, "deregister_task_definition", taskDefinition=arn)

    try_call(aws.logs.delete_log_group, "delete_log_group", logGroupName=manifests.ECS_LOG_GROUP)
    return deleted
