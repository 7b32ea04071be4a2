"""Collects the facts needed to explain a failed ECS service deployment."""

from typing import Any

from botocore.exceptions import ClientError
from pydantic import BaseModel, Field

from ecs_ambient.clients.aws_client import AWSClient, error_code, is_error, try_call
from ecs_ambient.core.config import DemoConfig
from ecs_ambient.utils.logging import get_logger

logger = get_logger(__name__)


class Diagnosis(BaseModel):
    """Everything ``diagnose`` reports for one ECS service."""

    cluster: str
    service: str
    profile: str
    region: str

    cluster_status: dict[str, Any] | None = None
    service_status: dict[str, Any] | None = None
    service_failures: list[dict[str, Any]] = Field(default_factory=list)
    events: list[tuple[str, str]] = Field(default_factory=list)
    task_definition: dict[str, Any] | None = None
    available_task_definitions: list[str] = Field(default_factory=list)

    task_role_arn: str | None = None
    role_state: str = "unset"

    subnets: dict[str, bool] = Field(default_factory=dict)
    security_group: str | None = None
    security_group_details: dict[str, Any] | None = None
    vpc: str | None = None

    @property
    def service_exists(self) -> bool:
        return self.service_status is not None

    def likely_causes(self) -> list[tuple[str, str]]:
        """(cause, how to check) pairs shown when the service is missing."""
        return [
            (
                "Task definition missing or invalid",
                f"aws ecs describe-task-definition --task-definition {self.service}-definition "
                f"--profile {self.profile} --region {self.region}",
            ),
            (
                "IAM role doesn't exist or lacks permissions",
                f"aws iam get-role --role-name eks-ecs-task-role --profile {self.profile}",
            ),
            ("Network configuration invalid (subnets/security groups)", "See subnet/SG verification above"),
            (
                "Service account tag mismatch in task definition",
                "Task definition must have tag: ecs.solo.io/service-account=ecs-demo-sa-external",
            ),
        ]

    def next_steps(self) -> list[str]:
        subnets = ",".join(self.subnets)
        return [
            "Try creating the service manually with verbose output:\n"
            f"  aws ecs create-service --cluster {self.cluster} --service-name {self.service} "
            f"--task-definition {self.service}-definition --desired-count 1 --launch-type FARGATE "
            "--enable-execute-command --network-configuration "
            f'"awsvpcConfiguration={{subnets=[{subnets}],securityGroups=[{self.security_group}],'
            'assignPublicIp=DISABLED}" '
            f"--profile {self.profile} --region {self.region}",
            "Check CloudWatch logs for task failures:\n"
            f"  aws logs tail /ecs/ecs-demo --profile {self.profile} --region {self.region} "
            "--follow=false --since 1h",
        ]


def _cluster_status(aws: AWSClient, cluster: str) -> dict[str, Any] | None:
    try:
        clusters = aws.ecs.describe_clusters(clusters=[cluster]).get("clusters", [])
    except ClientError as e:
        logger.warning("describe_clusters_failed", cluster=cluster, error_code=error_code(e))
        return None
    if not clusters:
        return None
    return {
        "Status": clusters[0].get("status"),
        "RunningTasks": clusters[0].get("runningTasksCount", 0),
        "PendingTasks": clusters[0].get("pendingTasksCount", 0),
    }


def _task_definition(aws: AWSClient, family: str) -> dict[str, Any] | None:
    try:
        definition = aws.ecs.describe_task_definition(taskDefinition=family)["taskDefinition"]
    except ClientError:
        return None
    return {
        "Family": definition.get("family"),
        "Revision": definition.get("revision"),
        "Status": definition.get("status"),
        "TaskRole": definition.get("taskRoleArn"),
        "NetworkMode": definition.get("networkMode"),
    }


def _role_state(aws: AWSClient, role_arn: str | None) -> str:
    """``exists``, ``missing``, ``access-denied`` or ``unset``."""
    if not role_arn:
        return "unset"
    try:
        aws.iam.get_role(RoleName=role_arn.rsplit("/", 1)[-1])
        return "exists"
    except ClientError as e:
        if is_error(e, "NoSuchEntity"):
            return "missing"
        if is_error(e, "AccessDenied", "AccessDeniedException"):
            return "access-denied"
        logger.warning("role_check_failed", role=role_arn, error_code=error_code(e))
        return "unknown"


def _subnet_exists(aws: AWSClient, subnet_id: str) -> bool:
    try:
        return bool(aws.ec2.describe_subnets(SubnetIds=[subnet_id])["Subnets"])
    except ClientError:
        return False


def _security_group(aws: AWSClient, group_id: str | None) -> dict[str, Any] | None:
    if not group_id:
        return None
    try:
        groups = aws.ec2.describe_security_groups(GroupIds=[group_id])["SecurityGroups"]
    except ClientError:
        return None
    if not groups:
        return None
    return {"GroupId": groups[0]["GroupId"], "GroupName": groups[0]["GroupName"], "VpcId": groups[0]["VpcId"]}


def diagnose_service_failure(
    config: DemoConfig,
    aws: AWSClient,
    cluster: str,
    service: str = "echo-service",
) -> Diagnosis:
    """Gather cluster, service, task definition, IAM and network state.

    Args:
        config: Demo configuration (task role, subnets and SG of the external account)
        aws: Client for the account that owns the cluster
        cluster: ECS cluster name
        service: ECS service name
    """
    diagnosis = Diagnosis(
        cluster=cluster,
        service=service,
        profile=aws.profile or "",
        region=aws.region,
        task_role_arn=config.external_task_role_arn,
        security_group=config.external_sg,
        vpc=config.external_vpc,
    )

    diagnosis.cluster_status = _cluster_status(aws, cluster)

    try:
        response = aws.ecs.describe_services(cluster=cluster, services=[service])
    except ClientError as e:
        logger.warning("describe_services_failed", cluster=cluster, error_code=error_code(e))
        response = {"services": [], "failures": [{"reason": error_code(e)}]}

    services = [s for s in response.get("services", []) if s.get("serviceName") == service]
    if services:
        described = services[0]
        diagnosis.service_status = {
            "Status": described.get("status"),
            "DesiredCount": described.get("desiredCount", 0),
            "RunningCount": described.get("runningCount", 0),
            "PendingCount": described.get("pendingCount", 0),
        }
        diagnosis.events = [
            (str(event.get("createdAt", "")), event.get("message", ""))
            for event in described.get("events", [])[:5]
        ]
    else:
        diagnosis.service_failures = response.get("failures", [])

    family = f"{service}-definition"
    diagnosis.task_definition = _task_definition(aws, family)
    if diagnosis.task_definition is None:
        listed = try_call(aws.ecs.list_task_definitions, "list_task_definitions", familyPrefix="echo")
        diagnosis.available_task_definitions = (listed or {}).get("taskDefinitionArns", [])

    diagnosis.role_state = _role_state(aws, config.external_task_role_arn)
    diagnosis.subnets = {s: _subnet_exists(aws, s) for s in config.external_subnet_ids}
    diagnosis.security_group_details = _security_group(aws, config.external_sg)

    logger.info(
        "diagnosis_collected",
        cluster=cluster,
        service=service,
        service_exists=diagnosis.service_exists,
        role_state=diagnosis.role_state,
    )
    return diagnosis
