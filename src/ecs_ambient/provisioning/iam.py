"""IAM roles for ECS tasks and for istiod's ECS discovery.

Three sets of roles are managed:

- ``eks-ecs-task-role``: task and execution role of every ECS task
- ``istiod-local`` / ``istiod-external``: roles istiod assumes to read ECS
  in each account
- ``istiod-role`` (cross-account scenario): the pod identity role that is
  allowed to assume both of the above
"""

import json

from botocore.exceptions import ClientError

from ecs_ambient.clients.aws_client import AWSClient, error_code, is_error
from ecs_ambient.core.config import DemoConfig
from ecs_ambient.core.exceptions import AWSError
from ecs_ambient.core.models import DeletedResource
from ecs_ambient.provisioning import manifests
from ecs_ambient.utils.logging import get_logger
from ecs_ambient.utils.retry import pause

logger = get_logger(__name__)

ROLE_PATH = "/ecs/ambient/"
TASK_ROLE_NAME = "eks-ecs-task-role"
TASK_POLICY_NAME = "eks-ecs-task-policy"
ECS_FULL_ACCESS = "arn:aws:iam::aws:policy/AmazonECS_FullAccess"
ISTIOD_LOCAL_ROLE = "istiod-local"
ISTIOD_EXTERNAL_ROLE = "istiod-external"
ISTIOD_POD_ROLE = "istiod-role"
ISTIOD_PERMISSION_POLICY = "istiod-permission-policy"
ASSUME_ISTIOD_LOCAL_POLICY = "AssumeIstiodLocal"


def role_arn(account: str | None, name: str) -> str:
    return f"arn:aws:iam::{account}:role/{name}"


def get_role_arn(aws: AWSClient, name: str) -> str | None:
    """ARN of a role, or None if it does not exist."""
    try:
        return aws.iam.get_role(RoleName=name)["Role"]["Arn"]
    except ClientError as e:
        if is_error(e, "NoSuchEntity"):
            return None
        raise AWSError(f"Failed to get role {name}: {error_code(e)}") from e


def find_policy_arn(aws: AWSClient, name: str) -> str | None:
    """ARN of a customer managed policy by name."""
    paginator = aws.iam.get_paginator("list_policies")
    for page in paginator.paginate(Scope="Local"):
        for policy in page["Policies"]:
            if policy["PolicyName"] == name:
                return policy["Arn"]
    return None


def create_task_role(aws: AWSClient, account_label: str) -> str:
    """Create (or reuse) the ECS task role and attach its policy.

    Args:
        aws: Client for the account
        account_label: ``local`` or ``external`` (for logs)

    Returns:
        Task role ARN

    Raises:
        AWSError: If the role or policy cannot be created
    """
    arn = get_role_arn(aws, TASK_ROLE_NAME)
    try:
        if arn:
            logger.info("task_role_exists", account=account_label, role_arn=arn)
        else:
            arn = aws.iam.create_role(
                Path=ROLE_PATH,
                RoleName=TASK_ROLE_NAME,
                AssumeRolePolicyDocument=json.dumps(
                    manifests.service_trust_policy("ecs-tasks.amazonaws.com", "sts:AssumeRole")
                ),
            )["Role"]["Arn"]
            aws.wait("iam", "role_exists", RoleName=TASK_ROLE_NAME)
            logger.info("task_role_created", account=account_label, role_arn=arn)

        policy_arn = find_policy_arn(aws, TASK_POLICY_NAME)
        if policy_arn:
            logger.info("task_policy_exists", account=account_label, policy_arn=policy_arn)
        else:
            policy_arn = aws.iam.create_policy(
                Path=ROLE_PATH,
                PolicyName=TASK_POLICY_NAME,
                PolicyDocument=json.dumps(manifests.task_policy()),
            )["Policy"]["Arn"]
            logger.info("task_policy_created", account=account_label, policy_arn=policy_arn)

        aws.iam.attach_role_policy(RoleName=TASK_ROLE_NAME, PolicyArn=policy_arn)
    except ClientError as e:
        logger.error("create_task_role_failed", account=account_label, error_code=error_code(e))
        raise AWSError(f"Failed to create task role in {account_label} account: {error_code(e)}") from e

    return arn


def create_task_roles(config: DemoConfig, local: AWSClient, external: AWSClient | None) -> dict[str, str]:
    """Create task roles for every account in the scenario and save their ARNs."""
    values = {"LOCAL_TASK_ROLE_ARN": create_task_role(local, "local")}
    if config.layout.is_multi_account:
        if external is None:
            raise AWSError("External account client required for a multi-account scenario")
        values["EXTERNAL_TASK_ROLE_ARN"] = create_task_role(external, "external")

    config.save_generated("create-iam", values)
    return values


def ensure_istiod_local_role(config: DemoConfig, aws: AWSClient) -> str:
    """Single-account istiod access to ECS.

    ``istiod-local`` trusts the eksctl pod identity role, which in turn gets
    an inline policy allowing it to assume ``istiod-local``.

    Raises:
        AWSError: If the pod identity role is missing or IAM calls fail
    """
    pod_role = config.pod_identity_role_name
    if get_role_arn(aws, pod_role) is None:
        raise AWSError(
            f"Role {pod_role} not found. It is created by eksctl with the EKS cluster; "
            "create the cluster first."
        )

    trust = json.dumps(manifests.role_trust_policy(role_arn(config.local_account, pod_role)))
    local_arn = role_arn(config.local_account, ISTIOD_LOCAL_ROLE)
    try:
        if get_role_arn(aws, ISTIOD_LOCAL_ROLE):
            aws.iam.update_assume_role_policy(RoleName=ISTIOD_LOCAL_ROLE, PolicyDocument=trust)
            logger.info("istiod_local_trust_updated", trusted_role=pod_role)
        else:
            aws.iam.create_role(RoleName=ISTIOD_LOCAL_ROLE, AssumeRolePolicyDocument=trust)
            aws.iam.attach_role_policy(RoleName=ISTIOD_LOCAL_ROLE, PolicyArn=ECS_FULL_ACCESS)
            logger.info("istiod_local_role_created", trusted_role=pod_role)

        aws.iam.put_role_policy(
            RoleName=pod_role,
            PolicyName=ASSUME_ISTIOD_LOCAL_POLICY,
            PolicyDocument=json.dumps(manifests.assume_roles_policy([local_arn])),
        )
    except ClientError as e:
        raise AWSError(f"Failed to configure {ISTIOD_LOCAL_ROLE}: {error_code(e)}") from e

    return local_arn


def _create_role_with_retries(
    aws: AWSClient, name: str, trust: dict, attempts: int = 5, delay: int = 10
) -> None:
    """Create a role whose trusted principal may not have propagated yet."""
    for attempt in range(1, attempts + 1):
        try:
            aws.iam.create_role(RoleName=name, AssumeRolePolicyDocument=json.dumps(trust))
            aws.iam.attach_role_policy(RoleName=name, PolicyArn=ECS_FULL_ACCESS)
            logger.info("role_created", role=name, attempt=attempt)
            return
        except ClientError as e:
            if is_error(e, "EntityAlreadyExists"):
                return
            logger.warning("create_role_retry", role=name, attempt=attempt, error_code=error_code(e))
            if attempt < attempts:
                pause(delay, f"{name} trust principal propagation")

    raise AWSError(f"Failed to create {name} after {attempts} attempts")


def ensure_istiod_roles(config: DemoConfig, local: AWSClient, external: AWSClient) -> tuple[str, str]:
    """Cross-account istiod roles.

    Returns:
        Tuple of (LOCAL_ROLE, EXTERNAL_ROLE) ARNs
    """
    pod_role_arn = role_arn(config.local_account, ISTIOD_POD_ROLE)

    if get_role_arn(local, ISTIOD_POD_ROLE) is None:
        local.iam.create_role(
            RoleName=ISTIOD_POD_ROLE,
            AssumeRolePolicyDocument=json.dumps(
                manifests.service_trust_policy("pods.eks.amazonaws.com")
            ),
        )
        logger.info("istiod_pod_role_created", role=ISTIOD_POD_ROLE)
        pause(15, "IAM propagation")

    trust = manifests.role_trust_policy(pod_role_arn)
    if get_role_arn(local, ISTIOD_LOCAL_ROLE) is None:
        _create_role_with_retries(local, ISTIOD_LOCAL_ROLE, trust)
    if get_role_arn(external, ISTIOD_EXTERNAL_ROLE) is None:
        _create_role_with_retries(external, ISTIOD_EXTERNAL_ROLE, trust)

    local_role = role_arn(config.local_account, ISTIOD_LOCAL_ROLE)
    external_role = role_arn(config.external_account, ISTIOD_EXTERNAL_ROLE)
    document = json.dumps(manifests.assume_roles_policy([local_role, external_role]))
    policy_arn = f"arn:aws:iam::{config.local_account}:policy/{ISTIOD_PERMISSION_POLICY}"

    try:
        local.iam.get_policy(PolicyArn=policy_arn)
        try:
            local.iam.create_policy_version(
                PolicyArn=policy_arn, PolicyDocument=document, SetAsDefault=True
            )
        except ClientError as e:
            # A policy keeps at most five versions
            logger.warning("policy_version_not_created", policy=policy_arn, error_code=error_code(e))
    except ClientError as e:
        if not is_error(e, "NoSuchEntity"):
            raise AWSError(f"Failed to read {ISTIOD_PERMISSION_POLICY}: {error_code(e)}") from e
        local.iam.create_policy(PolicyName=ISTIOD_PERMISSION_POLICY, PolicyDocument=document)
        logger.info("istiod_permission_policy_created")

    local.iam.attach_role_policy(RoleName=ISTIOD_POD_ROLE, PolicyArn=policy_arn)
    return local_role, external_role


def ensure_pod_identity_association(config: DemoConfig, aws: AWSClient, role: str) -> None:
    """Point the istio-system/istiod pod identity association at ``role``.

    Failures are logged, not raised, since istiod may not be installed yet.
    """
    try:
        associations = aws.eks.list_pod_identity_associations(
            clusterName=config.cluster_name, namespace="istio-system", serviceAccount="istiod"
        )["associations"]
        if associations:
            aws.eks.update_pod_identity_association(
                clusterName=config.cluster_name,
                associationId=associations[0]["associationId"],
                roleArn=role,
            )
            logger.info("pod_identity_association_updated", role=role)
        else:
            aws.eks.create_pod_identity_association(
                clusterName=config.cluster_name,
                namespace="istio-system",
                serviceAccount="istiod",
                roleArn=role,
            )
            logger.info("pod_identity_association_created", role=role)
    except ClientError as e:
        logger.warning("pod_identity_association_failed", error_code=error_code(e))


# Deletion


def _detach_all(aws: AWSClient, role: str) -> None:
    attached = aws.iam.list_attached_role_policies(RoleName=role)["AttachedPolicies"]
    for policy in attached:
        aws.iam.detach_role_policy(RoleName=role, PolicyArn=policy["PolicyArn"])


def delete_role(aws: AWSClient, name: str, label: str) -> list[DeletedResource]:
    """Detach managed policies, drop inline policies, and delete a role."""
    try:
        _detach_all(aws, name)
        for policy_name in aws.iam.list_role_policies(RoleName=name)["PolicyNames"]:
            aws.iam.delete_role_policy(RoleName=name, PolicyName=policy_name)
        aws.iam.delete_role(RoleName=name)
    except ClientError as e:
        if is_error(e, "NoSuchEntity"):
            return []
        raise AWSError(f"Failed to delete role {name}: {error_code(e)}") from e

    logger.info("role_deleted", role=name, account=label)
    return [DeletedResource(kind="IAM Role", identifier=f"{name} ({label})")]


def delete_task_role(aws: AWSClient, label: str) -> list[DeletedResource]:
    """Delete ``eks-ecs-task-role`` and ``eks-ecs-task-policy``."""
    deleted = delete_role(aws, TASK_ROLE_NAME, label)

    policy_arn = find_policy_arn(aws, TASK_POLICY_NAME)
    if policy_arn:
        try:
            aws.iam.delete_policy(PolicyArn=policy_arn)
            deleted.append(DeletedResource(kind="IAM Policy", identifier=f"{TASK_POLICY_NAME} ({label})"))
        except ClientError as e:
            logger.warning("delete_policy_failed", policy=policy_arn, error_code=error_code(e))
    return deleted


def delete_istiod_local(config: DemoConfig, aws: AWSClient) -> list[DeletedResource]:
    """Delete the local-account istiod IAM resources for the scenario."""
    deleted = delete_role(aws, ISTIOD_LOCAL_ROLE, "local")

    if not config.layout.is_multi_account:
        try:
            aws.iam.delete_role_policy(
                RoleName=config.pod_identity_role_name, PolicyName=ASSUME_ISTIOD_LOCAL_POLICY
            )
            deleted.append(
                DeletedResource(
                    kind="IAM Inline Policy",
                    identifier=f"{ASSUME_ISTIOD_LOCAL_POLICY} from {config.pod_identity_role_name}",
                )
            )
        except ClientError as e:
            if not is_error(e, "NoSuchEntity"):
                logger.warning("delete_inline_policy_failed", error_code=error_code(e))
        return deleted

    deleted += delete_role(aws, ISTIOD_POD_ROLE, "local")

    policy_arn = f"arn:aws:iam::{config.local_account}:policy/{ISTIOD_PERMISSION_POLICY}"
    try:
        versions = aws.iam.list_policy_versions(PolicyArn=policy_arn)["Versions"]
        for version in versions:
            if not version["IsDefaultVersion"]:
                aws.iam.delete_policy_version(PolicyArn=policy_arn, VersionId=version["VersionId"])
        aws.iam.delete_policy(PolicyArn=policy_arn)
        deleted.append(DeletedResource(kind="IAM Policy", identifier=f"{ISTIOD_PERMISSION_POLICY} (local)"))
    except ClientError as e:
        if not is_error(e, "NoSuchEntity"):
            logger.warning("delete_policy_failed", policy=policy_arn, error_code=error_code(e))

    try:
        associations = aws.eks.list_pod_identity_associations(
            clusterName=config.cluster_name, namespace="istio-system", serviceAccount="istiod"
        )["associations"]
        for association in associations[:1]:
            aws.eks.delete_pod_identity_association(
                clusterName=config.cluster_name, associationId=association["associationId"]
            )
            deleted.append(
                DeletedResource(kind="Pod Identity Association", identifier=association["associationId"])
            )
    except ClientError as e:
        logger.debug("pod_identity_association_not_deleted", error_code=error_code(e))

    return deleted


def delete_istiod_external(aws: AWSClient) -> list[DeletedResource]:
    return delete_role(aws, ISTIOD_EXTERNAL_ROLE, "external")
