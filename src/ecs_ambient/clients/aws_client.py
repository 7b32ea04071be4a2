"""AWS client for the services the demo provisions."""

from collections.abc import Callable
from typing import Any

import boto3
from botocore.exceptions import ClientError, WaiterError

from ecs_ambient.core.exceptions import AWSError
from ecs_ambient.utils.logging import get_logger
from ecs_ambient.utils.retry import retry_on_exception

logger = get_logger(__name__)


def error_code(error: ClientError) -> str:
    """Extract the AWS error code from a ClientError."""
    return error.response.get("Error", {}).get("Code", "Unknown")


def is_error(error: ClientError, *codes: str) -> bool:
    """Check whether a ClientError carries one of the given codes."""
    return error_code(error) in codes


def try_call(call: Callable[..., Any], operation: str, **kwargs: Any) -> Any | None:
    """Invoke a boto3 call whose failure is tolerated (duplicates, missing resources).

    Returns:
        The call's response, or None if it raised ClientError
    """
    try:
        return call(**kwargs)
    except ClientError as e:
        logger.debug("aws_call_skipped", operation=operation, error_code=error_code(e))
        return None


class AWSClient:
    """boto3 session bound to one profile and region."""

    def __init__(
        self,
        region: str = "us-east-1",
        profile: str | None = None,
        session: boto3.Session | None = None,
    ):
        """Initialize AWS client.

        Args:
            region: AWS region
            profile: AWS profile name (optional)
            session: Existing boto3 session (optional, overrides profile)
        """
        self.region = region
        self.profile = profile

        if session:
            self.session = session
        elif profile:
            self.session = boto3.Session(profile_name=profile, region_name=region)
        else:
            self.session = boto3.Session(region_name=region)

        self.sts = self.session.client("sts")
        self.eks = self.session.client("eks")
        self.ec2 = self.session.client("ec2")
        self.ecs = self.session.client("ecs")
        self.iam = self.session.client("iam")
        self.logs = self.session.client("logs")
        self.elb = self.session.client("elb")
        self.elbv2 = self.session.client("elbv2")
        self.cloudformation = self.session.client("cloudformation")

        logger.debug("aws_client_initialized", region=region, profile=profile)

    @retry_on_exception(exceptions=(ClientError,), max_attempts=3)
    def get_caller_identity(self) -> dict[str, Any]:
        """Return the STS caller identity for this profile.

        Raises:
            AWSError: If credentials are missing or expired
        """
        try:
            identity = self.sts.get_caller_identity()
            logger.debug("caller_identity_retrieved", account=identity.get("Account"))
            return identity
        except ClientError as e:
            code = error_code(e)
            logger.error("caller_identity_failed", profile=self.profile, error_code=code)
            raise AWSError(f"Cannot access AWS with profile {self.profile}: {code}") from e

    def has_valid_credentials(self) -> bool:
        """True when STS accepts the profile's current credentials."""
        try:
            self.sts.get_caller_identity()
            return True
        except Exception as e:
            logger.debug("credentials_invalid", profile=self.profile, error=str(e))
            return False

    def describe_eks_cluster(self, name: str) -> dict[str, Any] | None:
        """Describe an EKS cluster.

        Args:
            name: EKS cluster name

        Returns:
            Cluster description, or None if the cluster does not exist

        Raises:
            AWSError: For any error other than ResourceNotFoundException
        """
        try:
            logger.debug("describing_eks_cluster", cluster_name=name)
            return self.eks.describe_cluster(name=name)["cluster"]
        except ClientError as e:
            if is_error(e, "ResourceNotFoundException"):
                return None
            code = error_code(e)
            logger.error("describe_eks_cluster_failed", cluster_name=name, error_code=code)
            raise AWSError(f"Failed to describe EKS cluster {name}: {code}") from e

    def list_eks_clusters(self) -> list[str]:
        """List EKS cluster names in the region."""
        try:
            return self.eks.list_clusters().get("clusters", [])
        except ClientError as e:
            raise AWSError(f"Failed to list EKS clusters: {error_code(e)}") from e

    def wait(self, service: str, waiter_name: str, **kwargs: Any) -> None:
        """Run a boto3 waiter.

        Args:
            service: Service attribute name (e.g. ``ec2``)
            waiter_name: Waiter name (e.g. ``nat_gateway_available``)
            **kwargs: Waiter arguments

        Raises:
            AWSError: If the waiter fails or times out
        """
        client = getattr(self, service)
        try:
            logger.info("waiting_on_aws", waiter=waiter_name)
            client.get_waiter(waiter_name).wait(**kwargs)
        except WaiterError as e:
            logger.error("aws_waiter_failed", waiter=waiter_name, error=str(e))
            raise AWSError(f"Waiter {waiter_name} failed: {e}") from e


class AWSSessions:
    """Lazily created clients for the local and external accounts."""

    def __init__(self, region: str, local_profile: str | None, external_profile: str | None = None):
        self.region = region
        self.local_profile = local_profile
        self.external_profile = external_profile
        self._clients: dict[str | None, AWSClient] = {}

    def for_profile(self, profile: str | None) -> AWSClient:
        if profile not in self._clients:
            self._clients[profile] = AWSClient(region=self.region, profile=profile)
        return self._clients[profile]

    @property
    def local(self) -> AWSClient:
        return self.for_profile(self.local_profile)

    @property
    def external(self) -> AWSClient:
        return self.for_profile(self.external_profile)
