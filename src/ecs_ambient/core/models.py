"""Core data models for ecs-ambient."""

from enum import Enum

from pydantic import BaseModel, Field

from ecs_ambient.core.exceptions import ConfigurationError


class AccountType(str, Enum):
    """Which AWS account an ECS cluster lives in."""

    LOCAL = "local"
    EXTERNAL = "external"


class CheckStatus(str, Enum):
    """Outcome of a single connectivity or discovery check."""

    PASS = "PASS"
    FAIL = "FAIL"


class ClusterLayout(BaseModel):
    """ECS cluster numbering for a scenario.

    Cluster ``n`` is named ``ecs-<CLUSTER_NAME>-<n>`` and is registered in a
    Kubernetes namespace of the same name.
    """

    scenario: int
    local_clusters: list[int] = Field(default_factory=list)
    external_clusters: list[int] = Field(default_factory=list)

    @classmethod
    def for_scenario(cls, scenario: int) -> "ClusterLayout":
        """Build the layout for a scenario number (1-4)."""
        layouts = {
            1: ([1], []),
            2: ([1, 2], []),
            3: ([1, 2], [3]),
            4: ([1, 2], []),
        }
        if scenario not in layouts:
            raise ConfigurationError(f"Invalid SCENARIO: {scenario} (expected 1, 2, 3 or 4)")
        local, external = layouts[scenario]
        return cls(scenario=scenario, local_clusters=local, external_clusters=external)

    @property
    def all_clusters(self) -> list[int]:
        """All cluster numbers, local first."""
        return self.local_clusters + self.external_clusters

    @property
    def is_multi_account(self) -> bool:
        return bool(self.external_clusters)


class EcsServiceSpec(BaseModel):
    """An ECS service deployed into every demo cluster."""

    name: str = Field(..., description="ECS service name")
    family: str = Field(..., description="Task definition family")
    log_prefix: str = Field(..., description="awslogs stream prefix")
    container_name: str = Field(..., description="Primary container name")
    port: int = Field(..., description="Port exposed through the mesh")


SHELL_SERVICE = EcsServiceSpec(
    name="shell-task",
    family="shell-task-definition",
    log_prefix="demo-shell-task",
    container_name="shell",
    port=80,
)

ECHO_SERVICE = EcsServiceSpec(
    name="echo-service",
    family="echo-service-definition",
    log_prefix="echo-service-task",
    container_name="echo",
    port=8080,
)

ECS_SERVICES: tuple[EcsServiceSpec, ...] = (SHELL_SERVICE, ECHO_SERVICE)


class AccountTarget(BaseModel):
    """Everything needed to deploy ECS workloads into one account."""

    account_type: AccountType
    profile: str
    task_role_arn: str | None = None
    service_account: str
    clusters: list[int] = Field(default_factory=list)
    subnets: list[str] = Field(default_factory=list)
    security_group: str | None = None

    class Config:
        use_enum_values = True

    @property
    def mesh_domain(self) -> str:
        """DNS suffix istiod assigns to services from this account."""
        return "ecs.local" if self.account_type == AccountType.LOCAL else "ecs.external"

    @property
    def is_external(self) -> bool:
        return self.account_type == AccountType.EXTERNAL


class CheckResult(BaseModel):
    """Result of a recorded check."""

    name: str
    expected: str
    actual: str
    status: CheckStatus

    class Config:
        use_enum_values = True

    @property
    def passed(self) -> bool:
        return self.status == CheckStatus.PASS


class DeletedResource(BaseModel):
    """A resource removed during cleanup."""

    kind: str
    identifier: str

    def __str__(self) -> str:
        return f"{self.kind}: {self.identifier}"


class WorkflowStep(BaseModel):
    """A resumable setup step of a test scenario."""

    name: str
    description: str
    part: str
