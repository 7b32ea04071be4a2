"""Pytest configuration and shared fixtures."""

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from ecs_ambient.core.config import DemoConfig


@pytest.fixture(autouse=True)
def no_sleep():
    """Skip every retry, poll and settle pause."""
    with patch("ecs_ambient.utils.retry._sleep") as mock_sleep:
        yield mock_sleep


def make_config(scenario: int = 1, path: Path | None = None, **overrides: Any) -> DemoConfig:
    """Build a config with the values every scenario needs."""
    values: dict[str, Any] = {
        "SCENARIO": scenario,
        "LOCAL_ACCOUNT": "111111111111",
        "LOCAL_ACCOUNT_PROFILE": "local-profile",
        "AWS_REGION": "us-east-1",
        "CLUSTER_NAME": "demo",
        "OWNER_NAME": "tester",
        "HUB": "us-docker.pkg.dev/soloio-img/istio",
        "ISTIO_TAG": "1.27.0-solo",
        "GLOO_MESH_LICENSE_KEY": "license",
        "ISTIOCTL": "/usr/local/bin/istioctl",
        "LOCAL_TASK_ROLE_ARN": "arn:aws:iam::111111111111:role/ecs/ambient/eks-ecs-task-role",
    }
    if scenario == 3:
        values.update(
            {
                "EXTERNAL_ACCOUNT": "222222222222",
                "EXTERNAL_ACCOUNT_PROFILE": "external-profile",
                "EXTERNAL_TASK_ROLE_ARN": "arn:aws:iam::222222222222:role/ecs/ambient/eks-ecs-task-role",
                "EXTERNAL_SUBNETS": "subnet-a,subnet-b,subnet-c",
                "EXTERNAL_SG": "sg-external",
                "EXTERNAL_VPC": "vpc-external",
            }
        )
    if scenario == 4:
        values.update(
            {
                "AZURE_SUBSCRIPTION": "sub-1",
                "AZURE_REGION": "eastus",
                "AZURE_RESOURCE_GROUP": "rg-demo",
                "AKS_CLUSTER_NAME": "aks-demo",
                "MESH_ID": "mesh1",
                "AKS_NETWORK": "aks",
                "CTX_EKS": "eks-context",
                "CTX_AKS": "aks-context",
            }
        )
    values.update(overrides)
    return DemoConfig.from_mapping(values, path=path)


@pytest.fixture
def config_factory():
    """Build configs for any scenario with overrides."""
    return make_config


@pytest.fixture
def config() -> DemoConfig:
    """Scenario 1 configuration."""
    return make_config(1)


@pytest.fixture
def config_two_clusters() -> DemoConfig:
    """Scenario 2 configuration."""
    return make_config(2)


@pytest.fixture
def config_cross_account() -> DemoConfig:
    """Scenario 3 configuration."""
    return make_config(3)


@pytest.fixture
def config_multicloud() -> DemoConfig:
    """Scenario 4 configuration."""
    return make_config(4)


@pytest.fixture
def shell_config_file(tmp_path: Path) -> Path:
    """Sourced shell config in the workshop format."""
    config_file = tmp_path / "env-config.sh"
    config_file.write_text(
        "# Demo settings\n"
        'export SCENARIO="1"\n'
        'export LOCAL_ACCOUNT="111111111111"\n'
        'export LOCAL_ACCOUNT_PROFILE="local-profile"\n'
        "export AWS_REGION=us-east-1\n"
        'export CLUSTER_NAME="demo"\n'
        'export LOCAL_TASK_ROLE_ARN="arn:aws:iam::111111111111:role/ecs/ambient/eks-ecs-task-role"\n'
    )
    return config_file


@pytest.fixture
def mock_aws() -> MagicMock:
    """AWSClient with mocked boto3 service clients."""
    aws = MagicMock()
    aws.region = "us-east-1"
    aws.profile = "local-profile"
    return aws


@pytest.fixture
def mock_sessions(mock_aws: MagicMock) -> MagicMock:
    """AWSSessions whose local, external and per-profile clients are mocks."""
    sessions = MagicMock()
    external = MagicMock()
    external.region = "us-east-1"
    external.profile = "external-profile"
    sessions.local = mock_aws
    sessions.external = external
    sessions.for_profile.side_effect = lambda profile: external if profile == "external-profile" else mock_aws
    return sessions


@pytest.fixture
def mock_k8s() -> MagicMock:
    """Mock KubernetesClient."""
    k8s = MagicMock()
    k8s.context = None
    k8s.delete_all_custom_objects.return_value = []
    k8s.list_custom_objects.return_value = []
    return k8s


@pytest.fixture
def mock_istioctl() -> MagicMock:
    """Mock IstioctlWrapper."""
    istioctl = MagicMock()
    istioctl.with_context.return_value = istioctl
    return istioctl
