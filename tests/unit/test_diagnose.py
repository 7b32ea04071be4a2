"""Unit tests for ECS service diagnosis."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from ecs_ambient.core.config import DemoConfig
from ecs_ambient.provisioning.diagnose import diagnose_service_failure


def client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "Operation")


@pytest.fixture
def external_aws(mock_sessions: MagicMock) -> MagicMock:
    """External account with an active cluster and valid network."""
    aws = mock_sessions.external
    aws.ecs.describe_clusters.return_value = {
        "clusters": [{"status": "ACTIVE", "runningTasksCount": 1, "pendingTasksCount": 0}]
    }
    aws.ecs.describe_task_definition.return_value = {
        "taskDefinition": {"family": "echo-service-definition", "revision": 3, "status": "ACTIVE"}
    }
    aws.ec2.describe_subnets.return_value = {"Subnets": [{"SubnetId": "subnet-a"}]}
    aws.ec2.describe_security_groups.return_value = {
        "SecurityGroups": [{"GroupId": "sg-external", "GroupName": "istio-ecs-sg", "VpcId": "vpc-external"}]
    }
    return aws


class TestDiagnoseServiceFailure:
    """Tests for diagnose_service_failure."""

    def test_running_service(self, config_cross_account: DemoConfig, external_aws: MagicMock) -> None:
        """Test a healthy service reports its counts and latest events."""
        external_aws.ecs.describe_services.return_value = {
            "services": [
                {
                    "serviceName": "echo-service",
                    "status": "ACTIVE",
                    "desiredCount": 1,
                    "runningCount": 1,
                    "events": [{"createdAt": "2024-01-01", "message": f"event {i}"} for i in range(8)],
                }
            ]
        }

        diagnosis = diagnose_service_failure(config_cross_account, external_aws, "ecs-demo-3")

        assert diagnosis.service_exists
        assert diagnosis.service_status["RunningCount"] == 1
        assert len(diagnosis.events) == 5
        assert diagnosis.cluster_status == {"Status": "ACTIVE", "RunningTasks": 1, "PendingTasks": 0}
        assert diagnosis.task_definition["Revision"] == 3
        assert diagnosis.role_state == "exists"
        assert diagnosis.subnets == {"subnet-a": True, "subnet-b": True, "subnet-c": True}
        assert diagnosis.security_group_details["VpcId"] == "vpc-external"

    def test_missing_service(self, config_cross_account: DemoConfig, external_aws: MagicMock) -> None:
        """Test failures, missing definitions, roles and subnets are reported."""
        external_aws.ecs.describe_services.return_value = {
            "services": [],
            "failures": [{"arn": "arn:svc", "reason": "MISSING"}],
        }
        external_aws.ecs.describe_task_definition.side_effect = client_error("ClientException")
        external_aws.ecs.list_task_definitions.return_value = {"taskDefinitionArns": ["arn:echo:1"]}
        external_aws.iam.get_role.side_effect = client_error("NoSuchEntity")
        external_aws.ec2.describe_subnets.side_effect = [
            {"Subnets": [{"SubnetId": "subnet-a"}]},
            client_error("InvalidSubnetID.NotFound"),
            {"Subnets": []},
        ]

        diagnosis = diagnose_service_failure(config_cross_account, external_aws, "ecs-demo-3")

        assert not diagnosis.service_exists
        assert diagnosis.service_failures == [{"arn": "arn:svc", "reason": "MISSING"}]
        assert diagnosis.task_definition is None
        assert diagnosis.available_task_definitions == ["arn:echo:1"]
        assert diagnosis.role_state == "missing"
        assert diagnosis.subnets == {"subnet-a": True, "subnet-b": False, "subnet-c": False}
        assert diagnosis.likely_causes()[0][0] == "Task definition missing or invalid"

    def test_access_denied_role(self, config_cross_account: DemoConfig, external_aws: MagicMock) -> None:
        """Test an access error on the role check is distinguished from a missing role."""
        external_aws.ecs.describe_services.return_value = {"services": []}
        external_aws.iam.get_role.side_effect = client_error("AccessDenied")

        diagnosis = diagnose_service_failure(config_cross_account, external_aws, "ecs-demo-3")

        assert diagnosis.role_state == "access-denied"

    def test_missing_cluster(self, config_cross_account: DemoConfig, external_aws: MagicMock) -> None:
        """Test a missing cluster is reported without raising."""
        external_aws.ecs.describe_clusters.return_value = {"clusters": []}
        external_aws.ecs.describe_services.side_effect = client_error("ClusterNotFoundException")

        diagnosis = diagnose_service_failure(config_cross_account, external_aws, "ecs-demo-3")

        assert diagnosis.cluster_status is None
        assert diagnosis.service_failures == [{"reason": "ClusterNotFoundException"}]

    def test_cluster_access_denied(self, config_cross_account: DemoConfig, external_aws: MagicMock) -> None:
        """Test an access error on describe_clusters leaves the other sections reported."""
        external_aws.ecs.describe_clusters.side_effect = client_error("AccessDeniedException")
        external_aws.ecs.describe_services.return_value = {"services": []}

        diagnosis = diagnose_service_failure(config_cross_account, external_aws, "ecs-demo-3")

        assert diagnosis.cluster_status is None
        assert diagnosis.task_definition["Revision"] == 3
        assert diagnosis.role_state == "exists"

    def test_task_definition_listing_denied(
        self, config_cross_account: DemoConfig, external_aws: MagicMock
    ) -> None:
        """Test a failed task definition listing reports none available."""
        external_aws.ecs.describe_services.return_value = {"services": []}
        external_aws.ecs.describe_task_definition.side_effect = client_error("ClientException")
        external_aws.ecs.list_task_definitions.side_effect = client_error("ExpiredTokenException")

        diagnosis = diagnose_service_failure(config_cross_account, external_aws, "ecs-demo-3")

        assert diagnosis.task_definition is None
        assert diagnosis.available_task_definitions == []
        assert diagnosis.subnets == {"subnet-a": True, "subnet-b": True, "subnet-c": True}

    def test_next_steps_use_configured_network(
        self, config_cross_account: DemoConfig, external_aws: MagicMock
    ) -> None:
        """Test the manual create-service command carries subnets and the security group."""
        external_aws.ecs.describe_services.return_value = {"services": []}

        steps = diagnose_service_failure(config_cross_account, external_aws, "ecs-demo-3").next_steps()

        assert "subnets=[subnet-a,subnet-b,subnet-c],securityGroups=[sg-external]" in steps[0]
        assert "--profile external-profile" in steps[1]
