"""Unit tests for the authorization policy workshop."""

from unittest.mock import MagicMock

import pytest
from rich.console import Console

from ecs_ambient.core.config import DemoConfig
from ecs_ambient.core.exceptions import ConfigurationError
from ecs_ambient.testing.authz import AuthzWorkshop
from ecs_ambient.testing.results import TestRecorder

ECHO1 = "echo-service.ecs-demo-1.ecs.local:8080"
ECHO2 = "echo-service.ecs-demo-2.ecs.local:8080"
HOSTNAME = '{"host": {"hostname": "echo-service"}}'


@pytest.fixture
def tester() -> MagicMock:
    """Tester whose probes reflect a deny-all on cluster 1 with only cluster 2 reachable."""
    tester = MagicMock()
    tester.recorder = TestRecorder(Console(record=True, width=120))
    tester.probe_eks.side_effect = lambda target: HOSTNAME if target == ECHO2 else "RBAC: access denied"
    tester.probe_ecs.side_effect = lambda target, origin: HOSTNAME if target == ECHO2 else ""
    return tester


@pytest.fixture
def workshop(config_two_clusters: DemoConfig, mock_k8s: MagicMock, tester: MagicMock) -> AuthzWorkshop:
    return AuthzWorkshop(config_two_clusters, mock_k8s, tester, Console(record=True, width=120))


class TestAuthzWorkshop:
    """Tests for AuthzWorkshop."""

    def test_requires_two_clusters(self, config: DemoConfig, mock_k8s: MagicMock, tester: MagicMock) -> None:
        """Test the workshop only runs in the two-cluster scenario."""
        with pytest.raises(ConfigurationError, match="SCENARIO=2"):
            AuthzWorkshop(config, mock_k8s, tester)

    def test_matrix_matches_deny_all(self, workshop: AuthzWorkshop, tester: MagicMock) -> None:
        """Test every path is recorded and matches the deny-all expectation."""
        assert workshop.run_matrix("2") == 0

        names = [r.name for r in tester.recorder.results]
        assert names[0] == "6.2: EKS -> Cluster 1"
        assert len(names) == 5
        assert tester.recorder.results[0].actual == "BLOCKED (RBAC: access denied)"
        tester.probe_ecs.assert_any_call(ECHO1, "ecs-demo-2")

    def test_matrix_counts_unexpected(self, workshop: AuthzWorkshop, tester: MagicMock) -> None:
        """Test blocked paths fail the baseline exercise."""
        assert workshop.run_matrix("1") == 3
        assert tester.recorder.failed == 3
        assert tester.recorder.results[-1].actual == "BLOCKED (no response)"

    def test_exercise_2_applies_deny_all(self, workshop: AuthzWorkshop, mock_k8s: MagicMock) -> None:
        """Test existing policies are cleared before deny-all is applied."""
        workshop.exercise_2()

        assert mock_k8s.delete_all_custom_objects.call_count == 2
        body = mock_k8s.apply_custom_object.call_args.args[1]
        assert body["metadata"] == {"name": "deny-all", "namespace": "ecs-demo-1"}

    def test_exercise_3_restores_deny_all(self, workshop: AuthzWorkshop, mock_k8s: MagicMock) -> None:
        """Test deny-all is applied first when it is missing."""
        workshop.exercise_3()

        applied = [c.args[1]["metadata"]["name"] for c in mock_k8s.apply_custom_object.call_args_list]
        assert applied == ["deny-all", "allow-eks-to-echo"]

    def test_exercise_4_keeps_existing_policies(self, workshop: AuthzWorkshop, mock_k8s: MagicMock) -> None:
        """Test only the new ALLOW is applied when deny-all is in place."""
        mock_k8s.list_custom_objects.return_value = [{"metadata": {"name": "deny-all"}}]

        workshop.exercise_4()

        applied = [c.args[1]["metadata"]["name"] for c in mock_k8s.apply_custom_object.call_args_list]
        assert applied == ["allow-cluster-2-to-echo"]

    def test_exercise_6_denies_cluster2(self, workshop: AuthzWorkshop, mock_k8s: MagicMock) -> None:
        """Test the explicit DENY is applied alongside deny-all and the EKS ALLOW."""
        workshop.exercise_6()

        bodies = [c.args[1] for c in mock_k8s.apply_custom_object.call_args_list]
        assert [b["metadata"]["name"] for b in bodies] == ["deny-all", "allow-eks-to-echo", "deny-cluster-2"]
        assert bodies[-1]["spec"]["action"] == "DENY"

    def test_exercise_7_keeps_policies(self, workshop: AuthzWorkshop, mock_k8s: MagicMock) -> None:
        """Test policies stay in place when cleanup is declined."""
        assert workshop.exercise_7(cleanup=False) == 0
        mock_k8s.delete_all_custom_objects.assert_not_called()

    def test_exercise_7_cleans_up(self, workshop: AuthzWorkshop, mock_k8s: MagicMock) -> None:
        """Test policies are removed from both namespaces."""
        workshop.exercise_7(cleanup=True)

        assert mock_k8s.delete_all_custom_objects.call_count == 2

    def test_run_single_exercise_with_prefix(self, workshop: AuthzWorkshop, tester: MagicMock) -> None:
        """Test '6.2' selects exercise 2."""
        assert workshop.run_exercises("6.2", interactive=False) == 0
        assert tester.recorder.results[0].name.startswith("6.2:")

    def test_run_all_exercises(self, workshop: AuthzWorkshop, tester: MagicMock) -> None:
        """Test all six matrices run without prompting."""
        workshop.run_exercises("all", interactive=False)

        assert len(tester.recorder.results) == 30

    def test_invalid_exercise(self, workshop: AuthzWorkshop) -> None:
        """Test an unknown exercise raises ConfigurationError."""
        with pytest.raises(ConfigurationError, match="Invalid exercise: 9"):
            workshop.run_exercises("9")
