"""Unit tests for ecs-ambient CLI commands.

Commands are invoked through click's CliRunner against a sourced shell
config; provisioning and testing functions are patched where they are
looked up, since the CLI imports them lazily.
"""

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from ecs_ambient import __version__
from ecs_ambient.cli.main import cli
from ecs_ambient.core.exceptions import AWSError, StepError
from ecs_ambient.provisioning.cleanup import CleanupResult
from ecs_ambient.provisioning.ecs import DeploymentResult


@pytest.fixture
def cli_runner() -> CliRunner:
    """Provide a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def k8s_clients():
    """Patch the lazily created Kubernetes client and istioctl wrapper."""
    with patch("ecs_ambient.clients.kubernetes_client.KubernetesClient") as k8s, patch(
        "ecs_ambient.clients.istioctl.IstioctlWrapper"
    ) as istioctl:
        yield k8s, istioctl


# ==============================================================================
# CLI Group Tests
# ==============================================================================


def test_cli_version_option(cli_runner: CliRunner) -> None:
    """Test the --version option displays version info."""
    result = cli_runner.invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_cli_help_lists_all_commands(cli_runner: CliRunner) -> None:
    """Test the --help option displays all commands."""
    result = cli_runner.invoke(cli, ["--help"])

    assert result.exit_code == 0
    for command in ("validate", "setup-infra", "deploy-ecs", "add-to-mesh", "cleanup", "test-scenario", "authz"):
        assert command in result.output


def test_validate_missing_config(cli_runner: CliRunner, tmp_path: Path) -> None:
    """Test validate fails on a missing config file."""
    result = cli_runner.invoke(cli, ["--config", str(tmp_path / "missing.sh"), "validate"])

    assert result.exit_code == 1
    assert "Config file invalid" in result.output


# ==============================================================================
# Provisioning Command Tests
# ==============================================================================


def test_deploy_ecs_failure_exits_nonzero(cli_runner: CliRunner, shell_config_file: Path) -> None:
    """Test failed services are listed with a pointer to diagnose."""
    deployment = DeploymentResult(
        failed_services=["ecs-demo-1/echo-service"],
        service_counts={"ecs-demo-1": 1},
        cluster_accounts={"ecs-demo-1": "local"},
    )

    with patch("ecs_ambient.provisioning.ecs.deploy_ecs", return_value=deployment):
        result = cli_runner.invoke(cli, ["--config", str(shell_config_file), "deploy-ecs"])

    assert result.exit_code == 1
    assert "ecs-demo-1/echo-service" in result.output
    assert "diagnose" in result.output


def test_deploy_ecs_success(cli_runner: CliRunner, shell_config_file: Path) -> None:
    """Test the summary table is printed."""
    deployment = DeploymentResult(service_counts={"ecs-demo-1": 2}, cluster_accounts={"ecs-demo-1": "local"})

    with patch("ecs_ambient.provisioning.ecs.deploy_ecs", return_value=deployment):
        result = cli_runner.invoke(cli, ["--config", str(shell_config_file), "deploy-ecs"])

    assert result.exit_code == 0
    assert "ECS Deployment Summary" in result.output
    assert "All ECS services deployed" in result.output


def test_setup_infra_reports_failed_steps(cli_runner: CliRunner, shell_config_file: Path) -> None:
    """Test failed infrastructure steps are shown as warnings."""
    with patch("ecs_ambient.provisioning.network.setup_infrastructure", return_value=["eks_security_group"]):
        result = cli_runner.invoke(cli, ["--config", str(shell_config_file), "setup-infra"])

    assert result.exit_code == 0
    assert "eks_security_group" in result.output


# ==============================================================================
# Cleanup Command Tests
# ==============================================================================


def test_cleanup_cancelled(cli_runner: CliRunner, shell_config_file: Path) -> None:
    """Test anything but 'yes' cancels the cleanup."""
    with patch("ecs_ambient.provisioning.cleanup.run_cleanup") as mock_cleanup:
        result = cli_runner.invoke(cli, ["--config", str(shell_config_file), "cleanup"], input="no\n")

    assert result.exit_code == 0
    assert "ECS cluster: ecs-demo-1 (local account)" in result.output
    assert "Cleanup cancelled" in result.output
    mock_cleanup.assert_not_called()


def test_cleanup_confirmed(cli_runner: CliRunner, shell_config_file: Path, k8s_clients) -> None:
    """Test -y skips the prompt and leaves progress clearing to run_cleanup."""
    with patch("ecs_ambient.provisioning.cleanup.run_cleanup", return_value=CleanupResult()) as mock_cleanup, patch(
        "ecs_ambient.provisioning.cleanup.clear_progress", return_value=[]
    ) as mock_clear:
        result = cli_runner.invoke(cli, ["--config", str(shell_config_file), "cleanup", "-y", "-e"])

    assert result.exit_code == 0
    assert "Nothing was deleted" in result.output
    assert mock_cleanup.call_args.kwargs == {"delete_eks": True, "wait_for_deletion": True}
    mock_clear.assert_not_called()


# ==============================================================================
# Test Scenario Command Tests
# ==============================================================================


def test_scenario_list_steps(cli_runner: CliRunner, shell_config_file: Path) -> None:
    """Test -l prints the steps grouped by part."""
    with cli_runner.isolated_filesystem():
        result = cli_runner.invoke(cli, ["--config", str(shell_config_file), "test-scenario", "2", "-l"])

    assert result.exit_code == 0
    assert "Workshop Steps Status" in result.output
    assert "Deploy ECS Clusters (2)" in result.output


def test_scenario_rejects_unknown_number(cli_runner: CliRunner, shell_config_file: Path) -> None:
    """Test only scenarios 1 to 4 exist."""
    result = cli_runner.invoke(cli, ["--config", str(shell_config_file), "test-scenario", "5"])

    assert result.exit_code == 2


def test_scenario_step_failure_prints_cleanup_hint(cli_runner: CliRunner, shell_config_file: Path) -> None:
    """Test a failed step exits 1 with the manual cleanup commands."""
    with cli_runner.isolated_filesystem(), patch(
        "ecs_ambient.testing.scenarios.ScenarioRunner.run",
        side_effect=StepError("ecs_clusters", "Step 'ecs_clusters' failed: AccessDenied"),
    ):
        result = cli_runner.invoke(cli, ["--config", str(shell_config_file), "test-scenario", "1"])

    assert result.exit_code == 1
    assert "Step 'ecs_clusters' failed" in result.output
    assert "To remove what was created so far" in result.output


def test_scenario_exit_code_from_tests(cli_runner: CliRunner, shell_config_file: Path) -> None:
    """Test the test summary exit code becomes the command's."""
    with cli_runner.isolated_filesystem(), patch(
        "ecs_ambient.testing.scenarios.ScenarioRunner.run", return_value=1
    ) as mock_run:
        result = cli_runner.invoke(cli, ["--config", str(shell_config_file), "test-scenario", "1", "-t"])

    assert result.exit_code == 1
    assert mock_run.call_args.kwargs == {"tests_only": True, "delete_after": False}


# ==============================================================================
# Testing Command Tests
# ==============================================================================


def test_authz_requires_two_clusters(cli_runner: CliRunner, shell_config_file: Path, k8s_clients) -> None:
    """Test the workshop refuses to run outside scenario 2."""
    result = cli_runner.invoke(cli, ["--config", str(shell_config_file), "authz", "-x", "2"])

    assert result.exit_code == 1
    assert "SCENARIO=2" in result.output


def test_call_from_ecs_post(cli_runner: CliRunner, shell_config_file: Path) -> None:
    """Test a POST response is reduced to hostname, method and body."""
    response = json.dumps(
        {"host": {"hostname": "echo-service"}, "http": {"method": "POST"}, "request": {"body": "hi"}}
    )

    with patch("ecs_ambient.testing.connectivity.call_from_ecs", return_value=response) as mock_call:
        result = cli_runner.invoke(
            cli, ["--config", str(shell_config_file), "call-from-ecs", "echo-service.ecs-demo-1.ecs.local:8080", "hi"]
        )

    assert result.exit_code == 0
    assert '"method": "POST"' in result.output
    assert '"body": "hi"' in result.output
    assert "request" not in result.output
    assert mock_call.call_args.kwargs["data"] == "hi"


def test_call_from_ecs_error(cli_runner: CliRunner, shell_config_file: Path) -> None:
    """Test an ECS exec failure exits 1."""
    with patch("ecs_ambient.testing.connectivity.call_from_ecs", side_effect=AWSError("No shell task")):
        result = cli_runner.invoke(cli, ["--config", str(shell_config_file), "call-from-ecs", "echo:8080"])

    assert result.exit_code == 1
    assert "No shell task" in result.output
