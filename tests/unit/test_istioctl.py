"""Unit tests for istioctl wrapper.

This module tests the IstioctlWrapper for the Solo.io istioctl including:
- Binary resolution
- Command execution and error handling
- Solo build verification
- ECS service registration
"""

import subprocess
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from ecs_ambient.clients.istioctl import IstioctlWrapper, resolve_istioctl
from ecs_ambient.core.exceptions import IstioError


def completed(stdout: str = "", returncode: int = 0) -> Mock:
    return Mock(stdout=stdout, stderr="", returncode=returncode)


@pytest.fixture
def istioctl_binary(tmp_path: Path) -> Path:
    """An executable placeholder for the istioctl binary."""
    binary = tmp_path / "istioctl"
    binary.write_text("#!/bin/sh\n")
    return binary


class TestResolveIstioctl:
    """Tests for resolve_istioctl."""

    def test_explicit_path_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test an explicit path is used over $ISTIOCTL."""
        monkeypatch.setenv("ISTIOCTL", "/opt/istioctl")

        assert resolve_istioctl("/usr/bin/istioctl") == Path("/usr/bin/istioctl")

    def test_environment_then_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test $ISTIOCTL is used, then the home directory default."""
        monkeypatch.setenv("ISTIOCTL", "/opt/istioctl")
        assert resolve_istioctl() == Path("/opt/istioctl")

        monkeypatch.delenv("ISTIOCTL")
        assert resolve_istioctl() == Path("~/.istioctl/bin/istioctl").expanduser()


class TestRunCommand:
    """Tests for _run_command method."""

    def test_run_command_adds_context(self) -> None:
        """Test the kube context is appended to every command."""
        wrapper = IstioctlWrapper(binary="/bin/istioctl", context="eks-context")

        with patch("subprocess.run", return_value=completed()) as mock_run:
            wrapper._run_command(["version"])

        assert mock_run.call_args.args[0] == ["/bin/istioctl", "version", "--context", "eks-context"]

    def test_run_command_failure(self) -> None:
        """Test a failing command raises IstioError with stderr."""
        wrapper = IstioctlWrapper(binary="/bin/istioctl")
        error = subprocess.CalledProcessError(1, ["istioctl"], stderr="no such cluster")

        with patch("subprocess.run", side_effect=error):
            with pytest.raises(IstioError, match="no such cluster"):
                wrapper._run_command(["ecs", "add-service", "echo-service"])

    def test_run_command_missing_binary(self) -> None:
        """Test a missing binary raises IstioError."""
        wrapper = IstioctlWrapper(binary="/missing/istioctl")

        with patch("subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(IstioError, match="istioctl not found"):
                wrapper._run_command(["version"])

    def test_with_context_keeps_binary(self) -> None:
        """Test with_context returns a wrapper bound to the other context."""
        wrapper = IstioctlWrapper(binary="/bin/istioctl", context="eks-context")

        other = wrapper.with_context("aks-context")

        assert other.binary == wrapper.binary
        assert other.context == "aks-context"
        assert wrapper.context == "eks-context"


class TestCheckSoloBuild:
    """Tests for check_solo_build."""

    def test_missing_binary(self, tmp_path: Path) -> None:
        """Test a missing binary names the expected location."""
        wrapper = IstioctlWrapper(binary=str(tmp_path / "istioctl"))

        with pytest.raises(IstioError, match="Solo.io distribution"):
            wrapper.check_solo_build()

    def test_upstream_build_rejected(self, istioctl_binary: Path) -> None:
        """Test a version without -solo is rejected."""
        wrapper = IstioctlWrapper(binary=str(istioctl_binary))

        with patch("subprocess.run", return_value=completed("client version: 1.27.0\n")):
            with pytest.raises(IstioError, match="found version: 1.27.0"):
                wrapper.check_solo_build()

    def test_version_mismatch(self, istioctl_binary: Path) -> None:
        """Test the client must match ISTIO_TAG once -solo is stripped."""
        wrapper = IstioctlWrapper(binary=str(istioctl_binary))

        with patch("subprocess.run", return_value=completed("1.26.2-solo\n")):
            with pytest.raises(IstioError, match="expected 1.27.0 \\(from ISTIO_TAG\\), got 1.26.2"):
                wrapper.check_solo_build("1.27.0-solo")

    def test_matching_solo_build(self, istioctl_binary: Path) -> None:
        """Test a matching Solo build returns its version."""
        wrapper = IstioctlWrapper(binary=str(istioctl_binary))

        with patch("subprocess.run", return_value=completed("1.27.0-solo\n")):
            assert wrapper.check_solo_build("1.27.0") == "1.27.0-solo"


class TestCommands:
    """Tests for the istioctl subcommands."""

    def test_install_passes_operator_on_stdin(self) -> None:
        """Test the IstioOperator is piped as YAML."""
        wrapper = IstioctlWrapper(binary="/bin/istioctl")

        with patch("subprocess.run", return_value=completed()) as mock_run:
            wrapper.install({"kind": "IstioOperator", "spec": {"profile": "ambient"}})

        assert mock_run.call_args.args[0][1:5] == ["install", "-y", "-f", "-"]
        assert "profile: ambient" in mock_run.call_args.kwargs["input"]

    def test_ecs_add_service(self) -> None:
        """Test the add-service flags."""
        wrapper = IstioctlWrapper(binary="/bin/istioctl")

        with patch("subprocess.run", return_value=completed()) as mock_run:
            wrapper.ecs_add_service("echo-service", "ecs-demo-1", "ecs-demo-1", "ecs-demo-sa-local", "local-profile")

        assert mock_run.call_args.args[0][1:] == [
            "ecs",
            "add-service",
            "echo-service",
            "--cluster",
            "ecs-demo-1",
            "--namespace",
            "ecs-demo-1",
            "--service-account",
            "ecs-demo-sa-local",
            "--external",
            "--profile",
            "local-profile",
        ]

    def test_ztunnel_config_failure_is_empty(self) -> None:
        """Test a failing ztunnel-config returns no output."""
        wrapper = IstioctlWrapper(binary="/bin/istioctl")

        with patch("subprocess.run", return_value=completed("partial", returncode=1)):
            assert wrapper.ztunnel_config("services") == ""

    def test_waypoint_delete_tolerates_failure(self) -> None:
        """Test waypoint deletion runs without check."""
        wrapper = IstioctlWrapper(binary="/bin/istioctl")

        with patch("subprocess.run", return_value=completed(returncode=1)) as mock_run:
            wrapper.waypoint_delete_all("ecs-demo-1")

        assert mock_run.call_args.kwargs["check"] is False
