"""Istioctl wrapper for the Solo.io distribution (ECS extensions)."""

import os
import subprocess
from pathlib import Path

import yaml

from ecs_ambient.core.exceptions import IstioError
from ecs_ambient.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_ISTIOCTL = "~/.istioctl/bin/istioctl"
SOLO_SUFFIX = "-solo"


def resolve_istioctl(path: str | None = None) -> Path:
    """Resolve the istioctl binary: explicit path, $ISTIOCTL, then ~/.istioctl/bin."""
    return Path(path or os.environ.get("ISTIOCTL") or DEFAULT_ISTIOCTL).expanduser()


class IstioctlWrapper:
    """Wrapper for the istioctl command-line tool."""

    def __init__(
        self,
        binary: str | None = None,
        kubeconfig_path: str | None = None,
        context: str | None = None,
    ):
        """Initialize istioctl wrapper.

        Args:
            binary: Path to istioctl (defaults to $ISTIOCTL or ~/.istioctl/bin/istioctl)
            kubeconfig_path: Path to kubeconfig file (optional)
            context: Kubernetes context to use (optional)
        """
        self.binary = resolve_istioctl(binary)
        self.kubeconfig_path = kubeconfig_path
        self.context = context

        logger.debug("istioctl_wrapper_initialized", binary=str(self.binary), context=context)

    def with_context(self, context: str | None) -> "IstioctlWrapper":
        """Copy of this wrapper targeting another kube context."""
        return IstioctlWrapper(str(self.binary), self.kubeconfig_path, context)

    def _run_command(
        self, args: list[str], check: bool = True, input: str | None = None
    ) -> subprocess.CompletedProcess:
        """Run istioctl command.

        Args:
            args: Command arguments
            check: Raise exception on non-zero exit code
            input: Text passed on stdin (for ``-f -`` manifests)

        Returns:
            CompletedProcess instance

        Raises:
            IstioError: If command fails
        """
        cmd = [str(self.binary)] + args

        if self.kubeconfig_path:
            cmd.extend(["--kubeconfig", self.kubeconfig_path])

        if self.context:
            cmd.extend(["--context", self.context])

        logger.debug("running_istioctl_command", command=" ".join(cmd))

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=check,
                input=input,
            )

            logger.debug("istioctl_command_completed", returncode=result.returncode)
            return result

        except subprocess.CalledProcessError as e:
            logger.error(
                "istioctl_command_failed",
                command=" ".join(cmd),
                returncode=e.returncode,
                stderr=e.stderr,
            )
            raise IstioError(f"istioctl command failed: {e.stderr or e.stdout}") from e
        except FileNotFoundError as e:
            logger.error("istioctl_not_found", binary=str(self.binary))
            raise IstioError(f"istioctl not found at: {self.binary}") from e

    def client_version(self) -> str:
        """Client version: the last token of the first ``version --short`` line."""
        result = self._run_command(["version", "--short"], check=False)
        lines = result.stdout.strip().splitlines()
        if not lines or not lines[0].split():
            return ""
        return lines[0].split()[-1]

    def check_solo_build(self, expected_tag: str | None = None) -> str:
        """Ensure istioctl is the Solo.io distribution with ECS support.

        Args:
            expected_tag: ISTIO_TAG the control plane will run (optional)

        Returns:
            The client version

        Raises:
            IstioError: If the binary is missing, upstream, or the wrong version
        """
        if not self.binary.is_file():
            raise IstioError(
                f"istioctl not found at: {self.binary}. "
                "This demo requires the Solo.io distribution of istioctl with ECS support; "
                f"place it at {DEFAULT_ISTIOCTL} or set ISTIOCTL."
            )

        version = self.client_version()
        if SOLO_SUFFIX not in version:
            raise IstioError(
                f"istioctl is not the Solo.io distribution (found version: {version or 'unknown'}). "
                "ECS support requires a version containing '-solo'."
            )

        if expected_tag:
            expected = expected_tag.removesuffix(SOLO_SUFFIX)
            actual = version.removesuffix(SOLO_SUFFIX)
            if expected != actual:
                raise IstioError(
                    f"istioctl version mismatch: expected {expected} (from ISTIO_TAG), got {actual}"
                )

        logger.info("istioctl_verified", version=version)
        return version

    def install(self, operator: dict) -> None:
        """Install Istio from an IstioOperator manifest.

        Raises:
            IstioError: If installation fails
        """
        logger.info("installing_istio", context=self.context)
        self._run_command(["install", "-y", "-f", "-"], input=yaml.safe_dump(operator))
        logger.info("istio_installed", context=self.context)

    def uninstall_purge(self) -> None:
        logger.info("uninstalling_istio", context=self.context)
        self._run_command(["uninstall", "--purge", "-y"])

    def ecs_add_service(
        self,
        service: str,
        cluster: str,
        namespace: str,
        service_account: str,
        profile: str,
    ) -> subprocess.CompletedProcess:
        """Register an ECS service with the mesh (``istioctl ecs add-service``).

        Raises:
            IstioError: If registration fails
        """
        logger.info("adding_ecs_service", service=service, cluster=cluster, namespace=namespace)
        return self._run_command(
            [
                "ecs",
                "add-service",
                service,
                "--cluster",
                cluster,
                "--namespace",
                namespace,
                "--service-account",
                service_account,
                "--external",
                "--profile",
                profile,
            ]
        )

    def multicluster_expose(self, namespace: str = "istio-eastwest") -> None:
        """Create the east-west gateway that exposes istiod to ECS tasks."""
        logger.info("exposing_istiod", namespace=namespace)
        self._run_command(["multicluster", "expose", "--namespace", namespace, "--wait"])

    def ztunnel_config(self, kind: str) -> str:
        """Output of ``ztunnel-config <kind>`` (empty on failure)."""
        result = self._run_command(["ztunnel-config", kind], check=False)
        return result.stdout if result.returncode == 0 else ""

    def create_remote_secret(self, name: str) -> str:
        """Remote secret manifest for the wrapper's context."""
        return self._run_command(["create-remote-secret", f"--name={name}"]).stdout

    def waypoint_delete_all(self, namespace: str) -> None:
        self._run_command(["waypoint", "delete", "--all", "-n", namespace], check=False)
