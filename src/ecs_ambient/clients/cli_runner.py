"""Wrappers for the external CLIs that have no Python API equivalent.

``eksctl``, ``az``, ``openssl`` and a few ``aws``/``kubectl`` commands are run
through :func:`run_command`, which raises :class:`CommandError` carrying the
command's stderr.
"""

import os
import subprocess
from pathlib import Path
from typing import Any

import yaml

from ecs_ambient.core.exceptions import CommandError
from ecs_ambient.utils.logging import get_logger

logger = get_logger(__name__)

GATEWAY_API_CRDS_URL = (
    "https://github.com/kubernetes-sigs/gateway-api/releases/download/v1.4.0/standard-install.yaml"
)


def run_command(
    cmd: list[str],
    input: str | None = None,
    check: bool = True,
    capture: bool = True,
    env: dict[str, str] | None = None,
    cwd: str | Path | None = None,
) -> subprocess.CompletedProcess:
    """Run an external command.

    Args:
        cmd: Command and arguments
        input: Text passed on stdin
        check: Raise CommandError on a non-zero exit code
        capture: Capture stdout/stderr (False for interactive commands such as logins)
        env: Extra environment variables
        cwd: Working directory

    Returns:
        CompletedProcess instance

    Raises:
        CommandError: If the binary is missing, or the command fails and check is set
    """
    logger.debug("running_command", command=" ".join(cmd))

    try:
        result = subprocess.run(
            cmd,
            input=input,
            capture_output=capture,
            text=True,
            check=False,
            env={**os.environ, **env} if env else None,
            cwd=cwd,
        )
    except FileNotFoundError as e:
        logger.error("command_not_found", binary=cmd[0])
        raise CommandError(f"{cmd[0]} not found in PATH") from e

    logger.debug(
        "command_completed",
        binary=cmd[0],
        returncode=result.returncode,
        stdout=result.stdout,
        stderr=result.stderr,
    )

    if check and result.returncode != 0:
        stderr = (result.stderr or result.stdout or "").strip()
        logger.error(
            "command_failed",
            command=" ".join(cmd),
            returncode=result.returncode,
            stderr=stderr,
        )
        raise CommandError(f"{cmd[0]} failed (exit {result.returncode}): {stderr}")

    return result


class EksctlWrapper:
    """eksctl cluster lifecycle commands."""

    def __init__(self, profile: str, region: str):
        self.profile = profile
        self.region = region

    def create_cluster(self, cluster_config: dict[str, Any]) -> None:
        """Create a cluster from a ClusterConfig manifest passed on stdin.

        Raises:
            CommandError: If eksctl fails
        """
        name = cluster_config["metadata"]["name"]
        logger.info("creating_eks_cluster", cluster_name=name, region=self.region)
        run_command(
            ["eksctl", "create", "cluster", "--config-file", "-"],
            input=yaml.safe_dump(cluster_config, sort_keys=False),
            env={"AWS_PROFILE": self.profile},
            capture=False,
        )
        logger.info("eks_cluster_created", cluster_name=name)

    def delete_cluster(self, name: str) -> bool:
        """Run ``eksctl delete cluster``.

        Returns:
            True if eksctl exited successfully
        """
        logger.info("deleting_eks_cluster", cluster_name=name)
        result = run_command(
            [
                "eksctl",
                "delete",
                "cluster",
                "--name",
                name,
                "--profile",
                self.profile,
                "--region",
                self.region,
            ],
            check=False,
        )
        if result.returncode != 0:
            logger.warning("eksctl_delete_failed", cluster_name=name, stderr=result.stderr)
        return result.returncode == 0


class AzureCli:
    """The ``az`` commands used to run the AKS side of the multicloud scenario."""

    def is_logged_in(self) -> bool:
        return run_command(["az", "account", "show"], check=False).returncode == 0

    def login(self) -> None:
        run_command(["az", "login"], capture=False)

    def set_subscription(self, subscription: str) -> None:
        run_command(["az", "account", "set", "--subscription", subscription])
        logger.info("azure_subscription_set", subscription=subscription)

    def group_exists(self, name: str) -> bool:
        return run_command(["az", "group", "show", "--name", name], check=False).returncode == 0

    def create_group(self, name: str, location: str) -> None:
        logger.info("creating_resource_group", resource_group=name, location=location)
        run_command(["az", "group", "create", "--name", name, "--location", location])

    def delete_group(self, name: str) -> None:
        """Start deleting a resource group without waiting for it."""
        logger.info("deleting_resource_group", resource_group=name)
        run_command(["az", "group", "delete", "--name", name, "--yes", "--no-wait"], check=False)

    def aks_exists(self, resource_group: str, name: str) -> bool:
        result = run_command(
            ["az", "aks", "show", "--resource-group", resource_group, "--name", name], check=False
        )
        return result.returncode == 0

    def create_aks(self, resource_group: str, name: str, node_count: int, vm_size: str) -> None:
        """Create an AKS cluster with Azure CNI and a managed identity.

        Raises:
            CommandError: If cluster creation fails
        """
        logger.info("creating_aks_cluster", resource_group=resource_group, cluster_name=name)
        run_command(
            [
                "az",
                "aks",
                "create",
                "--resource-group",
                resource_group,
                "--name",
                name,
                "--node-count",
                str(node_count),
                "--node-vm-size",
                vm_size,
                "--network-plugin",
                "azure",
                "--enable-managed-identity",
                "--generate-ssh-keys",
            ]
        )
        logger.info("aks_cluster_created", cluster_name=name)

    def get_credentials(self, resource_group: str, name: str) -> None:
        run_command(
            [
                "az",
                "aks",
                "get-credentials",
                "--resource-group",
                resource_group,
                "--name",
                name,
                "--overwrite-existing",
            ]
        )

    def delete_aks(self, resource_group: str, name: str) -> None:
        logger.info("deleting_aks_cluster", resource_group=resource_group, cluster_name=name)
        run_command(
            [
                "az",
                "aks",
                "delete",
                "--resource-group",
                resource_group,
                "--name",
                name,
                "--yes",
                "--no-wait",
            ],
            check=False,
        )


class AwsCli:
    """``aws`` CLI commands without a boto3 counterpart."""

    def __init__(self, region: str):
        self.region = region

    def sso_login(self, profile: str) -> None:
        """Interactive ``aws sso login``.

        Raises:
            CommandError: If the login fails
        """
        logger.info("aws_sso_login", profile=profile)
        run_command(["aws", "sso", "login", "--profile", profile], capture=False)

    def update_kubeconfig(self, cluster_name: str, profile: str) -> None:
        run_command(
            [
                "aws",
                "eks",
                "update-kubeconfig",
                "--name",
                cluster_name,
                "--region",
                self.region,
                "--profile",
                profile,
            ]
        )
        logger.info("kubeconfig_updated", cluster_name=cluster_name)

    def ecs_execute_command(
        self,
        cluster: str,
        task: str,
        container: str,
        command: str,
        profile: str,
    ) -> subprocess.CompletedProcess:
        """Run a command inside an ECS task through Session Manager.

        Returns:
            CompletedProcess (not checked; callers inspect the output)
        """
        return run_command(
            [
                "aws",
                "ecs",
                "execute-command",
                "--cluster",
                cluster,
                "--task",
                task,
                "--container",
                container,
                "--interactive",
                "--command",
                command,
                "--profile",
                profile,
                "--region",
                self.region,
            ],
            check=False,
        )


def kubectl_apply_url(url: str = GATEWAY_API_CRDS_URL, context: str | None = None) -> None:
    """``kubectl apply -f <url>`` (used for the Gateway API CRD bundle)."""
    cmd = ["kubectl", "apply", "-f", url]
    if context:
        cmd.append(f"--context={context}")
    logger.info("applying_manifest_url", url=url, context=context)
    run_command(cmd)


def kubectl_apply_manifest(manifest: str, context: str | None = None) -> None:
    """``kubectl apply -f -`` for manifests produced by other tools (remote secrets)."""
    cmd = ["kubectl", "apply", "-f", "-"]
    if context:
        cmd.append(f"--context={context}")
    run_command(cmd, input=manifest)


def current_context() -> str:
    """Name of the current kubeconfig context."""
    return run_command(["kubectl", "config", "current-context"]).stdout.strip()


def openssl(args: list[str], cwd: Path) -> None:
    run_command(["openssl"] + args, cwd=cwd)
