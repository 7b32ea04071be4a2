"""Connectivity checks between EKS pods, ECS tasks and (multicloud) AKS pods.

ECS tasks are reached through ``aws ecs execute-command`` on the
``shell-task`` service, EKS and AKS pods through the Kubernetes exec API.
Every check records a PASS/FAIL result instead of raising so a run always
produces a complete summary.
"""

import json
import re

from ecs_ambient.clients.aws_client import AWSClient, AWSSessions
from ecs_ambient.clients.cli_runner import AwsCli
from ecs_ambient.clients.kubernetes_client import KubernetesClient
from ecs_ambient.core.config import DemoConfig
from ecs_ambient.core.exceptions import AWSError, DemoError, KubernetesError
from ecs_ambient.core.models import SHELL_SERVICE, CheckResult, CheckStatus
from ecs_ambient.testing.results import TestRecorder
from ecs_ambient.utils.logging import get_logger
from ecs_ambient.utils.retry import poll_until

logger = get_logger(__name__)

SESSION_NOISE = (
    "Starting session with",
    "Exiting session with",
    "The Session Manager plugin was installed successfully",
)
AKS_HOSTNAME = "echo-service.app-a.svc.cluster.local:8080"
EKS_ECHO_URL = "eks-echo:8080"
CURL_FAILED = "CURL_FAILED"

_BLOCK_WORDS = re.compile(r"reset|refused|denied|failed", re.IGNORECASE)
_EKS_BLOCK_WORDS = re.compile(r"reset|refused|denied|failed|timed out", re.IGNORECASE)
# empty reply, receive failure, connection refused, timeout
_CURL_BLOCK_EXIT_CODES = (52, 56, 7, 28)


def echo_hostname(config: DemoConfig, number: int) -> str:
    """Mesh address of echo-service in ECS cluster ``number``."""
    domain = "ecs.external" if number in config.layout.external_clusters else "ecs.local"
    return f"echo-service.{config.ecs_cluster_name(number)}.{domain}:8080"


def find_task_id(aws: AWSClient, cluster: str, service: str = SHELL_SERVICE.name) -> str:
    """ID of the first running task of ``service``.

    Raises:
        AWSError: If the service has no task
    """
    arns = aws.ecs.list_tasks(cluster=cluster, serviceName=service).get("taskArns", [])
    if not arns:
        raise AWSError(f"Failed to retrieve task ID from cluster {cluster}")
    return arns[0].rsplit("/", 1)[-1]


def ecs_command(target: str, data: str | None = None) -> str:
    """Shell command handed to execute-command: a GET, or a POST when data is given."""
    if data is None:
        return f"sh -c 'curl {target}'"
    escaped = data.replace("'", "'\\''")
    return f"sh -c 'curl -X POST -H \"Content-Type: text/plain\" -d '\\''{escaped}'\\'' {target}'"


def _origin_profile(config: DemoConfig, origin_cluster: str) -> str:
    prefix = f"ecs-{config.cluster_name}-"
    suffix = origin_cluster[len(prefix) :] if origin_cluster.startswith(prefix) else ""
    if suffix.isdigit():
        return config.profile_for_cluster(int(suffix))
    return config.local_profile


def strip_session_noise(output: str) -> str:
    lines = [
        line
        for line in output.splitlines()
        if line.strip() and not any(noise in line for noise in SESSION_NOISE)
    ]
    return "\n".join(lines)


def call_from_ecs(
    config: DemoConfig,
    sessions: AWSSessions,
    target: str,
    origin_cluster: str | None = None,
    data: str | None = None,
    profile: str | None = None,
) -> str:
    """curl ``target`` from the shell container of an ECS task.

    Args:
        config: Demo configuration
        sessions: AWS clients per profile
        target: URL or ``host:port`` to call
        origin_cluster: ECS cluster to call from (defaults to cluster 1)
        data: Request body; sends a POST when given
        profile: AWS profile (defaults to the account owning the origin cluster)

    Returns:
        Command output without session-manager banner lines

    Raises:
        AWSError: If the origin cluster has no shell task
    """
    config.require("CLUSTER_NAME", "AWS_REGION")
    origin = origin_cluster or config.ecs_cluster_name(1)
    profile = profile or _origin_profile(config, origin)

    task_id = find_task_id(sessions.for_profile(profile), origin)
    logger.debug("calling_from_ecs", origin=origin, task_id=task_id, target=target, post=data is not None)

    result = AwsCli(config.aws_region).ecs_execute_command(
        origin,
        task_id,
        SHELL_SERVICE.container_name,
        ecs_command(target, data),
        profile,
    )
    return strip_session_noise((result.stdout or "") + (result.stderr or ""))


def format_ecs_response(output: str, post: bool = False) -> str:
    """Pretty-print an echo-server JSON response; non-JSON output is returned unchanged.

    For a POST only the responding host, the method and the echoed body are kept.
    """
    try:
        body = json.loads(output)
    except ValueError:
        return output
    if post and isinstance(body, dict):
        body = {
            "hostname": body.get("host", {}).get("hostname"),
            "method": body.get("http", {}).get("method"),
            "body": body.get("request", {}).get("body"),
        }
    return json.dumps(body, indent=2)


def response_hostname(output: str) -> str:
    """``.host.hostname`` of an echo-server response, or ``unknown``."""
    try:
        hostname = json.loads(output).get("host", {}).get("hostname")
    except (ValueError, AttributeError):
        return "unknown"
    return hostname or "unknown"


class ConnectivityTester:
    """Runs and records connectivity checks across the mesh.

    Args:
        config: Demo configuration
        sessions: AWS clients per profile (for ECS execute-command)
        recorder: Where results are recorded
        eks: Client for the EKS cluster running eks-shell
        aks: Client for the AKS cluster (multicloud only)
    """

    def __init__(
        self,
        config: DemoConfig,
        sessions: AWSSessions,
        recorder: TestRecorder,
        eks: KubernetesClient,
        aks: KubernetesClient | None = None,
    ):
        self.config = config
        self.sessions = sessions
        self.recorder = recorder
        self.eks = eks
        self.aks = aks

    def eks_shell_pod(self) -> str:
        return self.eks.first_pod_name("default", "app=eks-shell")

    def aks_shell_pod(self) -> str:
        if self.aks is None:
            raise KubernetesError("No AKS client configured")
        return self.aks.first_pod_name("app-a", "app=shell")

    # Transport

    def _curl(
        self,
        k8s: KubernetesClient,
        namespace: str,
        pod: str,
        target: str,
        max_time: int | None = None,
    ) -> tuple[str, int]:
        command = ["curl", "-s"]
        if max_time:
            command += ["--max-time", str(max_time)]
        command.append(target)
        try:
            result = k8s.exec_in_pod(namespace, pod, command)
        except KubernetesError as e:
            return str(e), 1
        return (result["stdout"] + result["stderr"]).strip(), result["exit_code"]

    def _curl_with_retries(self, k8s: KubernetesClient, namespace: str, pod: str, target: str) -> str:
        """Three attempts five seconds apart while DNS and the mesh converge."""
        return poll_until(
            lambda: self._curl(k8s, namespace, pod, target, max_time=10)[0],
            timeout=10,
            interval=5,
            description=f"response from {target}",
            done=lambda output: "hostname" in output,
            raise_on_timeout=False,
        )

    def probe_eks(self, target: str, max_time: int = 5) -> str:
        """Raw output of a curl from eks-shell."""
        return self._curl(self.eks, "default", self.eks_shell_pod(), target, max_time=max_time)[0]

    def probe_ecs(self, target: str, origin_cluster: str | None = None) -> str:
        """Raw output of a curl from an ECS shell task; errors become the output."""
        try:
            return call_from_ecs(self.config, self.sessions, target, origin_cluster=origin_cluster)
        except DemoError as e:
            return str(e)

    def _record_json_response(self, name: str, output: str) -> CheckResult:
        if "hostname" in output:
            return self.recorder.record(
                name, "JSON with hostname", f"Got hostname: {response_hostname(output)}", CheckStatus.PASS
            )
        return self.recorder.record(name, "JSON with hostname", output or CURL_FAILED, CheckStatus.FAIL)

    # Reachability

    def eks_to_eks(self, name: str = "EKS-to-EKS") -> CheckResult:
        """eks-shell to eks-echo inside the EKS cluster."""
        output, _ = self._curl(self.eks, "default", self.eks_shell_pod(), EKS_ECHO_URL)
        # eks-echo answers with plain text (Hostname=) or JSON (hostname)
        passed = "hostname" in output.lower()
        return self.recorder.check(
            name, passed, "Response with hostname", "Got response" if passed else output or CURL_FAILED
        )

    def eks_to_ecs(self, target: str, name: str = "EKS-to-ECS") -> CheckResult:
        output = self._curl_with_retries(self.eks, "default", self.eks_shell_pod(), target)
        return self._record_json_response(name, output)

    def eks_to_aks(self, name: str = "EKS-to-AKS", target: str = AKS_HOSTNAME) -> CheckResult:
        output = self._curl_with_retries(self.eks, "default", self.eks_shell_pod(), target)
        return self._record_json_response(name, output)

    def aks_to_ecs(self, target: str, name: str = "AKS-to-ECS") -> CheckResult:
        if self.aks is None:
            raise KubernetesError("No AKS client configured")
        output = self._curl_with_retries(self.aks, "app-a", self.aks_shell_pod(), target)
        return self._record_json_response(name, output)

    def ecs_to_ecs(self, target: str, name: str = "ECS-to-ECS", origin_cluster: str | None = None) -> CheckResult:
        output = self.probe_ecs(target, origin_cluster)
        passed = "hostname" in output
        actual = "Got response" if passed else output or CURL_FAILED
        return self.recorder.check(name, passed, "JSON with hostname", actual)

    def ecs_to_aks(self, name: str = "ECS-to-AKS", origin_cluster: str | None = None) -> CheckResult:
        return self.ecs_to_ecs(AKS_HOSTNAME, name, origin_cluster)

    # Authorization outcomes

    def eks_policy_allowed(self, target: str, name: str = "Policy: EKS allowed") -> CheckResult:
        output, _ = self._curl(self.eks, "default", self.eks_shell_pod(), target)
        passed = "hostname" in output
        return self.recorder.check(name, passed, "Success", "Got response" if passed else output or CURL_FAILED)

    def ecs_blocked(
        self, target: str, name: str = "Connection blocked", origin_cluster: str | None = None
    ) -> CheckResult:
        """Expect the call from ECS to be rejected by an authorization policy."""
        output = self.probe_ecs(target, origin_cluster)
        if _BLOCK_WORDS.search(output):
            return self.recorder.record(name, "Connection blocked", "Blocked as expected", CheckStatus.PASS)
        if "hostname" in output:
            return self.recorder.record(name, "Connection blocked", "Unexpectedly succeeded", CheckStatus.FAIL)
        return self.recorder.record(name, "Connection blocked", f"Unknown: {output}", CheckStatus.FAIL)

    def eks_blocked(self, target: str, name: str = "Connection blocked") -> CheckResult:
        """Expect a call from eks-shell to fail.

        A response carrying a hostname means the policy let it through; any
        curl failure, timeout or empty reply counts as blocked.
        """
        output, exit_code = self._curl(self.eks, "default", self.eks_shell_pod(), target, max_time=5)

        if "hostname" in output:
            actual, status = "Unexpectedly succeeded", CheckStatus.FAIL
        elif _EKS_BLOCK_WORDS.search(output):
            actual, status = "Blocked as expected", CheckStatus.PASS
        elif exit_code in _CURL_BLOCK_EXIT_CODES:
            actual, status = "Blocked (curl error)", CheckStatus.PASS
        elif exit_code != 0:
            actual, status = f"Blocked (exit code {exit_code})", CheckStatus.PASS
        elif not output:
            actual, status = "Blocked (no response)", CheckStatus.PASS
        else:
            actual, status = f"Unknown: {output}", CheckStatus.FAIL
        return self.recorder.record(name, "Connection blocked", actual, status)
