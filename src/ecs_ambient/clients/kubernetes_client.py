"""Kubernetes client for cluster operations."""

from typing import Any, NamedTuple

from kubernetes import client, config
from kubernetes.client.exceptions import ApiException
from kubernetes.client.models import V1Deployment, V1Pod
from kubernetes.stream import stream

from ecs_ambient.core.exceptions import KubernetesError
from ecs_ambient.utils.logging import get_logger
from ecs_ambient.utils.retry import poll_until

logger = get_logger(__name__)


class CustomResource(NamedTuple):
    """Group, version and plural of a custom resource type."""

    group: str
    version: str
    plural: str


AUTHORIZATION_POLICY = CustomResource("security.istio.io", "v1", "authorizationpolicies")
SERVICE_ENTRY = CustomResource("networking.istio.io", "v1", "serviceentries")
GATEWAY = CustomResource("gateway.networking.k8s.io", "v1", "gateways")
HTTP_ROUTE = CustomResource("gateway.networking.k8s.io", "v1", "httproutes")


class KubernetesClient:
    """Kubernetes client wrapper bound to one kubeconfig context."""

    def __init__(self, kubeconfig_path: str | None = None, context: str | None = None):
        """Initialize Kubernetes client.

        Each instance gets its own ApiClient so EKS and AKS contexts can be
        used side by side.

        Args:
            kubeconfig_path: Path to kubeconfig file (optional)
            context: Kubernetes context to use (optional, current context if unset)
        """
        self.context = context
        try:
            try:
                api_client = config.new_client_from_config(
                    config_file=kubeconfig_path, context=context
                )
            except config.ConfigException:
                config.load_incluster_config()
                api_client = client.ApiClient()

            self.core_v1 = client.CoreV1Api(api_client)
            self.apps_v1 = client.AppsV1Api(api_client)
            self.custom = client.CustomObjectsApi(api_client)

            logger.debug("k8s_client_initialized", context=context)

        except Exception as e:
            logger.error("k8s_client_initialization_failed", error=str(e))
            raise KubernetesError("Failed to initialize Kubernetes client") from e

    # Nodes

    def count_ready_nodes(self) -> tuple[int, int]:
        """Count nodes and Ready nodes.

        Returns:
            Tuple of (total_nodes, ready_nodes)

        Raises:
            KubernetesError: If nodes cannot be listed
        """
        try:
            nodes = self.core_v1.list_node().items
        except ApiException as e:
            logger.error("list_nodes_failed", status=e.status, reason=e.reason)
            raise KubernetesError(f"Failed to list nodes: {e.reason}") from e

        ready = 0
        for node in nodes:
            for condition in node.status.conditions or []:
                if condition.type == "Ready" and condition.status == "True":
                    ready += 1
        logger.info("nodes_counted", total=len(nodes), ready=ready)
        return len(nodes), ready

    # Namespaces

    def namespace_exists(self, name: str) -> bool:
        try:
            self.core_v1.read_namespace(name)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise KubernetesError(f"Failed to read namespace {name}: {e.reason}") from e

    def ensure_namespace(self, name: str, labels: dict[str, str] | None = None) -> bool:
        """Create a namespace if it does not exist.

        Args:
            name: Namespace name
            labels: Labels to apply (merged into existing labels)

        Returns:
            True if the namespace was created
        """
        created = False
        try:
            body = client.V1Namespace(metadata=client.V1ObjectMeta(name=name))
            self.core_v1.create_namespace(body)
            logger.info("namespace_created", namespace=name)
            created = True
        except ApiException as e:
            if e.status != 409:
                logger.error("create_namespace_failed", namespace=name, reason=e.reason)
                raise KubernetesError(f"Failed to create namespace {name}: {e.reason}") from e
            logger.debug("namespace_exists", namespace=name)

        if labels:
            self.label_namespace(name, labels)
        return created

    def label_namespace(self, name: str, labels: dict[str, str | None]) -> None:
        """Set (or remove, with a None value) namespace labels."""
        try:
            self.core_v1.patch_namespace(name, {"metadata": {"labels": labels}})
            logger.info("namespace_labeled", namespace=name, labels=labels)
        except ApiException as e:
            logger.error("label_namespace_failed", namespace=name, reason=e.reason)
            raise KubernetesError(f"Failed to label namespace {name}: {e.reason}") from e

    def delete_namespace(self, name: str) -> bool:
        """Delete a namespace.

        Returns:
            True if a delete was issued, False if it did not exist
        """
        try:
            self.core_v1.delete_namespace(name)
            logger.info("namespace_deleted", namespace=name)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise KubernetesError(f"Failed to delete namespace {name}: {e.reason}") from e

    # Service accounts

    def ensure_service_account(
        self, namespace: str, name: str, annotations: dict[str, str] | None = None
    ) -> None:
        """Create a service account if missing and apply annotations."""
        try:
            body = client.V1ServiceAccount(metadata=client.V1ObjectMeta(name=name))
            self.core_v1.create_namespaced_service_account(namespace, body)
            logger.info("service_account_created", namespace=namespace, name=name)
        except ApiException as e:
            if e.status != 409:
                raise KubernetesError(
                    f"Failed to create service account {namespace}/{name}: {e.reason}"
                ) from e

        if annotations:
            try:
                self.core_v1.patch_namespaced_service_account(
                    name, namespace, {"metadata": {"annotations": annotations}}
                )
                logger.info("service_account_annotated", namespace=namespace, name=name)
            except ApiException as e:
                raise KubernetesError(
                    f"Failed to annotate service account {namespace}/{name}: {e.reason}"
                ) from e

    # Workloads

    def get_deployment(self, name: str, namespace: str = "default") -> V1Deployment | None:
        """Get a deployment, or None if it does not exist."""
        try:
            return self.apps_v1.read_namespaced_deployment(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            logger.error("get_deployment_failed", name=name, namespace=namespace, reason=e.reason)
            raise KubernetesError(f"Failed to get deployment {name}: {e.reason}") from e

    def apply_deployment(self, body: dict[str, Any]) -> None:
        """Create or replace a deployment from a manifest dict."""
        name = body["metadata"]["name"]
        namespace = body["metadata"].get("namespace", "default")
        try:
            if self.get_deployment(name, namespace) is None:
                self.apps_v1.create_namespaced_deployment(namespace, body)
                logger.info("deployment_created", name=name, namespace=namespace)
            else:
                self.apps_v1.replace_namespaced_deployment(name, namespace, body)
                logger.info("deployment_replaced", name=name, namespace=namespace)
        except ApiException as e:
            raise KubernetesError(f"Failed to apply deployment {name}: {e.reason}") from e

    def delete_deployment(self, name: str, namespace: str = "default") -> bool:
        try:
            self.apps_v1.delete_namespaced_deployment(name, namespace)
            logger.info("deployment_deleted", name=name, namespace=namespace)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise KubernetesError(f"Failed to delete deployment {name}: {e.reason}") from e

    def apply_service(self, body: dict[str, Any]) -> None:
        """Create a service, or patch it if it already exists."""
        name = body["metadata"]["name"]
        namespace = body["metadata"].get("namespace", "default")
        try:
            self.core_v1.create_namespaced_service(namespace, body)
            logger.info("service_created", name=name, namespace=namespace)
        except ApiException as e:
            if e.status != 409:
                raise KubernetesError(f"Failed to apply service {name}: {e.reason}") from e
            self.core_v1.patch_namespaced_service(name, namespace, body)
            logger.info("service_patched", name=name, namespace=namespace)

    def delete_service(self, name: str, namespace: str = "default") -> bool:
        try:
            self.core_v1.delete_namespaced_service(name, namespace)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise KubernetesError(f"Failed to delete service {name}: {e.reason}") from e

    def service_exists(self, name: str, namespace: str) -> bool:
        try:
            self.core_v1.read_namespaced_service(name, namespace)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise KubernetesError(f"Failed to read service {name}: {e.reason}") from e

    def get_service_address(self, name: str, namespace: str) -> str | None:
        """Return the LoadBalancer hostname or IP of a service.

        Returns:
            Address, or None if the service is missing or has no address yet
        """
        try:
            svc = self.core_v1.read_namespaced_service(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise KubernetesError(f"Failed to read service {name}: {e.reason}") from e
        return self._load_balancer_address(svc)

    def first_service_address(self, namespace: str) -> str | None:
        """LoadBalancer address of the first service in a namespace."""
        try:
            services = self.core_v1.list_namespaced_service(namespace).items
        except ApiException as e:
            raise KubernetesError(f"Failed to list services in {namespace}: {e.reason}") from e
        return self._load_balancer_address(services[0]) if services else None

    @staticmethod
    def _load_balancer_address(svc: Any) -> str | None:
        balancer = svc.status.load_balancer if svc.status else None
        ingress = (balancer.ingress or []) if balancer else []
        if not ingress:
            return None
        return ingress[0].hostname or ingress[0].ip

    def apply_secret(self, namespace: str, name: str, string_data: dict[str, str]) -> None:
        """Create or replace an Opaque secret."""
        body = client.V1Secret(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            type="Opaque",
            string_data=string_data,
        )
        try:
            self.core_v1.create_namespaced_secret(namespace, body)
            logger.info("secret_created", name=name, namespace=namespace)
        except ApiException as e:
            if e.status != 409:
                raise KubernetesError(f"Failed to create secret {name}: {e.reason}") from e
            self.core_v1.replace_namespaced_secret(name, namespace, body)
            logger.info("secret_replaced", name=name, namespace=namespace)

    # Pods

    def list_pods(self, namespace: str, label_selector: str | None = None) -> list[V1Pod]:
        """List pods in a namespace.

        Raises:
            KubernetesError: If pods cannot be listed
        """
        try:
            logger.debug("getting_pods", namespace=namespace, label_selector=label_selector)
            pods = self.core_v1.list_namespaced_pod(namespace, label_selector=label_selector).items
            logger.debug("pods_retrieved", namespace=namespace, count=len(pods))
            return pods
        except ApiException as e:
            logger.error("get_pods_failed", namespace=namespace, status=e.status, reason=e.reason)
            raise KubernetesError(f"Failed to get pods in {namespace}: {e.reason}") from e

    @staticmethod
    def pod_is_ready(pod: V1Pod) -> bool:
        for condition in (pod.status.conditions or []) if pod.status else []:
            if condition.type == "Ready":
                return condition.status == "True"
        return False

    def first_pod_name(self, namespace: str, label_selector: str) -> str:
        """Name of the first pod matching a selector.

        Raises:
            KubernetesError: If no pod matches
        """
        pods = self.list_pods(namespace, label_selector)
        if not pods:
            raise KubernetesError(f"No pods found in {namespace} matching {label_selector}")
        return pods[0].metadata.name

    def wait_for_pods_ready(self, namespace: str, label_selector: str, timeout: int = 120) -> None:
        """Wait until every pod matching a selector is Ready.

        Raises:
            WaitTimeoutError: If pods are not ready in time
        """

        def all_ready() -> bool:
            pods = self.list_pods(namespace, label_selector)
            return bool(pods) and all(self.pod_is_ready(p) for p in pods)

        poll_until(
            all_ready,
            timeout=timeout,
            interval=5,
            description=f"pods {label_selector} in {namespace}",
        )
        logger.info("pods_ready", namespace=namespace, label_selector=label_selector)

    def exec_in_pod(
        self,
        namespace: str,
        pod_name: str,
        command: list[str],
        container: str | None = None,
    ) -> dict[str, Any]:
        """Execute a command in a pod.

        Args:
            namespace: Namespace
            pod_name: Pod name
            command: Command to execute as a list (e.g., ["curl", "-s", "eks-echo:8080"])
            container: Container name (optional, uses first container if not specified)

        Returns:
            Dictionary with 'stdout', 'stderr' and 'exit_code' keys

        Raises:
            KubernetesError: If execution fails
        """
        try:
            logger.debug("exec_in_pod", namespace=namespace, pod_name=pod_name, command=command)

            resp = stream(
                self.core_v1.connect_get_namespaced_pod_exec,
                pod_name,
                namespace,
                command=command,
                container=container,
                stderr=True,
                stdin=False,
                stdout=True,
                tty=False,
                _preload_content=False,
            )

            stdout_lines = []
            stderr_lines = []

            while resp.is_open():
                resp.update(timeout=1)
                if resp.peek_stdout():
                    stdout_lines.append(resp.read_stdout())
                if resp.peek_stderr():
                    stderr_lines.append(resp.read_stderr())

            exit_code = resp.returncode
            resp.close()

            result = {
                "stdout": "".join(stdout_lines),
                "stderr": "".join(stderr_lines),
                "exit_code": exit_code if exit_code is not None else 0,
            }
            logger.debug(
                "exec_in_pod_completed",
                pod_name=pod_name,
                exit_code=result["exit_code"],
                stdout_len=len(result["stdout"]),
            )
            return result

        except ApiException as e:
            logger.error("exec_in_pod_failed", pod_name=pod_name, status=e.status, reason=e.reason)
            raise KubernetesError(f"Failed to exec in pod {pod_name}: {e.reason}") from e

    # Custom resources

    def apply_custom_object(self, resource: CustomResource, body: dict[str, Any]) -> None:
        """Create a namespaced custom object, merging into it if it exists."""
        name = body["metadata"]["name"]
        namespace = body["metadata"]["namespace"]
        try:
            self.custom.create_namespaced_custom_object(
                resource.group, resource.version, namespace, resource.plural, body
            )
            logger.info("custom_object_created", kind=body.get("kind"), name=name, namespace=namespace)
        except ApiException as e:
            if e.status != 409:
                logger.error("apply_custom_object_failed", name=name, reason=e.reason)
                raise KubernetesError(f"Failed to apply {body.get('kind')} {name}: {e.reason}") from e
            self.custom.patch_namespaced_custom_object(
                resource.group, resource.version, namespace, resource.plural, name, body
            )
            logger.info("custom_object_patched", kind=body.get("kind"), name=name, namespace=namespace)

    def list_custom_objects(
        self, resource: CustomResource, namespace: str | None = None
    ) -> list[dict[str, Any]]:
        """List custom objects in one namespace or across the cluster.

        A missing CRD is reported as an empty list.
        """
        try:
            if namespace:
                response = self.custom.list_namespaced_custom_object(
                    resource.group, resource.version, namespace, resource.plural
                )
            else:
                response = self.custom.list_cluster_custom_object(
                    resource.group, resource.version, resource.plural
                )
            return response.get("items", [])
        except ApiException as e:
            if e.status == 404:
                return []
            raise KubernetesError(f"Failed to list {resource.plural}: {e.reason}") from e

    def delete_custom_object(self, resource: CustomResource, namespace: str, name: str) -> bool:
        try:
            self.custom.delete_namespaced_custom_object(
                resource.group, resource.version, namespace, resource.plural, name
            )
            logger.info("custom_object_deleted", plural=resource.plural, name=name, namespace=namespace)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise KubernetesError(f"Failed to delete {resource.plural} {name}: {e.reason}") from e

    def delete_all_custom_objects(
        self, resource: CustomResource, namespace: str | None = None
    ) -> list[str]:
        """Delete every object of a type in a namespace (or all namespaces).

        Returns:
            ``namespace/name`` of each deleted object
        """
        deleted = []
        for item in self.list_custom_objects(resource, namespace):
            meta = item.get("metadata", {})
            if self.delete_custom_object(resource, meta.get("namespace", namespace), meta["name"]):
                deleted.append(f"{meta.get('namespace', namespace)}/{meta['name']}")
        return deleted
