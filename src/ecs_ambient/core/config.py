"""Configuration management for ecs-ambient.

The demo is driven by a flat set of variables (account ids, profiles,
generated VPC/subnet/role ids). They can live in a YAML mapping or in the
sourced shell file format the workshop ships (``export KEY="value"``).
Generated identifiers are written back to the same file so later commands
pick them up.
"""

import os
import re
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, PrivateAttr

from ecs_ambient.core.exceptions import ConfigurationError
from ecs_ambient.core.models import AccountTarget, AccountType, ClusterLayout
from ecs_ambient.utils.logging import get_logger

logger = get_logger(__name__)

_ASSIGNMENT = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)=(.*)$")
_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")
_GENERATED_MARKER = "# === Generated by "

# Variables that may come from the caller's shell profile instead of the file
ENVIRONMENT_FALLBACKS = ("GLOO_MESH_LICENSE_KEY", "ISTIOCTL", "AWS_PROFILE")


def parse_shell_config(text: str, environ: dict[str, str] | None = None) -> dict[str, str]:
    """Parse ``KEY=value`` / ``export KEY="value"`` lines.

    ``$VAR`` and ``${VAR}`` references are expanded against earlier
    assignments in the same file, then the environment.

    Args:
        text: Shell file contents
        environ: Environment used for references (defaults to os.environ)

    Returns:
        Mapping of variable name to value
    """
    env = os.environ if environ is None else environ
    values: dict[str, str] = {}

    for line in text.splitlines():
        match = _ASSIGNMENT.match(line)
        if not match:
            continue

        name, raw = match.group(1), match.group(2).strip()
        if raw[:1] in ("'", '"'):
            quote = raw[0]
            end = raw.find(quote, 1)
            value = raw[1:end] if end > 0 else raw[1:]
            expand = quote == '"'
        else:
            value = raw.split(" #", 1)[0].strip()
            expand = True

        if expand:
            value = _REFERENCE.sub(
                lambda m: values.get(m.group(1) or m.group(2), env.get(m.group(1) or m.group(2), "")),
                value,
            )
        values[name] = value

    return values


def write_generated_section(path: Path, generator: str, values: dict[str, str]) -> None:
    """Persist generated variables into a shell config file.

    Any earlier section written by the same generator is dropped. A section
    runs from its marker line to the next blank line.

    Args:
        path: Config file path
        generator: Name of the command that produced the values
        values: Variables to export
    """
    lines = path.read_text().splitlines() if path.exists() else []
    marker = f"{_GENERATED_MARKER}{generator} "

    kept: list[str] = []
    skipping = False
    for line in lines:
        if line.startswith(marker):
            skipping = True
            continue
        if skipping and (not line.strip() or line.startswith(_GENERATED_MARKER)):
            skipping = False
        if not skipping:
            kept.append(line)

    while kept and not kept[-1].strip():
        kept.pop()

    stamp = datetime.now().strftime("%a %b %d %H:%M:%S %Y")
    kept.extend(["", f"{marker}on {stamp} ==="])
    kept.extend(f'export {name}="{value}"' for name, value in values.items())
    path.write_text("\n".join(kept) + "\n")


class DemoConfig(BaseModel):
    """All variables read by the provisioning and test commands."""

    scenario: int = 1

    # Accounts
    local_account: str | None = None
    external_account: str | None = None
    local_account_profile: str | None = None
    external_account_profile: str | None = None
    aws_region: str = "us-east-1"
    aws_profile: str | None = None

    # EKS
    cluster_name: str | None = None
    owner_name: str | None = None
    number_nodes: int = 2
    node_type: str = "m5.xlarge"

    # Istio
    hub: str | None = None
    istio_tag: str | None = None
    gloo_mesh_license_key: str | None = None
    istioctl: str | None = None

    # ECS identities
    local_task_role_arn: str | None = None
    external_task_role_arn: str | None = None
    local_ecs_service_account_name: str = "ecs-demo-sa-local"
    external_ecs_service_account_name: str = "ecs-demo-sa-external"

    # Generated network and IAM identifiers
    local_vpc: str | None = None
    local_cidr: str | None = None
    external_vpc: str | None = None
    external_cidr: str | None = None
    peering_id: str | None = None
    external_subnet_1: str | None = None
    external_subnet_2: str | None = None
    external_subnet_3: str | None = None
    external_public_subnet: str | None = None
    external_subnets: str | None = None
    external_igw: str | None = None
    external_nat: str | None = None
    external_eip: str | None = None
    external_public_rt: str | None = None
    external_private_rt: str | None = None
    external_sg: str | None = None
    local_cluster_sg: str | None = None
    local_role: str | None = None
    external_role: str | None = None

    # Multicloud (scenario 4)
    azure_subscription: str | None = None
    azure_region: str | None = None
    azure_resource_group: str | None = None
    aks_cluster_name: str | None = None
    aks_node_count: int = 2
    aks_node_vm_size: str = "Standard_DS2_v2"
    mesh_id: str | None = None
    eks_network: str = "eks"
    aks_network: str | None = None
    ctx_eks: str | None = None
    ctx_aks: str | None = None

    _path: Path | None = PrivateAttr(default=None)

    @classmethod
    def from_mapping(cls, data: dict[str, Any], path: Path | None = None) -> "DemoConfig":
        """Build a config from upper- or lower-case variable names.

        ``INT``/``EXT`` are accepted as aliases for the local and external
        profiles and empty strings are treated as unset.

        Raises:
            ConfigurationError: If values fail validation
        """
        normalized: dict[str, Any] = {}
        for key, value in data.items():
            if value is None or value == "":
                continue
            normalized[key.lower()] = value

        if "int" in normalized:
            normalized.setdefault("local_account_profile", normalized["int"])
        if "ext" in normalized:
            normalized.setdefault("external_account_profile", normalized["ext"])

        try:
            config = cls(**{k: v for k, v in normalized.items() if k in cls.model_fields})
        except Exception as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        config._path = path
        return config

    @classmethod
    def from_file(cls, path: str | Path) -> "DemoConfig":
        """Load configuration from a YAML or shell file.

        Args:
            path: Path to configuration file

        Returns:
            DemoConfig instance

        Raises:
            ConfigurationError: If file cannot be loaded or parsed
        """
        config_path = Path(path).expanduser()

        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            text = config_path.read_text()
            if config_path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(text) or {}
            else:
                data = parse_shell_config(text)
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Invalid configuration: expected a mapping in {config_path}")

        for name in ENVIRONMENT_FALLBACKS:
            if not data.get(name) and os.environ.get(name):
                data[name] = os.environ[name]

        logger.debug("config_loaded", path=str(config_path), keys=len(data))
        return cls.from_mapping(data, path=config_path)

    @property
    def path(self) -> Path | None:
        return self._path

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary."""
        return self.model_dump()

    def require(self, *names: str) -> None:
        """Ensure variables are set.

        Args:
            names: Variable names (shell spelling, e.g. ``CLUSTER_NAME``)

        Raises:
            ConfigurationError: Naming the first missing variable
        """
        for name in names:
            if getattr(self, name.lower(), None) in (None, ""):
                raise ConfigurationError(f"Required variable {name} is not set in config file")

    def missing(self, *names: str) -> list[str]:
        """Return the subset of ``names`` that is unset."""
        return [name for name in names if getattr(self, name.lower(), None) in (None, "")]

    def save_generated(self, generator: str, values: dict[str, str | None]) -> None:
        """Record generated identifiers in memory and in the config file.

        Args:
            generator: Command that produced the values
            values: Upper-case variable names to values (None values are skipped)
        """
        present = {k: v for k, v in values.items() if v is not None}
        for name, value in present.items():
            if name.lower() in type(self).model_fields:
                setattr(self, name.lower(), value)

        if self._path is None:
            logger.warning("config_not_persisted", generator=generator, keys=list(present))
            return

        if self._path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(self._path.read_text()) or {}
            data.update(present)
            self._path.write_text(yaml.safe_dump(data, sort_keys=False))
        else:
            write_generated_section(self._path, generator, present)

        logger.info("config_saved", path=str(self._path), generator=generator, keys=list(present))

    # Derived names

    @property
    def layout(self) -> ClusterLayout:
        return ClusterLayout.for_scenario(self.scenario)

    @property
    def local_profile(self) -> str:
        """Profile used for local-account and EKS calls."""
        self.require("LOCAL_ACCOUNT_PROFILE")
        return self.local_account_profile  # type: ignore[return-value]

    def ecs_cluster_name(self, number: int) -> str:
        return f"ecs-{self.cluster_name}-{number}"

    @property
    def pod_identity_role_name(self) -> str:
        return f"istiod-eks-ecs-{self.cluster_name}"

    @property
    def local_security_group_name(self) -> str:
        return f"ecs-{self.cluster_name}-sg"

    @property
    def external_subnet_ids(self) -> list[str]:
        return [s.strip() for s in (self.external_subnets or "").split(",") if s.strip()]

    def profile_for_cluster(self, number: int) -> str:
        """Profile owning ECS cluster ``number``."""
        if number in self.layout.external_clusters:
            self.require("EXTERNAL_ACCOUNT_PROFILE")
            return self.external_account_profile  # type: ignore[return-value]
        return self.local_profile

    def account_targets(self) -> list[AccountTarget]:
        """Accounts that host ECS clusters for the configured scenario."""
        layout = self.layout
        targets = [
            AccountTarget(
                account_type=AccountType.LOCAL,
                profile=self.local_account_profile or "",
                task_role_arn=self.local_task_role_arn,
                service_account=self.local_ecs_service_account_name,
                clusters=layout.local_clusters,
            )
        ]
        if layout.external_clusters:
            targets.append(
                AccountTarget(
                    account_type=AccountType.EXTERNAL,
                    profile=self.external_account_profile or "",
                    task_role_arn=self.external_task_role_arn,
                    service_account=self.external_ecs_service_account_name,
                    clusters=layout.external_clusters,
                    subnets=self.external_subnet_ids,
                    security_group=self.external_sg,
                )
            )
        return targets

    def ecs_namespaces(self) -> list[str]:
        """Kubernetes namespaces mirroring the scenario's ECS clusters."""
        return [self.ecs_cluster_name(n) for n in self.layout.all_clusters]
