"""Networking and istiod IAM wiring for ECS tasks (``setup-infra``).

Single-account scenarios reuse the EKS VPC. The cross-account scenario
builds a second VPC in the external account, peers it with the EKS VPC and
opens the mesh ports between the two.
"""

from collections.abc import Callable
from typing import Any

from botocore.exceptions import ClientError

from ecs_ambient.clients.aws_client import AWSClient, AWSSessions, error_code, is_error, try_call
from ecs_ambient.core.config import DemoConfig
from ecs_ambient.core.exceptions import AWSError, DemoError, ResourceConflictError
from ecs_ambient.core.models import DeletedResource
from ecs_ambient.provisioning import iam
from ecs_ambient.utils.logging import get_logger
from ecs_ambient.utils.retry import pause, poll_until

logger = get_logger(__name__)

EXTERNAL_VPC_CIDR = "10.1.0.0/16"
EXTERNAL_VPC_NAME = "istio-ecs-external-vpc"
PRIVATE_SUBNETS = (
    ("istio-ecs-private-1", "10.1.1.0/24", "a"),
    ("istio-ecs-private-2", "10.1.2.0/24", "b"),
    ("istio-ecs-private-3", "10.1.3.0/24", "c"),
)
PUBLIC_SUBNET = ("istio-ecs-public", "10.1.4.0/24", "a")
EXTERNAL_SG_NAME = "istio-ecs-sg"
MESH_TCP_PORTS = ((80, 80), (8080, 8080), (443, 443), (15000, 15200))
ALL_TRAFFIC = {"IpProtocol": "-1", "IpRanges": [{"CidrIp": "0.0.0.0/0"}]}


def _name_tag(resource_type: str, name: str) -> list[dict[str, Any]]:
    return [{"ResourceType": resource_type, "Tags": [{"Key": "Name", "Value": name}]}]


def _filters(**values: str | list[str]) -> list[dict[str, Any]]:
    """Build EC2 filters: ``_filters(**{"vpc-id": vpc})``."""
    return [
        {"Name": name, "Values": value if isinstance(value, list) else [value]}
        for name, value in values.items()
    ]


def mesh_ingress_rules(cidr: str) -> list[dict[str, Any]]:
    """Ingress for HTTP, HTTPS, the Istio port range and ICMP from one CIDR."""
    ip_ranges = [{"CidrIp": cidr}]
    rules = [
        {"IpProtocol": "tcp", "FromPort": start, "ToPort": end, "IpRanges": ip_ranges}
        for start, end in MESH_TCP_PORTS
    ]
    rules.append({"IpProtocol": "icmp", "FromPort": -1, "ToPort": -1, "IpRanges": ip_ranges})
    return rules


def authorize_ingress(aws: AWSClient, group_id: str, rules: list[dict[str, Any]]) -> None:
    """Add ingress rules one at a time, skipping rules that already exist."""
    for rule in rules:
        try:
            aws.ec2.authorize_security_group_ingress(GroupId=group_id, IpPermissions=[rule])
        except ClientError as e:
            if not is_error(e, "InvalidPermission.Duplicate"):
                raise AWSError(f"Failed to authorize ingress on {group_id}: {error_code(e)}") from e


# Lookups


def validate_eks_cluster(config: DemoConfig, aws: AWSClient) -> tuple[str, str]:
    """Ensure the EKS cluster exists and return its VPC id and CIDR.

    Raises:
        AWSError: Listing the available clusters if CLUSTER_NAME is not found
    """
    config.require("CLUSTER_NAME")
    cluster = aws.describe_eks_cluster(config.cluster_name)
    if cluster is None:
        available = aws.list_eks_clusters()
        raise AWSError(
            f"EKS cluster '{config.cluster_name}' not found in {config.aws_region}. "
            f"Available clusters: {', '.join(available) or 'none'}"
        )

    vpc_id = cluster["resourcesVpcConfig"]["vpcId"]
    cidr = aws.ec2.describe_vpcs(VpcIds=[vpc_id])["Vpcs"][0]["CidrBlock"]
    logger.info("eks_cluster_validated", cluster_name=config.cluster_name, vpc_id=vpc_id, cidr=cidr)
    return vpc_id, cidr


def find_eks_vpc(config: DemoConfig, aws: AWSClient) -> str | None:
    """VPC of the EKS cluster, falling back to the eksctl CloudFormation stack."""
    cluster = aws.describe_eks_cluster(config.cluster_name)
    if cluster:
        return cluster["resourcesVpcConfig"]["vpcId"]

    response = try_call(
        aws.cloudformation.describe_stack_resource,
        "describe_stack_resource",
        StackName=f"eksctl-{config.cluster_name}-cluster",
        LogicalResourceId="VPC",
    )
    return response["StackResourceDetail"]["PhysicalResourceId"] if response else None


def public_subnets(aws: AWSClient, vpc_id: str) -> list[str]:
    """Subnets of a VPC whose Name tag contains ``Public``.

    ECS tasks need public IPs so the east-west gateway can reach them on 15008.
    """
    subnets = aws.ec2.describe_subnets(
        Filters=_filters(**{"vpc-id": vpc_id, "tag:Name": "*Public*"})
    )["Subnets"]
    return [s["SubnetId"] for s in subnets]


def _first(items: list[dict[str, Any]], key: str) -> str | None:
    return items[0][key] if items else None


# Single account


def setup_local_infrastructure(config: DemoConfig, sessions: AWSSessions) -> dict[str, str]:
    """Scenarios 1, 2 and 4: let istiod's pod identity role read ECS."""
    config.require("LOCAL_ACCOUNT", "LOCAL_ACCOUNT_PROFILE")
    local = sessions.local
    vpc_id, cidr = validate_eks_cluster(config, local)

    iam.ensure_istiod_local_role(config, local)

    values = {"LOCAL_VPC": vpc_id, "LOCAL_CIDR": cidr}
    config.save_generated("setup-infrastructure", values)
    logger.info("local_infrastructure_ready", vpc_id=vpc_id)
    return values


def ensure_local_ecs_security_group(config: DemoConfig, aws: AWSClient) -> tuple[str, list[str]]:
    """Security group and subnets for ECS tasks in the EKS VPC.

    Creates ``ecs-<CLUSTER_NAME>-sg`` (all ingress) if needed.

    Returns:
        Tuple of (security_group_id, public_subnet_ids)
    """
    cluster = aws.describe_eks_cluster(config.cluster_name)
    if cluster is None:
        raise AWSError(f"EKS cluster '{config.cluster_name}' not found")
    vpc_id = cluster["resourcesVpcConfig"]["vpcId"]

    groups = aws.ec2.describe_security_groups(
        Filters=_filters(**{"vpc-id": vpc_id, "group-name": config.local_security_group_name})
    )["SecurityGroups"]
    group_id = _first(groups, "GroupId")

    if group_id:
        logger.info("ecs_security_group_exists", group_id=group_id)
    else:
        group_id = aws.ec2.create_security_group(
            GroupName=config.local_security_group_name,
            Description="Security group for ECS tasks",
            VpcId=vpc_id,
        )["GroupId"]
        authorize_ingress(aws, group_id, [ALL_TRAFFIC])
        logger.info("ecs_security_group_created", group_id=group_id)

    return group_id, public_subnets(aws, vpc_id)


def open_eks_cluster_security_group(config: DemoConfig, aws: AWSClient) -> str | None:
    """Allow all ingress to the EKS cluster security group so ECS tasks reach pods."""
    vpc_id = find_eks_vpc(config, aws)
    if not vpc_id:
        return None
    groups = aws.ec2.describe_security_groups(
        Filters=_filters(**{"vpc-id": vpc_id, "group-name": "eks-cluster-sg*"})
    )["SecurityGroups"]
    group_id = _first(groups, "GroupId")
    if group_id:
        authorize_ingress(aws, group_id, [ALL_TRAFFIC])
        logger.info("eks_security_group_opened", group_id=group_id)
    return group_id


# Cross account


class CrossAccountNetwork:
    """Builds the external VPC and peers it with the EKS VPC.

    Each step stores the ids it finds or creates in ``values`` under the
    config variable names that are saved at the end.
    """

    def __init__(self, config: DemoConfig, local: AWSClient, external: AWSClient):
        self.config = config
        self.local = local
        self.external = external
        self.values: dict[str, str] = {}

    def create_external_vpc(self) -> None:
        ec2 = self.external.ec2
        vpc_id = _first(
            ec2.describe_vpcs(Filters=_filters(**{"tag:Name": EXTERNAL_VPC_NAME}))["Vpcs"], "VpcId"
        )
        if vpc_id:
            logger.info("external_vpc_exists", vpc_id=vpc_id)
        else:
            vpc_id = ec2.create_vpc(
                CidrBlock=EXTERNAL_VPC_CIDR,
                TagSpecifications=_name_tag("vpc", EXTERNAL_VPC_NAME),
            )["Vpc"]["VpcId"]
            ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsHostnames={"Value": True})
            ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsSupport={"Value": True})
            logger.info("external_vpc_created", vpc_id=vpc_id)
        self.values["EXTERNAL_VPC"] = vpc_id

    def _ensure_subnet(self, name: str, cidr: str, zone: str) -> str:
        ec2 = self.external.ec2
        vpc_id = self.values["EXTERNAL_VPC"]
        subnet_id = _first(
            ec2.describe_subnets(Filters=_filters(**{"vpc-id": vpc_id, "tag:Name": name}))["Subnets"],
            "SubnetId",
        )
        if subnet_id:
            return subnet_id
        subnet_id = ec2.create_subnet(
            VpcId=vpc_id,
            CidrBlock=cidr,
            AvailabilityZone=f"{self.config.aws_region}{zone}",
            TagSpecifications=_name_tag("subnet", name),
        )["Subnet"]["SubnetId"]
        logger.info("subnet_created", name=name, subnet_id=subnet_id)
        return subnet_id

    def create_subnets(self) -> None:
        private = [self._ensure_subnet(*subnet) for subnet in PRIVATE_SUBNETS]
        for index, subnet_id in enumerate(private, start=1):
            self.values[f"EXTERNAL_SUBNET_{index}"] = subnet_id
        self.values["EXTERNAL_PUBLIC_SUBNET"] = self._ensure_subnet(*PUBLIC_SUBNET)
        self.values["EXTERNAL_SUBNETS"] = ",".join(private)

    def create_internet_gateway(self) -> None:
        ec2 = self.external.ec2
        vpc_id = self.values["EXTERNAL_VPC"]
        igw_id = _first(
            ec2.describe_internet_gateways(
                Filters=_filters(**{"attachment.vpc-id": vpc_id})
            )["InternetGateways"],
            "InternetGatewayId",
        )
        if not igw_id:
            igw_id = ec2.create_internet_gateway(
                TagSpecifications=_name_tag("internet-gateway", "istio-ecs-igw")
            )["InternetGateway"]["InternetGatewayId"]
            ec2.attach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)
            logger.info("internet_gateway_created", igw_id=igw_id)
        self.values["EXTERNAL_IGW"] = igw_id

    def create_nat_gateway(self) -> None:
        ec2 = self.external.ec2
        gateways = ec2.describe_nat_gateways(
            Filters=_filters(**{"vpc-id": self.values["EXTERNAL_VPC"], "state": ["available", "pending"]})
        )["NatGateways"]

        if gateways:
            nat_id = gateways[0]["NatGatewayId"]
            addresses = gateways[0].get("NatGatewayAddresses", [])
            eip = addresses[0]["AllocationId"] if addresses else ""
            logger.info("nat_gateway_exists", nat_id=nat_id)
        else:
            eip = ec2.allocate_address(
                Domain="vpc", TagSpecifications=_name_tag("elastic-ip", "istio-ecs-eip")
            )["AllocationId"]
            nat_id = ec2.create_nat_gateway(
                SubnetId=self.values["EXTERNAL_PUBLIC_SUBNET"],
                AllocationId=eip,
                TagSpecifications=_name_tag("natgateway", "istio-ecs-nat"),
            )["NatGateway"]["NatGatewayId"]
            logger.info("nat_gateway_created", nat_id=nat_id)
            self.external.wait("ec2", "nat_gateway_available", NatGatewayIds=[nat_id])

        self.values["EXTERNAL_NAT"] = nat_id
        self.values["EXTERNAL_EIP"] = eip

    def _ensure_route_table(self, name: str, subnets: list[str], **default_route: str) -> str:
        ec2 = self.external.ec2
        vpc_id = self.values["EXTERNAL_VPC"]
        tables = ec2.describe_route_tables(
            Filters=_filters(**{"vpc-id": vpc_id, "tag:Name": name})
        )["RouteTables"]
        if tables:
            table = tables[0]
        else:
            table = ec2.create_route_table(
                VpcId=vpc_id, TagSpecifications=_name_tag("route-table", name)
            )["RouteTable"]
            logger.info("route_table_created", name=name, route_table_id=table["RouteTableId"])
        table_id = table["RouteTableId"]

        try_call(
            ec2.create_route,
            "create_default_route",
            RouteTableId=table_id,
            DestinationCidrBlock="0.0.0.0/0",
            **default_route,
        )

        associated = {a.get("SubnetId") for a in table.get("Associations", [])}
        for subnet_id in subnets:
            if subnet_id not in associated:
                ec2.associate_route_table(RouteTableId=table_id, SubnetId=subnet_id)
        return table_id

    def configure_route_tables(self) -> None:
        self.values["EXTERNAL_PUBLIC_RT"] = self._ensure_route_table(
            "istio-ecs-public-rt",
            [self.values["EXTERNAL_PUBLIC_SUBNET"]],
            GatewayId=self.values["EXTERNAL_IGW"],
        )
        self.values["EXTERNAL_PRIVATE_RT"] = self._ensure_route_table(
            "istio-ecs-private-rt",
            [self.values[f"EXTERNAL_SUBNET_{i}"] for i in range(1, 4)],
            NatGatewayId=self.values["EXTERNAL_NAT"],
        )

    def check_peering_conflicts(self) -> None:
        """Refuse to peer when another VPC with the same CIDR is already peered.

        Two requesters with one CIDR would make the external VPC's return
        routes ambiguous.

        Raises:
            ResourceConflictError: Listing the conflicting peerings
        """
        peerings = self.external.ec2.describe_vpc_peering_connections(
            Filters=_filters(
                **{
                    "accepter-vpc-info.vpc-id": self.values["EXTERNAL_VPC"],
                    "status-code": ["active", "pending-acceptance"],
                }
            )
        )["VpcPeeringConnections"]

        conflicts = [
            f"{p['VpcPeeringConnectionId']} from VPC {p['RequesterVpcInfo']['VpcId']}"
            for p in peerings
            if p["RequesterVpcInfo"].get("CidrBlock") == self.values["LOCAL_CIDR"]
            and p["RequesterVpcInfo"]["VpcId"] != self.values["LOCAL_VPC"]
        ]
        if conflicts:
            raise ResourceConflictError(
                f"Found peering(s) with the same CIDR ({self.values['LOCAL_CIDR']}) from a "
                f"different VPC: {'; '.join(conflicts)}. Delete them before proceeding."
            )

    def _peering_state(self, peering_id: str) -> str | None:
        connections = self.local.ec2.describe_vpc_peering_connections(
            VpcPeeringConnectionIds=[peering_id]
        )["VpcPeeringConnections"]
        return connections[0]["Status"]["Code"] if connections else None

    def setup_vpc_peering(self) -> None:
        self.check_peering_conflicts()

        existing = self.local.ec2.describe_vpc_peering_connections(
            Filters=_filters(
                **{
                    "requester-vpc-info.vpc-id": self.values["LOCAL_VPC"],
                    "accepter-vpc-info.vpc-id": self.values["EXTERNAL_VPC"],
                    "status-code": ["active", "pending-acceptance"],
                }
            )
        )["VpcPeeringConnections"]

        if existing:
            peering_id = existing[0]["VpcPeeringConnectionId"]
            logger.info("vpc_peering_exists", peering_id=peering_id)
        else:
            peering_id = self.local.ec2.create_vpc_peering_connection(
                VpcId=self.values["LOCAL_VPC"],
                PeerVpcId=self.values["EXTERNAL_VPC"],
                PeerOwnerId=self.config.external_account,
                PeerRegion=self.config.aws_region,
                TagSpecifications=_name_tag("vpc-peering-connection", "istio-multi-account-peering"),
            )["VpcPeeringConnection"]["VpcPeeringConnectionId"]
            logger.info("vpc_peering_created", peering_id=peering_id)

            self.external.ec2.accept_vpc_peering_connection(VpcPeeringConnectionId=peering_id)
            self.local.wait(
                "ec2", "vpc_peering_connection_exists", VpcPeeringConnectionIds=[peering_id]
            )
            state = poll_until(
                lambda: self._peering_state(peering_id),
                timeout=150,
                interval=5,
                description=f"VPC peering {peering_id} to become active",
                done=lambda s: s == "active",
                raise_on_timeout=False,
            )
            if state == "active":
                logger.info("peering_connection_active", peering_id=peering_id)

        self.values["PEERING_ID"] = peering_id
        self.values["EXTERNAL_CIDR"] = self.external.ec2.describe_vpcs(
            VpcIds=[self.values["EXTERNAL_VPC"]]
        )["Vpcs"][0]["CidrBlock"]

        for table_id in (self.values["EXTERNAL_PRIVATE_RT"], self.values["EXTERNAL_PUBLIC_RT"]):
            self._route_through_peering(self.external, table_id, self.values["LOCAL_CIDR"])

        local_tables = self.local.ec2.describe_route_tables(
            Filters=_filters(**{"vpc-id": self.values["LOCAL_VPC"]})
        )["RouteTables"]
        for table in local_tables:
            self._route_through_peering(self.local, table["RouteTableId"], self.values["EXTERNAL_CIDR"])

    def _route_through_peering(self, aws: AWSClient, table_id: str, cidr: str) -> None:
        """Route ``cidr`` via the peering, replacing a route to an older peering."""
        peering_id = self.values["PEERING_ID"]
        routes = aws.ec2.describe_route_tables(RouteTableIds=[table_id])["RouteTables"][0]["Routes"]
        current = next(
            (r.get("VpcPeeringConnectionId") for r in routes if r.get("DestinationCidrBlock") == cidr),
            None,
        )
        call = aws.ec2.replace_route if current and current != peering_id else aws.ec2.create_route
        try_call(
            call,
            "route_through_peering",
            RouteTableId=table_id,
            DestinationCidrBlock=cidr,
            VpcPeeringConnectionId=peering_id,
        )

    def configure_security_groups(self) -> None:
        ec2 = self.external.ec2
        vpc_id = self.values["EXTERNAL_VPC"]
        group_id = _first(
            ec2.describe_security_groups(
                Filters=_filters(**{"vpc-id": vpc_id, "group-name": EXTERNAL_SG_NAME})
            )["SecurityGroups"],
            "GroupId",
        )
        if not group_id:
            group_id = ec2.create_security_group(
                GroupName=EXTERNAL_SG_NAME,
                Description="Security group for Istio ECS services",
                VpcId=vpc_id,
                TagSpecifications=_name_tag("security-group", EXTERNAL_SG_NAME),
            )["GroupId"]
            logger.info("external_security_group_created", group_id=group_id)

        self_rule = {"IpProtocol": "-1", "UserIdGroupPairs": [{"GroupId": group_id}]}
        authorize_ingress(
            self.external, group_id, [self_rule] + mesh_ingress_rules(self.values["LOCAL_CIDR"])
        )
        self.values["EXTERNAL_SG"] = group_id

        cluster = self.local.describe_eks_cluster(self.config.cluster_name) or {}
        cluster_sg = cluster.get("resourcesVpcConfig", {}).get("clusterSecurityGroupId")
        if cluster_sg:
            authorize_ingress(self.local, cluster_sg, mesh_ingress_rules(self.values["EXTERNAL_CIDR"]))
            self.values["LOCAL_CLUSTER_SG"] = cluster_sg
        else:
            logger.warning("eks_cluster_security_group_not_found")

    def setup_iam(self) -> None:
        local_role, external_role = iam.ensure_istiod_roles(self.config, self.local, self.external)
        iam.ensure_pod_identity_association(
            self.config, self.local, iam.role_arn(self.config.local_account, iam.ISTIOD_POD_ROLE)
        )
        self.values["LOCAL_ROLE"] = local_role
        self.values["EXTERNAL_ROLE"] = external_role

    def steps(self) -> list[tuple[str, Callable[[], None]]]:
        return [
            ("create_external_vpc", self.create_external_vpc),
            ("create_subnets", self.create_subnets),
            ("create_internet_gateway", self.create_internet_gateway),
            ("create_nat_gateway", self.create_nat_gateway),
            ("configure_route_tables", self.configure_route_tables),
            ("setup_vpc_peering", self.setup_vpc_peering),
            ("configure_security_groups", self.configure_security_groups),
            ("setup_cross_account_iam_roles", self.setup_iam),
        ]


def setup_cross_account_infrastructure(config: DemoConfig, sessions: AWSSessions) -> list[str]:
    """Scenario 3: external VPC, peering, security groups and istiod roles.

    Sub-steps run in order; a failing step is recorded and the rest still
    run. A peering CIDR conflict aborts immediately.

    Returns:
        Names of failed sub-steps

    Raises:
        ResourceConflictError: If a conflicting peering exists
    """
    config.require("LOCAL_ACCOUNT", "EXTERNAL_ACCOUNT", "LOCAL_ACCOUNT_PROFILE", "EXTERNAL_ACCOUNT_PROFILE")
    network = CrossAccountNetwork(config, sessions.local, sessions.external)

    vpc_id, cidr = validate_eks_cluster(config, sessions.local)
    network.values.update({"LOCAL_VPC": vpc_id, "LOCAL_CIDR": cidr})

    failed: list[str] = []
    for name, step in network.steps():
        try:
            step()
        except ResourceConflictError:
            raise
        except (DemoError, ClientError, KeyError) as e:
            logger.error("infrastructure_step_failed", step=name, error=str(e))
            failed.append(name)

    config.save_generated("setup-infrastructure", network.values)

    if failed:
        logger.warning("infrastructure_completed_with_failures", failed_steps=failed)
    else:
        logger.info("cross_account_infrastructure_ready", peering_id=network.values.get("PEERING_ID"))
    return failed


def setup_infrastructure(config: DemoConfig, sessions: AWSSessions) -> list[str]:
    """Run the single-account or cross-account setup for the configured scenario.

    Returns:
        Names of failed sub-steps (always empty for a single account)
    """
    if config.layout.is_multi_account:
        return setup_cross_account_infrastructure(config, sessions)
    setup_local_infrastructure(config, sessions)
    return []


# Deletion


def delete_security_group(aws: AWSClient, group_id: str) -> bool:
    """Revoke every rule of a security group, then delete it."""
    groups = try_call(aws.ec2.describe_security_groups, "describe_security_groups", GroupIds=[group_id])
    if not groups or not groups["SecurityGroups"]:
        return False
    group = groups["SecurityGroups"][0]

    if group.get("IpPermissions"):
        try_call(
            aws.ec2.revoke_security_group_ingress,
            "revoke_ingress",
            GroupId=group_id,
            IpPermissions=group["IpPermissions"],
        )
    if group.get("IpPermissionsEgress"):
        try_call(
            aws.ec2.revoke_security_group_egress,
            "revoke_egress",
            GroupId=group_id,
            IpPermissions=group["IpPermissionsEgress"],
        )
    return try_call(aws.ec2.delete_security_group, "delete_security_group", GroupId=group_id) is not None


def delete_local_ecs_security_group(config: DemoConfig, aws: AWSClient) -> list[DeletedResource]:
    name = config.local_security_group_name
    groups = aws.ec2.describe_security_groups(Filters=_filters(**{"group-name": name}))["SecurityGroups"]
    group_id = _first(groups, "GroupId")
    if not group_id:
        logger.info("ecs_security_group_not_found", name=name)
        return []

    delete_security_group(aws, group_id)
    logger.info("ecs_security_group_deleted", name=name, group_id=group_id)
    return [DeletedResource(kind="Security Group", identifier=f"{name} ({group_id})")]


def _live_peerings(aws: AWSClient, side: str, vpc_id: str) -> list[str]:
    peerings = aws.ec2.describe_vpc_peering_connections(
        Filters=_filters(**{f"{side}-vpc-info.vpc-id": vpc_id})
    )["VpcPeeringConnections"]
    return [p["VpcPeeringConnectionId"] for p in peerings if p["Status"]["Code"] != "deleted"]


def delete_vpc_peerings(config: DemoConfig, local: AWSClient, external: AWSClient) -> list[DeletedResource]:
    """Delete PEERING_ID, any peering of the EKS VPC, and any peering into the external VPC."""
    deleted: list[DeletedResource] = []

    def delete(aws: AWSClient, peering_id: str, label: str = "") -> None:
        if try_call(
            aws.ec2.delete_vpc_peering_connection,
            "delete_vpc_peering_connection",
            VpcPeeringConnectionId=peering_id,
        ) is not None:
            deleted.append(DeletedResource(kind="VPC Peering", identifier=f"{peering_id}{label}"))

    if config.peering_id:
        delete(local, config.peering_id)

    eks_vpc = find_eks_vpc(config, local)
    if eks_vpc:
        for side in ("requester", "accepter"):
            for peering_id in _live_peerings(local, side, eks_vpc):
                if peering_id != config.peering_id:
                    delete(local, peering_id)

    if config.external_vpc:
        for peering_id in _live_peerings(external, "accepter", config.external_vpc):
            delete(external, peering_id, " (external)")

    return deleted


def delete_external_vpc(config: DemoConfig, aws: AWSClient) -> list[DeletedResource]:
    """Tear down the external VPC in dependency order."""
    if not config.external_vpc:
        logger.warning("external_vpc_not_configured")
        return []

    ec2 = aws.ec2
    deleted: list[DeletedResource] = []

    if config.external_nat:
        try_call(ec2.delete_nat_gateway, "delete_nat_gateway", NatGatewayId=config.external_nat)
        try:
            aws.wait("ec2", "nat_gateway_deleted", NatGatewayIds=[config.external_nat])
        except AWSError:
            pause(60, "NAT gateway deletion")
        deleted.append(DeletedResource(kind="NAT Gateway", identifier=config.external_nat))

    if config.external_eip:
        try_call(ec2.release_address, "release_address", AllocationId=config.external_eip)
        deleted.append(DeletedResource(kind="Elastic IP", identifier=config.external_eip))

    if config.external_igw:
        try_call(
            ec2.detach_internet_gateway,
            "detach_internet_gateway",
            InternetGatewayId=config.external_igw,
            VpcId=config.external_vpc,
        )
        try_call(ec2.delete_internet_gateway, "delete_internet_gateway", InternetGatewayId=config.external_igw)
        deleted.append(DeletedResource(kind="Internet Gateway", identifier=config.external_igw))

    subnets = (
        config.external_subnet_1,
        config.external_subnet_2,
        config.external_subnet_3,
        config.external_public_subnet,
    )
    for subnet_id in filter(None, subnets):
        try_call(ec2.delete_subnet, "delete_subnet", SubnetId=subnet_id)
        deleted.append(DeletedResource(kind="Subnet", identifier=subnet_id))

    for table_id in filter(None, (config.external_public_rt, config.external_private_rt)):
        try_call(ec2.delete_route_table, "delete_route_table", RouteTableId=table_id)
        deleted.append(DeletedResource(kind="Route Table", identifier=table_id))

    if config.external_sg:
        try_call(ec2.delete_security_group, "delete_security_group", GroupId=config.external_sg)
        deleted.append(DeletedResource(kind="Security Group", identifier=config.external_sg))

    try_call(ec2.delete_vpc, "delete_vpc", VpcId=config.external_vpc)
    deleted.append(DeletedResource(kind="VPC", identifier=config.external_vpc))
    logger.info("external_vpc_deleted", vpc_id=config.external_vpc)
    return deleted
