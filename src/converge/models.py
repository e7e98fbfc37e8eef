"""Pydantic models for desired-state documents and the runtime resource model.

These models provide:
1. Type-safe YAML parsing of every resource kind
2. Schema validation at the boundary (fail fast, fail loudly)
3. The immutable Resource value the graph, diff and reconciler work on
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, field_validator

from .config import MAX_RESOURCE_NAME_LENGTH

SUPPORTED_API_VERSIONS = ("converge/v1",)
DOCUMENT_KIND = "DesiredState"

# Provider resource names: lowercase, digits, hyphens
RESOURCE_NAME_PATTERN = r"^[a-z]([-a-z0-9]*[a-z0-9])?$"


class ResourceKind(str, Enum):
    """Supported infrastructure resource kinds, in foundational order."""

    NETWORK = "Network"
    ROUTER = "Router"
    SUBNET = "Subnet"
    NAT_CONFIG = "NatConfig"
    FIREWALL_RULE = "FirewallRule"
    INSTANCE = "Instance"
    IAM_BINDING = "IamBinding"


# Tie-break order for topological sorting: foundational kinds first
KIND_PRIORITY: dict[ResourceKind, int] = {kind: index for index, kind in enumerate(ResourceKind)}

# Kinds that live in a region; the rest are global to the project
REGIONAL_KINDS: frozenset[ResourceKind] = frozenset(
    {ResourceKind.SUBNET, ResourceKind.ROUTER, ResourceKind.NAT_CONFIG, ResourceKind.INSTANCE}
)

# Reference fields per kind and the kinds each field may point to
REFERENCE_FIELDS: dict[ResourceKind, dict[str, frozenset[ResourceKind]]] = {
    ResourceKind.NETWORK: {},
    ResourceKind.ROUTER: {"network": frozenset({ResourceKind.NETWORK})},
    ResourceKind.SUBNET: {"network": frozenset({ResourceKind.NETWORK})},
    ResourceKind.NAT_CONFIG: {
        "router": frozenset({ResourceKind.ROUTER}),
        "subnets": frozenset({ResourceKind.SUBNET}),
    },
    ResourceKind.FIREWALL_RULE: {"network": frozenset({ResourceKind.NETWORK})},
    ResourceKind.INSTANCE: {"subnet": frozenset({ResourceKind.SUBNET})},
    ResourceKind.IAM_BINDING: {
        "target": frozenset({ResourceKind.INSTANCE, ResourceKind.SUBNET, ResourceKind.NETWORK}),
    },
}

# Attributes that cannot be changed in place; a change forces replacement
IMMUTABLE_FIELDS: dict[ResourceKind, frozenset[str]] = {
    ResourceKind.NETWORK: frozenset({"autoCreateSubnetworks", "cidr"}),
    ResourceKind.ROUTER: frozenset({"network"}),
    ResourceKind.SUBNET: frozenset({"network", "cidr"}),
    ResourceKind.NAT_CONFIG: frozenset({"router"}),
    ResourceKind.FIREWALL_RULE: frozenset({"network", "direction"}),
    ResourceKind.INSTANCE: frozenset({"subnet", "zone"}),
    # Role assignments cannot be edited; any change re-creates them
    ResourceKind.IAM_BINDING: frozenset({"target", "role", "members", "labels"}),
}


def resource_id(kind: ResourceKind, name: str, region: str | None) -> str:
    """Derive the stable id of a resource from its kind, name and region."""
    return f"{kind.value.lower()}/{region or 'global'}/{name}"


def compute_hash(kind: ResourceKind, name: str, region: str | None, attributes: dict[str, Any]) -> str:
    """Content hash of a resource, used for change detection."""
    canonical = json.dumps(
        {"kind": kind.value, "name": name, "region": region, "attributes": attributes},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# =============================================================================
# Document Models
# =============================================================================


class BaseSpec(BaseModel):
    """Fields shared by every resource entry in a desired-state document."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: Annotated[
        str, Field(min_length=1, max_length=MAX_RESOURCE_NAME_LENGTH, pattern=RESOURCE_NAME_PATTERN)
    ]
    region: str | None = None
    description: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)

    # Ordering-only edges on any other resource, e.g. an instance that must
    # wait for an IAM binding enabling OS Login: dependsOn: ["IamBinding/os-login"]
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    def attributes(self) -> dict[str, Any]:
        """Kind-specific attributes keyed by their document (camelCase) names."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude={"kind", "name", "region", "depends_on"},
            exclude_none=True,
        )


class NetworkSpec(BaseSpec):
    """VPC network."""

    kind: Literal["Network"] = "Network"
    cidr: str | None = None
    auto_create_subnetworks: bool = Field(False, alias="autoCreateSubnetworks")
    routing_mode: str = Field("REGIONAL", alias="routingMode")
    mtu: Annotated[int, Field(ge=1300, le=8896)] | None = None

    @field_validator("routing_mode")
    @classmethod
    def validate_routing_mode(cls, v: str) -> str:
        valid = {"REGIONAL", "GLOBAL"}
        if v.upper() not in valid:
            raise ValueError(f"routingMode must be one of {sorted(valid)}")
        return v.upper()


class SubnetSpec(BaseSpec):
    """Regional subnet inside a network."""

    kind: Literal["Subnet"] = "Subnet"
    network: Annotated[str, Field(min_length=1)]
    cidr: str
    private_access: bool = Field(False, alias="privateAccess")
    flow_logs: bool = Field(False, alias="flowLogs")
    purpose: str | None = None


class RouterSpec(BaseSpec):
    """Cloud router, the anchor for NAT."""

    kind: Literal["Router"] = "Router"
    network: Annotated[str, Field(min_length=1)]
    asn: int | None = None

    @field_validator("asn")
    @classmethod
    def validate_asn(cls, v: int | None) -> int | None:
        if v is None:
            return v
        if not (64512 <= v <= 65534 or 4200000000 <= v <= 4294967294):
            raise ValueError("asn must be a private ASN (64512-65534 or 4200000000-4294967294)")
        return v


class NatConfigSpec(BaseSpec):
    """NAT configuration attached to a router."""

    kind: Literal["NatConfig"] = "NatConfig"
    router: Annotated[str, Field(min_length=1)]
    # Empty means every subnet of the router's network
    subnets: list[str] = Field(default_factory=list)
    nat_ip_allocation: str = Field("AUTO", alias="natIpAllocation")
    log_errors: bool = Field(False, alias="logErrors")

    @field_validator("nat_ip_allocation")
    @classmethod
    def validate_allocation(cls, v: str) -> str:
        valid = {"AUTO", "MANUAL"}
        if v.upper() not in valid:
            raise ValueError(f"natIpAllocation must be one of {sorted(valid)}")
        return v.upper()


class PortRule(BaseModel):
    """Protocol and optional ports of a firewall allow/deny entry.

    Protocol and port syntax is checked by the desired-state validator so
    that every malformed entry is reported together.
    """

    model_config = {"extra": "forbid"}

    protocol: str | int
    ports: list[str | int] = Field(default_factory=list)


class FirewallRuleSpec(BaseSpec):
    """Network firewall rule with tag-based targeting."""

    kind: Literal["FirewallRule"] = "FirewallRule"
    network: Annotated[str, Field(min_length=1)]
    direction: str = "INGRESS"
    priority: Annotated[int, Field(ge=0, le=65535)] = 1000
    allowed: list[PortRule] = Field(default_factory=list)
    denied: list[PortRule] = Field(default_factory=list)
    source_ranges: list[str] = Field(default_factory=list, alias="sourceRanges")
    destination_ranges: list[str] = Field(default_factory=list, alias="destinationRanges")
    source_tags: list[str] = Field(default_factory=list, alias="sourceTags")
    target_tags: list[str] = Field(default_factory=list, alias="targetTags")
    disabled: bool = False

    @field_validator("direction")
    @classmethod
    def validate_direction(cls, v: str) -> str:
        valid = {"INGRESS", "EGRESS"}
        if v.upper() not in valid:
            raise ValueError(f"direction must be one of {sorted(valid)}")
        return v.upper()


class InstanceSpec(BaseSpec):
    """Compute instance placed in a subnet."""

    kind: Literal["Instance"] = "Instance"
    subnet: Annotated[str, Field(min_length=1)]
    machine_type: Annotated[str, Field(min_length=1, alias="machineType")]
    zone: str | None = None
    image: str | None = None
    tags: list[str] = Field(default_factory=list)
    external_ip: bool = Field(False, alias="externalIp")
    metadata: dict[str, str] = Field(default_factory=dict)
    service_account: str | None = Field(None, alias="serviceAccount")
    scopes: list[str] = Field(default_factory=list)


class IamBindingSpec(BaseSpec):
    """Role binding for a set of members, on the project or on one resource."""

    kind: Literal["IamBinding"] = "IamBinding"
    role: Annotated[str, Field(min_length=1)]
    members: Annotated[list[str], Field(min_length=1)]
    # None binds at project level
    target: str | None = None

    @field_validator("members")
    @classmethod
    def validate_members(cls, v: list[str]) -> list[str]:
        for member in v:
            if ":" not in member:
                raise ValueError(f"member '{member}' must be prefixed, e.g. 'user:' or 'group:'")
        return v


ResourceSpec = Annotated[
    Union[
        NetworkSpec,
        RouterSpec,
        SubnetSpec,
        NatConfigSpec,
        FirewallRuleSpec,
        InstanceSpec,
        IamBindingSpec,
    ],
    Field(discriminator="kind"),
]


class DocumentMetadata(BaseModel):
    """Metadata block of the document envelope."""

    model_config = {"extra": "ignore"}

    name: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)


class DesiredStateBody(BaseModel):
    """The `spec` section: provider context defaults and resources."""

    model_config = {"extra": "forbid"}

    project: str | None = None
    region: str | None = None
    resources: list[ResourceSpec] = Field(default_factory=list)


class DesiredStateDocument(BaseModel):
    """Versioned desired-state document."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    api_version: str = Field(alias="apiVersion")
    kind: str = DOCUMENT_KIND
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)
    spec: DesiredStateBody

    @field_validator("api_version")
    @classmethod
    def validate_api_version(cls, v: str) -> str:
        if v not in SUPPORTED_API_VERSIONS:
            raise ValueError(f"apiVersion must be one of {list(SUPPORTED_API_VERSIONS)}")
        return v

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if v != DOCUMENT_KIND:
            raise ValueError(f"kind must be '{DOCUMENT_KIND}'")
        return v


# =============================================================================
# Runtime Resource Model
# =============================================================================


@dataclass(frozen=True)
class Reference:
    """One depends-on edge of a resource.

    Explicit references come from reference fields and are bound to the
    referenced resource's provider id at apply time. Implicit references come
    from tag selectors and only order the graph.
    """

    field: str
    target_id: str
    implicit: bool = False


@dataclass(frozen=True)
class Resource:
    """A validated, reference-resolved infrastructure resource."""

    kind: ResourceKind
    name: str
    region: str | None
    attributes: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    references: tuple[Reference, ...] = ()

    @property
    def id(self) -> str:
        return resource_id(self.kind, self.name, self.region)

    @property
    def desired_hash(self) -> str:
        return compute_hash(self.kind, self.name, self.region, self.attributes)

    @property
    def depends_on(self) -> list[str]:
        """Ids this resource depends on, explicit and implicit, deduplicated."""
        return sorted({ref.target_id for ref in self.references})

    def explicit_references(self) -> dict[str, list[str]]:
        """Reference field -> referenced resource ids."""
        refs: dict[str, list[str]] = {}
        for ref in self.references:
            if not ref.implicit:
                refs.setdefault(ref.field, []).append(ref.target_id)
        return refs

    @property
    def sort_key(self) -> tuple[int, str, str]:
        return (KIND_PRIORITY[self.kind], self.name, self.region or "")


@dataclass
class DesiredState:
    """Ordered, uniquely-keyed set of resources supplied by the operator."""

    project: str | None = None
    region: str | None = None
    resources: list[Resource] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._by_id: dict[str, Resource] = {r.id: r for r in self.resources}

    def __iter__(self):  # type: ignore[no-untyped-def]
        return iter(self.resources)

    def __len__(self) -> int:
        return len(self.resources)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._by_id

    def get(self, resource_id: str) -> Resource | None:
        return self._by_id.get(resource_id)

    @property
    def ids(self) -> list[str]:
        return [r.id for r in self.resources]

    @property
    def digest(self) -> str:
        """Order-independent hash over every resource hash."""
        joined = "\n".join(sorted(r.desired_hash for r in self.resources))
        return hashlib.sha256(joined.encode("utf-8")).hexdigest()
