"""Provider adapter for Azure Resource Manager.

Resources are managed through the ARM generic resources API
(`ResourceManagementClient.resources.*_by_id`), so one code path covers
every kind. Each kind maps to an ARM resource type plus a pair of builders:
attributes -> ARM `properties`, and ARM `properties` -> observable
attributes (used for drift detection).

Kind mapping:
    Network      -> Microsoft.Network/virtualNetworks
    Subnet       -> Microsoft.Network/virtualNetworks/subnets
    Router       -> Microsoft.Network/routeTables
    NatConfig    -> Microsoft.Network/natGateways (+ subnet association)
    FirewallRule -> Microsoft.Network/networkSecurityGroups (one NSG per rule)
    Instance     -> Microsoft.Compute/virtualMachines (+ its network interface)
    IamBinding   -> Microsoft.Authorization/roleAssignments (one per member)

Association limits: a subnet holds at most one NSG and one route table,
while the resource model binds firewall rules and routers to a network, not
to subnets. The NSG created for a FirewallRule and the route table created
for a Router are therefore standalone and not associated with any subnet;
they take no effect on traffic until associated outside this adapter.
Only NAT gateways are associated, with the subnets named in the NatConfig.

SECURITY: All SDK failures are mapped to ProviderError; nothing leaks the
raw exception type to the scheduler.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from typing import Any

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource

from .models import Resource, ResourceKind
from .provider import FieldDelta, ObservedResource, ProviderAdapter, ProviderContext, ProviderError

logger = logging.getLogger(__name__)

# HTTP statuses worth retrying: timeout, conflict, throttling, server errors
TRANSIENT_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})

NETWORK_API_VERSION = "2023-09-01"
COMPUTE_API_VERSION = "2023-09-01"
AUTHORIZATION_API_VERSION = "2022-04-01"

RESOURCE_TYPES: dict[ResourceKind, str] = {
    ResourceKind.NETWORK: "Microsoft.Network/virtualNetworks",
    ResourceKind.SUBNET: "Microsoft.Network/virtualNetworks/subnets",
    ResourceKind.ROUTER: "Microsoft.Network/routeTables",
    ResourceKind.NAT_CONFIG: "Microsoft.Network/natGateways",
    ResourceKind.FIREWALL_RULE: "Microsoft.Network/networkSecurityGroups",
    ResourceKind.INSTANCE: "Microsoft.Compute/virtualMachines",
    ResourceKind.IAM_BINDING: "Microsoft.Authorization/roleAssignments",
}

API_VERSIONS: dict[ResourceKind, str] = {
    ResourceKind.NETWORK: NETWORK_API_VERSION,
    ResourceKind.SUBNET: NETWORK_API_VERSION,
    ResourceKind.ROUTER: NETWORK_API_VERSION,
    ResourceKind.NAT_CONFIG: NETWORK_API_VERSION,
    ResourceKind.FIREWALL_RULE: NETWORK_API_VERSION,
    ResourceKind.INSTANCE: COMPUTE_API_VERSION,
    ResourceKind.IAM_BINDING: AUTHORIZATION_API_VERSION,
}

PRINCIPAL_TYPES = {
    "user": "User",
    "group": "Group",
    "serviceAccount": "ServicePrincipal",
}

# Role assignment ids of one binding are joined into a single provider id
BINDING_ID_SEPARATOR = ";"

# ARM NSG rule priorities live in 100..4096
NSG_MIN_PRIORITY = 100
NSG_MAX_PRIORITY = 4096


def classify_error(error: Exception, operation: str) -> ProviderError:
    """Translate an Azure SDK exception into a ProviderError."""
    if isinstance(error, ProviderError):
        return error
    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return ProviderError(f"{operation}: connection failed: {error}", transient=True, code="connection")
    if isinstance(error, ClientAuthenticationError):
        return ProviderError(f"{operation}: authentication failed: {error}", transient=False, code="auth")
    if isinstance(error, HttpResponseError):
        status = error.status_code
        code = getattr(error.error, "code", None) if error.error is not None else None
        return ProviderError(
            f"{operation}: {error.message or error}",
            transient=status in TRANSIENT_STATUS_CODES,
            code=code or (str(status) if status is not None else None),
        )
    if isinstance(error, AzureError):
        return ProviderError(f"{operation}: {error}", transient=False)
    return ProviderError(f"{operation}: {type(error).__name__}: {error}", transient=False)


def _scope_prefix(context: ProviderContext) -> str:
    if not context.resource_group:
        raise ProviderError("Azure resources need a resource group (CONVERGE_RESOURCE_GROUP)")
    return f"/subscriptions/{context.project}/resourceGroups/{context.resource_group}"


def _first(bindings: dict[str, list[str]], field_name: str) -> str:
    values = bindings.get(field_name) or []
    if not values:
        raise ProviderError(f"missing binding for reference field '{field_name}'")
    return values[0]


def _nsg_priority(priority: int) -> int:
    span = NSG_MAX_PRIORITY - NSG_MIN_PRIORITY
    return NSG_MIN_PRIORITY + (priority * span) // 65535


# =============================================================================
# Attribute -> ARM properties builders
# =============================================================================


def _network_properties(attrs: dict[str, Any], bindings: dict[str, list[str]]) -> dict[str, Any]:
    props: dict[str, Any] = {}
    if "cidr" in attrs:
        props["addressSpace"] = {"addressPrefixes": [attrs["cidr"]]}
    return props


def _subnet_properties(attrs: dict[str, Any], bindings: dict[str, list[str]]) -> dict[str, Any]:
    props: dict[str, Any] = {}
    if "cidr" in attrs:
        props["addressPrefix"] = attrs["cidr"]
    if "privateAccess" in attrs:
        props["privateEndpointNetworkPolicies"] = "Disabled" if attrs["privateAccess"] else "Enabled"
    return props


def _router_properties(attrs: dict[str, Any], bindings: dict[str, list[str]]) -> dict[str, Any]:
    # Route tables carry no BGP speaker; an ASN means "propagate gateway routes"
    return {"disableBgpRoutePropagation": "asn" not in attrs}


def _nat_properties(attrs: dict[str, Any], bindings: dict[str, list[str]]) -> dict[str, Any]:
    return {"idleTimeoutInMinutes": 4}


def _firewall_properties(attrs: dict[str, Any], bindings: dict[str, list[str]]) -> dict[str, Any]:
    direction = "Inbound" if attrs.get("direction", "INGRESS") == "INGRESS" else "Outbound"
    access = "Allow" if attrs.get("allowed") else "Deny"
    entries = attrs.get("allowed") or attrs.get("denied") or []
    base_priority = _nsg_priority(int(attrs.get("priority", 1000)))
    sources = attrs.get("sourceRanges") or ["*"]
    destinations = attrs.get("destinationRanges") or ["*"]

    rules = []
    for index, entry in enumerate(entries):
        protocol = str(entry.get("protocol", "*")).lower()
        ports = [str(p) for p in entry.get("ports", [])] or ["*"]
        rules.append(
            {
                "name": f"rule-{index}",
                "properties": {
                    "priority": min(base_priority + index, NSG_MAX_PRIORITY),
                    "direction": direction,
                    "access": access,
                    "protocol": {"tcp": "Tcp", "udp": "Udp", "icmp": "Icmp"}.get(protocol, "*"),
                    "sourceAddressPrefixes": sources,
                    "destinationAddressPrefixes": destinations,
                    "sourcePortRange": "*",
                    "destinationPortRanges": ports,
                },
            }
        )
    return {"securityRules": rules}


def _instance_properties(attrs: dict[str, Any], bindings: dict[str, list[str]]) -> dict[str, Any]:
    props: dict[str, Any] = {}
    if "machineType" in attrs:
        props["hardwareProfile"] = {"vmSize": attrs["machineType"]}
    if attrs.get("image"):
        publisher, offer, sku, version = (attrs["image"].split(":") + ["latest"] * 4)[:4]
        props["storageProfile"] = {
            "imageReference": {"publisher": publisher, "offer": offer, "sku": sku, "version": version}
        }
    return props


PROPERTY_BUILDERS: dict[ResourceKind, Callable[[dict[str, Any], dict[str, list[str]]], dict[str, Any]]] = {
    ResourceKind.NETWORK: _network_properties,
    ResourceKind.SUBNET: _subnet_properties,
    ResourceKind.ROUTER: _router_properties,
    ResourceKind.NAT_CONFIG: _nat_properties,
    ResourceKind.FIREWALL_RULE: _firewall_properties,
    ResourceKind.INSTANCE: _instance_properties,
}


# =============================================================================
# ARM properties -> observable attributes
# =============================================================================


def _observe_network(resource: GenericResource) -> dict[str, Any]:
    prefixes = ((resource.properties or {}).get("addressSpace") or {}).get("addressPrefixes") or []
    return {"cidr": prefixes[0]} if prefixes else {}


def _observe_subnet(resource: GenericResource) -> dict[str, Any]:
    props = resource.properties or {}
    observed: dict[str, Any] = {}
    if "addressPrefix" in props:
        observed["cidr"] = props["addressPrefix"]
    return observed


def _observe_firewall(resource: GenericResource) -> dict[str, Any]:
    rules = (resource.properties or {}).get("securityRules") or []
    if not rules:
        return {}
    first = rules[0].get("properties", {})
    sources = [s for s in first.get("sourceAddressPrefixes", []) if s != "*"]
    return {
        "direction": "INGRESS" if first.get("direction") == "Inbound" else "EGRESS",
        "sourceRanges": sources,
    }


def _observe_instance(resource: GenericResource) -> dict[str, Any]:
    size = ((resource.properties or {}).get("hardwareProfile") or {}).get("vmSize")
    return {"machineType": size} if size else {}


def _observe_tags(resource: GenericResource) -> dict[str, Any]:
    return {"labels": dict(resource.tags or {})}


OBSERVERS: dict[ResourceKind, Callable[[GenericResource], dict[str, Any]]] = {
    ResourceKind.NETWORK: _observe_network,
    ResourceKind.SUBNET: _observe_subnet,
    ResourceKind.FIREWALL_RULE: _observe_firewall,
    ResourceKind.INSTANCE: _observe_instance,
}

# Child resources do not carry tags or a location of their own
CHILD_KINDS = frozenset({ResourceKind.SUBNET})


class AzureProviderAdapter(ProviderAdapter):
    """ProviderAdapter backed by the ARM generic resources API.

    The credential is supplied by the caller; this adapter never reads
    secrets from the environment.
    """

    def __init__(
        self,
        credential: Any,
        subscription_id: str,
        client: ResourceManagementClient | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            credential: azure-identity credential (e.g. ManagedIdentityCredential).
            subscription_id: Subscription all calls are made against.
            client: Pre-built client, mainly for tests.
        """
        self._client = client or ResourceManagementClient(
            credential=credential,
            subscription_id=subscription_id,
        )

    # ------------------------------------------------------------------
    # ProviderAdapter
    # ------------------------------------------------------------------

    def get(self, context: ProviderContext, kind: ResourceKind, provider_id: str) -> ObservedResource | None:
        if kind is ResourceKind.IAM_BINDING:
            return self._get_binding(provider_id)
        try:
            resource = self._client.resources.get_by_id(provider_id, API_VERSIONS[kind])
        except ResourceNotFoundError:
            return None
        except Exception as e:
            raise classify_error(e, f"get {kind.value}") from e

        attributes: dict[str, Any] = {}
        if kind not in CHILD_KINDS:
            attributes.update(_observe_tags(resource))
        observer = OBSERVERS.get(kind)
        if observer is not None:
            attributes.update(observer(resource))
        return ObservedResource(provider_id=resource.id or provider_id, kind=kind, attributes=attributes)

    def create(self, context: ProviderContext, resource: Resource, bindings: dict[str, list[str]]) -> str:
        operation = f"create {resource.id}"
        try:
            match resource.kind:
                case ResourceKind.IAM_BINDING:
                    return self._create_binding(context, resource, bindings)
                case ResourceKind.INSTANCE:
                    return self._create_instance(context, resource, bindings)
                case ResourceKind.NAT_CONFIG:
                    return self._create_nat(context, resource, bindings)
                case _:
                    arm_id = self._arm_id(context, resource, bindings)
                    self._put(arm_id, resource.kind, self._generic(context, resource, bindings))
                    return arm_id
        except ProviderError:
            raise
        except Exception as e:
            raise classify_error(e, operation) from e

    def update(
        self,
        context: ProviderContext,
        resource: Resource,
        provider_id: str,
        delta: dict[str, FieldDelta],
        bindings: dict[str, list[str]] | None = None,
    ) -> None:
        kind = resource.kind
        operation = f"update {kind.value} {provider_id}"
        try:
            if kind is ResourceKind.IAM_BINDING:
                raise ProviderError(f"{operation}: role assignments are replaced, not updated")

            vm_id = provider_id.split(BINDING_ID_SEPARATOR)[0]
            current = self._client.resources.get_by_id(vm_id, API_VERSIONS[kind])
            properties = dict(current.properties or {})
            builder = PROPERTY_BUILDERS.get(kind)
            if builder is not None:
                # Builders derive properties from the whole resource, never a partial delta
                properties.update(builder(resource.attributes, bindings or {}))
            tags = dict(current.tags or {})
            if "labels" in delta:
                tags = dict(resource.attributes.get("labels") or {})

            self._put(
                vm_id,
                kind,
                GenericResource(location=current.location, tags=tags or None, properties=properties),
            )
            if kind is ResourceKind.NAT_CONFIG and "subnets" in delta and bindings:
                self._associate_nat(vm_id, bindings.get("subnets", []))
        except ProviderError:
            raise
        except Exception as e:
            raise classify_error(e, operation) from e

    def delete(self, context: ProviderContext, kind: ResourceKind, provider_id: str) -> None:
        operation = f"delete {kind.value} {provider_id}"
        # Composite ids (instance + NIC, binding members) are deleted in order
        for arm_id in provider_id.split(BINDING_ID_SEPARATOR):
            try:
                self._client.resources.begin_delete_by_id(arm_id, self._api_version_for(arm_id, kind)).result()
            except ResourceNotFoundError:
                logger.info("Resource already absent", extra={"provider_id": arm_id})
            except Exception as e:
                raise classify_error(e, operation) from e

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _put(self, arm_id: str, kind: ResourceKind, body: GenericResource) -> None:
        logger.debug("ARM put", extra={"provider_id": arm_id, "kind": kind.value})
        self._client.resources.begin_create_or_update_by_id(arm_id, API_VERSIONS[kind], body).result()

    def _api_version_for(self, arm_id: str, kind: ResourceKind) -> str:
        if "/Microsoft.Network/networkInterfaces/" in arm_id:
            return NETWORK_API_VERSION
        return API_VERSIONS[kind]

    def _arm_id(self, context: ProviderContext, resource: Resource, bindings: dict[str, list[str]]) -> str:
        if resource.kind is ResourceKind.SUBNET:
            return f"{_first(bindings, 'network')}/subnets/{resource.name}"
        return f"{_scope_prefix(context)}/providers/{RESOURCE_TYPES[resource.kind]}/{resource.name}"

    def _generic(
        self, context: ProviderContext, resource: Resource, bindings: dict[str, list[str]]
    ) -> GenericResource:
        properties = PROPERTY_BUILDERS[resource.kind](resource.attributes, bindings)
        if resource.kind in CHILD_KINDS:
            return GenericResource(properties=properties)
        return GenericResource(
            location=resource.region or context.region,
            tags=resource.attributes.get("labels") or None,
            properties=properties,
        )

    def _create_instance(
        self, context: ProviderContext, resource: Resource, bindings: dict[str, list[str]]
    ) -> str:
        location = resource.region or context.region
        nic_id = f"{_scope_prefix(context)}/providers/Microsoft.Network/networkInterfaces/{resource.name}-nic"
        nic = GenericResource(
            location=location,
            properties={
                "ipConfigurations": [
                    {
                        "name": "primary",
                        "properties": {"subnet": {"id": _first(bindings, "subnet")}},
                    }
                ]
            },
        )
        self._client.resources.begin_create_or_update_by_id(nic_id, NETWORK_API_VERSION, nic).result()

        vm_id = self._arm_id(context, resource, bindings)
        properties = _instance_properties(resource.attributes, bindings)
        properties["networkProfile"] = {"networkInterfaces": [{"id": nic_id}]}
        properties["osProfile"] = {"computerName": resource.name}
        if resource.attributes.get("zone"):
            zones = [str(resource.attributes["zone"]).rsplit("-", 1)[-1]]
        else:
            zones = None
        self._put(
            vm_id,
            ResourceKind.INSTANCE,
            GenericResource(
                location=location,
                tags=resource.attributes.get("labels") or None,
                properties=properties,
                zones=zones,
            ),
        )
        # VM first so that delete removes it before its NIC
        return BINDING_ID_SEPARATOR.join([vm_id, nic_id])

    def _create_nat(self, context: ProviderContext, resource: Resource, bindings: dict[str, list[str]]) -> str:
        nat_id = self._arm_id(context, resource, bindings)
        body = self._generic(context, resource, bindings)
        body.sku = {"name": "Standard"}  # type: ignore[assignment]
        self._put(nat_id, ResourceKind.NAT_CONFIG, body)
        self._associate_nat(nat_id, bindings.get("subnets", []))
        return nat_id

    def _associate_nat(self, nat_id: str, subnet_ids: list[str]) -> None:
        for subnet_id in subnet_ids:
            subnet = self._client.resources.get_by_id(subnet_id, NETWORK_API_VERSION)
            properties = dict(subnet.properties or {})
            properties["natGateway"] = {"id": nat_id}
            self._put(subnet_id, ResourceKind.SUBNET, GenericResource(properties=properties))

    def _create_binding(
        self, context: ProviderContext, resource: Resource, bindings: dict[str, list[str]]
    ) -> str:
        scope = (bindings.get("target") or [f"/subscriptions/{context.project}"])[0]
        scope = scope.split(BINDING_ID_SEPARATOR)[0]
        role = str(resource.attributes["role"])
        if not role.startswith("/"):
            role = f"/subscriptions/{context.project}/providers/Microsoft.Authorization/roleDefinitions/{role}"

        assignment_ids = []
        for member in resource.attributes.get("members", []):
            prefix, _, principal = str(member).partition(":")
            name = uuid.uuid5(uuid.NAMESPACE_URL, f"{resource.id}|{member}")
            arm_id = f"{scope}/providers/Microsoft.Authorization/roleAssignments/{name}"
            body = GenericResource(
                properties={
                    "roleDefinitionId": role,
                    "principalId": principal,
                    "principalType": PRINCIPAL_TYPES.get(prefix, "User"),
                }
            )
            self._put(arm_id, ResourceKind.IAM_BINDING, body)
            assignment_ids.append(arm_id)
        return BINDING_ID_SEPARATOR.join(assignment_ids)

    def _get_binding(self, provider_id: str) -> ObservedResource | None:
        members = []
        for arm_id in provider_id.split(BINDING_ID_SEPARATOR):
            try:
                assignment = self._client.resources.get_by_id(arm_id, AUTHORIZATION_API_VERSION)
            except ResourceNotFoundError:
                continue
            except Exception as e:
                raise classify_error(e, "get IamBinding") from e
            principal = (assignment.properties or {}).get("principalId")
            if principal:
                members.append(principal)
        if not members:
            return None
        return ObservedResource(provider_id=provider_id, kind=ResourceKind.IAM_BINDING, attributes={})
