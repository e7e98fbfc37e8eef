"""Desired-state validation and reference resolution.

Turns a parsed DesiredStateDocument into a DesiredState of resolved
Resources. Validation is exhaustive: every violation found is collected and
raised together in a single ValidationError, so an operator can fix a
document in one pass. Nothing here talks to a provider.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from typing import Any

from .config import MAX_RESOURCES_PER_DOCUMENT
from .models import (
    REFERENCE_FIELDS,
    REGIONAL_KINDS,
    BaseSpec,
    DesiredState,
    DesiredStateDocument,
    FirewallRuleSpec,
    InstanceSpec,
    NatConfigSpec,
    NetworkSpec,
    PortRule,
    Reference,
    Resource,
    ResourceKind,
    SubnetSpec,
    resource_id,
)

logger = logging.getLogger(__name__)

# Protocols accepted by firewall rules, and the subset that carries ports
FIREWALL_PROTOCOLS = frozenset({"tcp", "udp", "icmp", "esp", "ah", "sctp", "ipip", "all"})
PORTED_PROTOCOLS = frozenset({"tcp", "udp", "sctp"})
MIN_PORT = 1
MAX_PORT = 65535

ALL_KINDS = frozenset(ResourceKind)


@dataclass(frozen=True)
class Violation:
    """A single problem found in a desired-state document."""

    message: str
    resource_ids: tuple[str, ...] = ()
    field: str | None = None

    def __str__(self) -> str:
        where = ", ".join(self.resource_ids)
        if where and self.field:
            return f"{where} [{self.field}]: {self.message}"
        if where:
            return f"{where}: {self.message}"
        return self.message


class ValidationError(Exception):
    """Raised when a desired-state document is malformed.

    Carries every violation found, not just the first one.
    """

    def __init__(self, violations: list[Violation]) -> None:
        self.violations = violations
        lines = "\n".join(f"  - {v}" for v in violations)
        super().__init__(f"Desired state is invalid ({len(violations)} violation(s)):\n{lines}")

    @property
    def resource_ids(self) -> set[str]:
        """Every resource id named by any violation."""
        return {rid for v in self.violations for rid in v.resource_ids}


def build_desired_state(document: DesiredStateDocument) -> DesiredState:
    """Validate a parsed document and resolve it into a DesiredState.

    Args:
        document: Schema-valid desired-state document.

    Returns:
        DesiredState with resolved references, in document order.

    Raises:
        ValidationError: With every violation found in the document.
    """
    body = document.spec
    default_region = body.region
    violations: list[Violation] = []
    warnings: list[str] = []

    if len(body.resources) > MAX_RESOURCES_PER_DOCUMENT:
        raise ValidationError(
            [Violation(f"document declares {len(body.resources)} resources, limit is {MAX_RESOURCES_PER_DOCUMENT}")]
        )

    # Pass 1: assign ids and check (kind, name) uniqueness within scope
    entries: list[tuple[str, BaseSpec, ResourceKind, str | None]] = []
    seen: dict[str, int] = {}
    for index, spec in enumerate(body.resources):
        kind = ResourceKind(spec.kind)  # type: ignore[attr-defined]
        region = _region_for(kind, spec, default_region)
        if kind in REGIONAL_KINDS and region is None:
            violations.append(
                Violation(
                    "regional resource needs a region (set it on the resource or in spec.region)",
                    (resource_id(kind, spec.name, None),),
                    "region",
                )
            )
        rid = resource_id(kind, spec.name, region)
        if rid in seen:
            violations.append(
                Violation(
                    f"duplicate {kind.value} '{spec.name}' (entries #{seen[rid]} and #{index})",
                    (rid,),
                )
            )
            continue
        seen[rid] = index
        entries.append((rid, spec, kind, region))

    by_id = {rid: (spec, kind, region) for rid, spec, kind, region in entries}

    # Pass 2: resolve explicit references
    resolved: dict[str, list[Reference]] = {rid: [] for rid, *_ in entries}
    for rid, spec, kind, region in entries:
        for field_name, allowed in REFERENCE_FIELDS[kind].items():
            for target_name in _reference_values(spec, field_name):
                target_id, problem = _resolve(target_name, allowed, region, by_id)
                if problem is not None:
                    violations.append(Violation(problem, (rid,), field_name))
                    continue
                resolved[rid].append(Reference(field=field_name, target_id=target_id))
        for target_name in spec.depends_on:
            target_id, problem = _resolve(target_name, ALL_KINDS, region, by_id)
            if problem is not None:
                violations.append(Violation(problem, (rid,), "dependsOn"))
                continue
            resolved[rid].append(Reference(field="dependsOn", target_id=target_id, implicit=True))

    # Pass 3: kind-specific checks
    violations.extend(_check_subnets(entries, resolved, by_id))
    violations.extend(_check_firewall_rules(entries))
    violations.extend(_check_nat_configs(entries, resolved, by_id))

    # Implicit edges: an instance depends on every rule of its network
    # that targets one of its tags
    tag_index = _instance_tag_index(entries)
    network_of = _network_index(resolved)
    for rid, spec, kind, _ in entries:
        if not isinstance(spec, FirewallRuleSpec) or not spec.target_tags:
            continue
        rule_network = network_of.get(rid)
        targeted = set()
        for tag in spec.target_tags:
            targeted.update(
                instance_id
                for instance_id in tag_index.get(tag, ())
                if network_of.get(instance_id) == rule_network
            )
        if not targeted:
            warnings.append(f"{rid}: targetTags {spec.target_tags} match no declared instance")
        for instance_id in sorted(targeted):
            resolved[instance_id].append(Reference(field="targetTags", target_id=rid, implicit=True))

    if violations:
        logger.warning(
            "Desired state validation failed",
            extra={"violation_count": len(violations)},
        )
        raise ValidationError(violations)

    for warning in warnings:
        logger.warning("Desired state warning", extra={"detail": warning})

    resources = [
        Resource(
            kind=kind,
            name=spec.name,
            region=region,
            attributes=spec.attributes(),
            references=tuple(resolved[rid]),
        )
        for rid, spec, kind, region in entries
    ]
    return DesiredState(
        project=body.project,
        region=default_region,
        resources=resources,
        warnings=warnings,
    )


def _region_for(kind: ResourceKind, spec: BaseSpec, default_region: str | None) -> str | None:
    if kind not in REGIONAL_KINDS:
        return None
    return spec.region or default_region


def _reference_values(spec: BaseSpec, field_name: str) -> list[str]:
    value = getattr(spec, field_name, None)
    if value is None:
        return []
    if isinstance(value, list):
        return list(value)
    return [value]


def _resolve(
    target: str,
    allowed: frozenset[ResourceKind],
    region: str | None,
    by_id: dict[str, tuple[BaseSpec, ResourceKind, str | None]],
) -> tuple[str, str | None]:
    """Resolve a `name` or `Kind/name` reference to a resource id.

    Returns:
        Tuple of (target_id, problem); problem is None on success.
    """
    wanted_kind: ResourceKind | None = None
    name = target
    if "/" in target:
        kind_part, _, name = target.partition("/")
        try:
            wanted_kind = ResourceKind(kind_part)
        except ValueError:
            return "", f"reference '{target}' names unknown kind '{kind_part}'"

    candidates = [
        (rid, kind, res_region)
        for rid, (spec, kind, res_region) in by_id.items()
        if spec.name == name and (wanted_kind is None or kind == wanted_kind)
    ]
    if not candidates:
        return "", f"dangling reference to '{target}'"

    compatible = [c for c in candidates if c[1] in allowed]
    if not compatible:
        found = sorted({c[1].value for c in candidates})
        expected = sorted(k.value for k in allowed)
        return "", f"reference '{target}' resolves to {found}, expected one of {expected}"

    if len(compatible) > 1:
        same_region = [c for c in compatible if c[2] in (region, None)]
        if len(same_region) == 1:
            compatible = same_region
        else:
            ids = sorted(c[0] for c in compatible)
            return "", f"ambiguous reference '{target}' matches {ids}; use 'Kind/name'"

    return compatible[0][0], None


def _parse_network(value: str) -> ipaddress.IPv4Network | ipaddress.IPv6Network | None:
    try:
        return ipaddress.ip_network(value, strict=True)
    except ValueError:
        return None


def _check_subnets(
    entries: list[tuple[str, BaseSpec, ResourceKind, str | None]],
    resolved: dict[str, list[Reference]],
    by_id: dict[str, tuple[BaseSpec, ResourceKind, str | None]],
) -> list[Violation]:
    """CIDR syntax, containment in the parent network, and sibling overlap."""
    violations: list[Violation] = []
    siblings: dict[str, list[tuple[str, Any]]] = {}

    for rid, spec, _, _ in entries:
        if isinstance(spec, NetworkSpec) and spec.cidr is not None:
            if _parse_network(spec.cidr) is None:
                violations.append(Violation(f"invalid CIDR '{spec.cidr}'", (rid,), "cidr"))

    for rid, spec, _, _ in entries:
        if not isinstance(spec, SubnetSpec):
            continue
        cidr = _parse_network(spec.cidr)
        if cidr is None:
            violations.append(Violation(f"invalid CIDR '{spec.cidr}'", (rid,), "cidr"))
            continue
        network_ids = [ref.target_id for ref in resolved[rid] if ref.field == "network"]
        if not network_ids:
            continue
        network_id = network_ids[0]
        siblings.setdefault(network_id, []).append((rid, cidr))

        network_spec = by_id[network_id][0]
        if isinstance(network_spec, NetworkSpec) and network_spec.cidr:
            parent = _parse_network(network_spec.cidr)
            if parent is not None and (
                parent.version != cidr.version or not cidr.subnet_of(parent)  # type: ignore[arg-type]
            ):
                violations.append(
                    Violation(
                        f"CIDR {cidr} is outside network range {parent}",
                        (rid, network_id),
                        "cidr",
                    )
                )

    for members in siblings.values():
        for i, (left_id, left) in enumerate(members):
            for right_id, right in members[i + 1 :]:
                if left.version == right.version and left.overlaps(right):
                    violations.append(
                        Violation(
                            f"CIDR {left} overlaps sibling subnet CIDR {right}",
                            (left_id, right_id),
                            "cidr",
                        )
                    )
    return violations


def _check_port_rules(rid: str, field_name: str, rules: list[PortRule]) -> list[Violation]:
    violations: list[Violation] = []
    for rule in rules:
        protocol = str(rule.protocol).lower()
        if protocol.isdigit():
            if not 0 <= int(protocol) <= 255:
                violations.append(Violation(f"protocol number {protocol} out of range 0-255", (rid,), field_name))
                continue
        elif protocol not in FIREWALL_PROTOCOLS:
            violations.append(Violation(f"unknown protocol '{rule.protocol}'", (rid,), field_name))
            continue

        if rule.ports and protocol not in PORTED_PROTOCOLS:
            violations.append(
                Violation(f"protocol '{protocol}' does not take ports", (rid,), field_name)
            )
            continue

        for port in rule.ports:
            problem = _port_problem(port)
            if problem:
                violations.append(Violation(problem, (rid,), field_name))
    return violations


def _port_problem(port: str | int) -> str | None:
    """Return a description of what is wrong with a port spec, or None."""
    text = str(port).strip()
    low_text, sep, high_text = text.partition("-")
    try:
        low = int(low_text)
        high = int(high_text) if sep else low
    except ValueError:
        return f"malformed port '{port}'"
    if not (MIN_PORT <= low <= MAX_PORT and MIN_PORT <= high <= MAX_PORT):
        return f"port '{port}' outside {MIN_PORT}-{MAX_PORT}"
    if low > high:
        return f"port range '{port}' is reversed"
    return None


def _check_firewall_rules(
    entries: list[tuple[str, BaseSpec, ResourceKind, str | None]],
) -> list[Violation]:
    violations: list[Violation] = []
    for rid, spec, _, _ in entries:
        if not isinstance(spec, FirewallRuleSpec):
            continue
        if bool(spec.allowed) == bool(spec.denied):
            violations.append(
                Violation("exactly one of 'allowed' or 'denied' must be given", (rid,))
            )
        violations.extend(_check_port_rules(rid, "allowed", spec.allowed))
        violations.extend(_check_port_rules(rid, "denied", spec.denied))

        for field_name, ranges in (
            ("sourceRanges", spec.source_ranges),
            ("destinationRanges", spec.destination_ranges),
        ):
            for value in ranges:
                try:
                    ipaddress.ip_network(value, strict=False)
                except ValueError:
                    violations.append(Violation(f"invalid CIDR '{value}'", (rid,), field_name))

        if spec.direction == "INGRESS" and spec.destination_ranges:
            violations.append(
                Violation("ingress rules cannot set destinationRanges", (rid,), "destinationRanges")
            )
        if spec.direction == "EGRESS" and (spec.source_ranges or spec.source_tags):
            violations.append(
                Violation("egress rules cannot set sourceRanges or sourceTags", (rid,), "sourceRanges")
            )
    return violations


def _check_nat_configs(
    entries: list[tuple[str, BaseSpec, ResourceKind, str | None]],
    resolved: dict[str, list[Reference]],
    by_id: dict[str, tuple[BaseSpec, ResourceKind, str | None]],
) -> list[Violation]:
    """NAT subnets must belong to the network of the NAT's router."""
    violations: list[Violation] = []
    network_of = _network_index(resolved)

    for rid, spec, _, _ in entries:
        if not isinstance(spec, NatConfigSpec):
            continue
        router_ids = [ref.target_id for ref in resolved[rid] if ref.field == "router"]
        if not router_ids:
            continue
        router_network = network_of.get(router_ids[0])
        for ref in resolved[rid]:
            if ref.field != "subnets":
                continue
            subnet_network = network_of.get(ref.target_id)
            if router_network and subnet_network and subnet_network != router_network:
                violations.append(
                    Violation(
                        f"subnet {ref.target_id} is not in router network {router_network}",
                        (rid, ref.target_id),
                        "subnets",
                    )
                )
            _, _, subnet_region = by_id[ref.target_id]
            _, _, nat_region = by_id[rid]
            if subnet_region != nat_region:
                violations.append(
                    Violation(
                        f"subnet {ref.target_id} is in region {subnet_region}, NAT is in {nat_region}",
                        (rid, ref.target_id),
                        "subnets",
                    )
                )
    return violations


def _instance_tag_index(
    entries: list[tuple[str, BaseSpec, ResourceKind, str | None]],
) -> dict[str, list[str]]:
    index: dict[str, list[str]] = {}
    for rid, spec, _, _ in entries:
        if isinstance(spec, InstanceSpec):
            for tag in spec.tags:
                index.setdefault(tag, []).append(rid)
    return index


def _network_index(resolved: dict[str, list[Reference]]) -> dict[str, str]:
    """Resource id -> id of the network it lives in.

    Subnets, routers and firewall rules reference their network directly;
    instances inherit the network of their subnet.
    """
    network_of: dict[str, str] = {}
    for rid, refs in resolved.items():
        for ref in refs:
            if ref.field == "network":
                network_of[rid] = ref.target_id
    for rid, refs in resolved.items():
        for ref in refs:
            if ref.field == "subnet" and ref.target_id in network_of:
                network_of[rid] = network_of[ref.target_id]
    return network_of
