"""Tests for desired-state validation and reference resolution."""

from __future__ import annotations

import pytest

from builders import (
    INSTANCE_ID,
    NETWORK_ID,
    REGION,
    SUBNET_ID,
    desired_state,
    firewall_rule,
    iam_binding,
    instance,
    nat,
    network,
    router,
    subnet,
    three_tier,
)
from converge.models import Reference
from converge.validation import ValidationError, Violation


def violations_of(*resources: dict) -> list[Violation]:
    with pytest.raises(ValidationError) as exc_info:
        desired_state(*resources)
    return exc_info.value.violations


class TestViolation:
    """Tests for Violation formatting."""

    def test_str_with_ids_and_field(self) -> None:
        """Test the location prefix."""
        v = Violation("bad", ("a", "b"), "cidr")
        assert str(v) == "a, b [cidr]: bad"

    def test_str_without_location(self) -> None:
        """Test a document-level violation."""
        assert str(Violation("bad")) == "bad"


class TestResolution:
    """Tests for reference resolution."""

    def test_three_tier_resolves(self) -> None:
        """Test references resolve to resource ids."""
        desired = three_tier()

        assert desired.ids == [NETWORK_ID, SUBNET_ID, INSTANCE_ID]
        assert desired.get(SUBNET_ID).references == (Reference("network", NETWORK_ID),)
        assert desired.get(INSTANCE_ID).explicit_references() == {"subnet": [SUBNET_ID]}

    def test_qualified_reference(self) -> None:
        """Test `Kind/name` picks the kind explicitly."""
        desired = desired_state(network(), subnet(network="Network/main"))
        assert desired.get(SUBNET_ID).depends_on == [NETWORK_ID]

    def test_dangling_reference(self) -> None:
        """Test a reference to an undeclared resource is rejected."""
        violations = violations_of(network(), subnet(), instance(subnet="missing"))

        assert len(violations) == 1
        assert violations[0].resource_ids == (INSTANCE_ID,)
        assert violations[0].field == "subnet"
        assert "dangling reference to 'missing'" in violations[0].message

    def test_incompatible_kind(self) -> None:
        """Test a reference must resolve to an allowed kind."""
        violations = violations_of(network(), subnet(), instance(subnet="main"))

        assert len(violations) == 1
        assert "expected one of ['Subnet']" in violations[0].message

    def test_unknown_kind_prefix(self) -> None:
        """Test a qualified reference with an unknown kind."""
        violations = violations_of(network(), subnet(network="Bogus/main"))
        assert "unknown kind 'Bogus'" in violations[0].message

    def test_ambiguous_reference(self) -> None:
        """Test a bare name matching two allowed kinds must be qualified."""
        resources = (
            network(),
            subnet(name="shared"),
            instance(name="shared", subnet="shared"),
        )
        violations = violations_of(*resources, iam_binding(target="shared"))
        assert len(violations) == 1
        assert "ambiguous reference 'shared'" in violations[0].message

        desired = desired_state(*resources, iam_binding(target="Subnet/shared"))
        binding = desired.get("iambinding/global/os-login")
        assert binding.explicit_references() == {"target": [f"subnet/{REGION}/shared"]}

    def test_same_region_wins_over_other_regions(self) -> None:
        """Test a bare name resolves to the candidate in the referrer's region."""
        desired = desired_state(
            network(),
            subnet(),
            subnet(cidr="10.1.1.0/24", region="us-east1"),
            instance(),
        )
        assert desired.get(INSTANCE_ID).depends_on == [SUBNET_ID]

    def test_depends_on_is_an_implicit_reference(self) -> None:
        """Test ordering-only edges are not bound as references."""
        desired = desired_state(
            network(),
            subnet(),
            iam_binding(),
            instance(dependsOn=["IamBinding/os-login"]),
        )
        resource = desired.get(INSTANCE_ID)
        assert "iambinding/global/os-login" in resource.depends_on
        assert resource.explicit_references() == {"subnet": [SUBNET_ID]}


class TestUniqueness:
    """Tests for id uniqueness and regions."""

    def test_duplicate_name(self) -> None:
        """Test two resources of one kind and name in one scope."""
        violations = violations_of(network(), network())
        assert violations[0].resource_ids == (NETWORK_ID,)
        assert "duplicate Network 'main'" in violations[0].message

    def test_same_name_in_different_regions(self) -> None:
        """Test regional names only need to be unique per region."""
        desired = desired_state(
            network(),
            subnet(),
            subnet(cidr="10.1.1.0/24", region="us-east1"),
        )
        assert "subnet/us-east1/private" in desired

    def test_regional_resource_needs_region(self) -> None:
        """Test a subnet with no region anywhere is rejected."""
        with pytest.raises(ValidationError, match="needs a region"):
            desired_state(network(), subnet(), region=None)  # type: ignore[arg-type]


class TestSubnets:
    """Tests for subnet CIDR checks."""

    def test_overlapping_siblings_name_both(self) -> None:
        """Test overlapping sibling subnets are reported with both ids."""
        violations = violations_of(
            network(),
            subnet(name="a", cidr="10.1.0.0/24"),
            subnet(name="b", cidr="10.1.0.128/25"),
        )

        assert len(violations) == 1
        assert set(violations[0].resource_ids) == {f"subnet/{REGION}/a", f"subnet/{REGION}/b"}
        assert "overlaps" in violations[0].message

    def test_disjoint_siblings(self) -> None:
        """Test adjacent ranges do not overlap."""
        desired = desired_state(
            network(),
            subnet(name="a", cidr="10.1.0.0/24"),
            subnet(name="b", cidr="10.1.1.0/24"),
        )
        assert len(desired) == 3

    def test_subnets_of_different_networks_may_overlap(self) -> None:
        """Test overlap is only checked among siblings."""
        desired = desired_state(
            network(name="blue", cidr=None),
            network(name="green", cidr=None),
            subnet(name="a", network="blue", cidr="10.1.0.0/24"),
            subnet(name="b", network="green", cidr="10.1.0.0/24"),
        )
        assert len(desired) == 4

    def test_outside_parent_range(self) -> None:
        """Test a subnet must sit inside its network's range."""
        violations = violations_of(network(), subnet(cidr="10.2.0.0/24"))
        assert "outside network range" in violations[0].message
        assert violations[0].resource_ids == (SUBNET_ID, NETWORK_ID)

    def test_host_bits_set(self) -> None:
        """Test a CIDR with host bits is invalid."""
        violations = violations_of(network(), subnet(cidr="10.1.0.1/24"))
        assert "invalid CIDR '10.1.0.1/24'" in violations[0].message

    def test_invalid_network_cidr(self) -> None:
        """Test the network range is checked too."""
        violations = violations_of(network(cidr="not-a-cidr"))
        assert violations[0].resource_ids == (NETWORK_ID,)


class TestFirewallRules:
    """Tests for firewall rule checks."""

    def test_valid_rule(self) -> None:
        """Test the default rule is accepted."""
        desired = desired_state(network(), firewall_rule())
        assert "firewallrule/global/allow-ssh" in desired

    @pytest.mark.parametrize(
        "allowed,expected",
        [
            ([{"protocol": "tcp", "ports": ["70000"]}], "outside 1-65535"),
            ([{"protocol": "tcp", "ports": ["ssh"]}], "malformed port 'ssh'"),
            ([{"protocol": "tcp", "ports": ["30-20"]}], "is reversed"),
            ([{"protocol": "icmp", "ports": ["22"]}], "does not take ports"),
            ([{"protocol": "bogus"}], "unknown protocol 'bogus'"),
            ([{"protocol": 300}], "out of range 0-255"),
        ],
    )
    def test_bad_port_rules(self, allowed: list[dict], expected: str) -> None:
        """Test protocol and port syntax is enforced."""
        violations = violations_of(network(), firewall_rule(allowed=allowed))
        assert any(expected in v.message for v in violations)

    def test_port_ranges_and_protocol_numbers(self) -> None:
        """Test ranges and numbered protocols are accepted."""
        desired = desired_state(
            network(),
            firewall_rule(allowed=[{"protocol": "udp", "ports": ["1000-2000", 53]}, {"protocol": 47}]),
        )
        assert len(desired) == 2

    def test_allowed_and_denied_are_exclusive(self) -> None:
        """Test exactly one of allowed or denied."""
        violations = violations_of(
            network(),
            firewall_rule(denied=[{"protocol": "tcp"}]),
            firewall_rule(name="empty", allowed=[]),
        )
        assert len(violations) == 2
        assert all("exactly one of" in v.message for v in violations)

    def test_egress_cannot_have_sources(self) -> None:
        """Test direction-specific fields."""
        violations = violations_of(network(), firewall_rule(direction="EGRESS"))
        assert violations[0].field == "sourceRanges"

    def test_tag_targets_become_edges(self) -> None:
        """Test an instance carrying a targeted tag depends on the rule."""
        desired = desired_state(
            network(),
            subnet(),
            instance(tags=["ssh"]),
            firewall_rule(targetTags=["ssh"]),
        )
        refs = desired.get(INSTANCE_ID).references
        assert Reference("targetTags", "firewallrule/global/allow-ssh", implicit=True) in refs
        assert desired.warnings == []

    def test_tags_in_other_networks_are_ignored(self) -> None:
        """Test a rule only targets instances in its own network."""
        desired = desired_state(
            network(),
            network(name="other", cidr="10.2.0.0/16"),
            subnet(),
            instance(tags=["ssh"]),
            firewall_rule(network="other", targetTags=["ssh"]),
        )
        assert desired.get(INSTANCE_ID).depends_on == [SUBNET_ID]
        assert len(desired.warnings) == 1
        assert "match no declared instance" in desired.warnings[0]


class TestNatConfigs:
    """Tests for NAT subnet checks."""

    def test_nat_subnets_in_router_network(self) -> None:
        """Test the happy path."""
        desired = desired_state(network(), subnet(), router(), nat(subnets=["private"]))
        assert desired.get(f"natconfig/{REGION}/nat").explicit_references() == {
            "router": [f"router/{REGION}/nat-router"],
            "subnets": [SUBNET_ID],
        }

    def test_nat_subnet_in_other_network(self) -> None:
        """Test a NAT cannot cover a subnet of another network."""
        violations = violations_of(
            network(),
            network(name="other", cidr="10.2.0.0/16"),
            subnet(name="elsewhere", network="other", cidr="10.2.0.0/24"),
            router(),
            nat(subnets=["elsewhere"]),
        )
        assert len(violations) == 1
        assert "is not in router network" in violations[0].message


class TestExhaustiveReporting:
    """Tests that every violation is reported at once."""

    def test_all_violations_collected(self) -> None:
        """Test unrelated problems arrive in one error."""
        with pytest.raises(ValidationError) as exc_info:
            desired_state(
                network(),
                subnet(cidr="10.9.0.0/24"),
                instance(subnet="missing"),
                firewall_rule(allowed=[{"protocol": "bogus"}]),
            )

        error = exc_info.value
        assert len(error.violations) == 3
        assert error.resource_ids >= {SUBNET_ID, NETWORK_ID, INSTANCE_ID}
        assert "3 violation(s)" in str(error)
