"""Diff engine: desired state vs. recorded (and optionally observed) state.

For each desired resource:
- no record                    -> Create
- record hash differs          -> Update with a field-level delta, or a
                                  replacement (Delete-then-Create) when an
                                  immutable field changed
- record hash matches          -> NoOp, with DriftDetected attached when the
                                  live state diverges from the record
For each record with no desired resource -> Delete.

Replacement cascades along reference fields: a resource bound to the
provider id of a replaced resource is replaced as well, so its Create waits
on the new id.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import DriftPolicy
from .diff_normalizer import DiffNormalizer
from .graph import CyclicDependencyError, DependencyGraph, build_graph
from .models import IMMUTABLE_FIELDS, KIND_PRIORITY, DesiredState, Resource
from .provider import FieldDelta, ObservedResource
from .state_store import ReconciliationRecord

logger = logging.getLogger(__name__)


class Action(str, Enum):
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    NOOP = "NoOp"


class ReferencedResourceError(Exception):
    """Raised when a delete targets a resource that live resources still reference."""

    def __init__(self, referrers: dict[str, list[str]]) -> None:
        self.referrers = referrers
        details = "; ".join(f"{target} <- {', '.join(refs)}" for target, refs in sorted(referrers.items()))
        super().__init__(f"Refusing to delete referenced resources: {details}")


@dataclass(frozen=True)
class DriftDetected:
    """Live state diverges from the last applied state. Informational."""

    resource_id: str
    fields: dict[str, FieldDelta] = field(default_factory=dict)
    missing: bool = False

    def __str__(self) -> str:
        if self.missing:
            return f"{self.resource_id}: missing at provider"
        changed = ", ".join(f"{name}: {d.old!r} -> {d.new!r}" for name, d in sorted(self.fields.items()))
        return f"{self.resource_id}: {changed}"


@dataclass
class ResourceChange:
    """Planned action for one resource.

    Attributes:
        resource: Desired resource; None for deletes.
        record: Last applied record; None for creates of new resources.
        delta: Field -> FieldDelta(old, new) for updates and replacements.
        replace: True when the existing resource must be deleted and created
            again (action is Create, record holds the old provider id).
        drift: Drift observed on an unchanged resource.
    """

    resource_id: str
    action: Action
    resource: Resource | None = None
    record: ReconciliationRecord | None = None
    delta: dict[str, FieldDelta] = field(default_factory=dict)
    replace: bool = False
    replace_reason: str | None = None
    drift: DriftDetected | None = None

    @property
    def is_mutation(self) -> bool:
        return self.action is not Action.NOOP


@dataclass
class ChangeSet:
    """Ordered mapping of resource id -> ResourceChange.

    `forward_order` lists desired resources dependencies-first;
    `delete_order` lists orphaned records dependents-first.
    """

    changes: dict[str, ResourceChange] = field(default_factory=dict)
    forward_order: list[str] = field(default_factory=list)
    delete_order: list[str] = field(default_factory=list)

    def __iter__(self) -> Iterator[ResourceChange]:
        for rid in self.forward_order + self.delete_order:
            yield self.changes[rid]

    def __len__(self) -> int:
        return len(self.changes)

    def __getitem__(self, resource_id: str) -> ResourceChange:
        return self.changes[resource_id]

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self.changes

    def actions(self) -> dict[str, Action]:
        return {c.resource_id: c.action for c in self}

    def _with(self, action: Action) -> list[ResourceChange]:
        return [c for c in self if c.action is action]

    @property
    def creates(self) -> list[ResourceChange]:
        return [c for c in self._with(Action.CREATE) if not c.replace]

    @property
    def updates(self) -> list[ResourceChange]:
        return self._with(Action.UPDATE)

    @property
    def deletes(self) -> list[ResourceChange]:
        return self._with(Action.DELETE)

    @property
    def noops(self) -> list[ResourceChange]:
        return self._with(Action.NOOP)

    @property
    def replacements(self) -> list[ResourceChange]:
        return [c for c in self if c.replace]

    @property
    def drifted(self) -> list[DriftDetected]:
        return [c.drift for c in self if c.drift is not None]

    @property
    def has_changes(self) -> bool:
        return any(c.is_mutation for c in self)

    @property
    def mutation_count(self) -> int:
        """Provider mutations this changeset implies; a replacement counts twice."""
        return sum(1 for c in self if c.is_mutation) + len(self.replacements)

    def summary(self) -> dict[str, int]:
        return {
            "create": len(self.creates),
            "update": len(self.updates),
            "replace": len(self.replacements),
            "delete": len(self.deletes),
            "noop": len(self.noops),
            "drift": len(self.drifted),
        }


def compute_delta(old: Mapping[str, Any], new: Mapping[str, Any]) -> dict[str, FieldDelta]:
    """Field-level delta between two attribute maps; missing keys read as None."""
    return {
        key: FieldDelta(old=old.get(key), new=new.get(key))
        for key in sorted(set(old) | set(new))
        if old.get(key) != new.get(key)
    }


def detect_drift(
    record: ReconciliationRecord,
    observed: ObservedResource | None,
    normalizer: DiffNormalizer | None = None,
) -> DriftDetected | None:
    """Compare live attributes with the record's applied attributes.

    Only attributes the provider reports are compared; providers rarely
    echo back every field that was sent.
    """
    if observed is None:
        return DriftDetected(resource_id=record.resource_id, missing=True)

    normalizer = normalizer or DiffNormalizer()
    fields: dict[str, FieldDelta] = {}
    for name, live in observed.attributes.items():
        applied = record.attributes.get(name)
        equivalent, _ = normalizer.are_equivalent(applied, live, record.kind.value, name)
        if not equivalent:
            fields[name] = FieldDelta(old=applied, new=live)

    if not fields:
        return None
    return DriftDetected(resource_id=record.resource_id, fields=fields)


def record_graph(records: Iterable[ReconciliationRecord]) -> DependencyGraph:
    graph = DependencyGraph()
    for record in records:
        graph.add_node(record.resource_id, record.kind, record.name, record.depends_on)
    return graph


def delete_order(records: Mapping[str, ReconciliationRecord], targets: Iterable[str]) -> list[str]:
    """Order targets for deletion: dependents before their dependencies."""
    target_set = set(targets)
    graph = record_graph(records[rid] for rid in target_set if rid in records)
    try:
        return graph.reverse_topological_sort()
    except CyclicDependencyError as e:
        # Records written by different runs can disagree; fall back to kind order
        logger.warning("Recorded references form a cycle, deleting by kind order", extra={"cycle": e.cycle})
        return sorted(
            graph.nodes,
            key=lambda rid: (KIND_PRIORITY[records[rid].kind], records[rid].name),
            reverse=True,
        )


def check_delete_safety(
    targets: Iterable[str],
    records: Mapping[str, ReconciliationRecord],
    desired: DesiredState | None = None,
) -> None:
    """Refuse deletes of resources that something live still references.

    A referrer is a record that is not itself being deleted, or a desired
    resource, whose reference fields point at a target.

    Raises:
        ReferencedResourceError: Naming every target and its live referrers.
    """
    target_set = set(targets)
    referrers: dict[str, set[str]] = {}

    for rid, record in records.items():
        if rid in target_set:
            continue
        for ids in record.explicit_references().values():
            for target in ids:
                if target in target_set:
                    referrers.setdefault(target, set()).add(rid)

    if desired is not None:
        for resource in desired:
            if resource.id in target_set:
                continue
            for ids in resource.explicit_references().values():
                for target in ids:
                    if target in target_set:
                        referrers.setdefault(target, set()).add(resource.id)

    if referrers:
        raise ReferencedResourceError({t: sorted(r) for t, r in referrers.items()})


def _immutable_changes(resource: Resource, delta: Mapping[str, FieldDelta]) -> list[str]:
    return sorted(name for name in delta if name in IMMUTABLE_FIELDS[resource.kind])


def compute_changeset(
    desired: DesiredState,
    records: Mapping[str, ReconciliationRecord],
    observed: Mapping[str, ObservedResource | None] | None = None,
    drift_policy: DriftPolicy = DriftPolicy.REPORT,
    graph: DependencyGraph | None = None,
    normalizer: DiffNormalizer | None = None,
) -> ChangeSet:
    """Compute the changeset that converges recorded state to desired state.

    Args:
        desired: Validated desired state.
        records: Last applied records by resource id.
        observed: Live state by resource id; None for "not refreshed". An id
            mapped to None was looked up and found missing. Ids absent from
            the mapping could not be observed and are not drift-checked.
        drift_policy: REPORT leaves drifted resources as NoOp; CORRECT turns
            them into Updates back to the applied attributes (or Creates when
            missing).
        graph: Dependency graph of `desired`; built when not supplied.
        normalizer: Attribute comparison rules for drift detection.

    Returns:
        ChangeSet in apply order.

    Raises:
        CyclicDependencyError: If `graph` has to be built and is cyclic.
    """
    graph = graph or build_graph(desired)
    changes: dict[str, ResourceChange] = {}

    for rid in graph.topological_sort():
        resource = desired.get(rid)
        assert resource is not None
        record = records.get(rid)

        if record is None:
            changes[rid] = ResourceChange(rid, Action.CREATE, resource=resource)
            continue

        if record.desired_hash != resource.desired_hash:
            delta = compute_delta(record.attributes, resource.attributes)
            immutable = _immutable_changes(resource, delta)
            if immutable:
                changes[rid] = ResourceChange(
                    rid,
                    Action.CREATE,
                    resource=resource,
                    record=record,
                    delta=delta,
                    replace=True,
                    replace_reason=f"immutable field(s) changed: {', '.join(immutable)}",
                )
            else:
                changes[rid] = ResourceChange(rid, Action.UPDATE, resource=resource, record=record, delta=delta)
            continue

        change = ResourceChange(rid, Action.NOOP, resource=resource, record=record)
        if observed is not None and rid in observed:
            change.drift = detect_drift(record, observed[rid], normalizer)
        if change.drift is not None and drift_policy is DriftPolicy.CORRECT:
            _correct_drift(change, record, resource)
        changes[rid] = change

    _cascade_replacements(changes, graph, desired)

    orphans = [rid for rid in records if rid not in desired]
    for rid in orphans:
        changes[rid] = ResourceChange(rid, Action.DELETE, record=records[rid])

    changeset = ChangeSet(
        changes=changes,
        forward_order=graph.topological_sort(),
        delete_order=delete_order(records, orphans),
    )
    logger.info("Changeset computed", extra=changeset.summary())
    return changeset


def _correct_drift(change: ResourceChange, record: ReconciliationRecord, resource: Resource) -> None:
    drift = change.drift
    assert drift is not None
    if drift.missing:
        # The provider lost it; create again and bind to the new id
        change.action = Action.CREATE
        return
    # Push the applied values back; old/new read as live -> applied
    delta = {name: FieldDelta(old=d.new, new=d.old) for name, d in drift.fields.items()}
    immutable = _immutable_changes(resource, delta)
    change.delta = delta
    if immutable:
        change.action = Action.CREATE
        change.replace = True
        change.replace_reason = f"drift on immutable field(s): {', '.join(immutable)}"
    else:
        change.action = Action.UPDATE


def _cascade_replacements(changes: dict[str, ResourceChange], graph: DependencyGraph, desired: DesiredState) -> None:
    """Replace every existing resource bound to a replaced or re-created one."""
    renewed = {
        rid for rid, c in changes.items() if c.replace or (c.action is Action.CREATE and c.record is not None)
    }
    # Topological order guarantees dependencies are settled first
    for rid in graph.topological_sort():
        change = changes[rid]
        if change.record is None or change.replace:
            continue
        resource = desired.get(rid)
        assert resource is not None
        bound = sorted(
            target for ids in resource.explicit_references().values() for target in ids if target in renewed
        )
        if not bound:
            continue
        if change.action is Action.CREATE:
            # Missing at provider; it is re-created either way
            renewed.add(rid)
            continue
        change.action = Action.CREATE
        change.replace = True
        change.replace_reason = f"dependency replaced: {', '.join(bound)}"
        change.delta = compute_delta(change.record.attributes, resource.attributes)
        renewed.add(rid)
