"""Reconciler: drives the provider toward the desired state.

A run goes through these steps:
1. Build the dependency graph (cycles abort before any provider call)
2. Load records from the state store and, optionally, observe live state
3. Compute the changeset
4. Apply it in three phases:
   a. replacement teardown: delete the old instances of replaced resources,
      dependents first
   b. forward waves: Create / Update / NoOp in dependency order
   c. orphan deletes: dependents first; an orphan still referenced by a
      resource that did not converge is Quarantined, not deleted

Within a phase, every resource whose blockers have succeeded is dispatched
in the same wave, with at most `worker_count` provider calls in flight.
Wave boundaries are barriers. A resource whose blocker failed is never
dispatched; it is Quarantined.

Per resource state machine:
    Pending -> InProgress -> Applied | Failed
    Pending -> Quarantined

Provider calls are blocking; each one runs on the default thread executor
under a per-call timeout. A timeout counts as a transient error.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from .config import Config
from .diff import (
    Action,
    ChangeSet,
    ResourceChange,
    check_delete_safety,
    compute_changeset,
    delete_order,
    record_graph,
)
from .diff_normalizer import DiffNormalizer
from .graph import DependencyGraph, build_graph
from .models import DesiredState
from .provenance import ChangeProvenanceSummary, RunProvenance, get_provenance_logger
from .provider import ObservedResource, ProviderAdapter, ProviderContext, ProviderError
from .state_store import FileStateStore, ReconciliationRecord
from .validation import ValidationError, Violation

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXIT_SUCCESS = 0
EXIT_PARTIAL_FAILURE = 2

# Share of the backoff added as random jitter
RETRY_JITTER_RATIO = 0.2


def _required(value: T | None, what: str) -> T:
    """Return value, raising when a changeset invariant was broken."""
    if value is None:
        raise RuntimeError(f"Inconsistent changeset: {what} is missing")
    return value


class ResourceStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    APPLIED = "Applied"
    FAILED = "Failed"
    QUARANTINED = "Quarantined"


class QuarantineError(Exception):
    """A resource was not attempted because a resource it relies on failed.

    Never retried.
    """

    def __init__(self, resource_id: str, blocked_by: list[str]) -> None:
        self.resource_id = resource_id
        self.blocked_by = blocked_by
        super().__init__(f"{resource_id} quarantined: blocked by failed {', '.join(blocked_by)}")


class ChangeLimitExceeded(Exception):
    """Raised before any mutation when a run would make too many changes."""

    def __init__(self, count: int, limit: int) -> None:
        self.count = count
        self.limit = limit
        super().__init__(
            f"Run would make {count} provider mutations, above the limit of {limit} "
            "(raise CONVERGE_MAX_CHANGES to proceed)"
        )


@dataclass
class ResourceOutcome:
    """Terminal (or last) status of one resource in a run."""

    resource_id: str
    action: Action
    status: ResourceStatus = ResourceStatus.PENDING
    attempts: int = 0
    provider_id: str | None = None
    error: str | None = None
    replace: bool = False


@dataclass
class RunSummary:
    """Result of an apply or destroy run."""

    command: str
    outcomes: dict[str, ResourceOutcome] = field(default_factory=dict)
    changeset: ChangeSet | None = None
    cancelled: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    def with_status(self, status: ResourceStatus) -> list[ResourceOutcome]:
        return [o for o in self.outcomes.values() if o.status is status]

    def counts(self) -> dict[str, int]:
        return {status.value: len(self.with_status(status)) for status in ResourceStatus}

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """True only when every resource reached Applied and nothing was cancelled."""
        return not self.cancelled and all(o.status is ResourceStatus.APPLIED for o in self.outcomes.values())

    @property
    def exit_code(self) -> int:
        return EXIT_SUCCESS if self.success else EXIT_PARTIAL_FAILURE


@dataclass
class _RunState:
    summary: RunSummary
    changeset: ChangeSet
    records: dict[str, ReconciliationRecord]
    semaphore: asyncio.Semaphore
    # Provider ids of resources applied in this run, for reference bindings
    provider_ids: dict[str, str] = field(default_factory=dict)

    def outcome(self, resource_id: str) -> ResourceOutcome:
        return self.summary.outcomes[resource_id]


class Reconciler:
    """Applies changesets against a provider, recording results in a state store."""

    def __init__(
        self,
        config: Config,
        provider: ProviderAdapter,
        store: FileStateStore,
        normalizer: DiffNormalizer | None = None,
    ) -> None:
        self._config = config
        self._provider = provider
        self._store = store
        self._normalizer = normalizer or DiffNormalizer()
        self._context = ProviderContext(
            project=config.project,
            region=config.region,
            resource_group=config.resource_group,
        )
        self._shutdown_event = asyncio.Event()
        self._provenance = get_provenance_logger()

    @property
    def config(self) -> Config:
        return self._config

    @property
    def context(self) -> ProviderContext:
        return self._context

    def shutdown(self) -> None:
        """Stop dispatching new provider calls. In-flight calls finish."""
        logger.info("Shutdown requested", extra={"project": self._config.project})
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def plan(self, desired: DesiredState) -> ChangeSet:
        """Compute the changeset for a desired state without mutating anything.

        Raises:
            CyclicDependencyError: If the desired state has a cycle.
            StateStoreError: If the state store cannot be read.
        """
        provenance = self._provenance.create_provenance("plan", self._config.project, self._config.region)
        provenance.desired_state_hash = desired.digest
        try:
            graph = build_graph(desired)
            records = self._store.load()
            changeset = await self._plan(desired, graph, records)
            provenance.change_summary = ChangeProvenanceSummary.from_summary(changeset.summary())
            return changeset
        except Exception as e:
            provenance.error = str(e)
            provenance.error_type = type(e).__name__
            raise
        finally:
            provenance.duration_seconds = (datetime.now(UTC) - provenance.timestamp).total_seconds()
            self._provenance.log_provenance(provenance)

    async def apply(self, desired: DesiredState) -> RunSummary:
        """Converge the provider to a desired state.

        Raises:
            CyclicDependencyError: Before any provider call.
            ChangeLimitExceeded: Before any mutation.
            ReferencedResourceError: Before any mutation.
            StateStoreError: If the state store fails; the run stops.
        """
        provenance = self._provenance.create_provenance("apply", self._config.project, self._config.region)
        provenance.desired_state_hash = desired.digest
        summary = RunSummary(command="apply")
        try:
            graph = build_graph(desired)
            records = self._store.load()
            changeset = await self._plan(desired, graph, records)
            provenance.change_summary = ChangeProvenanceSummary.from_summary(changeset.summary())
            self._check_change_limit(changeset)

            orphans = [c.resource_id for c in changeset.deletes]
            check_delete_safety(orphans, {}, desired)

            state = self._start_run(summary, changeset, records)
            await self._execute(state, graph)
            return summary
        except Exception as e:
            provenance.error = str(e)
            provenance.error_type = type(e).__name__
            raise
        finally:
            self._finish(summary, provenance)

    async def destroy(self, targets: list[str] | None = None) -> RunSummary:
        """Delete tracked resources, dependents first.

        Args:
            targets: Resource ids to delete; every tracked resource when None.

        Raises:
            ValidationError: If a target is not tracked.
            ReferencedResourceError: If a live resource outside the targets
                references a target. Raised before any provider call.
        """
        provenance = self._provenance.create_provenance("destroy", self._config.project, self._config.region)
        summary = RunSummary(command="destroy")
        try:
            records = self._store.load()
            if targets:
                untracked = sorted(t for t in set(targets) if t not in records)
                if untracked:
                    raise ValidationError([Violation("resource is not tracked in state", (rid,)) for rid in untracked])
                check_delete_safety(targets, records)
                ids = sorted(set(targets))
            else:
                ids = sorted(records)

            order = delete_order(records, ids)
            changeset = ChangeSet(
                changes={rid: ResourceChange(rid, Action.DELETE, record=records[rid]) for rid in order},
                delete_order=order,
            )
            provenance.change_summary = ChangeProvenanceSummary.from_summary(changeset.summary())
            self._check_change_limit(changeset)

            state = self._start_run(summary, changeset, records)
            await self._run_deletes(state, order)
            return summary
        except Exception as e:
            provenance.error = str(e)
            provenance.error_type = type(e).__name__
            raise
        finally:
            self._finish(summary, provenance)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def _plan(
        self,
        desired: DesiredState,
        graph: DependencyGraph,
        records: dict[str, ReconciliationRecord],
    ) -> ChangeSet:
        observed = await self._observe(desired, records) if self._config.refresh else None
        return compute_changeset(
            desired,
            records,
            observed=observed,
            drift_policy=self._config.drift_policy,
            graph=graph,
            normalizer=self._normalizer,
        )

    async def _observe(
        self,
        desired: DesiredState,
        records: dict[str, ReconciliationRecord],
    ) -> dict[str, ObservedResource | None]:
        """Read live state of unchanged resources, the only ones checked for drift.

        Failed reads are logged and left out; the result may be partial.
        """
        candidates = [
            record
            for rid, record in records.items()
            if (resource := desired.get(rid)) is not None and resource.desired_hash == record.desired_hash
        ]
        semaphore = asyncio.Semaphore(self._config.worker_count)
        observed: dict[str, ObservedResource | None] = {}

        async def observe_one(record: ReconciliationRecord) -> None:
            async with semaphore:
                try:
                    observed[record.resource_id] = await self._execute_with_timeout(
                        lambda: self._provider.get(self._context, record.kind, record.provider_id),
                        f"get {record.resource_id}",
                    )
                except (ProviderError, TimeoutError) as e:
                    logger.warning(
                        "Could not observe resource, skipping drift check",
                        extra={"resource_id": record.resource_id, "error": str(e)},
                    )

        await asyncio.gather(*(observe_one(r) for r in candidates))
        return observed

    def _check_change_limit(self, changeset: ChangeSet) -> None:
        count = changeset.mutation_count
        if count > self._config.max_changes_per_run:
            raise ChangeLimitExceeded(count, self._config.max_changes_per_run)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _start_run(
        self,
        summary: RunSummary,
        changeset: ChangeSet,
        records: dict[str, ReconciliationRecord],
    ) -> _RunState:
        summary.changeset = changeset
        for change in changeset:
            summary.outcomes[change.resource_id] = ResourceOutcome(
                resource_id=change.resource_id,
                action=change.action,
                replace=change.replace,
            )
        return _RunState(
            summary=summary,
            changeset=changeset,
            records=records,
            semaphore=asyncio.Semaphore(self._config.worker_count),
        )

    async def _execute(self, state: _RunState, graph: DependencyGraph) -> None:
        changeset = state.changeset
        teardown = self._teardown_set(changeset, state.records)
        teardown_order = delete_order(state.records, teardown)

        # Phase 1: remove old instances of replaced resources
        broken = await self._run_waves(
            teardown_order,
            self._reverse_blockers(state.records, teardown_order),
            lambda rid: self._teardown(state, rid),
            lambda rid, bad: self._quarantine(state, rid, bad),
        )

        # Phase 2: create / update in dependency order
        forward = [rid for rid in changeset.forward_order if rid not in broken]
        await self._run_waves(
            forward,
            {rid: graph.dependencies(rid) for rid in forward},
            lambda rid: self._forward(state, rid),
            lambda rid, bad: self._quarantine(state, rid, bad),
            broken=broken,
        )

        # Phase 3: orphans, dependents first
        if not self._shutdown_event.is_set():
            torn_down = {rid for rid in teardown if state.outcome(rid).status is ResourceStatus.APPLIED}
            held = self._held_orphans(state, gone=teardown - broken)
            for rid, holders in held.items():
                self._quarantine(state, rid, holders)
            await self._run_deletes(
                state,
                changeset.delete_order,
                done=torn_down,
                broken=(broken & set(changeset.delete_order)) | set(held),
            )

    async def _run_deletes(
        self,
        state: _RunState,
        order: list[str],
        done: set[str] | None = None,
        broken: set[str] | None = None,
    ) -> None:
        # Blockers span the whole delete set; ids already settled are skipped
        blockers = self._reverse_blockers(state.records, order)
        settled = (done or set()) | (broken or set())
        await self._run_waves(
            [rid for rid in order if rid not in settled],
            blockers,
            lambda rid: self._delete(state, rid),
            lambda rid, bad: self._quarantine(state, rid, bad),
            broken=broken,
            done=done,
        )

    @staticmethod
    def _teardown_set(changeset: ChangeSet, records: dict[str, ReconciliationRecord]) -> set[str]:
        """Replaced resources plus orphans that still reference one of them."""
        teardown = {c.resource_id for c in changeset.replacements}
        orphans = {c.resource_id for c in changeset.deletes}
        grew = True
        while grew:
            grew = False
            for rid in orphans - teardown:
                refs = {t for ids in records[rid].explicit_references().values() for t in ids}
                if refs & teardown:
                    teardown.add(rid)
                    grew = True
        return teardown

    @staticmethod
    def _held_orphans(state: _RunState, gone: set[str]) -> dict[str, list[str]]:
        """Orphans still referenced by a live resource that did not converge.

        A desired resource that failed or was quarantined keeps its previous
        provider state, references included. Its old record says what it
        still points at. Ids in `gone` were torn down and hold nothing.

        Returns:
            Orphan id -> ids of the resources holding it.
        """
        orphans = {c.resource_id for c in state.changeset.deletes}
        holders: dict[str, set[str]] = {}
        for rid in state.changeset.forward_order:
            record = state.records.get(rid)
            if record is None or rid in gone or state.outcome(rid).status is ResourceStatus.APPLIED:
                continue
            for ids in record.explicit_references().values():
                for target in ids:
                    if target in orphans:
                        holders.setdefault(target, set()).add(rid)
        return {rid: sorted(holders[rid]) for rid in sorted(holders)}

    @staticmethod
    def _reverse_blockers(records: dict[str, ReconciliationRecord], ids: list[str]) -> dict[str, list[str]]:
        """For deletes: a resource waits for every resource in the set that depends on it."""
        graph = record_graph(records[rid] for rid in ids)
        return {rid: graph.dependents(rid) for rid in ids}

    async def _run_waves(
        self,
        ids: list[str],
        blockers: dict[str, list[str]],
        step: Callable[[str], Awaitable[bool | None]],
        on_blocked: Callable[[str, list[str]], None],
        broken: set[str] | None = None,
        done: set[str] | None = None,
    ) -> set[str]:
        """Dispatch ids in waves.

        `ids` must list every id after its blockers. Blockers outside `ids`
        must already be in `done` or `broken`. `step` returns True on
        success, False on failure and None when it was not dispatched
        (cancellation).

        Returns:
            Ids that failed or were quarantined, including `broken`.
        """
        broken = set(broken or ())
        done = set(done or ())
        pending = list(ids)
        wave_number = 0

        while pending:
            remaining = []
            for rid in pending:
                bad = [b for b in blockers[rid] if b in broken]
                if bad:
                    on_blocked(rid, bad)
                    broken.add(rid)
                else:
                    remaining.append(rid)
            pending = remaining
            if not pending or self._shutdown_event.is_set():
                break

            wave = [rid for rid in pending if all(b in done for b in blockers[rid])]
            if not wave:
                logger.error("No dispatchable resources left", extra={"pending": pending})
                break

            wave_number += 1
            logger.debug("Dispatching wave", extra={"wave": wave_number, "resources": wave})
            results = await asyncio.gather(*(step(rid) for rid in wave))
            for rid, ok in zip(wave, results, strict=True):
                if ok is True:
                    done.add(rid)
                elif ok is False:
                    broken.add(rid)
            pending = [rid for rid in pending if rid not in done and rid not in broken]

        return broken

    async def _teardown(self, state: _RunState, rid: str) -> bool | None:
        change = state.changeset[rid]
        outcome = state.outcome(rid)
        record = _required(change.record, f"record of {rid}")

        ok = await self._mutate(
            state,
            outcome,
            lambda: self._provider.delete(self._context, record.kind, record.provider_id),
            f"delete {rid}",
        )
        if ok and change.action is Action.DELETE:
            self._store.delete(rid)
            self._applied(state, outcome, None)
        elif ok:
            logger.info("Replaced resource torn down", extra={"resource_id": rid, "provider_id": record.provider_id})
            # Forward phase continues this resource
            outcome.status = ResourceStatus.PENDING
        return ok

    async def _forward(self, state: _RunState, rid: str) -> bool | None:
        change = state.changeset[rid]
        outcome = state.outcome(rid)
        resource = _required(change.resource, f"desired resource of {rid}")

        if change.action is Action.NOOP:
            record = _required(change.record, f"record of {rid}")
            if change.drift is not None:
                logger.warning("Drift detected", extra={"resource_id": rid, "drift": str(change.drift)})
            self._applied(state, outcome, record.provider_id)
            return True

        bindings = {
            field_name: [state.provider_ids[target] for target in targets]
            for field_name, targets in resource.explicit_references().items()
        }

        if change.action is Action.CREATE:
            result: dict[str, Any] = {}

            def create() -> None:
                result["provider_id"] = self._provider.create(self._context, resource, bindings)

            ok = await self._mutate(state, outcome, create, f"create {rid}")
            provider_id = result.get("provider_id")
        else:
            record = _required(change.record, f"record of {rid}")
            provider_id = record.provider_id
            ok = await self._mutate(
                state,
                outcome,
                lambda: self._provider.update(self._context, resource, record.provider_id, change.delta, bindings),
                f"update {rid}",
            )

        if ok:
            provider_id = _required(provider_id, f"provider id of {rid}")
            self._store.save(ReconciliationRecord.from_resource(resource, provider_id))
            self._applied(state, outcome, provider_id)
        return ok

    async def _delete(self, state: _RunState, rid: str) -> bool | None:
        record = _required(state.changeset[rid].record, f"record of {rid}")
        outcome = state.outcome(rid)
        ok = await self._mutate(
            state,
            outcome,
            lambda: self._provider.delete(self._context, record.kind, record.provider_id),
            f"delete {rid}",
        )
        if ok:
            self._store.delete(rid)
            self._applied(state, outcome, None)
        return ok

    async def _mutate(
        self,
        state: _RunState,
        outcome: ResourceOutcome,
        operation: Callable[[], Any],
        operation_name: str,
    ) -> bool | None:
        """Run one mutating provider call with retries, under the worker limit."""
        if self._shutdown_event.is_set():
            return None
        async with state.semaphore:
            # Cancellation may have arrived while waiting for a worker slot
            if self._shutdown_event.is_set():
                return None
            outcome.status = ResourceStatus.IN_PROGRESS
            try:
                await self._apply_with_retry(outcome, operation, operation_name)
            except (ProviderError, TimeoutError) as e:
                self._failed(outcome, str(e))
                return False
        return True

    def _applied(self, state: _RunState, outcome: ResourceOutcome, provider_id: str | None) -> None:
        outcome.status = ResourceStatus.APPLIED
        outcome.provider_id = provider_id
        outcome.error = None
        if provider_id is not None:
            state.provider_ids[outcome.resource_id] = provider_id

    def _failed(self, outcome: ResourceOutcome, error: str) -> None:
        outcome.status = ResourceStatus.FAILED
        outcome.error = error
        logger.error(
            "Resource failed",
            extra={"resource_id": outcome.resource_id, "action": outcome.action.value, "error": error},
        )
        self._store.record_failure(outcome.resource_id, outcome.action.value, outcome.status.value, error)

    def _quarantine(self, state: _RunState, rid: str, blocked_by: list[str]) -> None:
        outcome = state.outcome(rid)
        error = QuarantineError(rid, blocked_by)
        outcome.status = ResourceStatus.QUARANTINED
        outcome.error = str(error)
        logger.warning("Resource quarantined", extra={"resource_id": rid, "blocked_by": blocked_by})
        self._store.record_failure(rid, outcome.action.value, outcome.status.value, str(error))

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    async def _execute_with_timeout(self, operation: Callable[[], T], operation_name: str) -> T:
        """Run a blocking provider call on the executor with the per-call timeout.

        Raises:
            TimeoutError: If the call exceeds the timeout. The call itself
                keeps running in its thread.
        """
        loop = asyncio.get_running_loop()
        timeout_seconds = self._config.call_timeout_seconds
        try:
            return await asyncio.wait_for(loop.run_in_executor(None, operation), timeout=timeout_seconds)
        except TimeoutError:
            logger.error(
                f"{operation_name} timed out",
                extra={"timeout_seconds": timeout_seconds},
            )
            raise

    async def _apply_with_retry(
        self,
        outcome: ResourceOutcome,
        operation: Callable[[], Any],
        operation_name: str,
    ) -> None:
        """Run a provider call with exponential backoff on transient errors.

        Raises:
            ProviderError: On a permanent error, when attempts run out, or
                when cancelled during backoff (the last error).
        """
        max_attempts = self._config.max_attempts
        last_error: ProviderError | None = None

        for attempt in range(1, max_attempts + 1):
            outcome.attempts = attempt
            try:
                await self._execute_with_timeout(operation, operation_name)
                return
            except ProviderError as e:
                if not e.transient:
                    raise
                last_error = e
            except TimeoutError:
                last_error = ProviderError(
                    f"{operation_name} timed out after {self._config.call_timeout_seconds}s",
                    transient=True,
                    code="timeout",
                )

            if attempt < max_attempts:
                # Exponential backoff with jitter
                backoff = min(
                    self._config.retry_backoff_base_seconds * (2 ** (attempt - 1)),
                    self._config.retry_backoff_max_seconds,
                )
                jitter = random.uniform(0, backoff * RETRY_JITTER_RATIO)
                wait_time = backoff + jitter

                logger.warning(
                    "Provider call failed, retrying",
                    extra={
                        "resource_id": outcome.resource_id,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "wait_seconds": wait_time,
                        "error": str(last_error),
                    },
                )
                if await self._wait_or_shutdown(wait_time):
                    logger.info("Retry abandoned on shutdown", extra={"resource_id": outcome.resource_id})
                    break

        raise _required(last_error, f"last error of {operation_name}")

    async def _wait_or_shutdown(self, seconds: float) -> bool:
        """Sleep, waking early on shutdown. Returns True when shut down."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _finish(self, summary: RunSummary, provenance: RunProvenance) -> None:
        summary.end_time = datetime.now(UTC)
        summary.cancelled = self._shutdown_event.is_set()

        for outcome in summary.outcomes.values():
            self._provenance.log_change_detail(
                provenance,
                outcome.resource_id,
                outcome.action.value,
                outcome.status.value,
                outcome.provider_id,
            )

        provenance.outcome_counts = summary.counts()
        provenance.cancelled = summary.cancelled
        provenance.exit_code = summary.exit_code
        provenance.duration_seconds = summary.duration_seconds
        self._provenance.log_provenance(provenance)

        extra = {
            "command": summary.command,
            "duration_seconds": summary.duration_seconds,
            "cancelled": summary.cancelled,
            **summary.counts(),
        }
        if summary.success:
            logger.info("Run complete", extra=extra)
        else:
            logger.warning("Run finished with unresolved resources", extra=extra)
