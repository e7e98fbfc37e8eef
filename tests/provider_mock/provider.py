"""In-memory ProviderAdapter with call logging and fault injection."""

from __future__ import annotations

import copy
import itertools
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from converge.models import Resource, ResourceKind
from converge.provider import FieldDelta, ObservedResource, ProviderAdapter, ProviderContext, ProviderError


@dataclass
class MockResource:
    """A resource as the mock provider stores it."""

    provider_id: str
    resource_id: str
    kind: ResourceKind
    attributes: dict[str, Any] = field(default_factory=dict)
    bindings: dict[str, list[str]] = field(default_factory=dict)
    context: ProviderContext | None = None
    # Delta of every update applied, in order
    updates: list[dict[str, FieldDelta]] = field(default_factory=list)


@dataclass(frozen=True)
class CallRecord:
    """One call made against the mock provider."""

    operation: str
    resource_id: str
    started_at: float
    finished_at: float
    error: str | None = None


@dataclass
class _Fault:
    error: ProviderError | None = None
    delay_seconds: float = 0.0
    remaining: int | None = None  # None means every call


class InMemoryProvider(ProviderAdapter):
    """ProviderAdapter keeping resources in a dict.

    Faults are keyed by (operation, resource id); resource ids are the
    engine's ids, so tests never need to know provider ids.
    """

    def __init__(self, observable: set[str] | None = None) -> None:
        """Initialize the mock.

        Args:
            observable: Attribute names `get` reports back. Defaults to every
                attribute, as stored.
        """
        self._lock = threading.Lock()
        self._resources: dict[str, MockResource] = {}
        self._id_index: dict[str, str] = {}  # provider id -> resource id, survives deletes
        self._faults: dict[tuple[str, str], list[_Fault]] = {}
        self._counter = itertools.count(1)
        self._observable = observable
        self._in_flight = 0
        self.max_in_flight = 0
        self.calls: list[CallRecord] = []
        self.before_call: Callable[[str, str], None] | None = None

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def inject_error(
        self,
        operation: str,
        resource_id: str,
        *,
        transient: bool = False,
        code: str | None = None,
        times: int | None = None,
    ) -> None:
        """Make `operation` on `resource_id` fail.

        Args:
            operation: "get", "create", "update" or "delete".
            resource_id: Engine resource id.
            transient: Whether the error is retryable.
            code: Error code to report.
            times: Fail this many calls, then succeed; None fails forever.
        """
        error = ProviderError(
            f"injected {operation} failure for {resource_id}",
            transient=transient,
            code=code or ("429" if transient else "400"),
        )
        self._faults.setdefault((operation, resource_id), []).append(_Fault(error=error, remaining=times))

    def inject_delay(self, operation: str, resource_id: str, seconds: float, times: int | None = None) -> None:
        self._faults.setdefault((operation, resource_id), []).append(
            _Fault(delay_seconds=seconds, remaining=times)
        )

    def operations(self, kinds: set[str] | None = None) -> list[tuple[str, str]]:
        """(operation, resource id) of every call, in start order."""
        ordered = sorted(self.calls, key=lambda c: c.started_at)
        return [(c.operation, c.resource_id) for c in ordered if kinds is None or c.operation in kinds]

    def mutations(self) -> list[tuple[str, str]]:
        return self.operations({"create", "update", "delete"})

    def call_count(self, operation: str | None = None, resource_id: str | None = None) -> int:
        return sum(
            1
            for c in self.calls
            if (operation is None or c.operation == operation)
            and (resource_id is None or c.resource_id == resource_id)
        )

    def resource(self, resource_id: str) -> MockResource | None:
        for stored in self._resources.values():
            if stored.resource_id == resource_id:
                return stored
        return None

    def resource_ids(self) -> set[str]:
        return {r.resource_id for r in self._resources.values()}

    def edit_out_of_band(self, resource_id: str, **attributes: Any) -> None:
        """Change live attributes behind the engine's back."""
        stored = self.resource(resource_id)
        assert stored is not None, f"{resource_id} does not exist"
        stored.attributes.update(attributes)

    def delete_out_of_band(self, resource_id: str) -> None:
        stored = self.resource(resource_id)
        assert stored is not None, f"{resource_id} does not exist"
        del self._resources[stored.provider_id]

    # ------------------------------------------------------------------
    # ProviderAdapter
    # ------------------------------------------------------------------

    def get(self, context: ProviderContext, kind: ResourceKind, provider_id: str) -> ObservedResource | None:
        resource_id = self._id_index.get(provider_id, provider_id)
        with self._call("get", resource_id):
            stored = self._resources.get(provider_id)
            if stored is None:
                return None
            attributes = copy.deepcopy(stored.attributes)
            if self._observable is not None:
                attributes = {k: v for k, v in attributes.items() if k in self._observable}
            return ObservedResource(provider_id=provider_id, kind=kind, attributes=attributes)

    def create(self, context: ProviderContext, resource: Resource, bindings: dict[str, list[str]]) -> str:
        with self._call("create", resource.id):
            for field_name, ids in bindings.items():
                for bound in ids:
                    if bound not in self._resources:
                        raise ProviderError(
                            f"{resource.id}: {field_name} refers to missing {bound}", code="404"
                        )
            provider_id = f"mock://{context.project}/{resource.id}#{next(self._counter)}"
            self._resources[provider_id] = MockResource(
                provider_id=provider_id,
                resource_id=resource.id,
                kind=resource.kind,
                attributes=copy.deepcopy(resource.attributes),
                bindings={k: list(v) for k, v in bindings.items()},
                context=context,
            )
            self._id_index[provider_id] = resource.id
            return provider_id

    def update(
        self,
        context: ProviderContext,
        resource: Resource,
        provider_id: str,
        delta: dict[str, FieldDelta],
        bindings: dict[str, list[str]] | None = None,
    ) -> None:
        resource_id = self._id_index.get(provider_id, provider_id)
        with self._call("update", resource_id):
            stored = self._resources.get(provider_id)
            if stored is None:
                raise ProviderError(f"{resource_id} not found", code="404")
            stored.attributes = copy.deepcopy(resource.attributes)
            stored.updates.append(dict(delta))
            if bindings is not None:
                stored.bindings = {k: list(v) for k, v in bindings.items()}

    def delete(self, context: ProviderContext, kind: ResourceKind, provider_id: str) -> None:
        resource_id = self._id_index.get(provider_id, provider_id)
        with self._call("delete", resource_id):
            for other in self._resources.values():
                if any(provider_id in ids for ids in other.bindings.values()):
                    raise ProviderError(
                        f"{resource_id} is in use by {other.resource_id}", transient=False, code="409"
                    )
            self._resources.pop(provider_id, None)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _call(self, operation: str, resource_id: str) -> _CallScope:
        return _CallScope(self, operation, resource_id)

    def _take_fault(self, operation: str, resource_id: str) -> tuple[float, ProviderError | None]:
        delay = 0.0
        error = None
        with self._lock:
            for fault in self._faults.get((operation, resource_id), []):
                if fault.remaining == 0:
                    continue
                if fault.remaining is not None:
                    fault.remaining -= 1
                delay += fault.delay_seconds
                if fault.error is not None and error is None:
                    error = fault.error
        return delay, error


class _CallScope:
    """Logs a call, applies injected faults and tracks concurrency."""

    def __init__(self, provider: InMemoryProvider, operation: str, resource_id: str) -> None:
        self._provider = provider
        self._operation = operation
        self._resource_id = resource_id
        self._started = 0.0

    def __enter__(self) -> None:
        provider = self._provider
        self._started = time.monotonic()
        with provider._lock:
            provider._in_flight += 1
            provider.max_in_flight = max(provider.max_in_flight, provider._in_flight)
        if provider.before_call is not None:
            provider.before_call(self._operation, self._resource_id)
        delay, error = provider._take_fault(self._operation, self._resource_id)
        if delay:
            time.sleep(delay)
        if error is not None:
            self._finish(str(error))
            raise error

    def __exit__(self, exc_type: Any, exc: BaseException | None, tb: Any) -> None:
        self._finish(str(exc) if exc is not None else None)

    def _finish(self, error: str | None) -> None:
        provider = self._provider
        with provider._lock:
            provider._in_flight -= 1
            provider.calls.append(
                CallRecord(
                    operation=self._operation,
                    resource_id=self._resource_id,
                    started_at=self._started,
                    finished_at=time.monotonic(),
                    error=error,
                )
            )
