"""Provider adapter interface.

The engine never talks to a cloud control plane directly. Every read and
mutation goes through a ProviderAdapter, and every call carries an explicit
ProviderContext instead of relying on ambient "current project" settings.

Adapters translate their SDK's failures into ProviderError, classifying each
as transient (worth retrying) or not.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from .models import Resource, ResourceKind


class ProviderError(Exception):
    """A failed provider call.

    Attributes:
        transient: True when the same call may succeed if retried
            (rate limiting, timeouts, conflicts, server errors).
        code: Provider error code or HTTP status, when known.
    """

    def __init__(self, message: str, *, transient: bool = False, code: str | None = None) -> None:
        self.message = message
        self.transient = transient
        self.code = code
        super().__init__(message)

    def __str__(self) -> str:
        kind = "transient" if self.transient else "permanent"
        if self.code:
            return f"{self.message} ({kind}, code={self.code})"
        return f"{self.message} ({kind})"


@dataclass(frozen=True)
class ProviderContext:
    """Explicit target of every provider call."""

    project: str
    region: str
    resource_group: str | None = None


@dataclass(frozen=True)
class ObservedResource:
    """Live state of a resource as reported by the provider."""

    provider_id: str
    kind: ResourceKind
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FieldDelta:
    """Old and new value of one attribute."""

    old: Any
    new: Any


class ProviderAdapter(ABC):
    """Narrow interface over a cloud control plane.

    Calls are blocking; the reconciler runs them on worker threads with a
    per-call timeout. Implementations must be safe to call from several
    threads at once for different resources.
    """

    @abstractmethod
    def get(self, context: ProviderContext, kind: ResourceKind, provider_id: str) -> ObservedResource | None:
        """Read a resource; None when it does not exist."""

    @abstractmethod
    def create(self, context: ProviderContext, resource: Resource, bindings: dict[str, list[str]]) -> str:
        """Create a resource and return its provider id.

        Args:
            context: Provider target.
            resource: Desired resource.
            bindings: Reference field -> provider ids of the referenced resources.
        """

    @abstractmethod
    def update(
        self,
        context: ProviderContext,
        resource: Resource,
        provider_id: str,
        delta: dict[str, FieldDelta],
        bindings: dict[str, list[str]] | None = None,
    ) -> None:
        """Apply an in-place attribute change.

        Args:
            context: Provider target.
            resource: Desired resource; its attributes are the full target
                state, not just the changed fields.
            provider_id: Id returned by create.
            delta: Changed attributes, old and new.
            bindings: Reference field -> provider ids, for reference fields
                that may change in place (e.g. the subnets of a NAT).
        """

    @abstractmethod
    def delete(self, context: ProviderContext, kind: ResourceKind, provider_id: str) -> None:
        """Delete a resource. Deleting a resource that is already gone succeeds."""
