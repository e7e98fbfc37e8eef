"""In-memory provider for engine tests.

Provides a ProviderAdapter implementation that keeps resources in memory,
so the reconciler can be exercised end to end without a cloud.

Key Features:
- In-memory resource state keyed by provider id
- Call log with operation, resource id and timing
- Error injection (transient or permanent, for N calls or forever)
- Delay injection and in-flight concurrency tracking
- Out-of-band edits and deletes to simulate drift

Usage:
    from provider_mock import InMemoryProvider

    provider = InMemoryProvider()
    provider.inject_error("create", "subnet/europe-west1/private", transient=True, times=2)

    reconciler = Reconciler(config, provider, store)
    summary = await reconciler.apply(desired)

    assert provider.operations() == [("create", "network/global/main"), ...]
"""

from .provider import CallRecord, InMemoryProvider, MockResource

__all__ = [
    "CallRecord",
    "InMemoryProvider",
    "MockResource",
]
