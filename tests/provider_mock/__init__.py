"""In-memory provider for engine and stack tests.

Records every create() call, fabricates deterministic outputs and supports
failure injection without any Azure connectivity.

Usage:
    from provider_mock import MockProvider

    provider = MockProvider()
    provider.fail("B")
    report = await ProvisioningEngine(provider, ctx).run(nodes)

    assert provider.names_called() == ["A", "C"]
"""

from .provider import MockCall, MockProvider

__all__ = [
    "MockCall",
    "MockProvider",
]
