"""Provider API mock for engine tests.

An in-memory implementation of the ProviderClient protocol with
asynchronous request simulation and error injection, so controllers can
be exercised end to end without a cloud account.

Usage:
    from provider_mock import MockProviderClient

    client = MockProviderClient(request_polls=2)
    client.inject_error("get", status_code=500)
"""

from .client import MockProviderClient, MockRequest, MockResource

__all__ = [
    "MockProviderClient",
    "MockRequest",
    "MockResource",
]
