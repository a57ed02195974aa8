"""Azure API mock for controller tests.

Provides an in-memory implementation of the Azure Resource Manager generic
resource operations so the controller can be exercised without Azure
connectivity.

Key Features:
- In-memory resource state keyed by ARM resource id
- Error injection per operation and resource name
- Out-of-band edits for drift scenarios
- Call log for asserting which provider calls happened

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as ctx:
        client = AzureResourceClient(config)
        ...
        assert ctx.state.call_count("put") == 6
"""

from .context import MockAzureContext, mock_azure_context
from .resources import MockResource, MockResourceClient, MockResourceState, http_error

__all__ = [
    "MockAzureContext",
    "MockResource",
    "MockResourceClient",
    "MockResourceState",
    "http_error",
    "mock_azure_context",
]
