"""Azure Mock Context for integration testing.

Provides a context manager that patches the Azure SDK client with the
in-memory mock.
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any
from unittest import mock

from .resources import MockResource, MockResourceClient, MockResourceState


class MockAzureContext:
    """Context manager for Azure API mocking in tests.

    Patches:
    - deployctl.resource_client.ResourceManagementClient -> MockResourceClient

    Usage:
        with MockAzureContext() as ctx:
            client = AzureResourceClient(config)
            client.create(record)

            assert ctx.state.resource_count == 1
    """

    def __init__(self, *, initial_resources: list[dict[str, Any]] | None = None) -> None:
        """Initialize mock context.

        Args:
            initial_resources: Resources to pre-populate in state.
        """
        self._initial_resources = initial_resources or []
        self._state: MockResourceState | None = None
        self._patches: list[Any] = []

    @property
    def state(self) -> MockResourceState:
        """Get the mock resource state.

        Raises:
            RuntimeError: If accessed outside of context.
        """
        if self._state is None:
            raise RuntimeError("MockAzureContext must be used as a context manager")
        return self._state

    def get_resource_count(self) -> int:
        return self.state.resource_count

    def __enter__(self) -> MockAzureContext:
        self._state = MockResourceState()

        for resource_data in self._initial_resources:
            self._state.put_resource(
                MockResource(
                    resource_id=resource_data["resource_id"],
                    resource_type=resource_data["resource_type"],
                    name=resource_data["name"],
                    location=resource_data.get("location", "westeurope"),
                    properties=resource_data.get("properties", {}),
                    tags=resource_data.get("tags", {}),
                )
            )

        def create_mock_client(credential: Any = None, subscription_id: str = "") -> MockResourceClient:
            return MockResourceClient(state=self._state, subscription_id=subscription_id)

        client_patch = mock.patch(
            "deployctl.resource_client.ResourceManagementClient",
            side_effect=create_mock_client,
        )
        self._patches.append(client_patch)

        for patch in self._patches:
            patch.start()

        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        for patch in reversed(self._patches):
            patch.stop()
        self._patches.clear()


@contextmanager
def mock_azure_context(
    *, initial_resources: list[dict[str, Any]] | None = None
) -> Generator[MockAzureContext, None, None]:
    """Convenience function for creating a mock Azure context."""
    ctx = MockAzureContext(initial_resources=initial_resources)
    with ctx:
        yield ctx
