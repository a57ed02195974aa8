"""Mock Azure Resource Manager state and generic resource operations.

Provides in-memory resources behind the ``resources.*_by_id`` operations
used by AzureResourceClient, with error injection and out-of-band edits
for failure and drift scenarios.
"""

from __future__ import annotations

import copy
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import SimpleNamespace
from typing import Any

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError


def http_error(status_code: int, message: str = "Simulated failure", code: str | None = None) -> HttpResponseError:
    """Build an HttpResponseError carrying a status code and ARM error code."""
    error = HttpResponseError(message=message)
    error.status_code = status_code
    error.error = SimpleNamespace(code=code or f"Http{status_code}", message=message)
    return error


@dataclass
class MockResource:
    """Represents a mock Azure resource in state."""

    resource_id: str
    resource_type: str
    name: str
    location: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)
    sku: Any = None
    api_version: str = "2024-01-01"
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        if not self.resource_id:
            raise ValueError("resource_id cannot be empty")

    @property
    def id(self) -> str:
        return self.resource_id

    def snapshot(self) -> MockResource:
        """Deep copy handed to callers so they cannot edit state in place."""
        return copy.deepcopy(self)


@dataclass
class _InjectedError:
    operation: str
    name: str
    error: Exception
    times: int


def _type_from_id(resource_id: str) -> str:
    provider_portion = resource_id.split("/providers/", 1)[-1]
    segments = provider_portion.split("/")
    # Namespace/type/name[/childType/childName]
    types = [segments[0]] + segments[1::2]
    return "/".join(types)


class MockResourceState:
    """In-memory Azure resource state.

    Thread-safe: the controller calls the SDK from executor threads.
    """

    MAX_RESOURCES = 10000

    def __init__(self) -> None:
        self._resources: dict[str, MockResource] = {}
        self._errors: list[_InjectedError] = []
        self._lock = threading.Lock()
        self.calls: list[tuple[str, str]] = []
        self.delay_seconds = 0.0

    @property
    def resource_count(self) -> int:
        return len(self._resources)

    def get_resource(self, resource_id: str) -> MockResource | None:
        return self._resources.get(resource_id)

    def find(self, name: str) -> MockResource | None:
        """Find a resource by its name."""
        for resource in self._resources.values():
            if resource.name == name:
                return resource
        return None

    def list_resources(self, resource_type: str | None = None) -> list[MockResource]:
        results = list(self._resources.values())
        if resource_type:
            results = [r for r in results if r.resource_type == resource_type]
        return results

    def put_resource(self, resource: MockResource) -> MockResource:
        with self._lock:
            if (
                resource.resource_id not in self._resources
                and len(self._resources) >= self.MAX_RESOURCES
            ):
                raise ValueError(f"Resource limit exceeded: {self.MAX_RESOURCES}")
            self._resources[resource.resource_id] = resource
        return resource

    def delete_resource(self, resource_id: str) -> bool:
        with self._lock:
            return self._resources.pop(resource_id, None) is not None

    def mutate(self, name: str, change: Callable[[dict[str, Any]], None]) -> None:
        """Edit a resource's properties out of band.

        Args:
            name: Resource name.
            change: Called with the properties dict to modify in place.
        """
        resource = self.find(name)
        if resource is None:
            raise KeyError(name)
        change(resource.properties)
        resource.updated_at = datetime.now(UTC)

    def inject_error(
        self,
        operation: str,
        name: str,
        error: Exception,
        times: int = 1,
    ) -> None:
        """Fail the next calls of an operation on a named resource.

        Args:
            operation: "put", "get" or "delete".
            name: Resource name (last segment of the resource id).
            error: Exception raised by the call.
            times: Number of calls to fail; -1 fails every call.
        """
        self._errors.append(_InjectedError(operation, name, error, times))

    def call_count(self, operation: str, name: str | None = None) -> int:
        return sum(
            1
            for op, resource_id in self.calls
            if op == operation and (name is None or resource_id.rsplit("/", 1)[-1] == name)
        )

    def record_call(self, operation: str, resource_id: str) -> None:
        """Log a call and raise any injected error for it."""
        with self._lock:
            self.calls.append((operation, resource_id))
            name = resource_id.rsplit("/", 1)[-1]
            for injected in self._errors:
                if injected.operation == operation and injected.name == name and injected.times != 0:
                    if injected.times > 0:
                        injected.times -= 1
                    raise injected.error
        if self.delay_seconds:
            time.sleep(self.delay_seconds)

    def clear(self) -> None:
        with self._lock:
            self._resources.clear()
            self._errors.clear()
            self.calls.clear()


class MockResourceClient:
    """Mock implementation of Azure ResourceManagementClient."""

    def __init__(self, state: MockResourceState, subscription_id: str) -> None:
        self._state = state
        self._subscription_id = subscription_id
        self.resources = _MockResourcesOperations(self)

    @property
    def subscription_id(self) -> str:
        return self._subscription_id


class _MockResourcesOperations:
    """Mock ARM generic resource operations."""

    def __init__(self, client: MockResourceClient) -> None:
        self._state = client._state

    def get_by_id(self, resource_id: str, api_version: str, **_kwargs: Any) -> MockResource:
        self._state.record_call("get", resource_id)
        resource = self._state.get_resource(resource_id)
        if resource is None:
            raise ResourceNotFoundError(message=f"Resource not found: {resource_id}")
        return resource.snapshot()

    def begin_create_or_update_by_id(
        self,
        resource_id: str,
        api_version: str,
        parameters: Any,
        **_kwargs: Any,
    ) -> _MockLROPoller:
        self._state.record_call("put", resource_id)

        parent_id = resource_id.rsplit("/subnets/", 1)[0] if "/subnets/" in resource_id else None
        if parent_id is not None and self._state.get_resource(parent_id) is None:
            return _MockLROPoller(None, error=http_error(404, "Parent resource not found", "ParentResourceNotFound"))

        existing = self._state.get_resource(resource_id)
        resource = MockResource(
            resource_id=resource_id,
            resource_type=_type_from_id(resource_id),
            name=resource_id.rsplit("/", 1)[-1],
            location=getattr(parameters, "location", None),
            properties=copy.deepcopy(getattr(parameters, "properties", None) or {}),
            tags=dict(getattr(parameters, "tags", None) or {}),
            sku=copy.deepcopy(getattr(parameters, "sku", None)),
            api_version=api_version,
            created_at=existing.created_at if existing else datetime.now(UTC),
        )
        self._state.put_resource(resource)
        return _MockLROPoller(resource.snapshot())

    def begin_delete_by_id(self, resource_id: str, api_version: str, **_kwargs: Any) -> _MockLROPoller:
        self._state.record_call("delete", resource_id)
        if not self._state.delete_resource(resource_id):
            raise ResourceNotFoundError(message=f"Resource not found: {resource_id}")
        return _MockLROPoller(None)


class _MockLROPoller:
    """Mock Long-Running Operation poller.

    Immediately returns results. Raises the configured error on result().
    """

    def __init__(self, result: Any, error: Exception | None = None) -> None:
        self._result = result
        self._error = error

    def result(self, _timeout: int | None = None) -> Any:
        if self._error is not None:
            raise self._error
        return self._result

    def done(self) -> bool:
        return True

    def status(self) -> str:
        return "Failed" if self._error else "Succeeded"
