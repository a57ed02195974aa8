"""Provider boundary for the resources a deployment owns.

Each client exposes create/read/update/delete for every ResourceKind and
returns a ProviderResult or raises a classified ProviderError. Clients never
retry; the reconciler owns retry policy.

CONTRACT:
- read() on a missing resource returns ProviderResult(found=False)
- delete() on a missing resource succeeds with an empty external id
- every failure is either TransientProviderError (retryable) or
  PermanentProviderError (not retryable)

AzureResourceClient maps kinds onto Azure Resource Manager resource types
and drives them through the generic ``resources.*_by_id`` operations, so a
single SDK client covers every kind.
"""

from __future__ import annotations

import ipaddress
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource, Sku

from .config import Config
from .models import ResourceKind, ResourceRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

MANAGED_BY_TAG = "deployctl"

# HTTP status codes worth retrying
TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})

# ARM error codes returned with 409 that clear up on their own
TRANSIENT_CONFLICT_CODES: frozenset[str] = frozenset({
    "AnotherOperationInProgress",
    "OperationNotAllowed",
    "RetryableError",
})

# Azure resource type and API version per kind
RESOURCE_TYPES: dict[ResourceKind, tuple[str, str]] = {
    ResourceKind.REGISTRY: ("Microsoft.ContainerRegistry/registries", "2023-07-01"),
    ResourceKind.NETWORK: ("Microsoft.Network/virtualNetworks", "2023-09-01"),
    ResourceKind.SUBNET: ("Microsoft.Network/virtualNetworks/subnets", "2023-09-01"),
    ResourceKind.SECURITY_POLICY: ("Microsoft.Network/networkSecurityGroups", "2023-09-01"),
    ResourceKind.COMPUTE_CLUSTER: ("Microsoft.App/managedEnvironments", "2024-03-01"),
    ResourceKind.COMPUTE_SERVICE: ("Microsoft.App/containerApps", "2024-03-01"),
}

CPU_UNITS_PER_VCPU = 1024
SECURITY_RULE_BASE_PRIORITY = 100


class ProviderError(Exception):
    """A classified provider failure."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class TransientProviderError(ProviderError):
    """Throttling, timeouts and other failures that may succeed on retry."""

    retryable = True


class PermanentProviderError(ProviderError):
    """Quota, invalid references, permission denied: never retried."""

    retryable = False


@dataclass
class ProviderResult:
    """Outcome of a provider call.

    Attributes:
        external_id: Provider handle; empty when the resource does not exist
        observed: Attributes read back, in the same shape as record specs
        found: False when read/delete found no resource
    """

    external_id: str = ""
    observed: dict[str, Any] = field(default_factory=dict)
    found: bool = True


class ResourceClient(ABC):
    """Abstract provider boundary used by the reconciler and drift detector."""

    @abstractmethod
    def create(self, record: ResourceRecord) -> ProviderResult:
        """Create the resource described by record.spec.

        Raises:
            ProviderError: On a classified failure.
        """

    @abstractmethod
    def read(self, record: ResourceRecord) -> ProviderResult:
        """Read the resource; found=False when it does not exist.

        Raises:
            ProviderError: On a classified failure.
        """

    @abstractmethod
    def update(self, record: ResourceRecord) -> ProviderResult:
        """Bring an existing resource in line with record.spec.

        Raises:
            ProviderError: On a classified failure.
        """

    @abstractmethod
    def delete(self, record: ResourceRecord) -> ProviderResult:
        """Delete the resource; succeeds when it is already gone.

        Raises:
            ProviderError: On a classified failure.
        """


def _error_code(error: HttpResponseError) -> str | None:
    odata = getattr(error, "error", None)
    return getattr(odata, "code", None)


def classify_azure_error(error: AzureError) -> ProviderError:
    """Map an Azure SDK exception onto the provider error taxonomy."""
    message = str(error)

    if isinstance(error, ClientAuthenticationError):
        return PermanentProviderError(message, status_code=error.status_code, code="Unauthorized")

    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return TransientProviderError(message, code="NetworkError")

    if isinstance(error, HttpResponseError):
        status = error.status_code
        code = _error_code(error)
        if status in TRANSIENT_STATUS_CODES or (status is not None and status >= 500):
            return TransientProviderError(message, status_code=status, code=code)
        if status == 409 and code in TRANSIENT_CONFLICT_CODES:
            return TransientProviderError(message, status_code=status, code=code)
        return PermanentProviderError(message, status_code=status, code=code)

    # Connection-level failures without a response
    return TransientProviderError(message)


def _is_not_found(error: AzureError) -> bool:
    if isinstance(error, ResourceNotFoundError):
        return True
    return isinstance(error, HttpResponseError) and error.status_code == 404


def _format_memory(memory_mib: int) -> str:
    return f"{memory_mib / 1024:g}Gi"


def _parse_memory(value: Any) -> int | None:
    if value is None:
        return None
    text = str(value).strip()
    if text.endswith("Gi"):
        return round(float(text[:-2]) * 1024)
    if text.endswith("Mi"):
        return round(float(text[:-2]))
    return round(float(text))


def _parse_port(value: Any) -> int | str | None:
    """Single ports as int; ranges and "*" stay as ARM reports them."""
    if value is None:
        return None
    text = str(value).strip()
    return int(text) if text.isdigit() else text


def _rule_sort_key(rule: dict[str, Any]) -> tuple[Any, ...]:
    port = rule["port"]
    # Numeric ports sort like IngressRule.sort_key, anything else after them
    if isinstance(port, int):
        return (0, port, rule["protocol"], rule["sourceCidr"] or "")
    return (1, str(port), rule["protocol"], rule["sourceCidr"] or "")


def _normalize_cidr(value: Any) -> str | None:
    if not value:
        return None
    try:
        return str(ipaddress.ip_network(str(value), strict=False))
    except ValueError:
        return str(value)


class AzureResourceClient(ResourceClient):
    """Resource client backed by Azure Resource Manager.

    Resources live in one resource group. Ids are derived from record names,
    so a record that lost its handle can still be read, adopted or deleted.
    """

    def __init__(
        self,
        config: Config,
        credential: TokenCredential | None = None,
        client: ResourceManagementClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Controller configuration (subscription, resource group, location).
            credential: Azure credential used when no client is supplied.
            client: Pre-built ResourceManagementClient.
        """
        self._config = config
        self._client = client or ResourceManagementClient(
            credential=credential,
            subscription_id=config.subscription_id,
        )

        self._builders: dict[ResourceKind, Callable[[ResourceRecord], GenericResource]] = {
            ResourceKind.REGISTRY: self._registry_body,
            ResourceKind.NETWORK: self._network_body,
            ResourceKind.SUBNET: self._subnet_body,
            ResourceKind.SECURITY_POLICY: self._security_policy_body,
            ResourceKind.COMPUTE_CLUSTER: self._compute_cluster_body,
            ResourceKind.COMPUTE_SERVICE: self._compute_service_body,
        }
        self._observers: dict[ResourceKind, Callable[[Any], dict[str, Any]]] = {
            ResourceKind.REGISTRY: self._observe_registry,
            ResourceKind.NETWORK: self._observe_network,
            ResourceKind.SUBNET: self._observe_subnet,
            ResourceKind.SECURITY_POLICY: self._observe_security_policy,
            ResourceKind.COMPUTE_CLUSTER: self._observe_compute_cluster,
            ResourceKind.COMPUTE_SERVICE: self._observe_compute_service,
        }

    # -------------------------------------------------------------------------
    # Resource ids
    # -------------------------------------------------------------------------

    def _group_prefix(self) -> str:
        return (
            f"/subscriptions/{self._config.subscription_id}"
            f"/resourceGroups/{self._config.resource_group_name}/providers"
        )

    def resource_id(self, record: ResourceRecord) -> str:
        """Full ARM id for a record."""
        if record.kind == ResourceKind.SUBNET:
            return (
                f"{self._group_prefix()}/Microsoft.Network/virtualNetworks/"
                f"{record.spec['networkName']}/subnets/{record.name}"
            )
        resource_type, _ = RESOURCE_TYPES[record.kind]
        return f"{self._group_prefix()}/{resource_type}/{record.name}"

    def _cluster_id(self, record: ResourceRecord) -> str:
        cluster_name = record.spec.get("clusterName")
        if cluster_name:
            resource_type, _ = RESOURCE_TYPES[ResourceKind.COMPUTE_CLUSTER]
            return f"{self._group_prefix()}/{resource_type}/{cluster_name}"
        if self._config.compute_cluster_id:
            return self._config.compute_cluster_id
        raise PermanentProviderError(
            f"{record.id}: no dedicated cluster planned and COMPUTE_CLUSTER_ID is not set",
            code="ClusterNotConfigured",
        )

    # -------------------------------------------------------------------------
    # ResourceClient
    # -------------------------------------------------------------------------

    def create(self, record: ResourceRecord) -> ProviderResult:
        return self._put(record, "create")

    def update(self, record: ResourceRecord) -> ProviderResult:
        return self._put(record, "update")

    def read(self, record: ResourceRecord) -> ProviderResult:
        resource_id = self.resource_id(record)
        _, api_version = RESOURCE_TYPES[record.kind]
        try:
            resource = self._client.resources.get_by_id(resource_id, api_version)
        except AzureError as e:
            if _is_not_found(e):
                return ProviderResult(found=False)
            raise self._translate(e, "read", record) from e
        return self._result(record, resource, resource_id)

    def delete(self, record: ResourceRecord) -> ProviderResult:
        resource_id = record.external_id or self.resource_id(record)
        _, api_version = RESOURCE_TYPES[record.kind]
        try:
            poller = self._client.resources.begin_delete_by_id(resource_id, api_version)
            poller.result()
        except AzureError as e:
            if _is_not_found(e):
                logger.info(
                    "Resource already absent",
                    extra={"record": record.id, "resource_id": resource_id},
                )
                return ProviderResult(found=False)
            raise self._translate(e, "delete", record) from e
        return ProviderResult(found=True)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _put(self, record: ResourceRecord, operation: str) -> ProviderResult:
        resource_id = self.resource_id(record)
        _, api_version = RESOURCE_TYPES[record.kind]
        body = self._builders[record.kind](record)
        try:
            poller = self._client.resources.begin_create_or_update_by_id(
                resource_id, api_version, body
            )
            resource = poller.result()
        except AzureError as e:
            raise self._translate(e, operation, record) from e
        return self._result(record, resource, resource_id)

    def _result(self, record: ResourceRecord, resource: Any, resource_id: str) -> ProviderResult:
        external_id = getattr(resource, "id", None) or resource_id
        try:
            observed = self._observers[record.kind](resource)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise PermanentProviderError(
                f"{record.id}: unexpected {record.kind.value} payload from {resource_id}: {e}",
                code="UnexpectedPayload",
            ) from e
        return ProviderResult(external_id=external_id, observed=observed, found=True)

    def _translate(self, error: AzureError, operation: str, record: ResourceRecord) -> ProviderError:
        classified = classify_azure_error(error)
        logger.warning(
            "Provider call failed",
            extra={
                "operation": operation,
                "record": record.id,
                "kind": record.kind.value,
                "retryable": classified.retryable,
                "status_code": classified.status_code,
                "error": str(error),
            },
        )
        return classified

    def _tags(self, record: ResourceRecord) -> dict[str, str]:
        return {"managed-by": MANAGED_BY_TAG, "record": record.id}

    # -------------------------------------------------------------------------
    # Request bodies, one per kind
    # -------------------------------------------------------------------------

    def _registry_body(self, record: ResourceRecord) -> GenericResource:
        return GenericResource(
            location=self._config.location,
            tags=self._tags(record),
            sku=Sku(name=record.spec["sku"]),
            properties={"adminUserEnabled": False},
        )

    def _network_body(self, record: ResourceRecord) -> GenericResource:
        properties: dict[str, Any] = {
            "addressSpace": {"addressPrefixes": [record.spec["cidr"]]},
        }
        # A PUT without subnets would remove the ones managed as child records
        existing = self._existing_properties(record)
        if existing.get("subnets"):
            properties["subnets"] = existing["subnets"]
        return GenericResource(
            location=self._config.location,
            tags=self._tags(record),
            properties=properties,
        )

    def _subnet_body(self, record: ResourceRecord) -> GenericResource:
        return GenericResource(properties={"addressPrefix": record.spec["cidr"]})

    def _security_policy_body(self, record: ResourceRecord) -> GenericResource:
        rules = []
        for index, rule in enumerate(record.spec.get("ingressRules", [])):
            rules.append({
                "name": f"allow-{rule['protocol']}-{rule['port']}-{index}",
                "properties": {
                    "priority": SECURITY_RULE_BASE_PRIORITY + index,
                    "direction": "Inbound",
                    "access": "Allow",
                    "protocol": rule["protocol"].capitalize(),
                    "sourceAddressPrefix": rule["sourceCidr"],
                    "sourcePortRange": "*",
                    "destinationAddressPrefix": "*",
                    "destinationPortRange": str(rule["port"]),
                },
            })
        return GenericResource(
            location=self._config.location,
            tags=self._tags(record),
            properties={"securityRules": rules},
        )

    def _compute_cluster_body(self, record: ResourceRecord) -> GenericResource:
        return GenericResource(
            location=self._config.location,
            tags=self._tags(record),
            properties={"zoneRedundant": False},
        )

    def _compute_service_body(self, record: ResourceRecord) -> GenericResource:
        spec = record.spec
        replicas = spec["replicaCount"]
        return GenericResource(
            location=self._config.location,
            tags=self._tags(record),
            properties={
                "managedEnvironmentId": self._cluster_id(record),
                "configuration": {
                    "ingress": {"external": True, "targetPort": spec["containerPort"]},
                },
                "template": {
                    "containers": [
                        {
                            "name": record.name,
                            "image": spec["imageReference"],
                            "resources": {
                                "cpu": spec["cpuUnits"] / CPU_UNITS_PER_VCPU,
                                "memory": _format_memory(spec["memoryMiB"]),
                            },
                        }
                    ],
                    "scale": {"minReplicas": replicas, "maxReplicas": max(replicas, 1)},
                },
            },
        )

    def _existing_properties(self, record: ResourceRecord) -> dict[str, Any]:
        _, api_version = RESOURCE_TYPES[record.kind]
        try:
            resource = self._client.resources.get_by_id(self.resource_id(record), api_version)
        except AzureError as e:
            if _is_not_found(e):
                return {}
            raise self._translate(e, "read", record) from e
        return dict(getattr(resource, "properties", None) or {})

    # -------------------------------------------------------------------------
    # Observers, one per kind; output matches the record spec shape
    # -------------------------------------------------------------------------

    def _observe_registry(self, resource: Any) -> dict[str, Any]:
        sku = getattr(resource, "sku", None)
        return {"sku": getattr(sku, "name", None)}

    def _observe_network(self, resource: Any) -> dict[str, Any]:
        properties = getattr(resource, "properties", None) or {}
        prefixes = properties.get("addressSpace", {}).get("addressPrefixes") or [None]
        return {"cidr": _normalize_cidr(prefixes[0])}

    def _observe_subnet(self, resource: Any) -> dict[str, Any]:
        properties = getattr(resource, "properties", None) or {}
        return {"cidr": _normalize_cidr(properties.get("addressPrefix"))}

    def _observe_security_policy(self, resource: Any) -> dict[str, Any]:
        properties = getattr(resource, "properties", None) or {}
        rules = []
        for rule in properties.get("securityRules", []):
            rule_properties = rule.get("properties", {})
            if rule_properties.get("direction") != "Inbound":
                continue
            if rule_properties.get("access") != "Allow":
                continue
            rules.append({
                "port": _parse_port(rule_properties.get("destinationPortRange")),
                "protocol": str(rule_properties.get("protocol", "")).lower(),
                "sourceCidr": rule_properties.get("sourceAddressPrefix"),
            })
        rules.sort(key=_rule_sort_key)
        return {"ingressRules": rules}

    def _observe_compute_cluster(self, resource: Any) -> dict[str, Any]:
        return {}

    def _observe_compute_service(self, resource: Any) -> dict[str, Any]:
        properties = getattr(resource, "properties", None) or {}
        template = properties.get("template", {})
        containers = template.get("containers") or [{}]
        container = containers[0]
        resources = container.get("resources", {})
        cpu = resources.get("cpu")
        return {
            "imageReference": container.get("image"),
            "replicaCount": template.get("scale", {}).get("minReplicas"),
            "containerPort": properties.get("configuration", {}).get("ingress", {}).get(
                "targetPort"
            ),
            "cpuUnits": round(cpu * CPU_UNITS_PER_VCPU) if cpu is not None else None,
            "memoryMiB": _parse_memory(resources.get("memory")),
        }
