"""Dependency ordering and desired-state validation.

This module turns a DesiredState into the ordered list of ResourceRecords a
reconciliation run works through:
1. Semantic validation of the document (ports, sizing, CIDRs)
2. Record construction over a fixed, enum-keyed dependency table
3. Topological sorting for execution order (deterministic)

DEPENDENCY SHAPE:
- registry depends on nothing
- network -> subnets -> security policy
- compute cluster depends on nothing (only planned when dedicated)
- compute service depends on the cluster, every subnet and the security policy

build_plan() is a pure function: the same document always yields the same
records in the same order, which makes re-planning idempotent.
"""

from __future__ import annotations

import ipaddress
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from .models import DesiredState, ResourceKind, ResourceRecord

logger = logging.getLogger(__name__)

VALID_DEPLOYMENT_NAME_PATTERN = r"^[a-z][a-z0-9-]{0,30}[a-z0-9]$"
VALID_PROTOCOLS: frozenset[str] = frozenset({"tcp", "udp"})
MIN_PORT = 1
MAX_PORT = 65535
REGISTRY_NAME_MIN_LENGTH = 5
REGISTRY_NAME_MAX_LENGTH = 50
DEFAULT_REGISTRY_SKU = "Basic"


class DependencyError(Exception):
    """Base class for planning and ordering errors."""

    pass


class ValidationError(DependencyError):
    """Raised when a desired-state document is malformed or inconsistent.

    Never retried; the submission is rejected and nothing is persisted.
    """

    def __init__(self, errors: list[str] | str) -> None:
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("Desired state validation failed:\n  - " + "\n  - ".join(self.errors))


class CyclicDependencyError(DependencyError):
    """Raised when a dependency cycle is detected."""

    pass


class DependencyUnmetError(DependencyError):
    """Raised when a record is started before its dependencies are Ready."""

    pass


# Fixed dependency shape, keyed by kind
KIND_DEPENDENCIES: dict[ResourceKind, tuple[ResourceKind, ...]] = {
    ResourceKind.REGISTRY: (),
    ResourceKind.NETWORK: (),
    ResourceKind.SUBNET: (ResourceKind.NETWORK,),
    ResourceKind.SECURITY_POLICY: (ResourceKind.NETWORK, ResourceKind.SUBNET),
    ResourceKind.COMPUTE_CLUSTER: (),
    ResourceKind.COMPUTE_SERVICE: (
        ResourceKind.COMPUTE_CLUSTER,
        ResourceKind.SUBNET,
        ResourceKind.SECURITY_POLICY,
    ),
}


@dataclass
class DependencyGraph:
    """Record ids mapped to the ids they wait on."""

    edges: dict[str, set[str]] = field(default_factory=dict)

    def add(self, node_id: str, depends_on: list[str] | tuple[str, ...] = ()) -> None:
        """Add a record id; unknown dependencies become nodes of their own."""
        self.edges.setdefault(node_id, set()).update(depends_on)
        for dep in depends_on:
            self.edges.setdefault(dep, set())

    def order(self) -> list[str]:
        """Ids with dependencies first, the smallest free id taken at each step.

        Raises:
            CyclicDependencyError: If some ids can never become free.
        """
        waiting = {node: set(deps) for node, deps in self.edges.items()}
        result: list[str] = []

        while waiting:
            free = [node for node, deps in waiting.items() if not deps]
            if not free:
                raise CyclicDependencyError(
                    f"Circular dependency detected involving: {sorted(waiting)}"
                )
            current = min(free)
            del waiting[current]
            result.append(current)
            for deps in waiting.values():
                deps.discard(current)

        return result

    def ready(self, satisfied: set[str]) -> list[str]:
        """Unsatisfied ids whose dependencies are all in satisfied."""
        return sorted(
            node
            for node, deps in self.edges.items()
            if node not in satisfied and deps <= satisfied
        )

    def dependents(self, node_id: str) -> set[str]:
        return {node for node, deps in self.edges.items() if node_id in deps}

    @classmethod
    def from_records(cls, records: list[ResourceRecord]) -> DependencyGraph:
        graph = cls()
        for record in records:
            graph.add(record.id, record.depends_on)
        return graph


# =============================================================================
# Validation
# =============================================================================


def _parse_cidr(
    value: str, label: str, errors: list[str]
) -> ipaddress.IPv4Network | ipaddress.IPv6Network | None:
    try:
        return ipaddress.ip_network(value, strict=True)
    except (ValueError, TypeError):
        errors.append(f"{label} is not a valid CIDR block: {value!r}")
        return None


def validate_desired_state(desired: DesiredState) -> None:
    """Check a desired-state document for semantic errors.

    All problems are collected and reported together.

    Raises:
        ValidationError: If the document is invalid.
    """
    errors: list[str] = []

    if not re.match(VALID_DEPLOYMENT_NAME_PATTERN, desired.deployment_name):
        errors.append(
            f"deploymentName must match {VALID_DEPLOYMENT_NAME_PATTERN}: "
            f"{desired.deployment_name!r}"
        )

    image = desired.image_reference
    if not image or any(ch.isspace() for ch in image):
        errors.append(f"imageReference must be a non-empty reference without spaces: {image!r}")

    if desired.replica_count < 0:
        errors.append(f"replicaCount cannot be negative: {desired.replica_count}")

    if not (MIN_PORT <= desired.container_port <= MAX_PORT):
        errors.append(
            f"containerPort must be between {MIN_PORT} and {MAX_PORT}: {desired.container_port}"
        )

    if desired.cpu_units <= 0:
        errors.append(f"cpuUnits must be positive: {desired.cpu_units}")

    if desired.memory_mib <= 0:
        errors.append(f"memoryMiB must be positive: {desired.memory_mib}")

    network = _parse_cidr(desired.network_spec.cidr, "networkSpec.cidr", errors)

    if not desired.network_spec.subnets:
        errors.append("networkSpec.subnets must contain at least one subnet")

    parsed: list[tuple[int, Any]] = []
    for index, subnet in enumerate(desired.network_spec.subnets):
        label = f"networkSpec.subnets[{index}].cidr"
        block = _parse_cidr(subnet.cidr, label, errors)
        if block is None:
            continue
        if network is not None and (
            block.version != network.version or not block.subnet_of(network)
        ):
            errors.append(f"{label} {subnet.cidr} is outside network {desired.network_spec.cidr}")
        parsed.append((index, block))

    for i, (left_index, left) in enumerate(parsed):
        for right_index, right in parsed[i + 1:]:
            if left.version == right.version and left.overlaps(right):
                errors.append(
                    f"networkSpec.subnets[{left_index}] {left} overlaps "
                    f"networkSpec.subnets[{right_index}] {right}"
                )

    for index, rule in enumerate(desired.ingress_rules or []):
        label = f"ingressRules[{index}]"
        if not (MIN_PORT <= rule.port <= MAX_PORT):
            errors.append(f"{label}.port must be between {MIN_PORT} and {MAX_PORT}: {rule.port}")
        if rule.protocol not in VALID_PROTOCOLS:
            errors.append(f"{label}.protocol must be one of {sorted(VALID_PROTOCOLS)}")
        _parse_cidr(rule.source_cidr, f"{label}.sourceCidr", errors)

    if errors:
        raise ValidationError(errors)


# =============================================================================
# Planning
# =============================================================================


def registry_name(deployment_name: str) -> str:
    """Registry names are alphanumeric only."""
    base = re.sub(r"[^a-z0-9]", "", deployment_name.lower())
    name = f"{base}registry"[:REGISTRY_NAME_MAX_LENGTH]
    return name.ljust(REGISTRY_NAME_MIN_LENGTH, "0")


def _normalized_cidr(value: str) -> str:
    return str(ipaddress.ip_network(value, strict=True))


def _build_records(desired: DesiredState) -> dict[str, ResourceRecord]:
    name = desired.deployment_name
    network_name = f"{name}-vnet"
    records: dict[str, ResourceRecord] = {}

    def add(record_id: str, kind: ResourceKind, resource_name: str, spec: dict[str, Any]) -> None:
        records[record_id] = ResourceRecord(id=record_id, kind=kind, name=resource_name, spec=spec)

    add("registry", ResourceKind.REGISTRY, registry_name(name), {"sku": DEFAULT_REGISTRY_SKU})
    add("network", ResourceKind.NETWORK, network_name, {
        "cidr": _normalized_cidr(desired.network_spec.cidr),
    })
    for index, subnet in enumerate(desired.network_spec.subnets):
        add(f"subnet-{index}", ResourceKind.SUBNET, f"{name}-subnet-{index}", {
            "cidr": _normalized_cidr(subnet.cidr),
            "zone": subnet.zone,
            "networkName": network_name,
        })
    add("security-policy", ResourceKind.SECURITY_POLICY, f"{name}-nsg", {
        "ingressRules": [rule.to_attributes() for rule in desired.effective_ingress_rules()],
    })

    cluster_name: str | None = None
    if desired.dedicated_cluster:
        cluster_name = f"{name}-env"
        add("compute-cluster", ResourceKind.COMPUTE_CLUSTER, cluster_name, {})

    add("compute-service", ResourceKind.COMPUTE_SERVICE, name, {
        "imageReference": desired.image_reference,
        "replicaCount": desired.replica_count,
        "containerPort": desired.container_port,
        "cpuUnits": desired.cpu_units,
        "memoryMiB": desired.memory_mib,
        "clusterName": cluster_name,
    })

    # Expand the kind table into record ids present in this plan
    by_kind: dict[ResourceKind, list[str]] = {}
    for record in records.values():
        by_kind.setdefault(record.kind, []).append(record.id)

    for record in records.values():
        deps: list[str] = []
        for kind in KIND_DEPENDENCIES[record.kind]:
            deps.extend(by_kind.get(kind, []))
        record.depends_on = sorted(deps)

    return records


def build_plan(desired: DesiredState) -> list[ResourceRecord]:
    """Validate a desired state and return its records in dependency order.

    Every record appears after all entries of its depends_on.

    Raises:
        ValidationError: If the document is invalid.
        CyclicDependencyError: If the dependency table is inconsistent.
    """
    validate_desired_state(desired)
    records = _build_records(desired)

    graph = DependencyGraph.from_records(list(records.values()))
    order = graph.order()

    logger.debug(
        "Planned deployment",
        extra={"deployment": desired.deployment_name, "order": order},
    )
    return [records[record_id] for record_id in order]
