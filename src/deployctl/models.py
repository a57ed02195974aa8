"""Pydantic models for desired state, resource records and runs.

These models provide:
1. Type-safe parsing of desired-state documents (camelCase keys)
2. The persisted shape of reconciliation runs (JSON via pydantic)
3. Status bookkeeping that keeps external ids consistent with status

Semantic checks (CIDR overlap, port ranges, ...) live in dependency.py so
that every invalid document surfaces as one ValidationError.
"""

from __future__ import annotations

import hashlib
import json
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

DEFAULT_INGRESS_SOURCE = "0.0.0.0/0"


class ResourceKind(str, Enum):
    """Kinds of external resources a deployment owns."""

    REGISTRY = "registry"
    NETWORK = "network"
    SUBNET = "subnet"
    SECURITY_POLICY = "security_policy"
    COMPUTE_CLUSTER = "compute_cluster"
    COMPUTE_SERVICE = "compute_service"


class ResourceStatus(str, Enum):
    """Lifecycle status of a single resource record."""

    PENDING = "Pending"
    CREATING = "Creating"
    READY = "Ready"
    UPDATING = "Updating"
    FAILED = "Failed"
    DESTROYING = "Destroying"
    DESTROYED = "Destroyed"


# Statuses in which the record holds a live provider handle
LIVE_STATUSES: frozenset[ResourceStatus] = frozenset({
    ResourceStatus.READY,
    ResourceStatus.UPDATING,
    ResourceStatus.DESTROYING,
})

# Statuses left behind when a provider call was in flight
IN_FLIGHT_STATUSES: frozenset[ResourceStatus] = frozenset({
    ResourceStatus.CREATING,
    ResourceStatus.UPDATING,
    ResourceStatus.DESTROYING,
})


class RecordAction(str, Enum):
    """Work a run still owes a record."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NONE = "none"


class RunOutcome(str, Enum):
    """Outcome of a reconciliation run."""

    IN_PROGRESS = "InProgress"
    CONVERGED = "Converged"
    PARTIALLY_FAILED = "PartiallyFailed"
    ABORTED = "Aborted"


# =============================================================================
# Desired State
# =============================================================================


class SubnetSpec(BaseModel):
    """One subnet of the deployment network."""

    model_config = {"extra": "ignore", "frozen": True}

    cidr: str
    zone: str | None = None


class NetworkSpec(BaseModel):
    """Network block and its subnets."""

    model_config = {"extra": "ignore", "frozen": True}

    cidr: str
    subnets: list[SubnetSpec] = Field(default_factory=list)


class IngressRule(BaseModel):
    """Inbound traffic allowed to reach the service."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    port: int
    protocol: str = "tcp"
    source_cidr: str = Field(DEFAULT_INGRESS_SOURCE, alias="sourceCidr")

    @field_validator("protocol")
    @classmethod
    def normalize_protocol(cls, v: str) -> str:
        return v.strip().lower()

    def sort_key(self) -> tuple[int, str, str]:
        return (self.port, self.protocol, self.source_cidr)

    def to_attributes(self) -> dict[str, Any]:
        """Attribute form used in record specs and drift comparison."""
        return {"port": self.port, "protocol": self.protocol, "sourceCidr": self.source_cidr}


class DesiredState(BaseModel):
    """Declarative target for one deployment.

    Immutable once constructed; a new submission creates a new run.
    """

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    deployment_name: str = Field(alias="deploymentName")
    image_reference: str = Field(alias="imageReference")
    replica_count: int = Field(1, alias="replicaCount")
    cpu_units: int = Field(256, alias="cpuUnits")
    memory_mib: int = Field(512, alias="memoryMiB")
    container_port: int = Field(80, alias="containerPort")
    network_spec: NetworkSpec = Field(alias="networkSpec")
    ingress_rules: list[IngressRule] | None = Field(None, alias="ingressRules")

    # False: run on the pre-configured shared cluster
    dedicated_cluster: bool = Field(False, alias="dedicatedCluster")

    def effective_ingress_rules(self) -> list[IngressRule]:
        """Ingress rules as a sorted set, defaulting to the container port."""
        rules = self.ingress_rules
        if rules is None:
            rules = [IngressRule(port=self.container_port)]
        unique = {rule.sort_key(): rule for rule in rules}
        return [unique[key] for key in sorted(unique)]

    def fingerprint(self) -> str:
        """Deterministic hash of the document."""
        payload = json.dumps(self.model_dump(mode="json", by_alias=True), sort_keys=True)
        digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
        return f"sha256:{digest}"


# =============================================================================
# Runs and Records
# =============================================================================


def new_run_id() -> str:
    return f"run-{secrets.token_hex(8)}"


class ResourceRecord(BaseModel):
    """One external resource owned by a reconciliation run."""

    model_config = {"extra": "ignore"}

    id: str
    kind: ResourceKind
    name: str
    external_id: str = ""
    depends_on: list[str] = Field(default_factory=list)
    status: ResourceStatus = ResourceStatus.PENDING
    action: RecordAction = RecordAction.CREATE
    spec: dict[str, Any] = Field(default_factory=dict)
    observed: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    last_error: str | None = None
    updated_at: datetime | None = None

    @property
    def is_settled(self) -> bool:
        """True when the run owes this record no more work."""
        if self.status == ResourceStatus.DESTROYED:
            return True
        return self.status == ResourceStatus.READY and self.action == RecordAction.NONE

    def transition(self, status: ResourceStatus, external_id: str | None = None) -> None:
        """Move to a new status, keeping external_id consistent with it.

        A live status keeps (or takes) a provider handle; every other
        status clears it.

        Raises:
            ValueError: If a live status would be entered without a handle.
        """
        if status in LIVE_STATUSES:
            if external_id is not None:
                self.external_id = external_id
            if not self.external_id:
                raise ValueError(f"{self.id}: status {status.value} requires an external id")
        else:
            self.external_id = ""
        self.status = status
        self.updated_at = datetime.now(UTC)


class ReconciliationRun(BaseModel):
    """One attempt to converge a deployment to a desired state."""

    model_config = {"extra": "ignore"}

    run_id: str = Field(default_factory=new_run_id)
    deployment_name: str
    sequence: int = 1
    target_state: DesiredState
    desired_hash: str = ""
    records: list[ResourceRecord] = Field(default_factory=list)
    outcome: RunOutcome = RunOutcome.IN_PROGRESS
    needs_verification: bool = False
    cancel_requested: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.outcome != RunOutcome.IN_PROGRESS

    @property
    def is_converged(self) -> bool:
        return all(record.is_settled for record in self.records)

    def record(self, record_id: str) -> ResourceRecord:
        """Look up a record by id.

        Raises:
            KeyError: If the run has no such record.
        """
        for record in self.records:
            if record.id == record_id:
                return record
        raise KeyError(record_id)

    def status_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for record in self.records:
            counts[record.status.value] = counts.get(record.status.value, 0) + 1
        return counts

    def finish(self, outcome: RunOutcome) -> None:
        self.outcome = outcome
        self.completed_at = datetime.now(UTC)


# =============================================================================
# Drift
# =============================================================================


@dataclass
class FieldDrift:
    """A single attribute whose observed value differs from the applied one."""

    field: str
    expected: Any
    observed: Any

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "expected": self.expected, "observed": self.observed}


@dataclass
class DriftReport:
    """Result of comparing observed state with the last applied desired state.

    Attributes:
        deployment_name: Deployment that was checked
        run_id: Converged run whose records were compared
        checked_at: When the check ran
        changes: Record id to the list of drifted fields
    """

    deployment_name: str
    run_id: str
    checked_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    changes: dict[str, list[FieldDrift]] = field(default_factory=dict)

    @property
    def has_drift(self) -> bool:
        return bool(self.changes)

    def changed_fields(self, record_id: str) -> list[str]:
        return [change.field for change in self.changes.get(record_id, [])]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "deployment_name": self.deployment_name,
            "run_id": self.run_id,
            "checked_at": self.checked_at.isoformat(),
            "has_drift": self.has_drift,
            "changes": {
                record_id: [change.to_dict() for change in drifts]
                for record_id, drifts in self.changes.items()
            },
        }
