"""Drift detection for converged deployments.

On every cycle the detector takes each deployment whose most recent run is
Converged, reads its live records back from the provider and compares a
fixed set of attributes per kind with what the run applied. Differences are
reported, never corrected: fixing drift takes a new submission.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .config import Config
from .models import (
    DriftReport,
    FieldDrift,
    ReconciliationRun,
    ResourceKind,
    ResourceRecord,
    ResourceStatus,
    RunOutcome,
)
from .resource_client import ProviderError, ProviderResult, ResourceClient, TransientProviderError
from .state_store import StateStore, StateStoreError

logger = logging.getLogger(__name__)

# Attributes compared per kind
DRIFT_FIELDS: dict[ResourceKind, tuple[str, ...]] = {
    ResourceKind.REGISTRY: ("sku",),
    ResourceKind.NETWORK: ("cidr",),
    ResourceKind.SUBNET: ("cidr",),
    ResourceKind.SECURITY_POLICY: ("ingressRules",),
    ResourceKind.COMPUTE_CLUSTER: (),
    ResourceKind.COMPUTE_SERVICE: (
        "replicaCount",
        "imageReference",
        "containerPort",
        "cpuUnits",
        "memoryMiB",
    ),
}


def compare_record(record: ResourceRecord, result: ProviderResult) -> list[FieldDrift]:
    """Fields of a record whose observed value differs from the applied spec."""
    if not result.found:
        return [FieldDrift(field="exists", expected=True, observed=False)]

    changes = []
    for name in DRIFT_FIELDS[record.kind]:
        expected: Any = record.spec.get(name)
        observed: Any = result.observed.get(name)
        if expected != observed:
            changes.append(FieldDrift(field=name, expected=expected, observed=observed))
    return changes


class DriftDetector:
    """Periodically compares observed state with the last applied state."""

    def __init__(self, config: Config, client: ResourceClient, store: StateStore) -> None:
        self._config = config
        self._client = client
        self._store = store
        self._reports: dict[str, DriftReport] = {}
        self._shutdown_event = asyncio.Event()

    def latest_report(self, deployment_name: str) -> DriftReport | None:
        """Most recent report for a deployment, None if not yet checked."""
        return self._reports.get(deployment_name)

    async def check(self, deployment_name: str) -> DriftReport | None:
        """Check one deployment.

        Returns:
            The report (possibly without changes), or None when the
            deployment has no converged run to compare against.

        Raises:
            ProviderError: If a record cannot be read.
            StateStoreError: If the run cannot be loaded.
        """
        run = self._store.load(deployment_name)
        if run is None or run.outcome != RunOutcome.CONVERGED:
            return None

        report = DriftReport(deployment_name=deployment_name, run_id=run.run_id)
        for record in self._live_records(run):
            result = await self._read(record)
            changes = compare_record(record, result)
            if changes:
                report.changes[record.id] = changes

        self._reports[deployment_name] = report
        self._log_report(report)
        return report

    async def check_all(self) -> dict[str, DriftReport]:
        """Check every deployment; failed reads skip that deployment this cycle."""
        reports: dict[str, DriftReport] = {}
        for deployment_name in self._store.deployments():
            try:
                report = await self.check(deployment_name)
            except (ProviderError, StateStoreError) as e:
                logger.error(
                    "Drift check failed, skipping deployment",
                    extra={"deployment": deployment_name, "error": str(e)},
                )
                continue
            if report is not None:
                reports[deployment_name] = report
        return reports

    async def run(self) -> None:
        """Check for drift on the configured interval until shutdown."""
        logger.info(
            "Starting drift detector",
            extra={"interval_seconds": self._config.drift_interval_seconds},
        )

        while not self._shutdown_event.is_set():
            await self.check_all()

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.drift_interval_seconds,
                )
            except TimeoutError:
                pass

        logger.info("Drift detector stopped")

    def shutdown(self) -> None:
        """Signal the detector to stop."""
        self._shutdown_event.set()

    def _live_records(self, run: ReconciliationRun) -> list[ResourceRecord]:
        return [record for record in run.records if record.status == ResourceStatus.READY]

    async def _read(self, record: ResourceRecord) -> ProviderResult:
        loop = asyncio.get_running_loop()
        timeout = self._config.provider_call_timeout_seconds
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, self._client.read, record),
                timeout=timeout,
            )
        except TimeoutError as e:
            raise TransientProviderError(
                f"read {record.id} exceeded {timeout}s deadline", code="Timeout"
            ) from e

    def _log_report(self, report: DriftReport) -> None:
        if not report.has_drift:
            logger.info(
                "No drift detected",
                extra={"deployment": report.deployment_name, "run_id": report.run_id},
            )
            return

        for record_id, changes in report.changes.items():
            for change in changes:
                logger.warning(
                    "Drift detected",
                    extra={
                        "deployment": report.deployment_name,
                        "run_id": report.run_id,
                        "record": record_id,
                        "field": change.field,
                        "expected": change.expected,
                        "observed": change.observed,
                    },
                )
