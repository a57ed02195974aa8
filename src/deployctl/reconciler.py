"""Per-run reconciliation state machine.

A run works through its records in two phases:
1. Apply: create or update records whose dependencies are Ready, with
   independent branches running concurrently on a bounded pool
2. Teardown: delete records dropped from the desired state, dependents first

Record transitions:
    Pending  -> Creating   -> Ready | Failed
    Ready    -> Updating   -> Ready | Failed
    any      -> Destroying -> Destroyed | Failed

WRITE-AHEAD ORDERING:
Every transition is saved to the StateStore before the provider call it
announces and before any dependent record starts. A crash therefore leaves
at most one call per in-flight record unverified, and verify_in_flight()
settles those with a read before anything else runs.

No automatic rollback: a run that cannot converge ends PartiallyFailed and
keeps its progress.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from .config import Config
from .dependency import DependencyGraph, DependencyUnmetError, build_plan
from .models import (
    IN_FLIGHT_STATUSES,
    LIVE_STATUSES,
    DesiredState,
    ReconciliationRun,
    RecordAction,
    ResourceRecord,
    ResourceStatus,
    RunOutcome,
)
from .resource_client import ProviderError, ProviderResult, ResourceClient, TransientProviderError
from .state_store import StateStore, StateStoreError

logger = logging.getLogger(__name__)

APPLY_ACTIONS: frozenset[RecordAction] = frozenset({RecordAction.CREATE, RecordAction.UPDATE})


def prepare_run(
    desired: DesiredState,
    previous: ReconciliationRun | None = None,
    sequence: int = 1,
) -> ReconciliationRun:
    """Plan a new run, carrying forward what the previous run achieved.

    - Ready records with an unchanged spec become no-ops
    - Ready records with a changed spec are scheduled for update
    - records the new plan no longer contains are scheduled for deletion
    - everything else starts Pending

    Raises:
        ValidationError: If the document is invalid.
    """
    records = build_plan(desired)
    carried = {record.id: record for record in previous.records} if previous else {}

    for record in records:
        old = carried.pop(record.id, None)
        if old is None or old.status != ResourceStatus.READY or not old.external_id:
            continue
        record.status = ResourceStatus.READY
        record.external_id = old.external_id
        record.observed = dict(old.observed)
        unchanged = old.action == RecordAction.NONE and old.spec == record.spec
        record.action = RecordAction.NONE if unchanged else RecordAction.UPDATE

    for old in carried.values():
        if old.status == ResourceStatus.DESTROYED:
            continue
        live = old.status in LIVE_STATUSES and bool(old.external_id)
        records.append(
            ResourceRecord(
                id=old.id,
                kind=old.kind,
                name=old.name,
                external_id=old.external_id if live else "",
                depends_on=list(old.depends_on),
                status=ResourceStatus.READY if live else ResourceStatus.PENDING,
                action=RecordAction.DELETE,
                spec=dict(old.spec),
                observed=dict(old.observed),
            )
        )

    return ReconciliationRun(
        deployment_name=desired.deployment_name,
        sequence=sequence,
        target_state=desired,
        desired_hash=desired.fingerprint(),
        records=records,
    )


def _dependency_ready(record: ResourceRecord) -> bool:
    return record.status == ResourceStatus.READY and record.action == RecordAction.NONE


class Reconciler:
    """Drives ReconciliationRuns to a terminal outcome.

    The reconciler holds no per-run state between calls; everything it
    needs is on the run, which is persisted after every transition.
    """

    def __init__(self, config: Config, client: ResourceClient, store: StateStore) -> None:
        self._config = config
        self._client = client
        self._store = store

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def execute(
        self,
        run: ReconciliationRun,
        cancel_event: asyncio.Event | None = None,
    ) -> ReconciliationRun:
        """Drive a run until no further progress is possible.

        Each record is attempted at most once per call. Cancellation lets
        in-flight records finish and starts nothing new.

        Raises:
            StateStoreError: If a transition cannot be persisted. The run is
                flagged for verification and stays InProgress.
        """
        if run.is_terminal:
            return run

        cancel_event = cancel_event or asyncio.Event()

        logger.info(
            "Starting run",
            extra={
                "deployment": run.deployment_name,
                "run_id": run.run_id,
                "sequence": run.sequence,
                "records": len(run.records),
            },
        )

        if run.needs_verification or any(r.status in IN_FLIGHT_STATUSES for r in run.records):
            await self.verify_in_flight(run)

        graph = DependencyGraph.from_records(run.records)
        attempted: set[str] = set()
        running: dict[asyncio.Task[None], str] = {}

        def cancelled() -> bool:
            return cancel_event.is_set() or run.cancel_requested

        try:
            while True:
                if not cancelled():
                    for record in self._next_records(run, graph, attempted, running):
                        if len(running) >= self._config.max_parallel_operations:
                            break
                        attempted.add(record.id)
                        task = asyncio.create_task(self._advance(run, record))
                        running[task] = record.id

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    running.pop(task)
                    task.result()
        except StateStoreError:
            await self._drain(running)
            self._flag_for_verification(run)
            raise
        except asyncio.CancelledError:
            # Process shutdown: the run stays InProgress and is verified on resume
            for task in running:
                task.cancel()
            await self._drain(running)
            raise
        except Exception:
            await self._drain(running)
            raise

        if run.is_converged:
            outcome = RunOutcome.CONVERGED
        elif cancelled():
            outcome = RunOutcome.ABORTED
        else:
            outcome = RunOutcome.PARTIALLY_FAILED

        run.finish(outcome)
        self._persist(run)

        log = logger.info if outcome == RunOutcome.CONVERGED else logger.warning
        log(
            "Run finished",
            extra={
                "deployment": run.deployment_name,
                "run_id": run.run_id,
                "outcome": outcome.value,
                "statuses": run.status_counts(),
            },
        )
        return run

    async def verify_in_flight(self, run: ReconciliationRun) -> None:
        """Settle records whose last provider call may or may not have happened.

        Records left Creating, Updating or Destroying are read back and
        normalized. When the run is flagged for verification, every record
        holding a handle is checked as well.

        Raises:
            StateStoreError: If the normalized run cannot be persisted.
        """
        full_check = run.needs_verification

        for record in run.records:
            in_flight = record.status in IN_FLIGHT_STATUSES
            if not in_flight and not (full_check and record.status == ResourceStatus.READY):
                continue

            try:
                result = await self._call_with_retry("read", record)
            except ProviderError as e:
                self._fail(run, record, e)
                continue

            previous = record.status
            self._normalize(record, result)
            logger.info(
                "Verified record",
                extra={
                    "deployment": run.deployment_name,
                    "run_id": run.run_id,
                    "record": record.id,
                    "from_status": previous.value,
                    "to_status": record.status.value,
                    "action": record.action.value,
                    "found": result.found,
                },
            )

        run.needs_verification = False
        self._persist(run)

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def _next_records(
        self,
        run: ReconciliationRun,
        graph: DependencyGraph,
        attempted: set[str],
        running: dict[asyncio.Task[None], str],
    ) -> list[ResourceRecord]:
        """Records that may start now, in plan order."""
        by_id = {record.id: record for record in run.records}
        satisfied = {record.id for record in run.records if _dependency_ready(record)}
        unblocked = set(graph.ready(satisfied))

        ready = [
            record
            for record in run.records
            if record.id in unblocked
            and record.id not in attempted
            and not record.is_settled
            and record.action in APPLY_ACTIONS
        ]
        if ready:
            return ready

        # Teardown waits until apply work is finished
        if any(by_id[record_id].action in APPLY_ACTIONS for record_id in running.values()):
            return []

        pending_deletes = {
            record.id
            for record in run.records
            if record.action == RecordAction.DELETE and record.status != ResourceStatus.DESTROYED
        }
        return [
            record
            for record in reversed(run.records)
            if record.id in pending_deletes
            and record.id not in attempted
            and not graph.dependents(record.id) & pending_deletes
        ]

    async def _drain(self, running: dict[asyncio.Task[None], str]) -> None:
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        running.clear()

    async def _advance(self, run: ReconciliationRun, record: ResourceRecord) -> None:
        if record.action == RecordAction.DELETE:
            await self._destroy(run, record)
            return

        by_id = {r.id: r for r in run.records}
        unmet = [dep for dep in record.depends_on if not _dependency_ready(by_id[dep])]
        if unmet:
            raise DependencyUnmetError(f"{record.id} started before {unmet} were Ready")

        if record.status == ResourceStatus.READY:
            await self._update(run, record)
        else:
            await self._create(run, record)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def _create(self, run: ReconciliationRun, record: ResourceRecord) -> None:
        try:
            existing = await self._call_with_retry("read", record)
        except ProviderError as e:
            self._fail(run, record, e)
            return

        record.transition(ResourceStatus.CREATING)
        self._persist(run, record)

        # An existing resource is adopted and updated to the desired attributes
        operation = "update" if existing.found else "create"
        if existing.found:
            logger.info(
                "Adopting existing resource",
                extra={"run_id": run.run_id, "record": record.id, "external_id": existing.external_id},
            )

        try:
            result = await self._call_with_retry(operation, record)
        except ProviderError as e:
            self._fail(run, record, e)
            return

        self._settle_ready(record, result)
        self._persist(run, record)

    async def _update(self, run: ReconciliationRun, record: ResourceRecord) -> None:
        record.transition(ResourceStatus.UPDATING)
        self._persist(run, record)

        try:
            result = await self._call_with_retry("update", record)
        except ProviderError as e:
            self._fail(run, record, e)
            return

        self._settle_ready(record, result)
        self._persist(run, record)

    async def _destroy(self, run: ReconciliationRun, record: ResourceRecord) -> None:
        external_id = record.external_id
        if not external_id:
            try:
                existing = await self._call_with_retry("read", record)
            except ProviderError as e:
                self._fail(run, record, e)
                return
            if not existing.found:
                record.action = RecordAction.NONE
                record.transition(ResourceStatus.DESTROYED)
                self._persist(run, record)
                return
            external_id = existing.external_id

        record.transition(ResourceStatus.DESTROYING, external_id)
        self._persist(run, record)

        try:
            await self._call_with_retry("delete", record)
        except ProviderError as e:
            self._fail(run, record, e)
            return

        record.action = RecordAction.NONE
        record.observed = {}
        record.last_error = None
        record.transition(ResourceStatus.DESTROYED)
        self._persist(run, record)

    def _settle_ready(self, record: ResourceRecord, result: ProviderResult) -> None:
        record.observed = dict(result.observed)
        record.action = RecordAction.NONE
        record.last_error = None
        record.transition(ResourceStatus.READY, result.external_id or record.external_id)

    def _normalize(self, record: ResourceRecord, result: ProviderResult) -> None:
        """Map an ambiguous record onto what the provider actually holds."""
        status = record.status

        if status == ResourceStatus.DESTROYING:
            if result.found:
                record.transition(ResourceStatus.READY, result.external_id)
            else:
                record.action = RecordAction.NONE
                record.transition(ResourceStatus.DESTROYED)
            return

        if not result.found:
            if record.action != RecordAction.DELETE:
                record.action = RecordAction.CREATE
            record.observed = {}
            record.transition(ResourceStatus.PENDING)
            return

        record.observed = dict(result.observed)
        if status == ResourceStatus.UPDATING:
            # Unknown whether the update landed; PUT again
            record.action = RecordAction.UPDATE
        elif status == ResourceStatus.CREATING:
            record.action = RecordAction.NONE
        record.transition(ResourceStatus.READY, result.external_id)

    def _fail(self, run: ReconciliationRun, record: ResourceRecord, error: ProviderError) -> None:
        record.last_error = str(error)
        record.transition(ResourceStatus.FAILED)
        logger.error(
            "Record failed",
            extra={
                "deployment": run.deployment_name,
                "run_id": run.run_id,
                "record": record.id,
                "kind": record.kind.value,
                "action": record.action.value,
                "retryable": error.retryable,
                "attempts": record.attempts,
                "error": str(error),
            },
        )
        self._persist(run, record)

    # -------------------------------------------------------------------------
    # Provider calls
    # -------------------------------------------------------------------------

    async def _call_with_retry(self, operation: str, record: ResourceRecord) -> ProviderResult:
        """Call the client, retrying transient failures with backoff.

        Raises:
            ProviderError: Permanent failure, or transient after the last attempt.
        """
        policy = self._config.retry

        for attempt in range(1, policy.max_attempts + 1):
            record.attempts += 1
            try:
                return await self._call_with_timeout(operation, record)
            except ProviderError as e:
                if not e.retryable or attempt == policy.max_attempts:
                    raise

                wait_time = policy.delay_for(attempt)
                logger.warning(
                    "Provider call failed, retrying",
                    extra={
                        "operation": operation,
                        "record": record.id,
                        "attempt": attempt,
                        "max_attempts": policy.max_attempts,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                await asyncio.sleep(wait_time)

        raise AssertionError("retry loop exited without a result")

    async def _call_with_timeout(self, operation: str, record: ResourceRecord) -> ProviderResult:
        """Run a blocking client call in the executor under the call deadline.

        Raises:
            TransientProviderError: If the deadline passes.
            ProviderError: If the client reports a failure.
        """
        method = getattr(self._client, operation)
        timeout = self._config.provider_call_timeout_seconds
        loop = asyncio.get_running_loop()

        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, method, record),
                timeout=timeout,
            )
        except TimeoutError as e:
            logger.error(
                f"Provider {operation} timed out",
                extra={"record": record.id, "timeout_seconds": timeout},
            )
            raise TransientProviderError(
                f"{operation} {record.id} exceeded {timeout}s deadline", code="Timeout"
            ) from e

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _persist(self, run: ReconciliationRun, record: ResourceRecord | None = None) -> None:
        run.updated_at = datetime.now(UTC)
        try:
            self._store.save(run)
        except StateStoreError:
            run.needs_verification = True
            raise

        if record is not None:
            logger.info(
                "Record transition",
                extra={
                    "deployment": run.deployment_name,
                    "run_id": run.run_id,
                    "record": record.id,
                    "status": record.status.value,
                    "action": record.action.value,
                },
            )

    def _flag_for_verification(self, run: ReconciliationRun) -> None:
        run.needs_verification = True
        try:
            self._store.save(run)
        except StateStoreError as e:
            logger.error(
                "Could not persist verification flag",
                extra={"deployment": run.deployment_name, "run_id": run.run_id, "error": str(e)},
            )
