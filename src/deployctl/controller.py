"""Submission, status, cancellation and drift boundaries.

The controller owns the single-in-progress-run invariant: a deployment has
at most one run InProgress, and a second submission while one is active is
rejected with RunInProgressError. Runs for different deployments proceed
concurrently as independent tasks.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from .config import Config
from .drift import DriftDetector
from .models import DesiredState, DriftReport, ReconciliationRun, RunOutcome
from .reconciler import Reconciler, prepare_run
from .resource_client import ResourceClient
from .state_store import StateStore

logger = logging.getLogger(__name__)


class RunInProgressError(Exception):
    """Raised when a deployment already has a run in progress."""

    def __init__(self, deployment_name: str, run_id: str) -> None:
        self.deployment_name = deployment_name
        self.run_id = run_id
        super().__init__(f"Deployment '{deployment_name}' already has run {run_id} in progress")


@dataclass
class ActiveRun:
    """A run currently driven by this process."""

    run: ReconciliationRun
    task: asyncio.Task[ReconciliationRun]
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)


class Controller:
    """Entry point for operators and the service loop."""

    def __init__(
        self,
        config: Config,
        client: ResourceClient,
        store: StateStore | None = None,
    ) -> None:
        self._config = config
        self._store = store or StateStore(config.state_dir)
        self._reconciler = Reconciler(config, client, self._store)
        self._drift = DriftDetector(config, client, self._store)
        self._active: dict[str, ActiveRun] = {}
        self._lock = asyncio.Lock()

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def drift_detector(self) -> DriftDetector:
        return self._drift

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    async def submit(
        self, desired: DesiredState, wait: bool = False
    ) -> str | ReconciliationRun:
        """Accept a desired state and start a run for it.

        Args:
            desired: Target state for one deployment.
            wait: Block until the run is terminal and return it; otherwise
                return the run id as soon as the run is persisted.

        Raises:
            ValidationError: If the document is invalid. Nothing is persisted.
            RunInProgressError: If the deployment already has a run in progress.
            StateStoreError: If the new run cannot be persisted.
        """
        async with self._lock:
            name = desired.deployment_name
            previous = self._store.load(name)
            run = prepare_run(desired, previous, sequence=self._store.next_sequence(name))

            self._ensure_idle(name, previous)
            self._store.save(run)
            active = self._start(run)

        logger.info(
            "Accepted submission",
            extra={
                "deployment": name,
                "run_id": run.run_id,
                "sequence": run.sequence,
                "desired_hash": run.desired_hash,
            },
        )

        if wait:
            return await active.task
        return run.run_id

    async def retry(self, deployment_name: str, wait: bool = False) -> str | ReconciliationRun:
        """Advance a deployment that stopped short of convergence.

        A run left InProgress without a task driving it, for example after a
        StateStoreError, is driven again under its own run id and starts by
        re-verifying its records. Otherwise a new run is started from the last
        run's target state.

        Raises:
            KeyError: If the deployment has no runs.
            RunInProgressError: If a run is still being driven.
        """
        async with self._lock:
            last = self._store.load(deployment_name)
            if last is None:
                raise KeyError(deployment_name)

            interrupted = (
                last.outcome == RunOutcome.IN_PROGRESS and deployment_name not in self._active
            )
            if interrupted:
                logger.warning(
                    "Re-driving interrupted run",
                    extra={
                        "deployment": deployment_name,
                        "run_id": last.run_id,
                        "needs_verification": last.needs_verification,
                    },
                )
                active = self._start(last)

        if not interrupted:
            return await self.submit(last.target_state, wait=wait)
        if wait:
            return await active.task
        return last.run_id

    async def resume_active_runs(self) -> list[str]:
        """Continue every run a previous process left InProgress.

        In-flight records are re-verified before anything new starts.
        """
        resumed = []
        async with self._lock:
            for run in self._store.list_active_runs():
                if run.deployment_name in self._active:
                    continue
                logger.warning(
                    "Resuming interrupted run",
                    extra={
                        "deployment": run.deployment_name,
                        "run_id": run.run_id,
                        "needs_verification": run.needs_verification,
                    },
                )
                self._start(run)
                resumed.append(run.run_id)
        return resumed

    def cancel(self, deployment_name: str) -> bool:
        """Request cancellation of the active run.

        In-flight provider calls finish; no new transitions start.

        Returns:
            True if a run was active.
        """
        active = self._active.get(deployment_name)
        if active is None:
            return False
        active.run.cancel_requested = True
        active.cancel_event.set()
        logger.info(
            "Cancellation requested",
            extra={"deployment": deployment_name, "run_id": active.run.run_id},
        )
        return True

    async def wait(self, run_id: str) -> ReconciliationRun | None:
        """Wait for a run to reach a terminal outcome."""
        for active in list(self._active.values()):
            if active.run.run_id == run_id:
                return await active.task
        return self._store.get(run_id)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def status(
        self, deployment_name: str | None = None, run_id: str | None = None
    ) -> ReconciliationRun | None:
        """Current snapshot of a run, by deployment name or run id.

        Raises:
            ValueError: If neither deployment_name nor run_id is given.
        """
        if deployment_name is None and run_id is None:
            raise ValueError("status() requires deployment_name or run_id")

        for active in self._active.values():
            run = active.run
            if run.run_id == run_id or (run_id is None and run.deployment_name == deployment_name):
                return run.model_copy(deep=True)

        if run_id is not None:
            return self._store.get(run_id)
        return self._store.load(deployment_name)

    def drift_report(self, deployment_name: str) -> DriftReport | None:
        """Most recent drift report, None when not yet checked."""
        return self._drift.latest_report(deployment_name)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Stop drift checks and interrupt active runs.

        Interrupted runs stay InProgress on disk and resume on next start.
        """
        self._drift.shutdown()
        tasks = [active.task for active in self._active.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _ensure_idle(self, name: str, previous: ReconciliationRun | None) -> None:
        active = self._active.get(name)
        if active is not None:
            raise RunInProgressError(name, active.run.run_id)
        if previous is not None and previous.outcome == RunOutcome.IN_PROGRESS:
            raise RunInProgressError(name, previous.run_id)

    def _start(self, run: ReconciliationRun) -> ActiveRun:
        cancel_event = asyncio.Event()
        task = asyncio.create_task(self._reconciler.execute(run, cancel_event))
        active = ActiveRun(run=run, task=task, cancel_event=cancel_event)
        self._active[run.deployment_name] = active
        task.add_done_callback(lambda t, name=run.deployment_name: self._finished(name, t))
        return active

    def _finished(self, name: str, task: asyncio.Task[ReconciliationRun]) -> None:
        active = self._active.get(name)
        if active is not None and active.task is task:
            del self._active[name]

        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Run stopped with an error",
                extra={"deployment": name, "error": str(error), "error_type": type(error).__name__},
            )
