"""Tests for the submission, status and cancellation boundaries."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from azure_mock import MockAzureContext, http_error
from conftest import demo_document

from deployctl.config import Config
from deployctl.controller import Controller, RunInProgressError
from deployctl.dependency import ValidationError
from deployctl.models import (
    DesiredState,
    ReconciliationRun,
    ResourceStatus,
    RunOutcome,
)
from deployctl.reconciler import prepare_run
from deployctl.resource_client import AzureResourceClient
from deployctl.state_store import StateStore, StateStoreError


class FlakyStore(StateStore):
    """StateStore whose n-th save fails once."""

    def __init__(self, state_dir: Path, fail_on: int) -> None:
        super().__init__(state_dir)
        self.fail_on = fail_on
        self.saves = 0

    def save(self, run: ReconciliationRun) -> None:
        self.saves += 1
        if self.saves == self.fail_on:
            raise StateStoreError("disk full")
        super().save(run)


def _controller(config: Config) -> Controller:
    return Controller(config, AzureResourceClient(config))


class TestSubmit:
    """Tests for Controller.submit()."""

    @pytest.mark.asyncio
    async def test_blocking_submit(self, config: Config, demo_state: DesiredState) -> None:
        with MockAzureContext():
            controller = _controller(config)
            run = await controller.submit(demo_state, wait=True)

            assert isinstance(run, ReconciliationRun)
            assert run.outcome == RunOutcome.CONVERGED

    @pytest.mark.asyncio
    async def test_async_submit_returns_run_id(
        self, config: Config, demo_state: DesiredState
    ) -> None:
        with MockAzureContext():
            controller = _controller(config)
            run_id = await controller.submit(demo_state)

            assert isinstance(run_id, str)
            snapshot = controller.status(run_id=run_id)
            assert snapshot is not None
            assert snapshot.deployment_name == "demo"

            finished = await controller.wait(run_id)
            assert finished is not None
            assert finished.outcome == RunOutcome.CONVERGED

    @pytest.mark.asyncio
    async def test_invalid_document_persists_nothing(self, config: Config) -> None:
        with MockAzureContext() as ctx:
            controller = _controller(config)
            invalid = DesiredState.model_validate(demo_document(replicaCount=-1))

            with pytest.raises(ValidationError):
                await controller.submit(invalid)

            assert controller.store.deployments() == []
            assert ctx.state.calls == []

    @pytest.mark.asyncio
    async def test_second_submission_rejected(
        self, config: Config, demo_state: DesiredState
    ) -> None:
        """Test at most one run is in progress per deployment."""
        with MockAzureContext():
            controller = _controller(config)
            run_id = await controller.submit(demo_state)

            with pytest.raises(RunInProgressError) as exc_info:
                await controller.submit(demo_state)

            assert exc_info.value.run_id == run_id
            await controller.wait(run_id)
            assert len(controller.store.history("demo")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_submissions(self, config: Config, demo_state: DesiredState) -> None:
        with MockAzureContext():
            controller = _controller(config)
            results = await asyncio.gather(
                controller.submit(demo_state),
                controller.submit(demo_state),
                return_exceptions=True,
            )

            accepted = [r for r in results if isinstance(r, str)]
            rejected = [r for r in results if isinstance(r, RunInProgressError)]
            assert len(accepted) == 1
            assert len(rejected) == 1
            await controller.wait(accepted[0])

    @pytest.mark.asyncio
    async def test_rejects_unresumed_run_on_disk(
        self, config: Config, demo_state: DesiredState
    ) -> None:
        """Test that a run left InProgress by a previous process also blocks submission."""
        store = StateStore(config.state_dir)
        store.save(prepare_run(demo_state))
        with MockAzureContext():
            controller = _controller(config)

            with pytest.raises(RunInProgressError):
                await controller.submit(demo_state)

    @pytest.mark.asyncio
    async def test_independent_deployments_run_concurrently(
        self, config: Config, demo_state: DesiredState
    ) -> None:
        other = DesiredState.model_validate(demo_document(deploymentName="other"))
        with MockAzureContext():
            controller = _controller(config)
            first = await controller.submit(demo_state)
            second = await controller.submit(other)

            runs = [await controller.wait(first), await controller.wait(second)]
            assert [r.outcome for r in runs] == [RunOutcome.CONVERGED, RunOutcome.CONVERGED]
            assert controller.store.deployments() == ["demo", "other"]


class TestStatus:
    """Tests for Controller.status()."""

    def test_requires_a_key(self, config: Config) -> None:
        with MockAzureContext():
            with pytest.raises(ValueError):
                _controller(config).status()

    @pytest.mark.asyncio
    async def test_status_by_name(self, config: Config, demo_state: DesiredState) -> None:
        with MockAzureContext():
            controller = _controller(config)
            run = await controller.submit(demo_state, wait=True)

            snapshot = controller.status(deployment_name="demo")
            assert snapshot is not None
            assert snapshot.run_id == run.run_id
            assert len(snapshot.records) == 6

    def test_status_unknown(self, config: Config) -> None:
        with MockAzureContext():
            controller = _controller(config)
            assert controller.status(deployment_name="nothing") is None
            assert controller.status(run_id="run-nothing") is None


class TestCancelAndRetry:
    """Tests for cancellation and explicit retry."""

    @pytest.mark.asyncio
    async def test_cancel_aborts_run(self, config: Config, demo_state: DesiredState) -> None:
        with MockAzureContext() as ctx:
            ctx.state.delay_seconds = 0.05
            controller = _controller(config)
            run_id = await controller.submit(demo_state)

            assert controller.cancel("demo") is True
            run = await controller.wait(run_id)

            assert run is not None
            assert run.outcome == RunOutcome.ABORTED
            assert run.cancel_requested is True
            assert any(r.status == ResourceStatus.PENDING for r in run.records)

    def test_cancel_without_active_run(self, config: Config) -> None:
        with MockAzureContext():
            assert _controller(config).cancel("demo") is False

    @pytest.mark.asyncio
    async def test_retry_after_partial_failure(
        self, config: Config, demo_state: DesiredState
    ) -> None:
        """Test that retry re-attempts failed records and keeps converged ones."""
        with MockAzureContext() as ctx:
            ctx.state.inject_error("put", "demo", http_error(400, code="InvalidImage"), times=1)
            controller = _controller(config)

            failed = await controller.submit(demo_state, wait=True)
            assert failed.outcome == RunOutcome.PARTIALLY_FAILED
            puts_before = ctx.state.call_count("put")

            retried = await controller.retry("demo", wait=True)

            assert retried.outcome == RunOutcome.CONVERGED
            assert retried.sequence == 2
            assert ctx.state.call_count("put") - puts_before == 1

    @pytest.mark.asyncio
    async def test_retry_redrives_run_after_store_failure(
        self, config: Config, demo_state: DesiredState
    ) -> None:
        """Test that retry continues a run a store failure left InProgress."""
        store = FlakyStore(config.state_dir, fail_on=4)
        with MockAzureContext() as ctx:
            controller = Controller(config, AzureResourceClient(config), store=store)

            with pytest.raises(StateStoreError):
                await controller.submit(demo_state, wait=True)

            stuck = store.load("demo")
            assert stuck is not None
            assert stuck.outcome == RunOutcome.IN_PROGRESS
            assert stuck.needs_verification is True

            run = await controller.retry("demo", wait=True)

            assert run.run_id == stuck.run_id
            assert run.outcome == RunOutcome.CONVERGED
            assert run.needs_verification is False
            assert len(store.history("demo")) == 1
            assert ctx.get_resource_count() == 6

    @pytest.mark.asyncio
    async def test_retry_unknown_deployment(self, config: Config) -> None:
        with MockAzureContext():
            with pytest.raises(KeyError):
                await _controller(config).retry("nothing")


class TestResume:
    """Tests for resuming interrupted runs."""

    @pytest.mark.asyncio
    async def test_resume_active_runs(self, config: Config, demo_state: DesiredState) -> None:
        store = StateStore(config.state_dir)
        interrupted = prepare_run(demo_state)
        store.save(interrupted)

        with MockAzureContext():
            controller = _controller(config)
            resumed = await controller.resume_active_runs()

            assert resumed == [interrupted.run_id]
            run = await controller.wait(interrupted.run_id)
            assert run is not None
            assert run.outcome == RunOutcome.CONVERGED

    @pytest.mark.asyncio
    async def test_shutdown_leaves_run_in_progress(
        self, config: Config, demo_state: DesiredState
    ) -> None:
        with MockAzureContext() as ctx:
            ctx.state.delay_seconds = 0.2
            controller = _controller(config)
            await controller.submit(demo_state)
            await asyncio.sleep(0.05)

            await controller.shutdown()

            on_disk = controller.store.load("demo")
            assert on_disk is not None
            assert on_disk.outcome == RunOutcome.IN_PROGRESS
