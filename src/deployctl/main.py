"""Service entry point for the deployment controller.

On start the controller:
1. Resumes runs a previous process left InProgress
2. Submits every desired-state document found in DESIRED_STATE_DIR whose
   content differs from the deployment's last run
3. Re-scans documents and checks for drift on DRIFT_INTERVAL until a
   SIGTERM/SIGINT arrives
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from azure.identity import ManagedIdentityCredential

from .config import Config, ConfigurationError
from .controller import Controller, RunInProgressError
from .dependency import ValidationError
from .models import RunOutcome
from .resource_client import AzureResourceClient
from .spec_loader import discover_documents, load_desired_state
from .state_store import StateStoreError

# LogRecord attributes that are not structured context
_RESERVED_LOG_ATTRIBUTES = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "stack_info",
    "exc_info",
    "exc_text",
    "thread",
    "threadName",
    "taskName",
    "message",
})


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRIBUTES:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging() -> None:
    """Configure structured logging with JSON output."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def get_credential(client_id: str | None) -> ManagedIdentityCredential:
    """Managed identity credential; user-assigned when a client id is set."""
    if client_id:
        return ManagedIdentityCredential(client_id=client_id)
    return ManagedIdentityCredential()


async def sync_documents(controller: Controller, config: Config) -> list[str]:
    """Submit documents whose content differs from their deployment's last run.

    Unchanged documents are skipped, including after a PartiallyFailed or
    Aborted run: those advance only on a changed document or an explicit
    retry.

    Returns:
        Run ids of the submitted runs.
    """
    logger = logging.getLogger(__name__)
    submitted = []

    for path in discover_documents(config.desired_state_dir):
        try:
            desired = load_desired_state(path)
        except ValidationError as e:
            logger.error("Rejected desired state", extra={"path": str(path), "error": str(e)})
            continue

        last = controller.status(deployment_name=desired.deployment_name)
        if last is not None and last.outcome == RunOutcome.IN_PROGRESS:
            continue
        if last is not None and last.desired_hash == desired.fingerprint():
            continue

        try:
            run_id = await controller.submit(desired)
        except ValidationError as e:
            logger.error("Rejected desired state", extra={"path": str(path), "error": str(e)})
            continue
        except RunInProgressError as e:
            logger.info("Submission deferred", extra={"path": str(path), "run_id": e.run_id})
            continue
        submitted.append(str(run_id))

    return submitted


async def serve(controller: Controller, config: Config, shutdown_event: asyncio.Event) -> None:
    """Resume, submit and watch until shutdown_event is set."""
    await controller.resume_active_runs()

    drift_task = asyncio.create_task(controller.drift_detector.run())
    try:
        while not shutdown_event.is_set():
            await sync_documents(controller, config)
            try:
                await asyncio.wait_for(
                    shutdown_event.wait(),
                    timeout=config.drift_interval_seconds,
                )
            except TimeoutError:
                pass
    finally:
        await controller.shutdown()
        await drift_task


async def main() -> int:
    """Run the controller.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logger.info(
        "Starting deployment controller",
        extra={
            "subscription_id": config.subscription_id,
            "resource_group": config.resource_group_name,
            "location": config.location,
            "state_dir": str(config.state_dir),
            "desired_state_dir": str(config.desired_state_dir),
        },
    )

    try:
        client = AzureResourceClient(
            config, credential=get_credential(config.managed_identity_client_id)
        )
        controller = Controller(config, client)
    except Exception as e:
        logger.error(
            "Failed to initialize controller",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await serve(controller, config, shutdown_event)
    except StateStoreError as e:
        logger.error("State store failure", extra={"error": str(e)})
        return 1
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Controller stopped")
    return 0


def run() -> None:
    """Entry point for the controller service."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
