"""Durable, versioned storage for reconciliation runs.

Layout on disk::

    <state_dir>/<deploymentName>/<sequence:06d>-<runId>.json

Each run has its own file. Later runs for a deployment get a higher
sequence and supersede earlier ones without overwriting them, so history
stays queryable. A file is rewritten atomically (temp file + os.replace) on
every save and is never modified again once its run is terminal.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path

from pydantic import ValidationError

from .models import ReconciliationRun, RunOutcome

logger = logging.getLogger(__name__)

RUN_FILE_PATTERN = re.compile(r"^(?P<sequence>\d{6})-(?P<run_id>[A-Za-z0-9_-]+)\.json$")


class StateStoreError(Exception):
    """Raised when run state cannot be read or written."""

    pass


class StateStore:
    """File-backed store of ReconciliationRun snapshots.

    Safe for concurrent use from threads and from tasks on one event loop.
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = Path(state_dir)
        self._lock = threading.RLock()

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def _run_path(self, run: ReconciliationRun) -> Path:
        return self._state_dir / run.deployment_name / f"{run.sequence:06d}-{run.run_id}.json"

    def _run_files(self, deployment_name: str) -> list[tuple[int, Path]]:
        directory = self._state_dir / deployment_name
        if not directory.is_dir():
            return []
        files = []
        for path in directory.iterdir():
            match = RUN_FILE_PATTERN.match(path.name)
            if match:
                files.append((int(match.group("sequence")), path))
        files.sort(key=lambda item: item[0])
        return files

    def _read(self, path: Path) -> ReconciliationRun:
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateStoreError(f"Failed to read run state at {path}: {e}") from e
        try:
            return ReconciliationRun.model_validate_json(content)
        except ValidationError as e:
            raise StateStoreError(f"Invalid run state format in {path}: {e}") from e

    def save(self, run: ReconciliationRun) -> None:
        """Persist a run snapshot atomically.

        Raises:
            StateStoreError: If the write fails or the stored run is already terminal.
        """
        with self._lock:
            path = self._run_path(run)
            if path.exists():
                stored = self._read(path)
                if stored.is_terminal:
                    raise StateStoreError(
                        f"Run {run.run_id} is already {stored.outcome.value} and cannot be modified"
                    )

            payload = json.dumps(run.model_dump(mode="json"), indent=2, sort_keys=True)
            tmp_name: str | None = None
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(
                    prefix=f".{path.name}.", suffix=".tmp", dir=path.parent
                )
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, path)
                tmp_name = None
            except OSError as e:
                raise StateStoreError(f"Failed to write run state to {path}: {e}") from e
            finally:
                if tmp_name is not None:
                    Path(tmp_name).unlink(missing_ok=True)

        logger.debug(
            "Saved run",
            extra={
                "deployment": run.deployment_name,
                "run_id": run.run_id,
                "sequence": run.sequence,
                "outcome": run.outcome.value,
            },
        )

    def load(self, deployment_name: str) -> ReconciliationRun | None:
        """Most recent run for a deployment, or None."""
        with self._lock:
            files = self._run_files(deployment_name)
            if not files:
                return None
            return self._read(files[-1][1])

    def history(self, deployment_name: str) -> list[ReconciliationRun]:
        """Every run for a deployment, oldest first."""
        with self._lock:
            return [self._read(path) for _, path in self._run_files(deployment_name)]

    def get(self, run_id: str) -> ReconciliationRun | None:
        """Look up a run by id across deployments."""
        with self._lock:
            for deployment_name in self.deployments():
                for _, path in self._run_files(deployment_name):
                    match = RUN_FILE_PATTERN.match(path.name)
                    if match and match.group("run_id") == run_id:
                        return self._read(path)
        return None

    def next_sequence(self, deployment_name: str) -> int:
        with self._lock:
            files = self._run_files(deployment_name)
            return files[-1][0] + 1 if files else 1

    def deployments(self) -> list[str]:
        """Names of deployments with at least one stored run."""
        with self._lock:
            if not self._state_dir.is_dir():
                return []
            return sorted(
                entry.name
                for entry in self._state_dir.iterdir()
                if entry.is_dir() and self._run_files(entry.name)
            )

    def list_active_runs(self) -> list[ReconciliationRun]:
        """Runs left InProgress, at most one per deployment."""
        active = []
        with self._lock:
            for deployment_name in self.deployments():
                run = self.load(deployment_name)
                if run is not None and run.outcome == RunOutcome.IN_PROGRESS:
                    active.append(run)
        return active
