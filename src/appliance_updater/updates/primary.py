"""
Primary subsystem update pipeline.

The primary subsystem is updated by replacing its whole working directory
with a freshly fetched tree while carrying the durable settings subtree over
unchanged. Steps run strictly in order:

- stop_service: stop the runtime (failure aborts before anything is touched)
- backup: timestamped copy of the working directory
- fetch_payload: shallow clone of the payload repository into scratch space
- extract_state: copy the settings subtree aside
- swap: delete the working directory, move the fetched tree in
- restore_state: put the preserved settings subtree back
- fix_ownership: chown the new tree to the runtime user
- commit_version: write and verify the new version
- start_service: start the runtime again

Progress is persisted as JSON so an operator can see where a failed run
stopped. Every failure after the service was stopped triggers a best-effort
start before the pipeline reports failure. Cancellation (a termination
signal) counts as such a failure up to the swap; once the swap has begun the
pipeline finishes and the cancellation is re-raised afterwards.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from appliance_updater.errors import (
    FilesystemFailureError,
    InvalidArgumentError,
    ServiceControlFailureError,
    TransportFailureError,
    UpdateInterruptedError,
    UpdaterError,
    VersionUnreadableError,
)
from appliance_updater.logging import get_logger
from appliance_updater.updates.operations import (
    backup_directory,
    chown_recursive,
    copy_tree,
    replace_directory,
    restore_subtree,
)
from appliance_updater.updates.transport import clone_repository

if TYPE_CHECKING:
    from appliance_updater.config import PrimaryConfig
    from appliance_updater.store import VersionStore
    from appliance_updater.updates.plan import PlanEntry
    from appliance_updater.updates.systemd import SystemdServiceManager

logger = get_logger(__name__)


class PrimaryStep(str, Enum):
    """
    Steps of the primary pipeline.

    Each step moves only forward to the next step or to failed. The last
    step ends in succeeded or degraded (version committed, service not
    started).
    """

    IDLE = "idle"
    STOP_SERVICE = "stop_service"
    BACKUP = "backup"
    FETCH_PAYLOAD = "fetch_payload"
    EXTRACT_STATE = "extract_state"
    SWAP = "swap"
    RESTORE_STATE = "restore_state"
    FIX_OWNERSHIP = "fix_ownership"
    COMMIT_VERSION = "commit_version"
    START_SERVICE = "start_service"
    SUCCEEDED = "succeeded"
    DEGRADED = "degraded"
    FAILED = "failed"


_STEP_ORDER = [
    PrimaryStep.IDLE,
    PrimaryStep.STOP_SERVICE,
    PrimaryStep.BACKUP,
    PrimaryStep.FETCH_PAYLOAD,
    PrimaryStep.EXTRACT_STATE,
    PrimaryStep.SWAP,
    PrimaryStep.RESTORE_STATE,
    PrimaryStep.FIX_OWNERSHIP,
    PrimaryStep.COMMIT_VERSION,
    PrimaryStep.START_SERVICE,
]

# Valid step transitions
_VALID_TRANSITIONS: dict[PrimaryStep, set[PrimaryStep]] = {
    step: {following, PrimaryStep.FAILED}
    for step, following in zip(_STEP_ORDER, _STEP_ORDER[1:])
}
_VALID_TRANSITIONS[PrimaryStep.IDLE] = {PrimaryStep.STOP_SERVICE}
_VALID_TRANSITIONS[PrimaryStep.START_SERVICE] = {
    PrimaryStep.SUCCEEDED,
    PrimaryStep.DEGRADED,
}

# Steps a termination signal may abort; from the swap on the update finishes
_INTERRUPTIBLE_STEPS = frozenset(
    {
        PrimaryStep.STOP_SERVICE,
        PrimaryStep.BACKUP,
        PrimaryStep.FETCH_PAYLOAD,
        PrimaryStep.EXTRACT_STATE,
    }
)


class PipelineOutcome(str, Enum):
    """Terminal outcome of a primary update."""

    FULLY_SUCCEEDED = "fully_succeeded"
    SUCCEEDED_WITH_DEGRADED_SERVICE = "succeeded_with_degraded_service"
    FAILED = "failed"


class PrimaryStateData(BaseModel):
    """
    Persisted progress of the primary pipeline.
    """

    step: str = Field(
        default=PrimaryStep.IDLE.value,
        description="Current pipeline step",
    )
    subsystem: str | None = Field(default=None, description="Version record key")
    previous_version: str | None = Field(
        default=None,
        description="Version before the update",
    )
    target_version: str | None = Field(
        default=None,
        description="Version being applied",
    )
    started_at: str | None = Field(
        default=None,
        description="ISO 8601 timestamp when the pipeline started",
    )
    last_transition_at: str | None = Field(
        default=None,
        description="ISO 8601 timestamp of the last step transition",
    )
    backup_path: str | None = Field(
        default=None,
        description="Backup snapshot location, if one was taken",
    )
    failed_step: str | None = Field(
        default=None,
        description="Step that failed",
    )
    error_message: str | None = Field(
        default=None,
        description="Error message if the pipeline failed",
    )


@dataclass
class PrimaryUpdateResult:
    """Result of one primary pipeline run."""

    outcome: PipelineOutcome
    subsystem: str
    previous_version: str
    target_version: str
    backup_path: Path | None = None
    failed_step: PrimaryStep | None = None
    error: UpdaterError | None = None
    service_running: bool = False

    @property
    def committed(self) -> bool:
        """Whether the new version was written to the store."""
        return self.outcome is not PipelineOutcome.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "subsystem": self.subsystem,
            "previous_version": self.previous_version,
            "target_version": self.target_version,
            "backup_path": str(self.backup_path) if self.backup_path else None,
            "failed_step": self.failed_step.value if self.failed_step else None,
            "error": self.error.to_dict() if self.error else None,
            "service_running": self.service_running,
        }


class PrimaryUpdatePipeline:
    """
    Runs the backup, swap and restore update of the primary subsystem.

    Attributes:
        config: Primary subsystem configuration.
        store: Version store for the commit step.
        services: Service manager used for stop and start.
        state_file: Optional JSON progress file.
    """

    def __init__(
        self,
        config: PrimaryConfig,
        store: VersionStore,
        services: SystemdServiceManager,
        *,
        state_file: Path | str | None = None,
        clone_timeout: float = 600.0,
    ) -> None:
        self.config = config
        self.store = store
        self.services = services
        self.state_file = Path(state_file) if state_file else None
        self.clone_timeout = clone_timeout
        self._state_data = PrimaryStateData()

    @property
    def step(self) -> PrimaryStep:
        """Get the current step."""
        return PrimaryStep(self._state_data.step)

    @property
    def state_data(self) -> PrimaryStateData:
        return self._state_data

    def _transition_to(self, new_step: PrimaryStep) -> None:
        """
        Move to the next step.

        Raises:
            InvalidArgumentError: If the transition skips or revisits a step.
        """
        current = self.step

        if new_step not in _VALID_TRANSITIONS.get(current, set()):
            raise InvalidArgumentError(
                f"Invalid step transition from {current.value} to {new_step.value}",
                details={
                    "current_step": current.value,
                    "target_step": new_step.value,
                    "valid_transitions": sorted(
                        s.value for s in _VALID_TRANSITIONS.get(current, set())
                    ),
                },
            )

        logger.info(
            f"Primary step: {current.value} -> {new_step.value}",
            extra={
                "subsystem": self.config.key,
                "step": new_step.value,
                "target_version": self._state_data.target_version,
            },
        )

        self._state_data.step = new_step.value
        self._state_data.last_transition_at = datetime.now(UTC).isoformat()
        self._save_state()

    def _save_state(self) -> None:
        """Save progress to disk."""
        if self.state_file is None:
            return
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)

            temp_file = self.state_file.with_suffix(".tmp")
            with open(temp_file, "w") as f:
                json.dump(self._state_data.model_dump(), f, indent=2)
            temp_file.rename(self.state_file)
        except OSError as e:
            logger.warning(f"Failed to save primary pipeline state: {e}")

    def _fail(self, step: PrimaryStep, error: UpdaterError) -> None:
        logger.error(
            f"Primary update failed at {step.value}: {error.message}",
            extra={
                "subsystem": self.config.key,
                "step": step.value,
                "error_code": error.error_code,
                "details": error.details,
            },
        )
        self._state_data.failed_step = step.value
        self._state_data.error_message = error.message
        self._transition_to(PrimaryStep.FAILED)

    async def run(self, entry: PlanEntry, scratch_dir: Path) -> PrimaryUpdateResult:
        """
        Apply a planned primary update.

        Args:
            entry: Plan entry with the current and target versions.
            scratch_dir: Empty per-pass directory for the payload checkout
                and the preserved settings copy.

        Returns:
            PrimaryUpdateResult with the terminal outcome.
        """
        cfg = self.config
        working_dir = cfg.working_dir
        settings_dir = working_dir / cfg.settings_subdir
        scratch_dir.mkdir(parents=True, exist_ok=True)

        self._state_data = PrimaryStateData(
            subsystem=cfg.key,
            previous_version=entry.current_version,
            target_version=entry.target_version,
            started_at=datetime.now(UTC).isoformat(),
        )
        result = PrimaryUpdateResult(
            outcome=PipelineOutcome.FAILED,
            subsystem=cfg.key,
            previous_version=entry.current_version,
            target_version=entry.target_version,
        )

        logger.info(
            f"Updating {cfg.display_name} from {entry.current_version} "
            f"to {entry.target_version}",
            extra={"subsystem": cfg.key, "working_dir": str(working_dir)},
        )

        # Stop: nothing has been touched yet, so a failure is a clean abort
        self._transition_to(PrimaryStep.STOP_SERVICE)
        try:
            stopped = await self.services.stop(cfg.service_name)
        except asyncio.CancelledError:
            logger.warning(
                "Termination requested while stopping the service",
                extra={"subsystem": cfg.key, "service": cfg.service_name},
            )
            await self._recovery_start()
            raise
        if not stopped:
            error = ServiceControlFailureError(
                f"Failed to stop {cfg.service_name}",
                details={"step": PrimaryStep.STOP_SERVICE.value, "service": cfg.service_name},
            )
            self._fail(PrimaryStep.STOP_SERVICE, error)
            result.failed_step = PrimaryStep.STOP_SERVICE
            result.error = error
            result.service_running = await self.services.is_active(cfg.service_name)
            return result

        # From here on the pipeline always reaches a terminal step. A
        # cancellation is deferred until then; before the swap it aborts the
        # current step, from the swap on the update runs to completion.
        work = asyncio.ensure_future(
            self._run_stopped(entry, scratch_dir, working_dir, settings_dir, result)
        )
        interrupted = False
        while not work.done():
            try:
                await asyncio.shield(work)
            except asyncio.CancelledError:
                if work.cancelled():
                    raise
                interrupted = True
                if self.step in _INTERRUPTIBLE_STEPS:
                    logger.warning(
                        f"Termination requested, aborting primary update at {self.step.value}",
                        extra={"subsystem": cfg.key, "step": self.step.value},
                    )
                    work.cancel()
                else:
                    logger.warning(
                        f"Termination requested, finishing primary update from {self.step.value}",
                        extra={"subsystem": cfg.key, "step": self.step.value},
                    )

        result = work.result()
        if interrupted:
            raise asyncio.CancelledError
        return result

    async def _run_stopped(
        self,
        entry: PlanEntry,
        scratch_dir: Path,
        working_dir: Path,
        settings_dir: Path,
        result: PrimaryUpdateResult,
    ) -> PrimaryUpdateResult:
        """Run every step after a successful stop through to a terminal step."""
        cfg = self.config

        try:
            if cfg.stop_settle_seconds:
                await asyncio.sleep(cfg.stop_settle_seconds)
            await self._apply(entry, scratch_dir, working_dir, settings_dir, result)
        except UpdaterError as e:
            return await self._abort(e, working_dir, result)
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            error = UpdateInterruptedError(
                f"Primary update interrupted at {self.step.value}",
                details={"step": self.step.value},
            )
            return await self._abort(error, working_dir, result)

        # Start: the version is already committed, so a failure degrades
        # the outcome instead of failing it
        if await self.services.start(cfg.service_name):
            self._transition_to(PrimaryStep.SUCCEEDED)
            result.outcome = PipelineOutcome.FULLY_SUCCEEDED
            result.service_running = True
            logger.info(
                f"{cfg.display_name} updated to {entry.target_version}",
                extra={"subsystem": cfg.key, "version": entry.target_version},
            )
        else:
            self._state_data.error_message = f"Failed to start {cfg.service_name}"
            self._transition_to(PrimaryStep.DEGRADED)
            result.outcome = PipelineOutcome.SUCCEEDED_WITH_DEGRADED_SERVICE
            result.failed_step = PrimaryStep.START_SERVICE
            result.error = ServiceControlFailureError(
                f"{cfg.display_name} updated to {entry.target_version} "
                f"but {cfg.service_name} did not start",
                details={
                    "step": PrimaryStep.START_SERVICE.value,
                    "service": cfg.service_name,
                },
            )
            logger.error(
                result.error.message,
                extra={"subsystem": cfg.key, "step": PrimaryStep.START_SERVICE.value},
            )

        return result

    async def _abort(
        self, error: UpdaterError, working_dir: Path, result: PrimaryUpdateResult
    ) -> PrimaryUpdateResult:
        failed_step = self.step
        self._fail(failed_step, error)
        result.failed_step = failed_step
        result.error = error
        if failed_step is PrimaryStep.SWAP:
            self._recover_working_dir(working_dir, result.backup_path)
        result.service_running = await self._recovery_start()
        return result

    async def _apply(
        self,
        entry: PlanEntry,
        scratch_dir: Path,
        working_dir: Path,
        settings_dir: Path,
        result: PrimaryUpdateResult,
    ) -> None:
        """Run backup through commit, raising UpdaterError on the first failure."""
        cfg = self.config

        self._transition_to(PrimaryStep.BACKUP)
        try:
            result.backup_path = backup_directory(working_dir)
            self._state_data.backup_path = str(result.backup_path)
        except FilesystemFailureError as e:
            if cfg.backup_policy == "strict":
                raise
            logger.warning(
                f"Backup failed, continuing without a snapshot: {e.message}",
                extra={"subsystem": cfg.key, "step": PrimaryStep.BACKUP.value},
            )

        self._transition_to(PrimaryStep.FETCH_PAYLOAD)
        checkout = await clone_repository(
            cfg.repo_url,
            scratch_dir / "payload",
            branch=cfg.branch,
            timeout=self.clone_timeout,
        )
        payload = checkout / cfg.working_dir_name
        if not payload.is_dir():
            raise TransportFailureError(
                f"Payload does not contain {cfg.working_dir_name}",
                details={
                    "step": PrimaryStep.FETCH_PAYLOAD.value,
                    "expected": str(payload),
                },
            )

        self._transition_to(PrimaryStep.EXTRACT_STATE)
        preserved: Path | None = None
        if settings_dir.is_dir():
            preserved = copy_tree(settings_dir, scratch_dir / "preserved" / cfg.settings_subdir)
            logger.info(
                "Settings preserved",
                extra={"subsystem": cfg.key, "path": str(settings_dir)},
            )
        else:
            logger.warning(
                "No settings directory to preserve",
                extra={"subsystem": cfg.key, "path": str(settings_dir)},
            )

        self._transition_to(PrimaryStep.SWAP)
        replace_directory(working_dir, payload)

        self._transition_to(PrimaryStep.RESTORE_STATE)
        if preserved is not None:
            restore_subtree(preserved, settings_dir)

        self._transition_to(PrimaryStep.FIX_OWNERSHIP)
        chown_recursive(working_dir, cfg.runtime_user, cfg.runtime_group)

        self._transition_to(PrimaryStep.COMMIT_VERSION)
        self._log_store_snapshot()
        self.store.commit(
            cfg.key,
            entry.target_version,
            f"{cfg.display_prefix} {entry.target_version}",
            verify=True,
        )
        logger.info(
            f"Persisted version updated to {entry.target_version}",
            extra={"subsystem": cfg.key, "version": entry.target_version},
        )

        self._transition_to(PrimaryStep.START_SERVICE)

    def _log_store_snapshot(self) -> None:
        try:
            rows = self.store.snapshot()
        except VersionUnreadableError as e:
            logger.warning(f"Cannot snapshot settings table: {e.message}")
            return
        logger.debug("Settings table before commit", extra={"rows": rows})

    def _recover_working_dir(self, working_dir: Path, backup_path: Path | None) -> None:
        """Put the backup back in place if the swap left no working directory."""
        if working_dir.exists() or backup_path is None:
            return
        try:
            copy_tree(backup_path, working_dir)
        except FilesystemFailureError as e:
            logger.error(
                f"Could not restore working directory from backup: {e.message}",
                extra={"backup": str(backup_path), "path": str(working_dir)},
            )
            return
        logger.warning(
            "Working directory restored from backup",
            extra={"backup": str(backup_path), "path": str(working_dir)},
        )

    async def _recovery_start(self) -> bool:
        """Best-effort start after a failure once the service was stopped."""
        service = self.config.service_name
        logger.warning(
            f"Attempting to restart {service} after failed update",
            extra={"service": service},
        )
        return await self.services.start(service)
