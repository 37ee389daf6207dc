"""
Update pass orchestration.

One pass: take the run lock, resolve every subsystem's current and published
version, confirm with an attached operator, update the primary subsystem (or
make sure its service is running), then update each outdated auxiliary
subsystem in order, and release the lock on every exit path.
"""

from __future__ import annotations

import shutil
import sys
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, TextIO

from appliance_updater.errors import (
    FilesystemFailureError,
    InvalidArgumentError,
    LockHeldError,
    UpdaterError,
    VersionUnreadableError,
)
from appliance_updater.lock import RunLock
from appliance_updater.logging import get_logger
from appliance_updater.store import VersionStore
from appliance_updater.updates.auxiliary import AuxiliaryResult, AuxiliaryUpdatePipeline
from appliance_updater.updates.plan import PlanEntry, UpdatePlan
from appliance_updater.updates.primary import (
    PipelineOutcome,
    PrimaryUpdatePipeline,
    PrimaryUpdateResult,
)
from appliance_updater.updates.remote import RemoteVersionSource
from appliance_updater.updates.systemd import SystemdServiceManager
from appliance_updater.updates.version import is_greater

if TYPE_CHECKING:
    from appliance_updater.config import AppConfig

logger = get_logger(__name__)


class PassStatus(str, Enum):
    """Terminal status of an update pass."""

    LOCK_HELD = "lock_held"
    UP_TO_DATE = "up_to_date"
    CANCELLED = "cancelled"
    CHECKED = "checked"
    UPDATED = "updated"
    DEGRADED = "degraded"
    FAILED = "failed"


EXIT_CODES: dict[PassStatus, int] = {
    PassStatus.LOCK_HELD: 0,
    PassStatus.UP_TO_DATE: 0,
    PassStatus.CANCELLED: 0,
    PassStatus.CHECKED: 0,
    PassStatus.UPDATED: 0,
    PassStatus.DEGRADED: 2,
    PassStatus.FAILED: 1,
}


@dataclass
class PassResult:
    """Everything a pass did, for logging and the process exit status."""

    status: PassStatus
    plan: UpdatePlan = field(default_factory=UpdatePlan)
    primary: PrimaryUpdateResult | None = None
    auxiliaries: list[AuxiliaryResult] = field(default_factory=list)
    message: str | None = None
    error: UpdaterError | None = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "exit_code": self.exit_code,
            "plan": self.plan.to_dict(),
            "primary": self.primary.to_dict() if self.primary else None,
            "auxiliaries": [aux.to_dict() for aux in self.auxiliaries],
            "message": self.message,
            "error": self.error.to_dict() if self.error else None,
        }


# =============================================================================
# Operator I/O
# =============================================================================


def _read_key() -> str:
    """Read a single keypress from the terminal without waiting for Enter."""
    import termios
    import tty

    fd = sys.stdin.fileno()
    previous = termios.tcgetattr(fd)
    try:
        tty.setcbreak(fd)
        return sys.stdin.read(1)
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, previous)


class Operator:
    """
    Interactive confirmation of an update plan.

    Attributes:
        interactive: Whether an operator is attached. Defaults to whether
            stdin is a terminal.
    """

    BANNER_RULE = "=" * 42

    def __init__(
        self,
        interactive: bool | None = None,
        reader: Callable[[], str] | None = None,
        output: TextIO | None = None,
    ) -> None:
        self.interactive = sys.stdin.isatty() if interactive is None else interactive
        self._reader = reader or _read_key
        self._output = output

    def _print(self, text: str = "") -> None:
        print(text, file=self._output or sys.stdout, flush=True)

    def confirm(self, plan: UpdatePlan) -> bool:
        """
        Show the plan and wait for a single y/n keypress.

        Unattended runs are always confirmed.
        """
        if not self.interactive:
            return True

        self._print()
        self._print(self.BANNER_RULE)
        self._print("  System Update Available")
        self._print(self.BANNER_RULE)
        self._print("The following services will be updated:")
        self._print()
        for line in plan.describe():
            self._print(f"  • {line}")
        self._print()
        print(
            "Do you want to install these updates? (y/n): ",
            end="",
            file=self._output or sys.stdout,
            flush=True,
        )
        answer = self._reader()
        self._print()
        return answer in ("y", "Y")


# =============================================================================
# Orchestrator
# =============================================================================


class Orchestrator:
    """
    Runs one complete update pass.

    Collaborators default to the real implementations built from the
    configuration and can be replaced for testing.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        lock: RunLock | None = None,
        store: VersionStore | None = None,
        remote: RemoteVersionSource | None = None,
        services: SystemdServiceManager | None = None,
        operator: Operator | None = None,
    ) -> None:
        self.config = config
        self.lock = lock or RunLock(
            config.lock.path,
            stale_after_seconds=config.lock.stale_after_seconds,
            check_owner_alive=config.lock.check_owner_alive,
        )
        self.store = store or VersionStore(
            config.store.db_path,
            table=config.store.table,
            legacy_fallback_keys=config.store.legacy_fallback_keys,
        )
        self.remote = remote or RemoteVersionSource(
            timeout=config.transport.http_timeout_seconds
        )
        self.services = services or SystemdServiceManager(
            use_sudo=config.service.use_sudo,
            timeout=config.service.systemctl_timeout_seconds,
        )
        self.operator = operator or Operator()

        self.primary_pipeline = PrimaryUpdatePipeline(
            config.primary,
            self.store,
            self.services,
            state_file=config.state_file,
            clone_timeout=config.transport.clone_timeout_seconds,
        )
        self.auxiliary_pipelines = [
            AuxiliaryUpdatePipeline(
                aux,
                self.store,
                self.remote,
                clone_timeout=config.transport.clone_timeout_seconds,
                installer_timeout=config.transport.installer_timeout_seconds,
            )
            for aux in config.auxiliaries
        ]

    async def run_pass(self) -> PassResult:
        """
        Run a full pass under the run lock.

        The lock is held in a scoped block and released on every exit path,
        including cancellation by a termination signal.

        Returns:
            PassResult; fatal errors are reported in it rather than raised.
        """
        try:
            with self.lock.held():
                result = await self._run_locked()
        except LockHeldError as e:
            return PassResult(status=PassStatus.LOCK_HELD, message=e.message)
        except UpdaterError as e:
            logger.error(
                f"Update pass aborted: {e.message}",
                extra={"error_code": e.error_code, "details": e.details},
            )
            result = PassResult(status=PassStatus.FAILED, message=e.message, error=e)

        logger.info(
            f"Update pass finished: {result.status.value}",
            extra={"status": result.status.value, "exit_code": result.exit_code},
        )
        return result

    async def _check_primary(self) -> PlanEntry | None:
        """
        Resolve the primary subsystem's versions.

        Raises:
            VersionUnreadableError: If either version is missing or malformed.
            TransportFailureError: If the remote version cannot be fetched.
        """
        cfg = self.config.primary

        current = self.store.read(cfg.key)
        if current is None:
            raise VersionUnreadableError(
                f"No persisted version for {cfg.display_name}",
                details={"key": cfg.key, "db_path": str(self.store.db_path)},
            )
        logger.info(f"Current version: {current}", extra={"subsystem": cfg.key})

        latest = await self.remote.fetch(cfg.version_url)
        logger.info(f"Repository version: {latest}", extra={"subsystem": cfg.key})

        try:
            outdated = is_greater(latest, current)
        except InvalidArgumentError as e:
            raise VersionUnreadableError(
                f"Cannot compare {cfg.display_name} versions: {e.message}",
                details={"key": cfg.key, "current": current, "latest": latest},
            ) from e

        if not outdated:
            logger.info(
                f"{cfg.display_name} is up to date (version: {current})",
                extra={"subsystem": cfg.key},
            )
            return None

        return PlanEntry(
            subsystem=cfg.key,
            display_name=cfg.display_name,
            current_version=current,
            target_version=latest,
        )

    async def build_plan(self) -> UpdatePlan:
        """Resolve every subsystem once; primary first, auxiliaries in order."""
        plan = UpdatePlan()

        primary_entry = await self._check_primary()
        if primary_entry is not None:
            plan.entries.append(primary_entry)

        for pipeline in self.auxiliary_pipelines:
            entry = await pipeline.check()
            if entry is not None:
                plan.entries.append(entry)

        return plan

    async def _run_locked(self) -> PassResult:
        plan = await self.build_plan()
        primary_key = self.config.primary.key
        service_name = self.config.primary.service_name

        if plan.is_empty:
            logger.info("All subsystems are up to date")
            if not self.config.check_only:
                await self.services.ensure_running(service_name)
            return PassResult(status=PassStatus.UP_TO_DATE, plan=plan)

        logger.info(
            f"Updates available: {', '.join(plan.describe())}",
            extra={"plan": plan.to_dict()["entries"]},
        )

        if self.config.check_only:
            return PassResult(status=PassStatus.CHECKED, plan=plan)

        if not self.config.assume_yes and not self.operator.confirm(plan):
            logger.info("Update cancelled by user")
            return PassResult(
                status=PassStatus.CANCELLED,
                plan=plan,
                message="Update cancelled by user",
            )

        scratch_root = self.config.transport.scratch_root
        try:
            scratch_dir = Path(
                tempfile.mkdtemp(prefix="appliance-updater-", dir=scratch_root)
            )
        except OSError as e:
            raise FilesystemFailureError(
                f"Cannot create scratch directory: {e}",
                details={"scratch_root": scratch_root},
            ) from e

        try:
            return await self._apply_plan(plan, primary_key, service_name, scratch_dir)
        finally:
            shutil.rmtree(scratch_dir, ignore_errors=True)

    async def _apply_plan(
        self,
        plan: UpdatePlan,
        primary_key: str,
        service_name: str,
        scratch_dir: Path,
    ) -> PassResult:
        result = PassResult(status=PassStatus.UPDATED, plan=plan)

        primary_entry = plan.get(primary_key)
        if primary_entry is not None:
            primary = await self.primary_pipeline.run(
                primary_entry, scratch_dir / "primary"
            )
            result.primary = primary
            if primary.outcome is PipelineOutcome.FAILED:
                # Auxiliaries wait until the primary subsystem is healthy
                result.status = PassStatus.FAILED
                result.error = primary.error
                result.message = primary.error.message if primary.error else None
                return result
            if primary.outcome is PipelineOutcome.SUCCEEDED_WITH_DEGRADED_SERVICE:
                result.status = PassStatus.DEGRADED
                result.message = primary.error.message if primary.error else None
        else:
            await self.services.ensure_running(service_name)

        for pipeline in self.auxiliary_pipelines:
            entry = plan.get(pipeline.key)
            if entry is None:
                continue
            aux_dir = scratch_dir / "auxiliary"
            aux_dir.mkdir(parents=True, exist_ok=True)
            aux_result = await pipeline.apply(entry, aux_dir)
            result.auxiliaries.append(aux_result)
            if not aux_result.succeeded:
                result.status = PassStatus.DEGRADED

        failed = [aux.subsystem for aux in result.auxiliaries if not aux.succeeded]
        if failed and result.message is None:
            result.message = f"Auxiliary updates failed: {', '.join(failed)}"

        return result
