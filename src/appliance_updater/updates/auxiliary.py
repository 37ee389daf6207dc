"""
Auxiliary subsystem update pipeline.

Router, firewall and startup are each updated by cloning their repository
and running the installer it ships. A single parameterised pipeline covers
all of them. Failures are contained to the subsystem: the caller moves on to
the next one and the failed subsystem keeps its old version record.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from appliance_updater.errors import (
    InvalidArgumentError,
    PersistenceMismatchError,
    TransportFailureError,
    VersionUnreadableError,
)
from appliance_updater.logging import get_logger
from appliance_updater.updates.plan import PlanEntry
from appliance_updater.updates.transport import clone_repository, run_installer
from appliance_updater.updates.version import is_greater

if TYPE_CHECKING:
    from appliance_updater.config import AuxiliaryConfig
    from appliance_updater.store import VersionStore
    from appliance_updater.updates.remote import RemoteVersionSource

logger = get_logger(__name__)


class AuxiliaryStatus(str, Enum):
    """Outcome of one auxiliary update."""

    UPDATED = "updated"
    FETCH_FAILED = "fetch_failed"
    INSTALL_FAILED = "install_failed"
    COMMIT_FAILED = "commit_failed"


@dataclass
class AuxiliaryResult:
    """Result of applying one auxiliary plan entry."""

    subsystem: str
    status: AuxiliaryStatus
    previous_version: str
    target_version: str
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is AuxiliaryStatus.UPDATED

    def to_dict(self) -> dict[str, Any]:
        return {
            "subsystem": self.subsystem,
            "status": self.status.value,
            "previous_version": self.previous_version,
            "target_version": self.target_version,
            "error": self.error,
        }


class AuxiliaryUpdatePipeline:
    """
    Check and apply updates for one auxiliary subsystem.

    Attributes:
        config: Subsystem configuration (key, repository, installer).
        store: Version store.
        remote: Remote version source.
        clone_timeout: Timeout for the repository clone.
        installer_timeout: Timeout for the installer run.
    """

    def __init__(
        self,
        config: AuxiliaryConfig,
        store: VersionStore,
        remote: RemoteVersionSource,
        *,
        clone_timeout: float = 600.0,
        installer_timeout: float = 1800.0,
    ) -> None:
        self.config = config
        self.store = store
        self.remote = remote
        self.clone_timeout = clone_timeout
        self.installer_timeout = installer_timeout

    @property
    def key(self) -> str:
        return self.config.key

    async def check(self) -> PlanEntry | None:
        """
        Determine whether this subsystem needs an update.

        Returns:
            A plan entry if the published version is newer, otherwise None.
            A subsystem without a version record is not provisioned and is
            skipped; an unreadable or malformed version skips it with a
            warning.
        """
        cfg = self.config
        extra = {"subsystem": cfg.key}

        try:
            current = self.store.read(cfg.key)
        except VersionUnreadableError as e:
            logger.warning(
                f"Cannot read {cfg.display_name} version, skipping: {e.message}",
                extra=extra,
            )
            return None

        if current is None:
            logger.info(
                f"{cfg.display_name} version not found, skipping update check",
                extra=extra,
            )
            return None

        try:
            latest = await self.remote.fetch(cfg.version_url)
        except (TransportFailureError, VersionUnreadableError) as e:
            logger.warning(
                f"Could not fetch {cfg.display_name} version: {e.message}",
                extra=extra,
            )
            return None

        try:
            outdated = is_greater(latest, current)
        except InvalidArgumentError as e:
            logger.warning(
                f"Cannot compare {cfg.display_name} versions: {e.message}",
                extra={**extra, "current": current, "latest": latest},
            )
            return None

        if not outdated:
            logger.info(
                f"{cfg.display_name} is up to date (version: {current})",
                extra=extra,
            )
            return None

        logger.info(
            f"{cfg.display_name} update available: {current} -> {latest}",
            extra=extra,
        )
        return PlanEntry(
            subsystem=cfg.key,
            display_name=cfg.display_name,
            current_version=current,
            target_version=latest,
        )

    async def apply(self, entry: PlanEntry, scratch_dir: Path) -> AuxiliaryResult:
        """
        Clone, install and commit a planned update.

        Never raises for subsystem failures; the result status reports them.
        """
        cfg = self.config
        result = AuxiliaryResult(
            subsystem=cfg.key,
            status=AuxiliaryStatus.UPDATED,
            previous_version=entry.current_version,
            target_version=entry.target_version,
        )

        logger.info(
            f"Updating {cfg.display_name} to version {entry.target_version}",
            extra={"subsystem": cfg.key},
        )

        checkout = scratch_dir / cfg.key
        try:
            await clone_repository(
                cfg.repo_url, checkout, branch=cfg.branch, timeout=self.clone_timeout
            )
        except TransportFailureError as e:
            logger.warning(
                f"Failed to clone {cfg.display_name} repository",
                extra={"subsystem": cfg.key, "error": e.message},
            )
            result.status = AuxiliaryStatus.FETCH_FAILED
            result.error = e.message
            return result

        if not await run_installer(
            cfg.installer, cwd=checkout, timeout=self.installer_timeout
        ):
            logger.warning(
                f"{cfg.display_name} installation failed",
                extra={"subsystem": cfg.key},
            )
            result.status = AuxiliaryStatus.INSTALL_FAILED
            result.error = "installer exited with failure"
            return result

        try:
            self.store.commit(
                cfg.key,
                entry.target_version,
                f"{cfg.display_prefix} {entry.target_version}",
                verify=False,
            )
        except PersistenceMismatchError as e:
            logger.warning(
                f"{cfg.display_name} installed but version not recorded: {e.message}",
                extra={"subsystem": cfg.key},
            )
            result.status = AuxiliaryStatus.COMMIT_FAILED
            result.error = e.message
            return result

        logger.info(
            f"{cfg.display_name} updated successfully to version {entry.target_version}",
            extra={"subsystem": cfg.key, "version": entry.target_version},
        )
        return result
