"""
Run lock for the appliance updater.

At most one update pass may run on a host. The lock is a marker file created
with O_EXCL at a well-known location, holding the owner's PID and start time.
A lock left behind by a crashed pass is broken when its owner process no
longer exists or when it is older than the configured maximum age.

Creating, breaking and removing the marker happen under an flock on a
sidecar guard file, so concurrent passes see those steps as one operation.
"""

from __future__ import annotations

import fcntl
import json
import os
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import psutil

from appliance_updater.errors import LockHeldError
from appliance_updater.logging import get_logger

logger = get_logger(__name__)

# Bounded wait for another process inside acquire or release
GUARD_TIMEOUT_SECONDS = 0.5
GUARD_POLL_SECONDS = 0.01


class RunLock:
    """
    Process-wide exclusive lock bound to a file path.

    Attributes:
        path: Location of the lock file.
        stale_after_seconds: Age after which an existing lock is broken.
            None disables the age check.
        check_owner_alive: Break locks whose recorded PID is not running.
    """

    def __init__(
        self,
        path: Path | str,
        stale_after_seconds: float | None = None,
        check_owner_alive: bool = True,
    ) -> None:
        self.path = Path(path)
        self.stale_after_seconds = stale_after_seconds
        self.check_owner_alive = check_owner_alive
        self._owned = False
        self._token: str | None = None

    @property
    def owned(self) -> bool:
        """Whether this instance currently holds the lock."""
        return self._owned

    @property
    def guard_path(self) -> Path:
        """Sidecar file whose flock serializes acquire, break and release."""
        return self.path.with_name(f"{self.path.name}.guard")

    @contextmanager
    def _guard(self) -> Iterator[bool]:
        """
        Hold an exclusive flock on the guard file.

        Yields False if another process keeps the guard for longer than
        GUARD_TIMEOUT_SECONDS. The kernel drops the flock when its holder
        exits, so a crash inside the critical section never wedges the lock.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.guard_path.open("a+", encoding="utf-8")
        deadline = time.monotonic() + GUARD_TIMEOUT_SECONDS
        try:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        yield False
                        return
                    time.sleep(GUARD_POLL_SECONDS)
            try:
                yield True
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    def acquire(self) -> bool:
        """
        Try to take the lock.

        The create, staleness check and break all happen under the guard
        flock, so two passes finding the same orphaned lock cannot both
        break it.

        Returns:
            True if the lock was created by this call, False if another live
            pass holds it or is in the middle of acquiring it.
        """
        if self._owned:
            return True

        with self._guard() as guarded:
            if not guarded:
                logger.info(
                    "Another update pass is acquiring the run lock",
                    extra={"lock_path": str(self.path)},
                )
                return False

            if self._create():
                return True

            if not self._is_stale():
                logger.info(
                    "Another update pass is running",
                    extra={"lock_path": str(self.path), "owner": self._read_owner()},
                )
                return False

            logger.warning(
                "Breaking stale run lock",
                extra={"lock_path": str(self.path), "owner": self._read_owner()},
            )
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass

            return self._create()

    def release(self) -> None:
        """
        Remove the lock if this instance holds it. Safe to call twice.

        A lock file that no longer carries this instance's token was broken
        and re-taken by another pass and is left alone.
        """
        if not self._owned:
            return
        self._owned = False

        with self._guard():
            owner = self._read_owner()
            if owner.get("token") != self._token:
                if owner:
                    logger.warning(
                        "Run lock was taken over by another pass",
                        extra={"lock_path": str(self.path), "owner": owner},
                    )
                return
            self.path.unlink(missing_ok=True)
        logger.debug("Run lock released", extra={"lock_path": str(self.path)})

    @contextmanager
    def held(self) -> Iterator[RunLock]:
        """
        Hold the lock for the duration of a with-block.

        Raises:
            LockHeldError: If another pass holds the lock.
        """
        if not self.acquire():
            raise LockHeldError(
                "Another update pass is running",
                details={"lock_path": str(self.path), "owner": self._read_owner()},
            )
        try:
            yield self
        finally:
            self.release()

    def _create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        self._token = uuid.uuid4().hex
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(
                json.dumps(
                    {
                        "pid": os.getpid(),
                        "started_at": datetime.now(UTC).isoformat(),
                        "token": self._token,
                    },
                    sort_keys=True,
                )
            )
        self._owned = True
        logger.debug("Run lock acquired", extra={"lock_path": str(self.path)})
        return True

    def _read_owner(self) -> dict[str, Any]:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return {}
        return payload if isinstance(payload, dict) else {}

    def _age_seconds(self) -> float | None:
        try:
            return time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def _is_stale(self) -> bool:
        """Decide whether an existing lock file may be broken."""
        age = self._age_seconds()
        if age is None:
            # Vanished between the create attempt and now
            return True

        if self.stale_after_seconds is not None and age > self.stale_after_seconds:
            return True

        if self.check_owner_alive:
            pid = self._read_owner().get("pid")
            if isinstance(pid, int) and pid > 0 and not psutil.pid_exists(pid):
                return True

        return False
