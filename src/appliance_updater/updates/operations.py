"""
Filesystem operations for the primary update pipeline.

This module implements the directory-level steps of a primary update:
- Timestamped backup of the working directory
- Copying the durable settings subtree aside
- Replacing the working directory with a fetched tree
- Restoring the settings subtree into the new tree
- Ownership normalization

Every helper raises FilesystemFailureError carrying the paths involved, so
a failed step can be recovered manually from the retained backup.
"""

from __future__ import annotations

import os
import shutil
from datetime import datetime
from pathlib import Path

from appliance_updater.errors import FilesystemFailureError
from appliance_updater.logging import get_logger

logger = get_logger(__name__)

BACKUP_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


def backup_path_for(path: Path, now: datetime | None = None) -> Path:
    """Return the sibling backup location ``<name>.backup.YYYYmmdd_HHMMSS``."""
    stamp = (now or datetime.now()).strftime(BACKUP_TIMESTAMP_FORMAT)
    return path.with_name(f"{path.name}.backup.{stamp}")


def copy_tree(source: Path, dest: Path) -> Path:
    """
    Copy a directory tree, preserving symlinks and file metadata.

    Args:
        source: Existing directory.
        dest: Destination; must not exist.

    Returns:
        The destination path.

    Raises:
        FilesystemFailureError: If the copy fails.
    """
    try:
        shutil.copytree(source, dest, symlinks=True)
    except (OSError, shutil.Error) as e:
        raise FilesystemFailureError(
            f"Failed to copy {source} to {dest}",
            details={"source": str(source), "dest": str(dest), "error": str(e)},
        ) from e
    logger.debug("Copied tree", extra={"source": str(source), "dest": str(dest)})
    return dest


def backup_directory(path: Path, now: datetime | None = None) -> Path:
    """
    Copy a directory to a timestamped sibling.

    Returns:
        The backup path.

    Raises:
        FilesystemFailureError: If the directory is missing or the copy fails.
    """
    if not path.is_dir():
        raise FilesystemFailureError(
            f"Nothing to back up at {path}",
            details={"path": str(path)},
        )

    backup = backup_path_for(path, now)
    copy_tree(path, backup)
    logger.info("Backup created", extra={"source": str(path), "backup": str(backup)})
    return backup


def remove_tree(path: Path) -> bool:
    """
    Remove a directory tree.

    Returns:
        True if the tree was removed, False if it did not exist.

    Raises:
        FilesystemFailureError: If removal fails.
    """
    if not path.exists() and not path.is_symlink():
        return False

    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    except OSError as e:
        raise FilesystemFailureError(
            f"Failed to remove {path}",
            details={"path": str(path), "error": str(e)},
        ) from e

    logger.debug("Removed tree", extra={"path": str(path)})
    return True


def replace_directory(current: Path, replacement: Path) -> Path:
    """
    Delete ``current`` and move ``replacement`` into its place.

    Raises:
        FilesystemFailureError: If the replacement is missing, or the delete
            or move fails.
    """
    if not replacement.is_dir():
        raise FilesystemFailureError(
            f"Replacement tree missing: {replacement}",
            details={"path": str(replacement)},
        )

    remove_tree(current)

    try:
        shutil.move(str(replacement), str(current))
    except (OSError, shutil.Error) as e:
        raise FilesystemFailureError(
            f"Failed to move {replacement} to {current}",
            details={"source": str(replacement), "dest": str(current), "error": str(e)},
        ) from e

    logger.info(
        "Working directory replaced",
        extra={"path": str(current), "source": str(replacement)},
    )
    return current


def restore_subtree(preserved: Path, dest: Path) -> Path:
    """
    Move a preserved subtree to ``dest``, replacing whatever is there.

    Raises:
        FilesystemFailureError: If the move fails.
    """
    remove_tree(dest)

    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(preserved), str(dest))
    except (OSError, shutil.Error) as e:
        raise FilesystemFailureError(
            f"Failed to restore {dest}",
            details={"source": str(preserved), "dest": str(dest), "error": str(e)},
        ) from e

    logger.info("Preserved state restored", extra={"path": str(dest)})
    return dest


def chown_recursive(path: Path, user: str | None, group: str | None) -> None:
    """
    Set owner and group on a tree without following symlinks.

    Raises:
        FilesystemFailureError: If the user or group is unknown or a chown
            call fails.
    """
    if user is None and group is None:
        return

    try:
        shutil.chown(path, user=user, group=group)
        for root, dirs, files in os.walk(path):
            for name in dirs + files:
                entry = Path(root) / name
                if entry.is_symlink():
                    continue
                shutil.chown(entry, user=user, group=group)
    except (OSError, LookupError) as e:
        raise FilesystemFailureError(
            f"Failed to change ownership of {path}",
            details={"path": str(path), "user": user, "group": group, "error": str(e)},
        ) from e

    logger.info(
        "Ownership normalized",
        extra={"path": str(path), "user": user, "group": group},
    )
