"""
Payload transport: shallow repository clones and installer invocation.

Both are external programs run with asyncio subprocesses. A clone either
produces a checkout or raises; an installer is judged only by its exit
status.
"""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path

from appliance_updater.errors import TransportFailureError
from appliance_updater.logging import get_logger

logger = get_logger(__name__)

# Captured output kept in log records
_OUTPUT_TAIL = 2000


async def _run_command(
    *args: str,
    cwd: Path | None = None,
    timeout: float = 300.0,
) -> tuple[int, str, str]:
    """
    Run a subprocess command asynchronously.

    Args:
        *args: Command and arguments.
        cwd: Working directory for the command.
        timeout: Command timeout in seconds.

    Returns:
        Tuple of (return_code, stdout, stderr).

    Raises:
        TransportFailureError: If the command times out or cannot be executed.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise TransportFailureError(
            f"Failed to execute command: {e}",
            details={"command": " ".join(args), "error": str(e)},
        ) from e

    try:
        stdout, stderr = await asyncio.wait_for(
            process.communicate(),
            timeout=timeout,
        )
    except TimeoutError as e:
        process.kill()
        await process.wait()
        raise TransportFailureError(
            f"Command timed out after {timeout}s",
            details={"command": " ".join(args)},
        ) from e
    except asyncio.CancelledError:
        # A cancelled pass must not leave git or an installer running
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
        logger.warning("Command cancelled", extra={"command": " ".join(args)})
        raise

    return (
        process.returncode or 0,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


async def clone_repository(
    url: str,
    dest: Path,
    branch: str = "main",
    timeout: float = 600.0,
) -> Path:
    """
    Shallow, single-branch clone of a repository.

    Args:
        url: Repository URL.
        dest: Checkout directory; must not exist yet.
        branch: Branch to check out.
        timeout: Clone timeout in seconds.

    Returns:
        The checkout directory.

    Raises:
        TransportFailureError: If git fails, is missing, or times out.
    """
    logger.info("Cloning repository", extra={"url": url, "branch": branch})

    returncode, stdout, stderr = await _run_command(
        "git",
        "clone",
        "--depth",
        "1",
        "--single-branch",
        "--branch",
        branch,
        url,
        str(dest),
        timeout=timeout,
    )

    if returncode != 0:
        logger.error(
            "Repository clone failed",
            extra={
                "url": url,
                "returncode": returncode,
                "stderr": stderr[-_OUTPUT_TAIL:],
            },
        )
        raise TransportFailureError(
            f"git clone failed for {url}",
            details={"url": url, "branch": branch, "returncode": returncode},
        )

    logger.info("Repository cloned", extra={"url": url, "dest": str(dest)})
    return dest


async def run_installer(
    argv: list[str],
    cwd: Path,
    timeout: float = 1800.0,
) -> bool:
    """
    Run a subsystem installer from its repository root.

    Returns:
        True if the installer exited with status 0.
    """
    logger.info("Running installer", extra={"command": argv, "cwd": str(cwd)})

    try:
        returncode, stdout, stderr = await _run_command(
            *argv, cwd=cwd, timeout=timeout
        )
    except TransportFailureError as e:
        logger.error(
            "Installer could not run",
            extra={"command": argv, "error": e.message},
        )
        return False

    if stdout:
        logger.debug("Installer output", extra={"stdout": stdout[-_OUTPUT_TAIL:]})

    if returncode != 0:
        logger.error(
            "Installer failed",
            extra={
                "command": argv,
                "returncode": returncode,
                "stderr": stderr[-_OUTPUT_TAIL:],
            },
        )
        return False

    logger.info("Installer succeeded", extra={"command": argv})
    return True
