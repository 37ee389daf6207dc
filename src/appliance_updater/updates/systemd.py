"""
Systemd service control for the appliance updater.

Thin wrappers around systemctl returning booleans. A missing systemctl or a
timed-out call counts as a failure: the updater only runs on hosts where the
services it manages exist.
"""

from __future__ import annotations

import asyncio
import contextlib

from appliance_updater.errors import ServiceControlFailureError
from appliance_updater.logging import get_logger

logger = get_logger(__name__)


async def _run_systemctl(
    *args: str,
    use_sudo: bool = False,
    timeout: float = 30.0,
) -> tuple[int, str, str]:
    """
    Run a systemctl command.

    Args:
        *args: Arguments to pass to systemctl.
        use_sudo: Prefix the command with sudo.
        timeout: Command timeout in seconds.

    Returns:
        Tuple of (return_code, stdout, stderr).

    Raises:
        ServiceControlFailureError: If systemctl is unavailable or times out.
    """
    command = ["sudo", "systemctl"] if use_sudo else ["systemctl"]
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise ServiceControlFailureError(
            "systemctl not available",
            details={"hint": "This system may not use systemd"},
        ) from exc

    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(),
            timeout=timeout,
        )
    except TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise ServiceControlFailureError(
            f"systemctl command timed out after {timeout}s",
            details={"command": list(args)},
        ) from exc
    except asyncio.CancelledError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        raise

    return (
        proc.returncode or 0,
        stdout.decode() if stdout else "",
        stderr.decode() if stderr else "",
    )


async def stop_service(
    service_name: str,
    *,
    use_sudo: bool = True,
    timeout: float = 90.0,
) -> bool:
    """
    Stop a systemd service.

    Returns:
        True if stop succeeded, False otherwise.
    """
    logger.info(f"Stopping service: {service_name}")

    try:
        returncode, stdout, stderr = await _run_systemctl(
            "stop", service_name, use_sudo=use_sudo, timeout=timeout
        )
    except ServiceControlFailureError as e:
        logger.error(f"Service stop failed: {e.message}", extra={"service": service_name})
        return False

    if returncode != 0:
        logger.error(
            f"Service stop failed: {stderr or stdout}",
            extra={"service": service_name, "returncode": returncode},
        )
        return False

    logger.info(f"Service {service_name} stopped")
    return True


async def start_service(
    service_name: str,
    *,
    use_sudo: bool = True,
    timeout: float = 90.0,
) -> bool:
    """
    Start a systemd service.

    Returns:
        True if start succeeded, False otherwise.
    """
    logger.info(f"Starting service: {service_name}")

    try:
        returncode, stdout, stderr = await _run_systemctl(
            "start", service_name, use_sudo=use_sudo, timeout=timeout
        )
    except ServiceControlFailureError as e:
        logger.error(f"Service start failed: {e.message}", extra={"service": service_name})
        return False

    if returncode != 0:
        logger.error(
            f"Service start failed: {stderr or stdout}",
            extra={"service": service_name, "returncode": returncode},
        )
        return False

    logger.info(f"Service {service_name} started")
    return True


async def is_service_active(service_name: str, *, timeout: float = 10.0) -> bool:
    """Return True if systemctl reports the service as active."""
    try:
        returncode, _, _ = await _run_systemctl(
            "is-active", "--quiet", service_name, timeout=timeout
        )
    except ServiceControlFailureError as e:
        logger.warning(
            f"Cannot query service state: {e.message}",
            extra={"service": service_name},
        )
        return False
    return returncode == 0


class SystemdServiceManager:
    """
    Service manager used by the update pipelines.

    Attributes:
        use_sudo: Whether stop/start go through sudo.
        timeout: Timeout for each systemctl call.
    """

    def __init__(self, use_sudo: bool = True, timeout: float = 90.0) -> None:
        self.use_sudo = use_sudo
        self.timeout = timeout

    async def stop(self, service_name: str) -> bool:
        return await stop_service(
            service_name, use_sudo=self.use_sudo, timeout=self.timeout
        )

    async def start(self, service_name: str) -> bool:
        return await start_service(
            service_name, use_sudo=self.use_sudo, timeout=self.timeout
        )

    async def is_active(self, service_name: str) -> bool:
        return await is_service_active(service_name, timeout=min(self.timeout, 10.0))

    async def ensure_running(self, service_name: str) -> bool:
        """
        Start the service if it is not active.

        Returns:
            True if the service was already active or started successfully.
        """
        if await self.is_active(service_name):
            logger.info(
                f"Service {service_name} is active",
                extra={"service": service_name},
            )
            return True

        logger.warning(
            f"Service {service_name} is not active, starting it",
            extra={"service": service_name},
        )
        return await self.start(service_name)
