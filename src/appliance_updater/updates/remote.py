"""
Remote version lookup for the appliance updater.

Each subsystem publishes its latest version as a plain-text resource. Every
fetch defeats intermediate caches with a fresh query parameter and no-cache
headers, since a stale answer either hides an update or triggers a useless
one.
"""

from __future__ import annotations

import time

import httpx

from appliance_updater.errors import TransportFailureError, VersionUnreadableError
from appliance_updater.logging import get_logger

logger = get_logger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}


class RemoteVersionSource:
    """
    Fetches published version identifiers over HTTP(S).

    Attributes:
        timeout: Request timeout in seconds.
    """

    def __init__(self, timeout: float = 30.0) -> None:
        self.timeout = timeout

    async def fetch(self, url: str) -> str:
        """
        Fetch the latest published version.

        Args:
            url: Location of the plain-text version resource.

        Returns:
            The version string with all whitespace removed.

        Raises:
            TransportFailureError: On network or HTTP status errors.
            VersionUnreadableError: If the body is empty.
        """
        params = {"t": str(int(time.time()))}

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    url, params=params, headers=NO_CACHE_HEADERS
                )
                response.raise_for_status()
                body = response.text
        except httpx.HTTPError as e:
            logger.warning(
                "Remote version fetch failed",
                extra={"url": url, "error": str(e)},
            )
            raise TransportFailureError(
                f"Failed to fetch remote version: {e}",
                details={"url": url},
            ) from e

        version = "".join(body.split())
        if not version:
            raise VersionUnreadableError(
                "Remote version is empty",
                details={"url": url},
            )

        logger.debug("Fetched remote version", extra={"url": url, "version": version})
        return version
