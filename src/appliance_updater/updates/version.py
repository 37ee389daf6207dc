"""
Version comparison for the appliance updater.

Versions are dotted-numeric identifiers such as "1.2", "1.10.3" or
"2.0.0-beta.1". Comparison is numeric per component, so "1.10" sorts above
"1.9", and missing trailing components count as zero, so "1.2" equals
"1.2.0".
"""

from __future__ import annotations

import re
from typing import Any

from appliance_updater.errors import InvalidArgumentError

# Accepts: 1, 1.2, 1.2.3.4, 2.0.0-beta.1, 1.0.0-rc1+build.7
VERSION_PATTERN = re.compile(
    r"^(?P<release>\d+(?:\.\d+)*)"
    r"(?:-(?P<prerelease>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+(?P<buildmetadata>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)


def parse_version(version: str) -> dict[str, Any]:
    """
    Parse and validate a dotted-numeric version string.

    Args:
        version: Version string (e.g., "1.2", "1.2.3-beta.1").

    Returns:
        Dictionary with parsed version components:
        - release: Tuple of numeric components
        - prerelease: Pre-release identifier (optional)
        - buildmetadata: Build metadata (optional, ignored when comparing)

    Raises:
        InvalidArgumentError: If version string is invalid.
    """
    if not version:
        raise InvalidArgumentError(
            "Version string cannot be empty",
            details={"version": version},
        )

    match = VERSION_PATTERN.match(version)
    if not match:
        raise InvalidArgumentError(
            f"Invalid version: {version}",
            details={
                "version": version,
                "format": "N[.N...][-PRERELEASE][+BUILDMETADATA]",
                "examples": ["1.2", "1.10.3", "2.0.0-beta.1"],
            },
        )

    return {
        "release": tuple(int(part) for part in match.group("release").split(".")),
        "prerelease": match.group("prerelease"),
        "buildmetadata": match.group("buildmetadata"),
    }


def _compare_prerelease(pre1: str, pre2: str) -> int:
    """Compare prerelease identifiers field by field, numbers below words."""
    fields1 = pre1.split(".")
    fields2 = pre2.split(".")
    for a, b in zip(fields1, fields2):
        if a == b:
            continue
        if a.isdigit() and b.isdigit():
            return -1 if int(a) < int(b) else 1
        if a.isdigit():
            return -1
        if b.isdigit():
            return 1
        return -1 if a < b else 1

    if len(fields1) == len(fields2):
        return 0
    return -1 if len(fields1) < len(fields2) else 1


def compare_versions(v1: str, v2: str) -> int:
    """
    Compare two versions.

    Args:
        v1: First version string.
        v2: Second version string.

    Returns:
        -1 if v1 < v2, 0 if v1 == v2, 1 if v1 > v2

    Raises:
        InvalidArgumentError: If either version is invalid.
    """
    p1 = parse_version(v1)
    p2 = parse_version(v2)

    r1 = p1["release"]
    r2 = p2["release"]
    width = max(len(r1), len(r2))
    r1 = r1 + (0,) * (width - len(r1))
    r2 = r2 + (0,) * (width - len(r2))

    if r1 < r2:
        return -1
    if r1 > r2:
        return 1

    # Handle prerelease (no prerelease > with prerelease)
    pre1 = p1["prerelease"]
    pre2 = p2["prerelease"]

    if pre1 is None and pre2 is not None:
        return 1
    if pre1 is not None and pre2 is None:
        return -1
    if pre1 is not None and pre2 is not None:
        return _compare_prerelease(pre1, pre2)

    return 0


def is_greater(candidate: str, current: str) -> bool:
    """
    Return True if candidate is strictly newer than current.

    Raises:
        InvalidArgumentError: If either version is malformed. Callers treat
            this as a failed check instead of guessing an order.
    """
    return compare_versions(candidate, current) > 0
