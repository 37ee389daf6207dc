"""
Tests for version comparison.

Tests cover:
- parse_version validation
- compare_versions numeric ordering, zero padding and prereleases
- is_greater strict ordering
"""

from __future__ import annotations

import pytest

from appliance_updater.errors import InvalidArgumentError
from appliance_updater.updates.version import compare_versions, is_greater, parse_version

# =============================================================================
# parse_version Tests
# =============================================================================


class TestParseVersion:
    """Tests for parse_version."""

    def test_parse_simple(self) -> None:
        """Test parsing dotted numeric versions of any length."""
        assert parse_version("1")["release"] == (1,)
        assert parse_version("1.2")["release"] == (1, 2)
        assert parse_version("1.10.3.4")["release"] == (1, 10, 3, 4)

    def test_parse_prerelease_and_build(self) -> None:
        """Test prerelease and build metadata are split out."""
        parsed = parse_version("2.0.0-beta.1+build.7")

        assert parsed["release"] == (2, 0, 0)
        assert parsed["prerelease"] == "beta.1"
        assert parsed["buildmetadata"] == "build.7"

    @pytest.mark.parametrize(
        "version",
        ["", "v1.2", "1..2", "1.2.", "abc", "1.2 beta", "1.2-"],
    )
    def test_parse_invalid(self, version: str) -> None:
        """Test malformed versions raise InvalidArgumentError."""
        with pytest.raises(InvalidArgumentError):
            parse_version(version)


# =============================================================================
# compare_versions Tests
# =============================================================================


class TestCompareVersions:
    """Tests for compare_versions."""

    def test_numeric_not_lexical(self) -> None:
        """Test 1.10 sorts above 1.9."""
        assert compare_versions("1.10", "1.9") == 1
        assert compare_versions("1.9", "1.10") == -1

    def test_equal(self) -> None:
        """Test equal versions compare as 0."""
        assert compare_versions("2.0", "2.0") == 0

    def test_missing_components_are_zero(self) -> None:
        """Test 1.2 equals 1.2.0."""
        assert compare_versions("1.2", "1.2.0") == 0
        assert compare_versions("1.2.0.1", "1.2") == 1

    def test_release_above_prerelease(self) -> None:
        """Test a release sorts above its prerelease."""
        assert compare_versions("1.0.0", "1.0.0-rc.1") == 1
        assert compare_versions("1.0.0-rc.1", "1.0.0") == -1

    def test_prerelease_ordering(self) -> None:
        """Test prerelease identifiers compare field by field."""
        assert compare_versions("1.0.0-alpha", "1.0.0-beta") == -1
        assert compare_versions("1.0.0-beta.2", "1.0.0-beta.11") == -1
        assert compare_versions("1.0.0-alpha.1", "1.0.0-alpha") == 1
        assert compare_versions("1.0.0-1", "1.0.0-alpha") == -1

    def test_build_metadata_ignored(self) -> None:
        """Test build metadata does not affect ordering."""
        assert compare_versions("1.0.0+a", "1.0.0+b") == 0

    def test_invalid_raises(self) -> None:
        """Test malformed input is not guessed."""
        with pytest.raises(InvalidArgumentError):
            compare_versions("1.0", "latest")


# =============================================================================
# is_greater Tests
# =============================================================================


class TestIsGreater:
    """Tests for is_greater."""

    @pytest.mark.parametrize(
        ("newer", "older"),
        [
            ("1.10", "1.9"),
            ("1.3.0", "1.2.0"),
            ("2", "1.99.99"),
            ("1.0.1", "1.0"),
        ],
    )
    def test_strict_order(self, newer: str, older: str) -> None:
        """Test a > b implies not b > a."""
        assert is_greater(newer, older) is True
        assert is_greater(older, newer) is False

    def test_not_greater_than_itself(self) -> None:
        """Test equal versions never trigger an update."""
        assert is_greater("2.0", "2.0") is False
        assert is_greater("1.2", "1.2.0") is False
