"""
Tests for update pass orchestration.

Tests cover:
- Operator confirmation prompt
- Primary-only, auxiliary-only and nothing-to-do passes
- Run lock handling
- Cancel and check-only passes
- Failure isolation and exit codes
"""

from __future__ import annotations

import io
import json
import os
import sqlite3
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import read_settings

from appliance_updater.config import AppConfig
from appliance_updater.errors import TransportFailureError, VersionUnreadableError
from appliance_updater.orchestrator import (
    EXIT_CODES,
    Operator,
    Orchestrator,
    PassResult,
    PassStatus,
)
from appliance_updater.updates.auxiliary import AuxiliaryStatus
from appliance_updater.updates.plan import PlanEntry, UpdatePlan
from appliance_updater.updates.primary import PipelineOutcome

CURRENT_VERSIONS = {
    "https://updates.example.com/ui/version.txt": "1.2.0",
    "https://updates.example.com/router/version.txt": "1.0",
    "https://updates.example.com/firewall/version.txt": "2.1",
    "https://updates.example.com/startup/version.txt": "0.9",
}


async def fake_clone(url: str, dest: Path, branch: str = "main", timeout: float = 600.0) -> Path:
    """Produce a payload checkout with a new working tree."""
    payload = dest / ".node-red"
    payload.mkdir(parents=True)
    (payload / "flows.json").write_text('{"flows": "new"}')
    return dest


def make_remote(**published: str) -> MagicMock:
    """Remote source serving the current versions, overridden by subsystem name."""
    versions = dict(CURRENT_VERSIONS)
    for name, version in published.items():
        versions[f"https://updates.example.com/{name}/version.txt"] = version

    async def fetch(url: str) -> str:
        return versions[url]

    remote = MagicMock()
    remote.fetch = AsyncMock(side_effect=fetch)
    return remote


@pytest.fixture
def services() -> MagicMock:
    manager = MagicMock()
    manager.stop = AsyncMock(return_value=True)
    manager.start = AsyncMock(return_value=True)
    manager.is_active = AsyncMock(return_value=True)
    manager.ensure_running = AsyncMock(return_value=True)
    return manager


def make_orchestrator(
    config: AppConfig,
    remote: MagicMock,
    services: MagicMock,
    operator: Operator | None = None,
) -> Orchestrator:
    return Orchestrator(
        config,
        remote=remote,
        services=services,
        operator=operator or Operator(interactive=False),
    )


def _db(config: AppConfig) -> dict[str, tuple[str, str]]:
    return read_settings(Path(config.store.db_path))


# =============================================================================
# Operator Tests
# =============================================================================


class TestOperator:
    """Tests for the confirmation prompt."""

    PLAN = UpdatePlan(
        [
            PlanEntry("system_version", "UI", "1.2.0", "1.3.0"),
            PlanEntry("router_version", "Router", "1.0", "1.1"),
        ]
    )

    def test_unattended_always_confirms(self) -> None:
        """Test no prompt without a terminal."""
        reader = MagicMock()
        operator = Operator(interactive=False, reader=reader)

        assert operator.confirm(self.PLAN) is True
        reader.assert_not_called()

    @pytest.mark.parametrize(("key", "expected"), [("y", True), ("Y", True), ("n", False), ("q", False)])
    def test_single_keypress(self, key: str, expected: bool) -> None:
        """Test only y or Y accepts."""
        operator = Operator(interactive=True, reader=lambda: key, output=io.StringIO())
        assert operator.confirm(self.PLAN) is expected

    def test_prompt_lists_plan(self) -> None:
        """Test the banner shows every planned change."""
        output = io.StringIO()
        Operator(interactive=True, reader=lambda: "n", output=output).confirm(self.PLAN)

        text = output.getvalue()
        assert "System Update Available" in text
        assert "  • UI: 1.2.0 → 1.3.0" in text
        assert "  • Router: 1.0 → 1.1" in text
        assert "Do you want to install these updates? (y/n): " in text


# =============================================================================
# Pass Scenario Tests
# =============================================================================


class TestPassScenarios:
    """End-to-end passes with mocked network, git and systemd."""

    @pytest.mark.asyncio
    async def test_auxiliary_only_update(self, app_config: AppConfig, services: MagicMock) -> None:
        """Test a router update while the primary is current."""
        orchestrator = make_orchestrator(app_config, make_remote(router="1.1"), services)

        with (
            patch("appliance_updater.updates.primary.clone_repository") as primary_clone,
            patch("appliance_updater.updates.auxiliary.clone_repository") as aux_clone,
            patch("appliance_updater.updates.auxiliary.run_installer", return_value=True),
        ):
            result = await orchestrator.run_pass()

        assert result.status is PassStatus.UPDATED
        assert result.exit_code == 0
        assert result.plan.describe() == ["Router: 1.0 → 1.1"]
        primary_clone.assert_not_called()
        aux_clone.assert_called_once()
        services.stop.assert_not_called()
        services.ensure_running.assert_awaited_once_with("nodered")

        rows = _db(app_config)
        assert rows["router_version"] == ("Router Version 1.1", "1.1")
        assert rows["system_version"][1] == "1.2.0"

    @pytest.mark.asyncio
    async def test_primary_only_update(self, app_config: AppConfig, services: MagicMock) -> None:
        """Test a primary update replaces code and keeps the settings store."""
        orchestrator = make_orchestrator(app_config, make_remote(ui="1.3.0"), services)
        working_dir = app_config.primary.working_dir
        notes = (working_dir / "seer_database" / "notes.txt").read_bytes()

        with (
            patch(
                "appliance_updater.updates.primary.clone_repository",
                side_effect=fake_clone,
            ),
            patch("appliance_updater.updates.auxiliary.clone_repository") as aux_clone,
        ):
            result = await orchestrator.run_pass()

        assert result.status is PassStatus.UPDATED
        assert result.exit_code == 0
        assert result.primary.outcome is PipelineOutcome.FULLY_SUCCEEDED
        aux_clone.assert_not_called()

        assert (working_dir / "flows.json").read_text() == '{"flows": "new"}'
        assert (working_dir / "seer_database" / "notes.txt").read_bytes() == notes
        rows = _db(app_config)
        assert rows["system_version"] == ("SEER Version 1.3.0", "1.3.0")
        assert rows["router_version"] == ("Router Version 1.0", "1.0")
        assert list(working_dir.parent.glob(".node-red.backup.*"))

    @pytest.mark.asyncio
    async def test_nothing_to_do_self_heals(self, app_config: AppConfig, services: MagicMock) -> None:
        """Test an up-to-date pass only ensures the service is running."""
        orchestrator = make_orchestrator(app_config, make_remote(), services)

        with patch("appliance_updater.updates.auxiliary.clone_repository") as aux_clone:
            result = await orchestrator.run_pass()

        assert result.status is PassStatus.UP_TO_DATE
        assert result.exit_code == 0
        assert result.plan.is_empty
        services.ensure_running.assert_awaited_once_with("nodered")
        services.stop.assert_not_called()
        aux_clone.assert_not_called()
        assert not Path(app_config.lock.path).exists()

    @pytest.mark.asyncio
    async def test_scratch_space_removed(
        self, app_config: AppConfig, services: MagicMock, tmp_path: Path
    ) -> None:
        """Test the per-pass scratch directory is deleted afterwards."""
        orchestrator = make_orchestrator(app_config, make_remote(ui="1.3.0"), services)

        with patch(
            "appliance_updater.updates.primary.clone_repository", side_effect=fake_clone
        ):
            await orchestrator.run_pass()

        assert list(tmp_path.glob("appliance-updater-*")) == []


# =============================================================================
# Lock Tests
# =============================================================================


class TestLocking:
    """Tests for run lock handling."""

    @pytest.mark.asyncio
    async def test_lock_held_exits_quietly(self, app_config: AppConfig, services: MagicMock) -> None:
        """Test a live lock holder makes the pass a no-op."""
        lock_path = Path(app_config.lock.path)
        lock_path.parent.mkdir(parents=True)
        lock_path.write_text(json.dumps({"pid": os.getpid()}))
        remote = make_remote(ui="1.3.0")
        orchestrator = make_orchestrator(app_config, remote, services)

        result = await orchestrator.run_pass()

        assert result.status is PassStatus.LOCK_HELD
        assert result.exit_code == 0
        remote.fetch.assert_not_called()
        services.ensure_running.assert_not_called()
        assert lock_path.exists()

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self, app_config: AppConfig, services: MagicMock) -> None:
        """Test the lock is released when the pass aborts."""
        remote = make_remote()
        remote.fetch.side_effect = TransportFailureError("connection refused")
        orchestrator = make_orchestrator(app_config, remote, services)

        result = await orchestrator.run_pass()

        assert result.status is PassStatus.FAILED
        assert not Path(app_config.lock.path).exists()


# =============================================================================
# Confirmation and Check-Only Tests
# =============================================================================


class TestConfirmation:
    """Tests for cancel and check-only passes."""

    @pytest.mark.asyncio
    async def test_operator_declines(self, app_config: AppConfig, services: MagicMock) -> None:
        """Test a declined plan changes nothing."""
        config = app_config.model_copy(update={"assume_yes": False})
        operator = Operator(interactive=True, reader=lambda: "n", output=io.StringIO())
        orchestrator = make_orchestrator(config, make_remote(ui="1.3.0", router="1.1"), services, operator)
        before = _db(config)

        with (
            patch("appliance_updater.updates.primary.clone_repository") as primary_clone,
            patch("appliance_updater.updates.auxiliary.clone_repository") as aux_clone,
        ):
            result = await orchestrator.run_pass()

        assert result.status is PassStatus.CANCELLED
        assert result.exit_code == 0
        assert len(result.plan.entries) == 2
        primary_clone.assert_not_called()
        aux_clone.assert_not_called()
        services.stop.assert_not_called()
        assert _db(config) == before
        assert not Path(config.lock.path).exists()

    @pytest.mark.asyncio
    async def test_operator_accepts(self, app_config: AppConfig, services: MagicMock) -> None:
        """Test an accepted plan is applied."""
        config = app_config.model_copy(update={"assume_yes": False})
        operator = Operator(interactive=True, reader=lambda: "y", output=io.StringIO())
        orchestrator = make_orchestrator(config, make_remote(startup="1.0"), services, operator)

        with (
            patch("appliance_updater.updates.auxiliary.clone_repository"),
            patch("appliance_updater.updates.auxiliary.run_installer", return_value=True),
        ):
            result = await orchestrator.run_pass()

        assert result.status is PassStatus.UPDATED
        assert _db(config)["startup_version"][1] == "1.0"

    @pytest.mark.asyncio
    async def test_check_only(self, app_config: AppConfig, services: MagicMock) -> None:
        """Test a check-only pass reports the plan and touches nothing."""
        config = app_config.model_copy(update={"check_only": True})
        orchestrator = make_orchestrator(config, make_remote(ui="1.3.0"), services)

        with patch("appliance_updater.updates.primary.clone_repository") as primary_clone:
            result = await orchestrator.run_pass()

        assert result.status is PassStatus.CHECKED
        assert result.exit_code == 0
        assert result.plan.describe() == ["UI: 1.2.0 → 1.3.0"]
        primary_clone.assert_not_called()
        services.stop.assert_not_called()
        services.ensure_running.assert_not_called()


# =============================================================================
# Failure Tests
# =============================================================================


class TestFailures:
    """Tests for failure isolation and exit codes."""

    @pytest.mark.asyncio
    async def test_auxiliary_failure_isolated(self, app_config: AppConfig, services: MagicMock) -> None:
        """Test a failed router install does not stop the firewall update."""
        orchestrator = make_orchestrator(
            app_config, make_remote(router="1.1", firewall="2.2"), services
        )

        with (
            patch("appliance_updater.updates.auxiliary.clone_repository"),
            patch(
                "appliance_updater.updates.auxiliary.run_installer",
                side_effect=[False, True],
            ),
        ):
            result = await orchestrator.run_pass()

        assert result.status is PassStatus.DEGRADED
        assert result.exit_code == 2
        assert [aux.status for aux in result.auxiliaries] == [
            AuxiliaryStatus.INSTALL_FAILED,
            AuxiliaryStatus.UPDATED,
        ]
        assert result.message == "Auxiliary updates failed: router_version"

        rows = _db(app_config)
        assert rows["router_version"][1] == "1.0"
        assert rows["firewall_version"] == ("Firewall Version 2.2", "2.2")

    @pytest.mark.asyncio
    async def test_primary_failure_skips_auxiliaries(
        self, app_config: AppConfig, services: MagicMock
    ) -> None:
        """Test auxiliaries are not updated after a failed primary update."""
        orchestrator = make_orchestrator(
            app_config, make_remote(ui="1.3.0", router="1.1"), services
        )

        with (
            patch(
                "appliance_updater.updates.primary.clone_repository",
                side_effect=TransportFailureError("git clone failed"),
            ),
            patch("appliance_updater.updates.auxiliary.clone_repository") as aux_clone,
        ):
            result = await orchestrator.run_pass()

        assert result.status is PassStatus.FAILED
        assert result.exit_code == 1
        assert result.error.error_code == "transport_failure"
        aux_clone.assert_not_called()
        services.start.assert_awaited_once_with("nodered")
        assert _db(app_config)["system_version"][1] == "1.2.0"

    @pytest.mark.asyncio
    async def test_primary_start_failure_degraded(
        self, app_config: AppConfig, services: MagicMock
    ) -> None:
        """Test a committed primary update whose service fails to start."""
        services.start.return_value = False
        orchestrator = make_orchestrator(app_config, make_remote(ui="1.3.0"), services)

        with patch(
            "appliance_updater.updates.primary.clone_repository", side_effect=fake_clone
        ):
            result = await orchestrator.run_pass()

        assert result.status is PassStatus.DEGRADED
        assert result.exit_code == 2
        assert _db(app_config)["system_version"][1] == "1.3.0"

    @pytest.mark.asyncio
    async def test_missing_primary_record(self, app_config: AppConfig, services: MagicMock) -> None:
        """Test an empty settings table fails the pass."""
        conn = sqlite3.connect(app_config.store.db_path)
        conn.execute("DELETE FROM settings")
        conn.commit()
        conn.close()
        orchestrator = make_orchestrator(app_config, make_remote(), services)

        result = await orchestrator.run_pass()

        assert result.status is PassStatus.FAILED
        assert result.error.error_code == "version_unreadable"
        services.ensure_running.assert_not_called()

    @pytest.mark.asyncio
    async def test_malformed_primary_remote(self, app_config: AppConfig, services: MagicMock) -> None:
        """Test a malformed published primary version fails the pass."""
        orchestrator = make_orchestrator(
            app_config, make_remote(ui="404: Not Found"), services
        )

        result = await orchestrator.run_pass()

        assert result.status is PassStatus.FAILED
        assert result.error.error_code == "version_unreadable"
        assert result.error.details["latest"] == "404: Not Found"

    @pytest.mark.asyncio
    async def test_unreadable_primary_remote(self, app_config: AppConfig, services: MagicMock) -> None:
        """Test an empty published primary version stops the pass before any change."""
        rows_before = _db(app_config)
        remote = make_remote()
        versions = dict(CURRENT_VERSIONS)

        async def fetch(url: str) -> str:
            if url == app_config.primary.version_url:
                raise VersionUnreadableError(
                    "Remote version file is empty", details={"url": url}
                )
            return versions[url]

        remote.fetch.side_effect = fetch
        orchestrator = make_orchestrator(app_config, remote, services)

        with patch("appliance_updater.updates.primary.clone_repository") as mock_clone:
            result = await orchestrator.run_pass()

        assert result.status is PassStatus.FAILED
        assert result.exit_code == 1
        assert result.error.error_code == "version_unreadable"
        mock_clone.assert_not_called()
        services.stop.assert_not_called()
        services.start.assert_not_called()
        assert _db(app_config) == rows_before
        assert not Path(app_config.lock.path).exists()


class TestPassResult:
    """Tests for PassResult."""

    def test_exit_codes(self) -> None:
        """Test the status to exit code mapping."""
        assert {status: EXIT_CODES[status] for status in PassStatus} == {
            PassStatus.LOCK_HELD: 0,
            PassStatus.UP_TO_DATE: 0,
            PassStatus.CANCELLED: 0,
            PassStatus.CHECKED: 0,
            PassStatus.UPDATED: 0,
            PassStatus.DEGRADED: 2,
            PassStatus.FAILED: 1,
        }

    def test_to_dict(self) -> None:
        """Test serialization of an empty result."""
        result = PassResult(status=PassStatus.UP_TO_DATE)

        assert result.to_dict() == {
            "status": "up_to_date",
            "exit_code": 0,
            "plan": {"entries": []},
            "primary": None,
            "auxiliaries": [],
            "message": None,
            "error": None,
        }
