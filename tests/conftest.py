"""
Pytest configuration and shared fixtures for the appliance updater tests.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from pathlib import Path

import pytest

from appliance_updater.config import AppConfig, AuxiliaryConfig


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


def create_settings_db(
    db_path: Path,
    rows: Iterable[tuple[str, str, str]] = (),
) -> Path:
    """Create a settings database with (key, value, version) rows."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    try:
        conn.execute(
            "CREATE TABLE settings (key TEXT PRIMARY KEY, value TEXT, version TEXT)"
        )
        conn.executemany(
            "INSERT INTO settings (key, value, version) VALUES (?, ?, ?)", list(rows)
        )
        conn.commit()
    finally:
        conn.close()
    return db_path


def read_settings(db_path: Path) -> dict[str, tuple[str, str]]:
    """Return {key: (value, version)} for every row."""
    conn = sqlite3.connect(str(db_path))
    try:
        rows = conn.execute("SELECT key, value, version FROM settings").fetchall()
    finally:
        conn.close()
    return {key: (value, version) for key, value, version in rows}


@pytest.fixture
def appliance_root(tmp_path: Path) -> Path:
    """A fake appliance home with a working directory and settings store."""
    target = tmp_path / "home"
    working_dir = target / ".node-red"
    (working_dir / "lib").mkdir(parents=True)
    (working_dir / "flows.json").write_text('{"flows": "old"}')
    (working_dir / "lib" / "helper.js").write_text("module.exports = 1;\n")
    settings = working_dir / "seer_database"
    settings.mkdir()
    (settings / "notes.txt").write_bytes(b"operator notes\x00\x01")
    create_settings_db(
        settings / "seer.db",
        [
            ("system_version", "SEER Version 1.2.0", "1.2.0"),
            ("router_version", "Router Version 1.0", "1.0"),
            ("firewall_version", "Firewall Version 2.1", "2.1"),
            ("startup_version", "Startup Version 0.9", "0.9"),
        ],
    )
    return target


@pytest.fixture
def app_config(tmp_path: Path, appliance_root: Path) -> AppConfig:
    """Configuration pointing every path into the temporary appliance."""
    return AppConfig(
        logging={"log_path": str(tmp_path / "log" / "updater.log"), "log_to_stdout": False},
        lock={"path": str(tmp_path / "run" / "updater.lock")},
        primary={
            "target_dir": str(appliance_root),
            "runtime_user": None,
            "runtime_group": None,
            "stop_settle_seconds": 0,
            "version_url": "https://updates.example.com/ui/version.txt",
            "repo_url": "https://git.example.com/ui",
        },
        auxiliaries=[
            AuxiliaryConfig(
                key=f"{name}_version",
                display_name=name.capitalize(),
                display_prefix=f"{name.capitalize()} Version",
                repo_url=f"https://git.example.com/{name}",
                version_url=f"https://updates.example.com/{name}/version.txt",
            )
            for name in ("router", "firewall", "startup")
        ],
        transport={"scratch_root": str(tmp_path)},
        state_file=str(tmp_path / "state" / "primary_state.json"),
        assume_yes=True,
    )
