"""
SQLite access to the appliance's persisted version records.

Each subsystem owns one row of the settings table:

    key      TEXT   -- 'system_version', 'router_version', ...
    value    TEXT   -- display string, e.g. 'Router Version 1.4'
    version  TEXT   -- comparable version string

Older primary installs carry a single-row table without a usable key. Reads
try an ordered list of strategies, and the legacy strategy only applies to
keys explicitly allowed to use it, so a missing auxiliary row is never
masked by another subsystem's version.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Generator, Iterable
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from appliance_updater.errors import PersistenceMismatchError, VersionUnreadableError
from appliance_updater.logging import get_logger

logger = get_logger(__name__)

# =============================================================================
# Read Strategies
# =============================================================================


@dataclass(frozen=True)
class ReadStrategy:
    """A single way of locating a version in the settings table.

    Attributes:
        name: Strategy name used in logs.
        query: SQL template; ``{table}`` is replaced with the table name.
        keyed: Whether the query takes the subsystem key as parameter.
        applies_to: Predicate on the key deciding whether to try this strategy.
    """

    name: str
    query: str
    keyed: bool
    applies_to: Callable[[str], bool]


def default_strategies(legacy_fallback_keys: Iterable[str]) -> list[ReadStrategy]:
    """Canonical keyed lookup first, then the legacy single-row read."""
    legacy_keys = frozenset(legacy_fallback_keys)
    return [
        ReadStrategy(
            name="canonical",
            query="SELECT version FROM {table} WHERE key = ? LIMIT 1",
            keyed=True,
            applies_to=lambda key: True,
        ),
        ReadStrategy(
            name="legacy",
            query="SELECT version FROM {table} LIMIT 1",
            keyed=False,
            applies_to=lambda key: key in legacy_keys,
        ),
    ]


def _normalize(raw: Any) -> str | None:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


# =============================================================================
# VersionStore
# =============================================================================


class VersionStore:
    """
    Read/write access to per-subsystem version records.

    The database must already exist; it is opened read-write without
    creation so a wrong path never leaves an empty database behind.

    Example:
        >>> store = VersionStore("/home/admin/.node-red/seer_database/seer.db")
        >>> store.read("system_version")
        '1.2.0'
        >>> store.write("system_version", "1.3.0", "SEER Version 1.3.0")
        1
    """

    def __init__(
        self,
        db_path: str | Path,
        table: str = "settings",
        strategies: list[ReadStrategy] | None = None,
        legacy_fallback_keys: Iterable[str] = ("system_version",),
    ) -> None:
        """
        Initialize the VersionStore.

        Args:
            db_path: Path to the SQLite database file.
            table: Settings table name.
            strategies: Ordered read strategies. Defaults to canonical then
                legacy for ``legacy_fallback_keys``.
            legacy_fallback_keys: Keys allowed to use the legacy read.
        """
        self.db_path = Path(db_path)
        self.table = table
        self.strategies = (
            strategies
            if strategies is not None
            else default_strategies(legacy_fallback_keys)
        )

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Open the existing database.

        Yields:
            SQLite connection with Row factory.
        """
        conn = sqlite3.connect(
            f"{self.db_path.resolve().as_uri()}?mode=rw", uri=True, timeout=30.0
        )
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _run_strategy(
        self, conn: sqlite3.Connection, strategy: ReadStrategy, key: str
    ) -> str | None:
        sql = strategy.query.format(table=self.table)
        params: tuple[Any, ...] = (key,) if strategy.keyed else ()
        try:
            row = conn.execute(sql, params).fetchone()
        except sqlite3.OperationalError as e:
            # A legacy table without the key column cannot answer a keyed read
            if strategy.keyed and "no such column" in str(e):
                return None
            raise
        if row is None:
            return None
        return _normalize(row[0])

    def read(self, key: str) -> str | None:
        """
        Read the persisted version for a subsystem.

        Args:
            key: Subsystem key.

        Returns:
            The version string, or None if no strategy finds a record.

        Raises:
            VersionUnreadableError: If the database cannot be opened or queried.
        """
        try:
            with self._get_connection() as conn:
                for strategy in self.strategies:
                    if not strategy.applies_to(key):
                        continue
                    version = self._run_strategy(conn, strategy, key)
                    if version is not None:
                        logger.debug(
                            "Read persisted version",
                            extra={
                                "key": key,
                                "version": version,
                                "strategy": strategy.name,
                            },
                        )
                        return version
        except sqlite3.Error as e:
            raise VersionUnreadableError(
                f"Cannot read version for {key}: {e}",
                details={"key": key, "db_path": str(self.db_path)},
            ) from e

        logger.debug("No persisted version", extra={"key": key})
        return None

    def write(self, key: str, version: str, display_value: str) -> int:
        """
        Update an existing record's version and display value together.

        Never inserts: a missing row means the subsystem was never
        provisioned.

        Returns:
            Number of rows affected.

        Raises:
            PersistenceMismatchError: If the update cannot be executed.
        """
        sql = f"UPDATE {self.table} SET value = ?, version = ? WHERE key = ?"
        try:
            with self._get_connection() as conn:
                with conn:
                    cursor = conn.execute(sql, (display_value, version, key))
                    rows = cursor.rowcount
        except sqlite3.Error as e:
            raise PersistenceMismatchError(
                f"Cannot write version for {key}: {e}",
                details={"key": key, "expected": version, "db_path": str(self.db_path)},
            ) from e

        logger.info(
            "Persisted version written",
            extra={"key": key, "version": version, "rows": rows},
        )
        return rows

    def verify(self, key: str, expected_version: str) -> bool:
        """Re-read a record and compare it exactly with the expected version."""
        try:
            actual = self.read(key)
        except VersionUnreadableError as e:
            logger.error(
                "Version verification could not read back",
                extra={"key": key, "expected": expected_version, "error": e.message},
            )
            return False

        if actual != expected_version:
            logger.error(
                "Version verification mismatch",
                extra={"key": key, "expected": expected_version, "actual": actual},
            )
            return False
        return True

    def commit(
        self,
        key: str,
        version: str,
        display_value: str,
        *,
        verify: bool = True,
    ) -> None:
        """
        Write a version and optionally verify it.

        Raises:
            PersistenceMismatchError: If no row was updated or the read-back
                value differs.
        """
        rows = self.write(key, version, display_value)
        if rows == 0:
            raise PersistenceMismatchError(
                f"No record updated for {key}",
                details={"key": key, "expected": version, "rows": 0},
            )

        if verify and not self.verify(key, version):
            raise PersistenceMismatchError(
                f"Persisted version for {key} does not match {version}",
                details={"key": key, "expected": version, "actual": self._safe_read(key)},
            )

    def _safe_read(self, key: str) -> str | None:
        try:
            return self.read(key)
        except VersionUnreadableError:
            return None

    def snapshot(self) -> list[dict[str, Any]]:
        """
        Return every (key, value, version) row.

        Raises:
            VersionUnreadableError: If the table cannot be read.
        """
        sql = f"SELECT key, value, version FROM {self.table}"
        try:
            with self._get_connection() as conn:
                rows = conn.execute(sql).fetchall()
        except sqlite3.Error as e:
            raise VersionUnreadableError(
                f"Cannot read settings table: {e}",
                details={"db_path": str(self.db_path)},
            ) from e
        return [dict(row) for row in rows]
