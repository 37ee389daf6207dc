"""Update plan built once per pass from persisted and remote versions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class PlanEntry:
    """An outdated subsystem.

    Attributes:
        subsystem: Version record key.
        display_name: Name shown to the operator.
        current_version: Persisted version.
        target_version: Published version to apply.
    """

    subsystem: str
    display_name: str
    current_version: str
    target_version: str

    def describe(self) -> str:
        return f"{self.display_name}: {self.current_version} → {self.target_version}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "subsystem": self.subsystem,
            "display_name": self.display_name,
            "current_version": self.current_version,
            "target_version": self.target_version,
        }


@dataclass
class UpdatePlan:
    """Ordered set of outdated subsystems, primary first."""

    entries: list[PlanEntry] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.entries

    def includes(self, subsystem: str) -> bool:
        return any(entry.subsystem == subsystem for entry in self.entries)

    def get(self, subsystem: str) -> PlanEntry | None:
        for entry in self.entries:
            if entry.subsystem == subsystem:
                return entry
        return None

    def describe(self) -> list[str]:
        """Operator-facing lines, one per entry."""
        return [entry.describe() for entry in self.entries]

    def to_dict(self) -> dict[str, Any]:
        return {"entries": [entry.to_dict() for entry in self.entries]}
