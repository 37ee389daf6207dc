"""
Update machinery for the appliance updater.

This package implements the per-subsystem update steps:
- Dotted-numeric version comparison
- Cache-busting remote version lookup
- Repository clone and installer transport
- Systemd service control
- Filesystem operations for the working-directory swap
- The primary and auxiliary update pipelines
"""

from appliance_updater.updates.auxiliary import (
    AuxiliaryResult,
    AuxiliaryStatus,
    AuxiliaryUpdatePipeline,
)
from appliance_updater.updates.plan import PlanEntry, UpdatePlan
from appliance_updater.updates.primary import (
    PipelineOutcome,
    PrimaryStep,
    PrimaryUpdatePipeline,
    PrimaryUpdateResult,
)
from appliance_updater.updates.remote import RemoteVersionSource
from appliance_updater.updates.systemd import SystemdServiceManager
from appliance_updater.updates.version import compare_versions, is_greater, parse_version

__all__ = [
    # Versions
    "parse_version",
    "compare_versions",
    "is_greater",
    "RemoteVersionSource",
    # Plan
    "PlanEntry",
    "UpdatePlan",
    # Pipelines
    "PrimaryUpdatePipeline",
    "PrimaryUpdateResult",
    "PrimaryStep",
    "PipelineOutcome",
    "AuxiliaryUpdatePipeline",
    "AuxiliaryResult",
    "AuxiliaryStatus",
    # Services
    "SystemdServiceManager",
]
