"""
Appliance Updater - self-update orchestrator for appliance subsystems.

This package checks the published version of each appliance subsystem
(the primary UI/runtime tree and the router, firewall and startup services)
and updates the outdated ones in place while preserving the durable
settings store.
"""

__version__ = "0.1.0"
