"""Build and flash orchestration."""

from .ledger import ResourceLedger
from .orchestrator import BuildOrchestrator

__all__ = ["BuildOrchestrator", "ResourceLedger"]
