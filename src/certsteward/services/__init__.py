"""Lifecycle services: orchestrator, scheduler and the shared lock table."""

from certsteward.services.locks import LockTable
from certsteward.services.orchestrator import LifecycleOrchestrator
from certsteward.services.scheduler import RenewalScheduler

__all__ = ["LifecycleOrchestrator", "LockTable", "RenewalScheduler"]
