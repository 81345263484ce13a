"""
Tollgate - Job Queue

Persistent job queue with an atomic claim, handler registry, processor, and
the eager-trigger / periodic-sweep drivers.
"""

from .store import JobStore
from .handlers import (
    Artifact,
    JobOutcome,
    HandlerContext,
    register_handler,
    get_handler,
)
from .processor import JobProcessor, ProcessResult, artifact_key
from .scheduler import EagerTrigger, Sweeper, run_periodic_sweeps

__all__ = [
    "JobStore",
    "Artifact",
    "JobOutcome",
    "HandlerContext",
    "register_handler",
    "get_handler",
    "JobProcessor",
    "ProcessResult",
    "artifact_key",
    "EagerTrigger",
    "Sweeper",
    "run_periodic_sweeps",
]
