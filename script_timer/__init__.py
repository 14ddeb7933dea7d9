"""
Script Timer

Schedule a one-shot, delayed run of a script through the OS task
scheduler, and keep a ledger of the jobs created so they can be listed,
audited and removed from both places.

Main Components:
- LedgerStore: JSON ledger of jobs this tool registered
- SchedulerGateway: schtasks, systemd and local (APScheduler) backends
- JobCreator / JobRemover / Reconciler: job lifecycle workflows
- TimerConfig: immutable configuration built once at startup
"""

__version__ = "0.1.0"

from script_timer.config import TimerConfig
from script_timer.errors import (
    LedgerCorruption,
    NotFound,
    PermissionDenied,
    RegistrationFailure,
    SchedulerError,
    SchedulerUnavailable,
    ScriptTimerError,
    ValidationError
)
from script_timer.gateways import SchedulerGateway, get_gateway
from script_timer.ledger import LedgerStore
from script_timer.models import ExternalTask, JobRecord, Outcome
from script_timer.workflows import JobCreator, JobRemover, Reconciler

__all__ = [
    # Configuration
    "TimerConfig",
    # Ledger and models
    "LedgerStore",
    "JobRecord",
    "ExternalTask",
    "Outcome",
    # Scheduler
    "SchedulerGateway",
    "get_gateway",
    # Workflows
    "JobCreator",
    "JobRemover",
    "Reconciler",
    # Errors
    "ScriptTimerError",
    "ValidationError",
    "PermissionDenied",
    "SchedulerUnavailable",
    "RegistrationFailure",
    "SchedulerError",
    "LedgerCorruption",
    "NotFound",
]
