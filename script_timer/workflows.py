"""
Job lifecycle workflows: creation, removal and reconciliation.

The scheduler is the source of truth for whether a job exists; the ledger
follows it. Two rules hold for every workflow here:

- A ledger entry is added only after the scheduler task is registered
  and seen again by a fresh lookup.
- A ledger entry is removed only after the scheduler task is confirmed
  gone (or was already absent).

Each workflow catches its own failures and returns an Outcome, so callers
never see an exception.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from script_timer.config import TimerConfig
from script_timer.errors import (
    LedgerCorruption,
    NotFound,
    RegistrationFailure,
    ScriptTimerError,
    ValidationError
)
from script_timer.executor import build_action
from script_timer.gateways.base import SchedulerGateway, resolve_principals
from script_timer.ledger import LedgerStore
from script_timer.models import ExternalTask, JobRecord, Outcome, ReconcileReport
from script_timer.validation import ValidationPipeline

logger = logging.getLogger(__name__)

AFFIRMATIVE = ("y", "yes")


def is_affirmative(confirmation: Optional[str]) -> bool:
    return (confirmation or "").strip().lower() in AFFIRMATIVE


def pick(items: List, index) -> object:
    """
    Select an item by 1-based index as typed by the operator.

    Raises:
        NotFound: If the index is not a number in range
    """
    try:
        position = int(str(index).strip())
    except (TypeError, ValueError):
        raise NotFound(f"'{index}' is not a valid number") from None
    if not 1 <= position <= len(items):
        raise NotFound(f"No entry #{position} (choose 1-{len(items)})" if items else "Nothing to choose from")
    return items[position - 1]


def failure_outcome(operation: str, error: Exception, target: Optional[str] = None) -> Outcome:
    """Log a workflow failure with its context and wrap it in an Outcome."""
    where = f" '{target}'" if target else ""
    if isinstance(error, ScriptTimerError):
        logger.error(f"{operation}{where} failed ({type(error).__name__}): {error}")
        message = str(error)
    else:
        logger.exception(f"{operation}{where} failed unexpectedly: {error}")
        message = f"Unexpected error: {error}"
    return Outcome(ok=False, operation=operation, message=message, task_name=target)


class JobCreator:
    """Validates a script and registers a one-shot delayed run for it."""

    def __init__(
        self,
        config: TimerConfig,
        ledger: LedgerStore,
        gateway: SchedulerGateway,
        pipeline: Optional[ValidationPipeline] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.config = config
        self.ledger = ledger
        self.gateway = gateway
        self.pipeline = pipeline or ValidationPipeline(config, gateway)
        self.clock = clock

    def generate_name(self) -> str:
        return f"{self.config.name_prefix}-{uuid.uuid4().hex[:8]}"

    def create(self, script_path: str, interval_minutes: int) -> Outcome:
        """
        Schedule `script_path` to run once, `interval_minutes` from now.

        Args:
            script_path: Script path as entered by the operator
            interval_minutes: Delay; must be one of the configured intervals

        Returns:
            Outcome carrying the new JobRecord on success
        """
        operation = "create"
        name = None
        try:
            if interval_minutes not in self.config.intervals:
                raise ValidationError(
                    f"Interval {interval_minutes} min is not one of "
                    f"{', '.join(str(m) for m in self.config.intervals)}"
                )

            report = self.pipeline.run(script_path)
            warnings = list(report.warnings)

            name = self.generate_name()
            now = self.clock()
            run_at = now + timedelta(minutes=interval_minutes)
            action = build_action(report.script_path)
            principals = resolve_principals(self.config.principals)

            logger.info(f"Registering '{name}' for {report.script_path} at {run_at.isoformat(timespec='seconds')}")
            self.gateway.register(name, run_at, action, principals)

            # The registration call's return value is not proof the task exists
            if self.gateway.get(name) is None:
                raise RegistrationFailure(
                    name,
                    f"Scheduler accepted '{name}' but it is not visible afterwards"
                )

            record = JobRecord(
                name=name,
                script_path=str(report.script_path),
                created_at=now.isoformat(timespec='seconds'),
                interval_minutes=interval_minutes
            )
            if not self.ledger.append(record):
                warning = (
                    f"Task '{name}' is scheduled but the ledger could not be saved; "
                    f"it will be removed as an orphan on next start"
                )
                logger.warning(warning)
                warnings.append(warning)

            logger.info(f"Created job '{name}' ({interval_minutes} min) for {report.script_path}")
            return Outcome(
                ok=True,
                operation=operation,
                message=f"Scheduled {report.script_path.name} to run at {run_at.strftime('%Y-%m-%d %H:%M:%S')} as '{name}'",
                job=record,
                task_name=name,
                warnings=warnings
            )

        except Exception as e:
            return failure_outcome(operation, e, name or script_path)


class JobRemover:
    """Removes jobs from the scheduler first and the ledger second."""

    def __init__(self, config: TimerConfig, ledger: LedgerStore, gateway: SchedulerGateway):
        self.config = config
        self.ledger = ledger
        self.gateway = gateway

    def list_jobs(self) -> List[JobRecord]:
        return self.ledger.load()

    def _forget(self, name: str, warnings: List[str]) -> bool:
        removed, saved = self.ledger.remove(name)
        if not saved:
            warning = f"Ledger could not be saved after removing '{name}'"
            logger.warning(warning)
            warnings.append(warning)
        return removed

    def remove_by_index(self, index, confirmation: Optional[str]) -> Outcome:
        """
        Remove the ledger entry at 1-based `index` and its scheduler task.

        Args:
            index: Position in the ledger as listed to the operator
            confirmation: Operator's answer; only y/yes proceeds

        Returns:
            Outcome. On failure the ledger is unchanged.
        """
        operation = "delete"
        name = None
        try:
            record = pick(self.ledger.load(), index)
            name = record.name

            if not is_affirmative(confirmation):
                logger.info(f"Deletion of '{name}' cancelled by operator")
                return Outcome(ok=False, operation=operation, message="Deletion cancelled", task_name=name)

            if self.gateway.get(name) is not None:
                self.gateway.unregister(name)
                logger.info(f"Unregistered scheduler task '{name}'")
            else:
                logger.info(f"Scheduler has no task '{name}', only removing the ledger entry")

            warnings: List[str] = []
            self._forget(name, warnings)
            return Outcome(
                ok=True,
                operation=operation,
                message=f"Deleted '{name}'",
                job=record,
                task_name=name,
                warnings=warnings
            )

        except Exception as e:
            return failure_outcome(operation, e, name)

    def search(self, text: str) -> List[ExternalTask]:
        """
        Find scheduler tasks whose name contains `text` (case-insensitive).

        Raises:
            ValidationError: If the search text is empty
            SchedulerError: If the scheduler could not be listed
        """
        text = (text or "").strip()
        if not text:
            raise ValidationError("Search text cannot be empty")
        matches = self.gateway.search(text)
        logger.info(f"Search for '{text}' matched {len(matches)} task(s)")
        return matches

    def select(self, matches: List[ExternalTask], index) -> ExternalTask:
        return pick(matches, index)

    def remove_task(self, task_name: str, confirmation: Optional[str]) -> Outcome:
        """
        Remove a scheduler task picked from search results, then any ledger
        entry with the same name.

        Args:
            task_name: Exact scheduler task name
            confirmation: Operator's answer; only y/yes proceeds

        Returns:
            Outcome. On failure the ledger is unchanged.
        """
        operation = "search-delete"
        try:
            if not is_affirmative(confirmation):
                logger.info(f"Deletion of '{task_name}' cancelled by operator")
                return Outcome(ok=False, operation=operation, message="Deletion cancelled", task_name=task_name)

            self.gateway.unregister(task_name)
            logger.info(f"Unregistered scheduler task '{task_name}'")

            warnings: List[str] = []
            if self._forget(task_name, warnings):
                message = f"Deleted '{task_name}' and its ledger entry"
            else:
                message = f"Deleted '{task_name}'"
            return Outcome(ok=True, operation=operation, message=message, task_name=task_name, warnings=warnings)

        except Exception as e:
            return failure_outcome(operation, e, task_name)


class Reconciler:
    """
    Removes owned scheduler tasks that have no ledger entry.

    Ledger entries whose task disappeared are left alone; they are
    noticed when the operator tries to delete them. A ledger file that
    exists but cannot be read skips the pass entirely.
    """

    def __init__(self, config: TimerConfig, ledger: LedgerStore, gateway: SchedulerGateway):
        self.config = config
        self.ledger = ledger
        self.gateway = gateway

    def run(self) -> ReconcileReport:
        report = ReconcileReport()
        try:
            # An unreadable ledger would make every owned task look orphaned
            known = self.ledger.names(strict=True)
        except LedgerCorruption as e:
            logger.warning(f"Reconciliation skipped, ledger {self.ledger.path} is unreadable: {e}")
            report.error = f"ledger is unreadable: {e}"
            return report
        except Exception as e:
            logger.exception(f"Reconciliation skipped, could not read the ledger: {e}")
            report.error = str(e)
            return report

        try:
            owned = self.gateway.list_by_prefix(self.config.name_prefix)
        except Exception as e:
            logger.error(f"Reconciliation skipped, could not list scheduler tasks: {e}")
            report.error = str(e)
            return report

        report.owned = len(owned)
        orphans = [task for task in owned if task.name not in known]
        logger.info(f"Reconciling: {len(owned)} owned task(s), {len(orphans)} orphan(s)")

        for task in orphans:
            try:
                self.gateway.unregister(task.name)
            except Exception as e:
                logger.warning(f"Could not remove orphan task '{task.name}': {e}")
                report.failed.append(task.name)
                continue
            logger.info(f"Removed orphan task '{task.name}'")
            report.removed.append(task.name)

        return report
