"""Windows Task Scheduler backend driven through schtasks.exe."""

import csv
import io
import logging
import shutil
import subprocess
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from script_timer.config import TimerConfig
from script_timer.errors import SchedulerError
from script_timer.gateways.base import SchedulerGateway
from script_timer.models import ExternalTask, Principal, TaskAction

logger = logging.getLogger(__name__)

# schtasks /SD expects the system short date format; this is the en-US one
DATE_FORMAT = "%m/%d/%Y"
TIME_FORMAT = "%H:%M"

COMMAND_TIMEOUT = 60

NOT_FOUND_MARKERS = ("cannot find", "does not exist")
ACCESS_DENIED_MARKERS = ("access is denied", "access denied")


def _round_up_to_minute(moment: datetime) -> datetime:
    """schtasks has minute granularity; never fire earlier than asked."""
    if moment.second or moment.microsecond:
        moment = moment.replace(second=0, microsecond=0) + timedelta(minutes=1)
    return moment


def _parse_task_rows(output: str) -> List[Dict[str, str]]:
    """Parse `schtasks /Query /FO CSV /V` output into row dicts.

    The header row is repeated for every task folder, so header lines
    are skipped wherever they appear.
    """
    rows = []
    reader = csv.reader(io.StringIO(output))
    header: Optional[List[str]] = None
    for row in reader:
        if not row:
            continue
        if row[0] in ("HostName", "TaskName"):
            header = row
            continue
        if header is None:
            continue
        rows.append(dict(zip(header, row)))
    return rows


def _row_to_task(row: Dict[str, str]) -> ExternalTask:
    # Tasks in the root folder are reported as "\Name"
    name = row.get("TaskName", "").lstrip("\\")
    next_run = row.get("Next Run Time") or None
    if next_run == "N/A":
        next_run = None
    return ExternalTask(
        name=name,
        state=row.get("Status") or row.get("Scheduled Task State") or "Unknown",
        next_run_time=next_run,
        principal=row.get("Run As User") or None,
    )


class SchtasksGateway(SchedulerGateway):
    """Windows Task Scheduler backend.

    Uses schtasks.exe for task management and `sc query Schedule` for
    the service health check.
    """

    def __init__(self, executable: str = "schtasks"):
        self.executable = executable

    @classmethod
    def from_config(cls, config: TimerConfig) -> 'SchtasksGateway':
        return cls()

    @property
    def name(self) -> str:
        return "schtasks"

    @property
    def is_available(self) -> bool:
        return shutil.which(self.executable) is not None

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        """Run schtasks with the given arguments."""
        cmd = [self.executable, *args]
        try:
            return subprocess.run(cmd, capture_output=True, text=True, timeout=COMMAND_TIMEOUT)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise SchedulerError(f"Failed to run {self.executable}: {e}") from e

    @staticmethod
    def _error_text(result: subprocess.CompletedProcess) -> str:
        return (result.stderr or result.stdout or "").strip()

    def service_running(self) -> bool:
        try:
            result = subprocess.run(
                ["sc", "query", "Schedule"],
                capture_output=True,
                text=True,
                timeout=COMMAND_TIMEOUT,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Could not query the Task Scheduler service: {e}")
            return False
        return result.returncode == 0 and "RUNNING" in result.stdout.upper()

    def list_tasks(self) -> List[ExternalTask]:
        result = self._run("/Query", "/FO", "CSV", "/V")
        if result.returncode != 0:
            raise SchedulerError(f"schtasks /Query failed: {self._error_text(result)}")

        tasks: Dict[str, ExternalTask] = {}
        for row in _parse_task_rows(result.stdout):
            task = _row_to_task(row)
            # /V lists one row per trigger; keep the first
            if task.name and task.name not in tasks:
                tasks[task.name] = task
        return list(tasks.values())

    def get(self, name: str) -> Optional[ExternalTask]:
        result = self._run("/Query", "/TN", name, "/FO", "CSV", "/V")
        if result.returncode != 0:
            error = self._error_text(result)
            if any(marker in error.lower() for marker in NOT_FOUND_MARKERS):
                return None
            raise SchedulerError(f"schtasks /Query /TN {name} failed: {error}")

        rows = _parse_task_rows(result.stdout)
        if not rows:
            return None
        return _row_to_task(rows[0])

    def _register_as(
        self,
        name: str,
        run_at: datetime,
        action: TaskAction,
        principal: Principal,
    ) -> ExternalTask:
        start = _round_up_to_minute(run_at)
        args = [
            "/Create",
            "/TN", name,
            "/TR", action.command_line,
            "/SC", "ONCE",
            "/SD", start.strftime(DATE_FORMAT),
            "/ST", start.strftime(TIME_FORMAT),
            "/RU", principal.user,
            "/F",
        ]
        if principal.elevated:
            args += ["/RL", "HIGHEST"]
        if principal.kind == "interactive":
            args.append("/IT")

        result = self._run(*args)
        if result.returncode != 0:
            raise SchedulerError(self._error_text(result) or f"schtasks exited with {result.returncode}")

        return ExternalTask(
            name=name,
            state="Ready",
            next_run_time=start.isoformat(timespec="minutes"),
            principal=principal.user,
        )

    def unregister(self, name: str) -> None:
        if self.get(name) is None:
            logger.info(f"Task '{name}' is not registered, nothing to remove")
            return

        result = self._run("/Delete", "/TN", name, "/F")
        if result.returncode == 0:
            logger.info(f"Deleted task '{name}'")
            return

        error = self._error_text(result)
        if any(marker in error.lower() for marker in NOT_FOUND_MARKERS):
            logger.info(f"Task '{name}' vanished before it could be deleted")
            return
        if any(marker in error.lower() for marker in ACCESS_DENIED_MARKERS):
            raise SchedulerError(f"Access denied deleting task '{name}': {error}")
        raise SchedulerError(f"schtasks /Delete /TN {name} failed: {error}")
