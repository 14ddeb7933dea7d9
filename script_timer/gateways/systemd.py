"""Systemd transient timer backend for Linux."""

import logging
import math
import shutil
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from script_timer.config import TimerConfig
from script_timer.errors import SchedulerError
from script_timer.gateways.base import SchedulerGateway
from script_timer.models import ExternalTask, Principal, TaskAction

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT = 30

# Principal kind -> systemctl/systemd-run scope flags
SCOPES: Dict[str, Sequence[str]] = {
    "interactive": ("--user",),
    "service": (),
}

HEALTHY_STATES = ("running", "degraded")


def _scope_label(scope: Sequence[str]) -> str:
    return "user" if "--user" in scope else "system"


def _parse_properties(output: str) -> Dict[str, str]:
    props = {}
    for line in output.strip().split("\n"):
        if "=" in line:
            key, value = line.split("=", 1)
            props[key] = value
    return props


class SystemdGateway(SchedulerGateway):
    """Systemd backend using transient timers from systemd-run.

    Each job is a `<name>.timer` / `<name>.service` pair. Interactive
    principals use the per-user manager (systemctl --user), the service
    principal uses the system manager. Stopping the timer discards both
    transient units.
    """

    def __init__(self, scopes: Optional[Dict[str, Sequence[str]]] = None):
        self.scopes = scopes or SCOPES

    @classmethod
    def from_config(cls, config: TimerConfig) -> 'SystemdGateway':
        return cls()

    @property
    def name(self) -> str:
        return "systemd"

    @property
    def is_available(self) -> bool:
        """Check if this system was booted with systemd and has its tools."""
        return (
            Path("/run/systemd/system").exists()
            and shutil.which("systemctl") is not None
            and shutil.which("systemd-run") is not None
        )

    def _run(self, *cmd: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(list(cmd), capture_output=True, text=True, timeout=COMMAND_TIMEOUT)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise SchedulerError(f"Failed to run {cmd[0]}: {e}") from e

    def _systemctl(self, scope: Sequence[str], *args: str) -> subprocess.CompletedProcess:
        return self._run("systemctl", *scope, *args)

    def service_running(self) -> bool:
        try:
            result = self._run("systemctl", "is-system-running")
        except SchedulerError as e:
            logger.warning(f"Could not query systemd state: {e}")
            return False
        state = result.stdout.strip()
        logger.debug(f"systemd reports system state '{state}'")
        return state in HEALTHY_STATES

    def list_tasks(self) -> List[ExternalTask]:
        tasks = []
        failures = []
        for scope in self.scopes.values():
            result = self._systemctl(scope, "list-units", "--type=timer", "--all", "--no-legend", "--plain")
            if result.returncode != 0:
                failures.append(f"{_scope_label(scope)}: {result.stderr.strip()}")
                continue
            for line in result.stdout.splitlines():
                fields = line.split(None, 4)
                if len(fields) < 4 or not fields[0].endswith(".timer"):
                    continue
                unit, _load, active, sub = fields[:4]
                tasks.append(ExternalTask(
                    name=unit[:-len(".timer")],
                    state=f"{active}/{sub}",
                    principal=_scope_label(scope),
                ))

        if failures and len(failures) == len(self.scopes):
            raise SchedulerError("Could not list timers: " + "; ".join(failures))
        for failure in failures:
            logger.debug(f"Skipped timer scope {failure}")
        return tasks

    def _find(self, name: str):
        """Return (scope, properties) of the first scope that knows the timer."""
        for scope in self.scopes.values():
            result = self._systemctl(
                scope,
                "show",
                f"{name}.timer",
                "--property=LoadState,ActiveState,SubState,NextElapseUSecRealtime",
            )
            if result.returncode != 0:
                logger.debug(f"systemctl {_scope_label(scope)} show {name}.timer failed: {result.stderr.strip()}")
                continue
            props = _parse_properties(result.stdout)
            if props.get("LoadState", "not-found") != "not-found":
                return scope, props
        return None, None

    def get(self, name: str) -> Optional[ExternalTask]:
        scope, props = self._find(name)
        if props is None:
            return None
        return ExternalTask(
            name=name,
            state=f"{props.get('ActiveState', 'unknown')}/{props.get('SubState', 'unknown')}",
            next_run_time=props.get("NextElapseUSecRealtime") or None,
            principal=_scope_label(scope),
        )

    def _register_as(
        self,
        name: str,
        run_at: datetime,
        action: TaskAction,
        principal: Principal,
    ) -> ExternalTask:
        scope = self.scopes.get(principal.kind)
        if scope is None:
            raise SchedulerError(f"no systemd scope for principal '{principal.kind}'")

        delay = max(1, math.ceil((run_at - datetime.now()).total_seconds()))
        cmd = [
            "systemd-run",
            *scope,
            "--no-ask-password",
            f"--unit={name}",
            f"--description=script-timer job {name}",
            f"--on-active={delay}s",
            "--timer-property=AccuracySec=1s",
        ]
        if action.working_dir:
            cmd.append(f"--property=WorkingDirectory={action.working_dir}")
        cmd += ["--", *action.argv]

        result = self._run(*cmd)
        if result.returncode != 0:
            raise SchedulerError(result.stderr.strip() or f"systemd-run exited with {result.returncode}")

        return ExternalTask(
            name=name,
            state="active/waiting",
            next_run_time=run_at.isoformat(timespec="seconds"),
            principal=_scope_label(scope),
        )

    def unregister(self, name: str) -> None:
        scope, props = self._find(name)
        if props is None:
            logger.info(f"Timer '{name}' is not loaded, nothing to remove")
            return

        result = self._systemctl(scope, "stop", f"{name}.timer")
        if result.returncode != 0:
            raise SchedulerError(
                f"Failed to stop {_scope_label(scope)} timer '{name}': {result.stderr.strip()}"
            )
        logger.info(f"Stopped {_scope_label(scope)} timer '{name}'")
