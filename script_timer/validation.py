"""
Preflight checks run before registering a delayed job.

Checks run in order and stop at the first failure. Nothing before the
end of the pipeline touches the scheduler or the ledger.
"""

import ctypes
import getpass
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from script_timer.config import TimerConfig
from script_timer.errors import PermissionDenied, SchedulerUnavailable, ValidationError
from script_timer.executor import CommandExecutor, build_action
from script_timer.gateways.base import SchedulerGateway
from script_timer.models import SmokeTestResult

logger = logging.getLogger(__name__)


def is_admin() -> bool:
    """Check whether the current process has administrative rights."""
    if os.name == 'nt':
        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except (AttributeError, OSError):
            return False
    return os.geteuid() == 0


def probe_session() -> Dict[str, str]:
    """Describe the current login session. Diagnostic only."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = 'unknown'
    return {
        'user': user,
        'session': os.environ.get('SESSIONNAME') or os.environ.get('XDG_SESSION_TYPE') or 'unknown',
        'display': os.environ.get('DISPLAY') or os.environ.get('WAYLAND_DISPLAY') or '',
        'tty': 'yes' if sys.stdin is not None and sys.stdin.isatty() else 'no',
    }


def resolve_target(script_path: str) -> Path:
    """
    Resolve the script path the operator entered.

    Raises:
        ValidationError: If the path is empty or is not an existing file
    """
    cleaned = (script_path or '').strip().strip('"').strip("'")
    if not cleaned:
        raise ValidationError("No script path given")
    path = Path(cleaned).expanduser()
    if not path.exists():
        raise ValidationError(f"Script not found: {path}")
    if not path.is_file():
        raise ValidationError(f"Not a file: {path}")
    return path.resolve()


@dataclass
class PreflightReport:
    """Everything the pipeline learned about a creation request"""
    script_path: Path
    smoke_test: SmokeTestResult
    session: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)


class ValidationPipeline:
    """
    Runs the preflight checks for one creation request.

    1. Administrative rights (when configured)
    2. Scheduler service health
    3. Session probe (logged only)
    4. Target script exists
    5. Smoke test within the configured timeout
    """

    def __init__(
        self,
        config: TimerConfig,
        gateway: SchedulerGateway,
        executor: Optional[CommandExecutor] = None
    ):
        self.config = config
        self.gateway = gateway
        self.executor = executor or CommandExecutor()

    def check_privileges(self):
        if not self.config.require_admin:
            logger.debug("Administrative rights not required by configuration")
            return
        if not is_admin():
            raise PermissionDenied("Administrative rights are required to schedule tasks")

    def check_scheduler_service(self):
        if not self.gateway.service_running():
            raise SchedulerUnavailable(f"The {self.gateway.name} scheduling service is not running")

    def smoke_test(self, script_path: Path) -> SmokeTestResult:
        """
        Trial-run the script, waiting at most the configured timeout.

        A script still running at the deadline is cancelled and reported as
        inconclusive rather than failed.
        """
        action = build_action(script_path)
        timeout = self.config.smoke_test_timeout
        logger.info(f"Smoke testing {script_path} (timeout {timeout}s)")

        try:
            result = self.executor.run(
                action.argv,
                timeout=timeout,
                working_dir=action.working_dir,
                job_name='smoke-test'
            )
        except OSError as e:
            raise ValidationError(f"Could not start {script_path}: {e}") from e

        if result.timed_out:
            status = 'inconclusive'
        elif result.returncode == 0:
            status = 'passed'
        else:
            status = 'failed'

        return SmokeTestResult(
            status=status,
            returncode=result.returncode,
            output=result.output,
            duration_seconds=result.duration_seconds
        )

    def run(self, script_path: str) -> PreflightReport:
        """
        Run every check in order.

        Args:
            script_path: Path to the script as entered by the operator

        Returns:
            PreflightReport for a request that may proceed to registration

        Raises:
            PermissionDenied: Caller lacks administrative rights
            SchedulerUnavailable: Scheduling service is not running
            ValidationError: Script is missing or failed its smoke test
        """
        self.check_privileges()
        self.check_scheduler_service()

        session = probe_session()
        logger.info(
            f"Session: user={session['user']} session={session['session']} "
            f"tty={session['tty']} display={session['display'] or '-'}"
        )

        target = resolve_target(script_path)
        smoke = self.smoke_test(target)

        warnings = []
        if smoke.status == 'failed':
            logger.error(f"Smoke test of {target} failed with exit code {smoke.returncode}")
            raise ValidationError(
                f"Smoke test of {target} failed with exit code {smoke.returncode}: "
                f"{smoke.output.strip()[-500:] or 'no output'}"
            )
        if smoke.inconclusive:
            warning = (
                f"Smoke test of {target.name} did not finish within "
                f"{self.config.smoke_test_timeout}s; scheduling anyway"
            )
            logger.warning(warning)
            warnings.append(warning)
        else:
            logger.info(f"Smoke test of {target} passed in {smoke.duration_seconds:.2f}s")

        return PreflightReport(script_path=target, smoke_test=smoke, session=session, warnings=warnings)
