"""
Command-line interfaces.

script-timer          Interactive menu: create, list/delete and search/delete
                      timed runs. Orphaned tasks are reconciled on start.
script-timer-service  Runs the local scheduler service that executes jobs
                      registered through the local backend.
"""

import argparse
import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from dotenv import load_dotenv

from script_timer import __version__
from script_timer.config import TimerConfig
from script_timer.errors import ScriptTimerError
from script_timer.gateways import get_gateway
from script_timer.gateways.base import SchedulerGateway
from script_timer.ledger import LedgerStore
from script_timer.metadata import ensure_metadata
from script_timer.models import ExternalTask, Outcome, ReconcileReport
from script_timer.workflows import JobCreator, JobRemover, Reconciler, failure_outcome

load_dotenv()

logger = logging.getLogger(__name__)

GREEN = "\033[92m"
RED = "\033[91m"
YELLOW = "\033[93m"
BOLD = "\033[1m"
RESET = "\033[0m"

QUIT_TOKENS = ("4", "q")


def setup_logging(config: TimerConfig, verbose: bool = False):
    """Setup console and transcript logging."""
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if getattr(handler, '_script_timer', False):
            root_logger.removeHandler(handler)
            handler.close()

    # Console handler; the menu prints outcomes itself
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    console_handler._script_timer = True

    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(console_handler)

    # Transcript file handler (append-only)
    log_path = Path(config.log_file).expanduser()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding='utf-8')
    except OSError as e:
        logger.warning(f"Cannot write transcript to {log_path}: {e}")
        return
    file_handler.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    ))
    file_handler._script_timer = True
    root_logger.addHandler(file_handler)

    # APScheduler logs every store open at INFO
    logging.getLogger('apscheduler').setLevel(logging.WARNING)


class TimerApp:
    """
    Interactive menu over the job workflows.

    Each menu token maps to a handler that gathers its prompts, runs one
    workflow and returns an Outcome (or None when the operator backs out).
    The loop only renders and logs outcomes.
    """

    def __init__(
        self,
        config: TimerConfig,
        gateway: SchedulerGateway,
        ledger: Optional[LedgerStore] = None,
        creator: Optional[JobCreator] = None,
        prompt: Callable[[str], str] = input,
        echo: Callable[[str], None] = print
    ):
        self.config = config
        self.gateway = gateway
        self.ledger = ledger or LedgerStore(config.ledger_path)
        self.creator = creator or JobCreator(config, self.ledger, gateway)
        self.remover = JobRemover(config, self.ledger, gateway)
        self.reconciler = Reconciler(config, self.ledger, gateway)
        self.prompt = prompt
        self.echo = echo

        self.commands: Dict[str, Callable[[], Optional[Outcome]]] = {
            "1": self.handle_create,
            "2": self.handle_list,
            "3": self.handle_search,
        }

    def ask(self, question: str) -> str:
        return self.prompt(question).strip()

    def render_menu(self):
        self.echo("")
        self.echo("┌─────────────────────────────────────────────┐")
        self.echo(f"│  SCRIPT TIMER  v{__version__:<28}│")
        self.echo("└─────────────────────────────────────────────┘")
        self.echo(f"  Backend: {self.gateway.name}    Ledger: {self.config.ledger_path}")
        self.echo("")
        self.echo("  1) Create a new timed run")
        self.echo("  2) List and manage scheduled timers")
        self.echo("  3) Search and delete scheduler tasks")
        self.echo("  4) Quit (or q)")
        self.echo("")

    def render_outcome(self, outcome: Outcome):
        if outcome.ok:
            self.echo(f"{GREEN}✓ {outcome.message}{RESET}")
        else:
            self.echo(f"{RED}✗ {outcome.message}{RESET}")
        for warning in outcome.warnings:
            self.echo(f"{YELLOW}! {warning}{RESET}")
        logger.info(f"[{outcome.operation}] {'ok' if outcome.ok else 'failed'}: {outcome.message}")

    def render_reconcile(self, report: ReconcileReport):
        if report.error:
            self.echo(f"{YELLOW}! Could not check for orphaned tasks: {report.error}{RESET}")
            return
        if report.removed:
            self.echo(f"Removed {len(report.removed)} orphaned task(s): {', '.join(report.removed)}")
        for name in report.failed:
            self.echo(f"{YELLOW}! Could not remove orphaned task {name}{RESET}")

    def reconcile(self) -> ReconcileReport:
        report = self.reconciler.run()
        self.render_reconcile(report)
        return report

    def handle_create(self) -> Optional[Outcome]:
        script_path = self.ask("Path of the script to run: ")
        if not script_path:
            return None

        self.echo("\n  Run it in:")
        for choice, minutes in self.config.interval_choices().items():
            label = f"{minutes // 60} hour(s)" if minutes >= 60 else f"{minutes} minute(s)"
            self.echo(f"    {choice}) {label}")
        choice = self.ask(f"Choice (0-{len(self.config.intervals) - 1}): ")

        try:
            minutes = self.config.interval_for_choice(choice)
        except ScriptTimerError as e:
            return failure_outcome("create", e, script_path)

        self.echo(f"Checking {script_path} (this can take up to {self.config.smoke_test_timeout}s)...")
        return self.creator.create(script_path, minutes)

    def _task_states(self) -> Dict[str, str]:
        try:
            return {task.name: task.state for task in self.gateway.list_by_prefix(self.config.name_prefix)}
        except Exception as e:
            logger.warning(f"Could not read task states: {e}")
            return {}

    def handle_list(self) -> Optional[Outcome]:
        records = self.remover.list_jobs()
        if not records:
            self.echo("  No scheduled timers in the ledger.")
            return None

        states = self._task_states()
        self.echo(f"\n  {len(records)} scheduled timer(s):\n")
        for position, record in enumerate(records, start=1):
            state = states.get(record.name, "missing from scheduler")
            self.echo(f"  {position:>3}. {BOLD}{record.name}{RESET}")
            self.echo(f"       Script:   {record.script_path}")
            self.echo(f"       Delay:    {record.interval_minutes} min (created {record.created_at})")
            self.echo(f"       State:    {state}")

        index = self.ask("\nNumber to delete (blank to go back): ")
        if not index:
            return None
        confirmation = self.ask(f"Delete timer #{index}? (y/n): ")
        return self.remover.remove_by_index(index, confirmation)

    def _render_matches(self, matches: List[ExternalTask]):
        namespace = f"{self.config.name_prefix}-"
        for position, task in enumerate(matches, start=1):
            owned = "" if task.name.startswith(namespace) else f"  {YELLOW}(not created by this tool){RESET}"
            next_run = task.next_run_time or "-"
            self.echo(f"  {position:>3}. {task.name}  [{task.state}]  next: {next_run}{owned}")

    def handle_search(self) -> Optional[Outcome]:
        text = self.ask("Search task names for: ")
        try:
            matches = self.remover.search(text)
        except Exception as e:
            return failure_outcome("search-delete", e, text)

        if not matches:
            return Outcome(ok=False, operation="search-delete", message=f"No tasks match '{text}'")

        self.echo(f"\n  {len(matches)} matching task(s):\n")
        self._render_matches(matches)

        index = self.ask("\nNumber to delete (blank to go back): ")
        if not index:
            return None
        try:
            task = self.remover.select(matches, index)
        except ScriptTimerError as e:
            return failure_outcome("search-delete", e, text)

        confirmation = self.ask(f"Delete scheduler task '{task.name}'? (y/n): ")
        return self.remover.remove_task(task.name, confirmation)

    def run(self) -> int:
        """Run the menu loop until the operator quits. Always returns 0."""
        while True:
            self.render_menu()
            try:
                token = self.ask("Select an option: ").lower()
            except (EOFError, KeyboardInterrupt):
                self.echo("")
                break

            if token in QUIT_TOKENS:
                break

            handler = self.commands.get(token)
            if handler is None:
                self.echo(f"{YELLOW}Unknown option '{token}'{RESET}")
                continue

            try:
                outcome = handler()
            except (EOFError, KeyboardInterrupt):
                self.echo("\nCancelled")
                continue
            except Exception as e:
                outcome = failure_outcome(handler.__name__.replace("handle_", ""), e)
            if outcome is not None:
                self.render_outcome(outcome)

        logger.info("Script timer exiting")
        return 0


def main() -> int:
    """Entry point for the interactive menu."""
    try:
        config = TimerConfig.load()
    except ValueError as e:
        print(f"{RED}{e}{RESET}", file=sys.stderr)
        return 1

    setup_logging(config, verbose=bool(os.environ.get('SCRIPT_TIMER_VERBOSE')))
    logger.info(f"Script timer {__version__} starting (data dir {config.data_dir})")
    ensure_metadata(config, __version__)

    try:
        gateway = get_gateway(config)
    except ValueError as e:
        logger.error(f"Failed to select scheduler backend: {e}")
        print(f"{RED}{e}{RESET}", file=sys.stderr)
        return 1
    logger.info(f"Using {gateway.name} scheduler backend")

    app = TimerApp(config, gateway)
    app.reconcile()
    return app.run()


def cmd_start(args, config: TimerConfig):
    """Start the local scheduler service in the foreground."""
    # Imported here so the menu never loads APScheduler unless needed
    from script_timer.service import TimerService

    logger.info("Starting timer service...")
    try:
        service = TimerService(config, max_workers=args.workers)
        if not service.start():
            sys.exit(1)
        logger.info("Running in foreground mode. Press Ctrl+C to stop.")
        service.run_forever(poll_seconds=args.poll_seconds)
    except Exception as e:
        logger.error(f"Failed to start timer service: {e}", exc_info=True)
        sys.exit(1)


def cmd_stop(args, config: TimerConfig):
    """Stop the local scheduler service."""
    from script_timer.service import is_service_running

    running, pid = is_service_running(config.pid_file)
    if not running:
        logger.warning("Timer service does not appear to be running (no live PID file)")
        return

    try:
        logger.info(f"Stopping timer service (PID: {pid})...")
        os.kill(pid, signal.SIGTERM)

        for _ in range(10):
            time.sleep(1)
            running, _ = is_service_running(config.pid_file)
            if not running:
                logger.info("Timer service stopped successfully")
                return

        logger.warning("Timer service did not stop gracefully, killing it")
        os.kill(pid, getattr(signal, 'SIGKILL', signal.SIGTERM))
        config.pid_file.unlink(missing_ok=True)

    except OSError as e:
        logger.error(f"Failed to stop timer service: {e}")
        sys.exit(1)


def cmd_status(args, config: TimerConfig):
    """Show service status and pending jobs."""
    from script_timer.gateways.local import LocalGateway
    from script_timer.service import get_service_info

    print("\n┌─────────────────────────────────────────────────────────────────┐")
    print("│                    SCRIPT TIMER SERVICE                         │")
    print("└─────────────────────────────────────────────────────────────────┘\n")

    info = get_service_info(config)
    if info:
        print(f"  Status:     {GREEN}● Running{RESET}")
        print(f"  PID:        {info['pid']}")
        if info.get('started_at'):
            print(f"  Started:    {info['started_at']}")
        print(f"  Data Dir:   {info.get('data_dir', 'N/A')}")
        print(f"  Job Store:  {info.get('job_store_path', config.job_store_path)}")
    else:
        print(f"  Status:     {RED}○ Not Running{RESET}")
        print("\n  Start it with: script-timer-service start")

    try:
        tasks = LocalGateway.from_config(config).list_tasks()
    except ScriptTimerError as e:
        logger.error(f"Failed to read job store: {e}")
        sys.exit(1)

    print(f"\n  Pending Jobs: {len(tasks)}")
    for task in tasks:
        print(f"    {task.name:<32} next: {task.next_run_time or 'N/A'}")
    print()


def service_main(argv: Optional[List[str]] = None):
    """Entry point for script-timer-service."""
    parser = argparse.ArgumentParser(
        description='Local scheduler service for script-timer jobs',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the service (blocks until Ctrl+C or SIGTERM)
  script-timer-service start

  # Check what is pending
  script-timer-service status

  # Stop a running service
  script-timer-service stop
        """
    )
    parser.add_argument('--data-dir', type=str, help='Data directory (default: $SCRIPT_TIMER_HOME or ~/.script_timer)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    start_parser = subparsers.add_parser('start', help='Run the service in the foreground')
    start_parser.add_argument(
        '--poll-seconds',
        type=int,
        default=None,
        help='How often to check the job store for new jobs (default: 30)'
    )
    start_parser.add_argument(
        '--workers',
        type=int,
        default=5,
        help='Maximum concurrent jobs (default: 5)'
    )
    start_parser.set_defaults(func=cmd_start)

    stop_parser = subparsers.add_parser('stop', help='Stop the running service')
    stop_parser.set_defaults(func=cmd_stop)

    status_parser = subparsers.add_parser('status', help='Show service status and pending jobs')
    status_parser.set_defaults(func=cmd_status)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        config = TimerConfig.load(args.data_dir)
    except ValueError as e:
        print(f"{RED}{e}{RESET}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config, verbose=args.verbose)
    if args.command == 'start':
        # The service has no menu, so its console shows progress
        for handler in logging.getLogger().handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
                handler.setLevel(logging.DEBUG if args.verbose else logging.INFO)

    args.func(args, config)


if __name__ == "__main__":
    sys.exit(main())
