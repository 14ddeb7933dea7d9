"""
Script execution for smoke tests and scheduled runs.

Runs a target script as a child process with a bounded wait. A child
that outlives its timeout is terminated along with its process group,
and any child still alive when the tool exits is terminated as well.
"""

import atexit
import logging
import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Set

from script_timer.models import TaskAction

logger = logging.getLogger(__name__)

# Seconds between terminate and kill when cancelling a worker
KILL_GRACE_SECONDS = 2


def build_action(script_path: Path) -> TaskAction:
    """
    Build the command that runs a script, picking the interpreter by suffix.

    Args:
        script_path: Absolute path to the script

    Returns:
        TaskAction running the script from its own directory
    """
    script_path = Path(script_path)
    suffix = script_path.suffix.lower()
    target = str(script_path)
    working_dir = str(script_path.parent)

    if suffix == '.ps1':
        program = 'powershell.exe' if os.name == 'nt' else 'pwsh'
        arguments = ('-NoProfile', '-ExecutionPolicy', 'Bypass', '-File', target)
    elif suffix == '.py':
        program = sys.executable
        arguments = (target,)
    elif suffix == '.sh':
        program = '/bin/sh'
        arguments = (target,)
    elif suffix in ('.bat', '.cmd'):
        program = 'cmd.exe'
        arguments = ('/c', target)
    else:
        program = target
        arguments = ()

    return TaskAction(program=program, arguments=arguments, working_dir=working_dir)


@dataclass
class ExecutionResult:
    """Outcome of one child process run"""
    returncode: Optional[int]
    stdout: str
    stderr: str
    timed_out: bool
    duration_seconds: float

    @property
    def output(self) -> str:
        return '\n'.join(part for part in (self.stdout, self.stderr) if part)


# Workers started by this process and not yet reaped
_live_processes: Set[subprocess.Popen] = set()
_live_lock = threading.Lock()


def _terminate_group(process: subprocess.Popen):
    """Terminate a worker and its children, escalating to kill."""
    if process.poll() is not None:
        return
    try:
        if os.name == 'nt':
            process.send_signal(signal.CTRL_BREAK_EVENT)
        else:
            os.killpg(process.pid, signal.SIGTERM)
    except (OSError, ValueError):
        process.terminate()

    try:
        process.wait(timeout=KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        logger.warning(f"Worker {process.pid} ignored termination, killing it")
        try:
            if os.name == 'nt':
                process.kill()
            else:
                os.killpg(process.pid, signal.SIGKILL)
        except OSError:
            process.kill()
        process.wait()


@atexit.register
def _terminate_live_processes():
    with _live_lock:
        processes = list(_live_processes)
    for process in processes:
        _terminate_group(process)


class CommandExecutor:
    """
    Runs commands as isolated child processes with a deadline.

    Output is read on background threads and logged line by line, so a
    chatty child can never block on a full pipe.
    """

    def run(
        self,
        argv: List[str],
        timeout: Optional[float] = None,
        working_dir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        job_name: Optional[str] = None
    ) -> ExecutionResult:
        """
        Run a command and wait for it, at most `timeout` seconds.

        Args:
            argv: Program and arguments
            timeout: Seconds to wait before cancelling (None = wait forever)
            working_dir: Working directory for the child
            env: Environment for the child (None = inherit)
            job_name: Name used as log prefix

        Returns:
            ExecutionResult. timed_out is True if the child was cancelled.

        Raises:
            OSError: If the program could not be started
        """
        log_prefix = f"[{job_name}] " if job_name else ""
        logger.info(f"{log_prefix}Executing: {subprocess.list2cmdline(argv) if os.name == 'nt' else ' '.join(argv)}")

        popen_kwargs = {}
        if os.name == 'nt':
            popen_kwargs['creationflags'] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            popen_kwargs['start_new_session'] = True

        start = time.monotonic()
        process = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors='replace',
            cwd=working_dir,
            env=env,
            **popen_kwargs
        )
        with _live_lock:
            _live_processes.add(process)

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []

        def read_stream(stream, output_list, log_func):
            for line in stream:
                line = line.rstrip('\n')
                output_list.append(line)
                log_func(f"{log_prefix}{line}")

        stdout_thread = threading.Thread(
            target=read_stream,
            args=(process.stdout, stdout_lines, logger.info),
            daemon=True
        )
        stderr_thread = threading.Thread(
            target=read_stream,
            args=(process.stderr, stderr_lines, logger.warning),
            daemon=True
        )
        stdout_thread.start()
        stderr_thread.start()

        timed_out = False
        try:
            process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning(f"{log_prefix}Still running after {timeout}s, cancelling")
            _terminate_group(process)
        finally:
            with _live_lock:
                _live_processes.discard(process)

        # Grandchildren may hold the pipes open after a cancel
        stdout_thread.join(timeout=KILL_GRACE_SECONDS)
        stderr_thread.join(timeout=KILL_GRACE_SECONDS)
        duration = time.monotonic() - start

        result = ExecutionResult(
            returncode=None if timed_out else process.returncode,
            stdout='\n'.join(stdout_lines),
            stderr='\n'.join(stderr_lines),
            timed_out=timed_out,
            duration_seconds=duration
        )
        if not timed_out:
            logger.info(f"{log_prefix}Exited with code {process.returncode} after {duration:.2f}s")
        return result


# Module-level function so APScheduler can store a textual reference to it
def execute_scheduled_script(
    job_name: str,
    argv: List[str],
    working_dir: Optional[str] = None,
    timeout: Optional[float] = None,
    principal: Optional[str] = None
) -> Dict[str, object]:
    """
    Run a scheduled job's command. Invoked by the local scheduler service.

    Args:
        job_name: Name of the scheduled task
        argv: Program and arguments
        working_dir: Working directory for the script
        timeout: Optional cap on the run time in seconds
        principal: Principal the job was registered under (logged only)

    Returns:
        Execution summary dictionary
    """
    logger.info(f"[{job_name}] Starting scheduled run as {principal or 'current user'}")
    result = CommandExecutor().run(argv, timeout=timeout, working_dir=working_dir, job_name=job_name)
    if result.timed_out:
        logger.error(f"[{job_name}] Cancelled after {timeout}s")
    elif result.returncode != 0:
        logger.error(f"[{job_name}] Failed with exit code {result.returncode}")
    return {
        'job_name': job_name,
        'returncode': result.returncode,
        'timed_out': result.timed_out,
        'duration_seconds': round(result.duration_seconds, 2),
    }
