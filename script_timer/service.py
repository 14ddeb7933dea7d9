"""
Local scheduler service using APScheduler.

Executes the one-shot jobs that the local gateway writes into the
persistent SQLite job store. Only needed when the local backend is used;
the schtasks and systemd backends rely on the OS scheduler instead.

Provides:
- Persistent job storage (SQLite, shared with the gateway)
- Job event logging
- PID file for health checks from other processes
"""

import atexit
import json
import logging
import os
import signal
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from apscheduler.events import (
    EVENT_JOB_ADDED,
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    EVENT_JOB_REMOVED
)
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.background import BackgroundScheduler

from script_timer.config import TimerConfig

logger = logging.getLogger(__name__)


def job_store_url(path: Path) -> str:
    return f"sqlite:///{Path(path)}"


def _is_process_running(pid: int) -> bool:
    """Check if a process with the given PID is running."""
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
        return True
    except OSError:
        return False


def is_service_running(pid_file: Path) -> Tuple[bool, Optional[int]]:
    """
    Check if the service is running by reading its PID file.

    Returns:
        Tuple of (is_running, pid). If not running, pid is None.
    """
    pid_file = Path(pid_file)
    if not pid_file.exists():
        return False, None

    try:
        pid = int(pid_file.read_text().strip())
    except (ValueError, OSError):
        return False, None

    if _is_process_running(pid):
        return True, pid

    # Stale PID file, clean it up
    try:
        pid_file.unlink()
    except OSError:
        pass
    return False, None


def get_service_info(config: TimerConfig) -> Optional[Dict[str, Any]]:
    """
    Get information about the running service.

    Returns:
        Dict with service info or None if not running.
    """
    running, pid = is_service_running(config.pid_file)
    if not running:
        return None

    info = {'pid': pid, 'running': True, 'data_dir': str(config.data_dir)}
    try:
        with open(config.service_info_file, 'r') as f:
            info.update(json.load(f))
        info['pid'] = pid
    except (OSError, json.JSONDecodeError):
        pass
    return info


class TimerService:
    """
    Scheduler service executing jobs from the shared job store.

    Other processes add jobs to the store at any time, so the run loop
    wakes the scheduler every poll interval to pick them up.
    """

    def __init__(self, config: TimerConfig, max_workers: int = 5):
        """
        Initialize the service.

        Args:
            config: Timer configuration (job store and PID file locations)
            max_workers: Maximum number of concurrent job executions
        """
        self.config = config
        self.job_store_path = config.job_store_path
        self.job_store_path.parent.mkdir(parents=True, exist_ok=True)
        self._stopping = False

        self.scheduler = BackgroundScheduler(
            jobstores={'default': SQLAlchemyJobStore(url=job_store_url(self.job_store_path))},
            executors={'default': ThreadPoolExecutor(max_workers)},
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
            }
        )
        self._setup_event_listeners()

        logger.info(f"Timer service initialized with job store: {self.job_store_path}")

    def _setup_event_listeners(self):
        """Setup APScheduler event listeners for logging."""

        def job_executed_listener(event):
            logger.info(f"Job '{event.job_id}' finished: {event.retval}")

        def job_error_listener(event):
            logger.error(f"Job '{event.job_id}' raised exception: {event.exception}\n{event.traceback}")

        def job_missed_listener(event):
            logger.warning(f"Job '{event.job_id}' missed its scheduled run time")

        def job_added_listener(event):
            logger.info(f"Job '{event.job_id}' added to scheduler")

        def job_removed_listener(event):
            logger.info(f"Job '{event.job_id}' removed from scheduler")

        self.scheduler.add_listener(job_executed_listener, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
        self.scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)
        self.scheduler.add_listener(job_added_listener, EVENT_JOB_ADDED)
        self.scheduler.add_listener(job_removed_listener, EVENT_JOB_REMOVED)

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down...")
            self._stopping = True

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def get_jobs(self) -> List[Dict[str, Any]]:
        """
        Get list of all pending jobs.

        Returns:
            List of job information dictionaries
        """
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append({
                'id': job.id,
                'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
                'command': ' '.join(job.kwargs.get('argv', [])),
            })
        return jobs

    def start(self) -> bool:
        """
        Start the scheduler.

        Returns:
            False if another service instance is already running
        """
        running, pid = is_service_running(self.config.pid_file)
        if running:
            logger.warning(f"Timer service is already running (PID: {pid})")
            return False

        logger.info("Starting timer service...")
        self.scheduler.start()
        self._write_pid_file()
        logger.info("Timer service started")

        jobs = self.get_jobs()
        logger.info(f"{len(jobs)} pending job(s)")
        for job in jobs:
            logger.info(f"  - {job['id']}: next run at {job['next_run']}")
        return True

    def run_forever(self, poll_seconds: Optional[int] = None):
        """Block until a signal arrives, waking the scheduler periodically."""
        poll_seconds = poll_seconds or self.config.service_poll_seconds
        self._setup_signal_handlers()
        next_wakeup = time.monotonic() + poll_seconds
        while not self._stopping and self.scheduler.running:
            time.sleep(1)
            if time.monotonic() >= next_wakeup:
                self.scheduler.wakeup()
                next_wakeup = time.monotonic() + poll_seconds
        self.stop()

    def _write_pid_file(self):
        """Write the current process PID and service info files."""
        pid_file = self.config.pid_file
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        pid_file.write_text(str(os.getpid()))
        logger.debug(f"Wrote PID file: {pid_file}")

        info = {
            'pid': os.getpid(),
            'started_at': datetime.now().isoformat(),
            'job_store_path': str(self.job_store_path),
            'data_dir': str(self.config.data_dir),
            'log_file': str(self.config.log_file),
            'python': sys.executable,
        }
        try:
            with open(self.config.service_info_file, 'w') as f:
                json.dump(info, f, indent=2)
        except OSError as e:
            logger.warning(f"Failed to write service info file: {e}")

        atexit.register(self._remove_pid_file)

    def _remove_pid_file(self):
        """Remove the PID and info files."""
        for path in (self.config.pid_file, self.config.service_info_file):
            try:
                if path.exists():
                    path.unlink()
                    logger.debug(f"Removed {path}")
            except OSError:
                pass

    def stop(self, wait: bool = True):
        """
        Stop the scheduler.

        Args:
            wait: If True, wait for running jobs to complete
        """
        if self.scheduler.running:
            logger.info("Stopping timer service...")
            self.scheduler.shutdown(wait=wait)
            self._remove_pid_file()
            logger.info("Timer service stopped")
        else:
            logger.warning("Timer service is not running")
