"""Local scheduler backend backed by an APScheduler job store.

Jobs are written to the SQLite store shared with script-timer-service,
which executes them. The gateway itself never runs jobs: it opens the
store through a paused scheduler for each call.
"""

import logging
import os
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

from apscheduler.job import Job
from apscheduler.jobstores.base import ConflictingIdError, JobLookupError
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.exc import SQLAlchemyError

from script_timer.config import TimerConfig
from script_timer.errors import SchedulerError
from script_timer.gateways.base import SchedulerGateway
from script_timer.models import ExternalTask, Principal, TaskAction
from script_timer.service import is_service_running, job_store_url

logger = logging.getLogger(__name__)

JOB_FUNC = "script_timer.executor:execute_scheduled_script"

# A run missed while the service was down still fires within this window
MISFIRE_GRACE_SECONDS = 3600


class LocalGateway(SchedulerGateway):
    """APScheduler job store backend, executed by script-timer-service."""

    def __init__(self, job_store_path: Path, pid_file: Path):
        self.job_store_path = Path(job_store_path)
        self.pid_file = Path(pid_file)

    @classmethod
    def from_config(cls, config: TimerConfig) -> 'LocalGateway':
        return cls(job_store_path=config.job_store_path, pid_file=config.pid_file)

    @property
    def name(self) -> str:
        return "local"

    @property
    def is_available(self) -> bool:
        return True

    def service_running(self) -> bool:
        running, _ = is_service_running(self.pid_file)
        return running

    @contextmanager
    def _scheduler(self) -> Iterator[BackgroundScheduler]:
        """Open the job store through a scheduler that never runs jobs."""
        try:
            self.job_store_path.parent.mkdir(parents=True, exist_ok=True)
            scheduler = BackgroundScheduler(
                jobstores={'default': SQLAlchemyJobStore(url=job_store_url(self.job_store_path))}
            )
            scheduler.start(paused=True)
        except (SQLAlchemyError, OSError) as e:
            raise SchedulerError(f"Cannot open job store {self.job_store_path}: {e}") from e

        try:
            yield scheduler
        except (SQLAlchemyError, OSError) as e:
            raise SchedulerError(f"Job store {self.job_store_path} failed: {e}") from e
        finally:
            scheduler.shutdown(wait=False)

    @staticmethod
    def _to_task(job: Job) -> ExternalTask:
        return ExternalTask(
            name=job.id,
            state="scheduled" if job.next_run_time else "paused",
            next_run_time=job.next_run_time.isoformat() if job.next_run_time else None,
            principal=job.kwargs.get('principal'),
        )

    def list_tasks(self) -> List[ExternalTask]:
        with self._scheduler() as scheduler:
            return [self._to_task(job) for job in scheduler.get_jobs()]

    def get(self, name: str) -> Optional[ExternalTask]:
        with self._scheduler() as scheduler:
            job = scheduler.get_job(name)
            return self._to_task(job) if job else None

    def _register_as(
        self,
        name: str,
        run_at: datetime,
        action: TaskAction,
        principal: Principal,
    ) -> ExternalTask:
        if principal.kind == 'service':
            # The service runs jobs as whoever started it
            if os.name == 'nt' or os.geteuid() != 0:
                raise SchedulerError("service principal requires running as root")

        with self._scheduler() as scheduler:
            try:
                job = scheduler.add_job(
                    JOB_FUNC,
                    trigger='date',
                    run_date=run_at,
                    id=name,
                    name=name,
                    misfire_grace_time=MISFIRE_GRACE_SECONDS,
                    kwargs={
                        'job_name': name,
                        'argv': action.argv,
                        'working_dir': action.working_dir,
                        'principal': principal.label,
                    }
                )
            except ConflictingIdError as e:
                raise SchedulerError(f"a job named '{name}' already exists") from e
            return self._to_task(job)

    def unregister(self, name: str) -> None:
        with self._scheduler() as scheduler:
            try:
                scheduler.remove_job(name)
            except JobLookupError:
                logger.info(f"Job '{name}' not in the job store, nothing to remove")
                return
        logger.info(f"Removed job '{name}' from the job store")
