"""Shared fixtures: temp-dir config, ledger, in-memory scheduler and executor."""

import os
from datetime import datetime
from typing import Dict, List, Optional

import pytest

from script_timer.config import TimerConfig
from script_timer.errors import SchedulerError
from script_timer.executor import ExecutionResult
from script_timer.gateways.base import SchedulerGateway
from script_timer.ledger import LedgerStore
from script_timer.models import ExternalTask, JobRecord, Principal, TaskAction
from script_timer.validation import ValidationPipeline
from script_timer.workflows import JobCreator

PREFIX = "PS-Timer-Job"


class FakeGateway(SchedulerGateway):
    """In-memory scheduler with switches for the failure modes we care about."""

    def __init__(self):
        self.tasks: Dict[str, ExternalTask] = {}
        self.running = True
        self.rejected_kinds = set()
        self.hide_after_register = False
        self.unregister_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self.registered: List[tuple] = []
        self.unregistered: List[str] = []

    @property
    def name(self) -> str:
        return "fake"

    @property
    def is_available(self) -> bool:
        return True

    def service_running(self) -> bool:
        return self.running

    def add(self, name: str, state: str = "Ready") -> ExternalTask:
        task = ExternalTask(name=name, state=state, next_run_time="2026-10-18T13:00:00")
        self.tasks[name] = task
        return task

    def list_tasks(self) -> List[ExternalTask]:
        if self.list_error:
            raise self.list_error
        return list(self.tasks.values())

    def get(self, name: str) -> Optional[ExternalTask]:
        return self.tasks.get(name)

    def _register_as(self, name: str, run_at: datetime, action: TaskAction, principal: Principal) -> ExternalTask:
        if principal.kind in self.rejected_kinds:
            raise SchedulerError(f"{principal.kind} rejected")
        self.registered.append((name, run_at, action, principal))
        task = ExternalTask(name=name, state="Ready", next_run_time=run_at.isoformat(), principal=principal.label)
        if not self.hide_after_register:
            self.tasks[name] = task
        return task

    def unregister(self, name: str) -> None:
        if self.unregister_error:
            raise self.unregister_error
        self.unregistered.append(name)
        self.tasks.pop(name, None)


class FakeExecutor:
    """Stands in for CommandExecutor; returns a canned result."""

    def __init__(self, returncode: Optional[int] = 0, output: str = "OK", timed_out: bool = False, duration: float = 2.0):
        self.result = ExecutionResult(
            returncode=None if timed_out else returncode,
            stdout=output,
            stderr="",
            timed_out=timed_out,
            duration_seconds=duration,
        )
        self.calls: List[list] = []

    def run(self, argv, timeout=None, working_dir=None, env=None, job_name=None) -> ExecutionResult:
        self.calls.append(list(argv))
        return self.result


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("SCRIPT_TIMER_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def config(tmp_path):
    return TimerConfig.for_directory(tmp_path / "data", name_prefix=PREFIX, require_admin=False)


@pytest.fixture
def ledger(config):
    return LedgerStore(config.ledger_path)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def pipeline(config, gateway, executor):
    return ValidationPipeline(config, gateway, executor=executor)


@pytest.fixture
def creator(config, ledger, gateway, pipeline):
    return JobCreator(config, ledger, gateway, pipeline=pipeline)


@pytest.fixture
def script(tmp_path):
    path = tmp_path / "scripts" / "report.py"
    path.parent.mkdir(parents=True)
    path.write_text("print('OK')\n")
    return path


def make_record(name: str, script_path: str = "/opt/scripts/backup.sh", minutes: int = 30) -> JobRecord:
    return JobRecord(
        name=name,
        script_path=script_path,
        created_at="2026-10-18T12:00:00",
        interval_minutes=minutes,
    )
