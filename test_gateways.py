"""
Tests for the scheduler gateways.

The schtasks and systemd backends are driven through a fake
subprocess.run; the local backend uses a real SQLite job store.
"""

import os
import subprocess
import sys
from datetime import datetime, timedelta

import pytest

from conftest import FakeGateway
from script_timer.errors import RegistrationFailure, SchedulerError, ValidationError
from script_timer.executor import build_action
from script_timer.gateways import get_gateway
from script_timer.gateways.base import resolve_principals
from script_timer.gateways.local import LocalGateway
from script_timer.gateways.schtasks import SchtasksGateway, _round_up_to_minute
from script_timer.gateways.systemd import SystemdGateway
from script_timer.models import Principal, TaskAction

INTERACTIVE = Principal(kind="interactive", user="alice")
SERVICE = Principal(kind="service", user="SYSTEM")
ACTION = TaskAction(program="/bin/sh", arguments=("/opt/scripts/backup.sh",), working_dir="/opt/scripts")


class FakeRun:
    """Replacement for subprocess.run that answers from a handler."""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        returncode, stdout, stderr = self.handler(list(cmd))
        return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)


@pytest.fixture
def fake_run(monkeypatch):
    def install(handler):
        runner = FakeRun(handler)
        monkeypatch.setattr(subprocess, "run", runner)
        return runner
    return install


class TestGatewayBase:
    def test_register_falls_back_to_next_principal(self):
        gateway = FakeGateway()
        gateway.rejected_kinds = {"interactive"}

        task = gateway.register("PS-Timer-Job-1", datetime(2026, 10, 18, 13, 0), ACTION, [INTERACTIVE, SERVICE])

        assert task.principal == SERVICE.label
        assert [p.kind for (_, _, _, p) in gateway.registered] == ["service"]

    def test_register_reports_every_attempt(self):
        gateway = FakeGateway()
        gateway.rejected_kinds = {"interactive", "service"}

        with pytest.raises(RegistrationFailure) as excinfo:
            gateway.register("PS-Timer-Job-1", datetime(2026, 10, 18, 13, 0), ACTION, [INTERACTIVE, SERVICE])

        assert excinfo.value.name == "PS-Timer-Job-1"
        assert [label for label, _ in excinfo.value.attempts] == [INTERACTIVE.label, SERVICE.label]

    def test_list_by_prefix_stays_in_namespace(self):
        gateway = FakeGateway()
        gateway.add("PS-Timer-Job-1")
        gateway.add("PS-Timer-Job-abc")
        gateway.add("PS-Timer-Jobless")
        gateway.add("Backup-Job")

        names = sorted(t.name for t in gateway.list_by_prefix("PS-Timer-Job"))

        assert names == ["PS-Timer-Job-1", "PS-Timer-Job-abc"]

    def test_search_ignores_case_and_namespace(self):
        gateway = FakeGateway()
        gateway.add("PS-Timer-Job-1")
        gateway.add("Nightly-BACKUP")
        gateway.add("Other")

        assert [t.name for t in gateway.search("backup")] == ["Nightly-BACKUP"]
        assert len(gateway.search("job")) == 1


def test_resolve_principals_in_order():
    principals = resolve_principals(["interactive", "service"])

    assert [p.kind for p in principals] == ["interactive", "service"]
    assert principals[1].user in ("SYSTEM", "root")


def test_resolve_principals_rejects_unknown():
    with pytest.raises(ValidationError):
        resolve_principals(["nobody"])


def test_get_gateway_by_name(config):
    assert isinstance(get_gateway(config, "local"), LocalGateway)
    assert isinstance(get_gateway(config, "systemd"), SystemdGateway)
    with pytest.raises(ValueError):
        get_gateway(config, "launchd")


SCHTASKS_LIST = (
    '"HostName","TaskName","Next Run Time","Status","Run As User"\r\n'
    '"HOST","\\PS-Timer-Job-4821","10/18/2026 1:00:00 PM","Ready","alice"\r\n'
    '"HOST","\\Nightly Backup","N/A","Disabled","SYSTEM"\r\n'
    '\r\n'
    '"HostName","TaskName","Next Run Time","Status","Run As User"\r\n'
    '"HOST","\\Microsoft\\Windows\\Defrag","N/A","Ready","SYSTEM"\r\n'
)


class TestSchtasksGateway:
    def test_list_tasks_parses_csv(self, fake_run):
        fake_run(lambda cmd: (0, SCHTASKS_LIST, ""))

        tasks = SchtasksGateway().list_tasks()

        assert [t.name for t in tasks] == ["PS-Timer-Job-4821", "Nightly Backup", "Microsoft\\Windows\\Defrag"]
        assert tasks[0].state == "Ready"
        assert tasks[0].next_run_time == "10/18/2026 1:00:00 PM"
        assert tasks[1].next_run_time is None

    def test_list_failure_raises(self, fake_run):
        fake_run(lambda cmd: (1, "", "ERROR: The RPC server is unavailable."))

        with pytest.raises(SchedulerError):
            SchtasksGateway().list_tasks()

    def test_get_missing_task(self, fake_run):
        fake_run(lambda cmd: (1, "", "ERROR: The system cannot find the file specified."))

        assert SchtasksGateway().get("PS-Timer-Job-1") is None

    def test_register_builds_one_shot_command(self, fake_run):
        runner = fake_run(lambda cmd: (0, "SUCCESS", ""))

        task = SchtasksGateway().register(
            "PS-Timer-Job-1", datetime(2026, 10, 18, 12, 30, 15), ACTION, [INTERACTIVE]
        )

        cmd = runner.calls[0]
        assert cmd[:4] == ["schtasks", "/Create", "/TN", "PS-Timer-Job-1"]
        assert cmd[cmd.index("/SC") + 1] == "ONCE"
        assert cmd[cmd.index("/SD") + 1] == "10/18/2026"
        assert cmd[cmd.index("/ST") + 1] == "12:31"
        assert cmd[cmd.index("/RU") + 1] == "alice"
        assert "/IT" in cmd
        assert cmd[cmd.index("/RL") + 1] == "HIGHEST"
        assert task.name == "PS-Timer-Job-1"

    def test_register_falls_back_to_service_principal(self, fake_run):
        def handler(cmd):
            if cmd[cmd.index("/RU") + 1] == "alice":
                return 1, "", "ERROR: Access is denied."
            return 0, "SUCCESS", ""
        runner = fake_run(handler)

        task = SchtasksGateway().register("PS-Timer-Job-1", datetime(2026, 10, 18, 12, 30), ACTION, [INTERACTIVE, SERVICE])

        assert len(runner.calls) == 2
        assert "/IT" not in runner.calls[1]
        assert task.principal == "SYSTEM"

    def test_unregister_absent_task_is_noop(self, fake_run):
        runner = fake_run(lambda cmd: (1, "", "ERROR: The system cannot find the file specified."))

        SchtasksGateway().unregister("PS-Timer-Job-1")

        assert all("/Delete" not in call for call in runner.calls)

    def test_unregister_access_denied(self, fake_run):
        def handler(cmd):
            if "/Delete" in cmd:
                return 1, "", "ERROR: Access is denied."
            return 0, SCHTASKS_LIST, ""
        fake_run(handler)

        with pytest.raises(SchedulerError):
            SchtasksGateway().unregister("PS-Timer-Job-4821")

    def test_service_running(self, fake_run):
        fake_run(lambda cmd: (0, "SERVICE_NAME: Schedule\n        STATE              : 4  RUNNING", ""))

        assert SchtasksGateway().service_running() is True

    def test_start_time_never_earlier_than_requested(self):
        assert _round_up_to_minute(datetime(2026, 1, 1, 9, 59, 1)) == datetime(2026, 1, 1, 10, 0)
        assert _round_up_to_minute(datetime(2026, 1, 1, 10, 0)) == datetime(2026, 1, 1, 10, 0)


USER_TIMERS = "PS-Timer-Job-1.timer loaded active waiting script-timer job PS-Timer-Job-1\n"
SYSTEM_TIMERS = (
    "logrotate.timer loaded active waiting Daily rotation of log files\n"
    "PS-Timer-Job-2.timer loaded active waiting script-timer job PS-Timer-Job-2\n"
)


class TestSystemdGateway:
    def test_list_tasks_covers_both_scopes(self, fake_run):
        fake_run(lambda cmd: (0, USER_TIMERS if "--user" in cmd else SYSTEM_TIMERS, ""))

        tasks = SystemdGateway().list_tasks()

        assert [(t.name, t.principal) for t in tasks] == [
            ("PS-Timer-Job-1", "user"),
            ("logrotate", "system"),
            ("PS-Timer-Job-2", "system"),
        ]
        assert tasks[0].state == "active/waiting"

    def test_list_tolerates_one_failing_scope(self, fake_run):
        fake_run(lambda cmd: (1, "", "Failed to connect to bus") if "--user" in cmd else (0, SYSTEM_TIMERS, ""))

        assert len(SystemdGateway().list_tasks()) == 2

    def test_list_fails_when_every_scope_fails(self, fake_run):
        fake_run(lambda cmd: (1, "", "Failed to connect to bus"))

        with pytest.raises(SchedulerError):
            SystemdGateway().list_tasks()

    def test_get_reads_unit_properties(self, fake_run):
        def handler(cmd):
            if "--user" in cmd:
                return 0, "LoadState=not-found\nActiveState=inactive\nSubState=dead\n", ""
            return 0, "LoadState=loaded\nActiveState=active\nSubState=waiting\nNextElapseUSecRealtime=Sun 2026-10-18 13:00:00 UTC\n", ""
        fake_run(handler)

        task = SystemdGateway().get("PS-Timer-Job-2")

        assert task.state == "active/waiting"
        assert task.principal == "system"
        assert task.next_run_time == "Sun 2026-10-18 13:00:00 UTC"

    def test_register_runs_transient_timer(self, fake_run):
        runner = fake_run(lambda cmd: (0, "", "Running timer as unit: PS-Timer-Job-1.timer"))

        SystemdGateway().register(
            "PS-Timer-Job-1", datetime.now() + timedelta(minutes=10), ACTION,
            [Principal(kind="interactive", user="alice")],
        )

        cmd = runner.calls[0]
        assert cmd[:2] == ["systemd-run", "--user"]
        assert "--unit=PS-Timer-Job-1" in cmd
        on_active = next(arg for arg in cmd if arg.startswith("--on-active="))
        assert 590 <= int(on_active[len("--on-active="):-1]) <= 600
        assert "--property=WorkingDirectory=/opt/scripts" in cmd
        assert cmd[cmd.index("--") + 1:] == ACTION.argv

    def test_unregister_stops_timer_in_its_scope(self, fake_run):
        def handler(cmd):
            if "show" in cmd:
                return 0, ("LoadState=loaded\n" if "--user" in cmd else "LoadState=not-found\n"), ""
            return 0, "", ""
        runner = fake_run(handler)

        SystemdGateway().unregister("PS-Timer-Job-1")

        assert runner.calls[-1] == ["systemctl", "--user", "stop", "PS-Timer-Job-1.timer"]

    def test_unregister_unknown_timer_is_noop(self, fake_run):
        runner = fake_run(lambda cmd: (0, "LoadState=not-found\n", ""))

        SystemdGateway().unregister("PS-Timer-Job-1")

        assert not any("stop" in call for call in runner.calls)

    def test_degraded_system_counts_as_running(self, fake_run):
        fake_run(lambda cmd: (1, "degraded\n", ""))

        assert SystemdGateway().service_running() is True


class TestLocalGateway:
    @pytest.fixture
    def local(self, tmp_path):
        return LocalGateway(job_store_path=tmp_path / "jobs.db", pid_file=tmp_path / "service.pid")

    def test_register_get_list_unregister(self, local, tmp_path):
        script = tmp_path / "job.py"
        script.write_text("print('hi')\n")
        run_at = datetime.now() + timedelta(minutes=30)

        local.register("PS-Timer-Job-1", run_at, build_action(script), [INTERACTIVE])

        task = local.get("PS-Timer-Job-1")
        assert task is not None
        assert task.state == "scheduled"
        assert task.principal == INTERACTIVE.label
        assert [t.name for t in local.list_tasks()] == ["PS-Timer-Job-1"]

        local.unregister("PS-Timer-Job-1")
        local.unregister("PS-Timer-Job-1")

        assert local.get("PS-Timer-Job-1") is None
        assert local.list_tasks() == []

    def test_duplicate_name_is_rejected(self, local):
        run_at = datetime.now() + timedelta(minutes=30)
        local.register("PS-Timer-Job-1", run_at, ACTION, [INTERACTIVE])

        with pytest.raises(RegistrationFailure):
            local.register("PS-Timer-Job-1", run_at, ACTION, [INTERACTIVE])

    @pytest.mark.skipif(sys.platform == "win32" or os.geteuid() == 0, reason="needs an unprivileged POSIX user")
    def test_service_principal_requires_root(self, local):
        with pytest.raises(RegistrationFailure):
            local.register("PS-Timer-Job-1", datetime.now() + timedelta(minutes=30), ACTION, [SERVICE])

    def test_service_running_follows_pid_file(self, local):
        assert local.service_running() is False

        local.pid_file.write_text(str(os.getpid()))

        assert local.service_running() is True
