"""
Tests for the preflight validation pipeline.
"""

import pytest

from conftest import FakeExecutor
from script_timer.errors import PermissionDenied, SchedulerUnavailable, ValidationError
from script_timer.validation import ValidationPipeline, resolve_target


def test_passing_script(pipeline, executor, script):
    report = pipeline.run(str(script))

    assert report.script_path == script.resolve()
    assert report.smoke_test.status == "passed"
    assert report.warnings == []
    assert executor.calls[0][-1] == str(script.resolve())


def test_missing_admin_rights_stop_everything(config, gateway, executor, script, monkeypatch):
    monkeypatch.setattr("script_timer.validation.is_admin", lambda: False)
    pipeline = ValidationPipeline(config.with_overrides(require_admin=True), gateway, executor=executor)

    with pytest.raises(PermissionDenied):
        pipeline.run(str(script))

    assert executor.calls == []


def test_admin_rights_allow_the_run(config, gateway, executor, script, monkeypatch):
    monkeypatch.setattr("script_timer.validation.is_admin", lambda: True)
    pipeline = ValidationPipeline(config.with_overrides(require_admin=True), gateway, executor=executor)

    assert pipeline.run(str(script)).smoke_test.status == "passed"


def test_scheduler_service_down(pipeline, gateway, executor, script):
    gateway.running = False

    with pytest.raises(SchedulerUnavailable):
        pipeline.run(str(script))

    assert executor.calls == []


def test_missing_script_is_rejected_before_smoke_test(pipeline, executor, tmp_path):
    with pytest.raises(ValidationError):
        pipeline.run(str(tmp_path / "nope.ps1"))

    assert executor.calls == []


def test_smoke_test_failure_is_fatal(config, gateway, script):
    pipeline = ValidationPipeline(config, gateway, executor=FakeExecutor(returncode=2, output="boom"))

    with pytest.raises(ValidationError) as excinfo:
        pipeline.run(str(script))

    assert "exit code 2" in str(excinfo.value)
    assert "boom" in str(excinfo.value)


def test_smoke_test_timeout_is_a_warning(config, gateway, script):
    pipeline = ValidationPipeline(config, gateway, executor=FakeExecutor(timed_out=True, duration=10.0))

    report = pipeline.run(str(script))

    assert report.smoke_test.inconclusive
    assert len(report.warnings) == 1
    assert "10s" in report.warnings[0]


def test_resolve_target_strips_quotes(script):
    assert resolve_target(f'"{script}"') == script.resolve()
    assert resolve_target(f"  '{script}'  ") == script.resolve()


@pytest.mark.parametrize("entered", ["", "   ", '""'])
def test_resolve_target_requires_a_path(entered):
    with pytest.raises(ValidationError):
        resolve_target(entered)


def test_resolve_target_rejects_directories(tmp_path):
    with pytest.raises(ValidationError):
        resolve_target(str(tmp_path))


def test_real_smoke_test_runs_the_script(config, gateway, script):
    report = ValidationPipeline(config, gateway).run(str(script))

    assert report.smoke_test.status == "passed"
    assert report.smoke_test.returncode == 0
    assert "OK" in report.smoke_test.output
