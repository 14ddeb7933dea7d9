#!/usr/bin/env python3
"""
Basic Usage Examples for script_timer

Drives the same workflows as the interactive menu from Python code,
against a throwaway data directory and the local job store backend.
Run `script-timer-service start --data-dir <dir>` to have the jobs
actually fire.
"""

import sys
import tempfile
from pathlib import Path

# Add parent directory to path for imports (if running as standalone script)
sys.path.insert(0, str(Path(__file__).parent.parent))

from script_timer import JobCreator, JobRemover, LedgerStore, Reconciler, TimerConfig, get_gateway


def make_script(directory: Path) -> Path:
    script = directory / "hello.py"
    script.write_text("print('OK')\n")
    return script


def example_1_create(config, ledger, gateway, script):
    """Example 1: Schedule a script to run once in 10 minutes"""
    print("\n" + "=" * 60)
    print("Example 1: Create a timed run")
    print("=" * 60)

    creator = JobCreator(config, ledger, gateway)
    outcome = creator.create(str(script), 10)

    print(f"\n  ok={outcome.ok}: {outcome.message}")
    for warning in outcome.warnings:
        print(f"  warning: {warning}")
    return outcome.task_name


def example_2_list(ledger, gateway, prefix):
    """Example 2: Compare the ledger with the scheduler"""
    print("\n" + "=" * 60)
    print("Example 2: List ledger entries and their scheduler state")
    print("=" * 60)

    states = {task.name: task.state for task in gateway.list_by_prefix(prefix)}
    for record in ledger.load():
        print(f"  {record.name}: {record.script_path} "
              f"({record.interval_minutes} min) -> {states.get(record.name, 'missing')}")


def example_3_reconcile(config, ledger, gateway):
    """Example 3: Remove owned tasks the ledger does not know about"""
    print("\n" + "=" * 60)
    print("Example 3: Reconcile")
    print("=" * 60)

    report = Reconciler(config, ledger, gateway).run()
    print(f"\n  owned={report.owned} removed={report.removed} failed={report.failed}")


def example_4_delete(config, ledger, gateway):
    """Example 4: Delete the first ledger entry"""
    print("\n" + "=" * 60)
    print("Example 4: Delete by index")
    print("=" * 60)

    outcome = JobRemover(config, ledger, gateway).remove_by_index(1, "y")
    print(f"\n  ok={outcome.ok}: {outcome.message}")


def main():
    """Run all examples"""
    print("\n" + "=" * 60)
    print("SCRIPT TIMER - USAGE EXAMPLES")
    print("=" * 60)

    with tempfile.TemporaryDirectory() as tmp:
        data_dir = Path(tmp)
        config = TimerConfig.for_directory(data_dir, backend="local", require_admin=False)
        ledger = LedgerStore(config.ledger_path)
        gateway = get_gateway(config)
        script = make_script(data_dir)

        # The local backend only reports healthy while its service runs
        if not gateway.service_running():
            print("\nscript-timer-service is not running for this data directory;")
            print("creation will be refused by the preflight checks.")

        example_1_create(config, ledger, gateway, script)
        example_2_list(ledger, gateway, config.name_prefix)
        example_3_reconcile(config, ledger, gateway)
        example_4_delete(config, ledger, gateway)

    print("\n" + "=" * 60)
    print("All examples completed")
    print("=" * 60 + "\n")


if __name__ == "__main__":
    main()
