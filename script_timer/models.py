"""
Data models for ledger entries, scheduler tasks and workflow outcomes.
"""

import os
import shlex
import subprocess
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class JobRecord:
    """A ledger entry for a job this tool registered with the scheduler"""
    name: str
    script_path: str
    created_at: str
    interval_minutes: int

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the ledger file's key names"""
        return {
            'name': self.name,
            'scriptPath': self.script_path,
            'createdAt': self.created_at,
            'intervalMinutes': self.interval_minutes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional['JobRecord']:
        """Create from a ledger entry. Entries without a name yield None."""
        if not isinstance(data, dict) or not data.get('name'):
            return None
        try:
            interval = int(data.get('intervalMinutes') or 0)
        except (TypeError, ValueError):
            interval = 0
        return cls(
            name=str(data['name']),
            script_path=str(data.get('scriptPath') or ''),
            created_at=str(data.get('createdAt') or ''),
            interval_minutes=interval,
        )


@dataclass
class ExternalTask:
    """A task as reported by the OS scheduler. Read-only from our side."""
    name: str
    state: str
    next_run_time: Optional[str] = None  # As reported by the scheduler
    principal: Optional[str] = None


@dataclass(frozen=True)
class Principal:
    """Identity a scheduled task runs under"""
    kind: str  # 'interactive' or 'service'
    user: str
    elevated: bool = True

    @property
    def label(self) -> str:
        suffix = " (elevated)" if self.elevated else ""
        return f"{self.kind}:{self.user}{suffix}"


@dataclass(frozen=True)
class TaskAction:
    """The program a scheduled task launches"""
    program: str
    arguments: Tuple[str, ...] = ()
    working_dir: Optional[str] = None

    @property
    def argv(self) -> List[str]:
        return [self.program, *self.arguments]

    @property
    def command_line(self) -> str:
        """Single command string, quoted for the current platform"""
        if os.name == 'nt':
            return subprocess.list2cmdline(self.argv)
        return shlex.join(self.argv)


@dataclass
class SmokeTestResult:
    """Result of the bounded-time trial run of a target script"""
    status: str  # 'passed', 'failed' or 'inconclusive'
    returncode: Optional[int] = None
    output: str = ''
    duration_seconds: float = 0.0

    @property
    def inconclusive(self) -> bool:
        return self.status == 'inconclusive'


@dataclass
class Outcome:
    """
    Result of one workflow run, rendered by the menu loop.

    ok=False always means both the ledger and the scheduler were left as
    they were before the operation.
    """
    ok: bool
    operation: str
    message: str
    job: Optional[JobRecord] = None
    task_name: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class ReconcileReport:
    """What a reconciliation pass did"""
    owned: int = 0
    removed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    error: Optional[str] = None
