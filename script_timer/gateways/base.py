"""Abstract base for OS scheduler gateways."""

import getpass
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Sequence

from script_timer.errors import RegistrationFailure, SchedulerError, ValidationError
from script_timer.models import ExternalTask, Principal, TaskAction

logger = logging.getLogger(__name__)


def current_user() -> str:
    """Current account name, domain-qualified on Windows."""
    user = os.environ.get('USERNAME') or getpass.getuser()
    domain = os.environ.get('USERDOMAIN')
    if os.name == 'nt' and domain:
        return f"{domain}\\{user}"
    return user


def resolve_principals(kinds: Sequence[str]) -> List[Principal]:
    """
    Turn configured principal kinds into concrete principals, in order.

    Args:
        kinds: Principal kinds, e.g. ("interactive", "service")

    Raises:
        ValidationError: If a kind is not recognised
    """
    principals = []
    for kind in kinds:
        if kind == 'interactive':
            principals.append(Principal(kind='interactive', user=current_user(), elevated=True))
        elif kind == 'service':
            user = 'SYSTEM' if os.name == 'nt' else 'root'
            principals.append(Principal(kind='service', user=user, elevated=True))
        else:
            raise ValidationError(f"Unknown principal kind '{kind}'")
    return principals


class SchedulerGateway(ABC):
    """Abstract interface over a native OS task scheduler.

    Backends handle the platform mechanics:
    - schtasks for Windows Task Scheduler
    - systemd transient timers for Linux
    - an APScheduler job store run by script-timer-service elsewhere

    Tasks are addressed only by name. Nothing above this layer knows which
    backend is in use.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name (e.g., 'schtasks', 'systemd', 'local')."""
        ...

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """Check if this backend can be used on the current system."""
        ...

    @abstractmethod
    def service_running(self) -> bool:
        """Check that the scheduling service itself is up."""
        ...

    @abstractmethod
    def list_tasks(self) -> List[ExternalTask]:
        """Every task visible to this backend.

        Raises:
            SchedulerError: If the scheduler could not be queried.
        """
        ...

    @abstractmethod
    def get(self, name: str) -> Optional[ExternalTask]:
        """Look up a task by exact name.

        Returns:
            The task, or None if the scheduler has no such task.

        Raises:
            SchedulerError: If the scheduler could not be queried.
        """
        ...

    @abstractmethod
    def _register_as(
        self,
        name: str,
        run_at: datetime,
        action: TaskAction,
        principal: Principal,
    ) -> ExternalTask:
        """Register a one-shot task under a single principal.

        Raises:
            SchedulerError: If the scheduler rejected the registration.
        """
        ...

    @abstractmethod
    def unregister(self, name: str) -> None:
        """Remove a task. Removing a task that does not exist is a no-op.

        Raises:
            SchedulerError: If the task exists but could not be removed.
        """
        ...

    def list_by_prefix(self, prefix: str) -> List[ExternalTask]:
        """Tasks in the namespace owned by `prefix` (names starting '<prefix>-')."""
        namespace = f"{prefix}-"
        return [task for task in self.list_tasks() if task.name.startswith(namespace)]

    def search(self, text: str) -> List[ExternalTask]:
        """Tasks whose name contains `text`, ignoring case, in any namespace."""
        needle = text.lower()
        return [task for task in self.list_tasks() if needle in task.name.lower()]

    def register(
        self,
        name: str,
        run_at: datetime,
        action: TaskAction,
        principals: Sequence[Principal],
    ) -> ExternalTask:
        """Register a one-shot task, trying each principal in order.

        Args:
            name: Task name
            run_at: When the task should fire
            action: Command the task runs
            principals: Fallback chain, most preferred first

        Returns:
            The task as registered under the first principal that worked.

        Raises:
            RegistrationFailure: If every principal was rejected.
        """
        attempts = []
        for principal in principals:
            try:
                task = self._register_as(name, run_at, action, principal)
            except SchedulerError as e:
                logger.warning(f"Registering '{name}' as {principal.label} failed: {e}")
                attempts.append((principal.label, str(e)))
                continue
            logger.info(f"Registered '{name}' as {principal.label} for {run_at.isoformat(timespec='seconds')}")
            return task

        if not attempts:
            raise RegistrationFailure(name, f"No principals configured to register '{name}'")
        summary = "; ".join(f"{label}: {error}" for label, error in attempts)
        raise RegistrationFailure(name, f"All principals failed for '{name}' ({summary})", attempts)

    def __repr__(self):
        return f"{type(self).__name__}()"
