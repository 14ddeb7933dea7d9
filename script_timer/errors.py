"""
Script timer exceptions.

Every workflow boundary (creation, removal, reconciliation) catches these
and turns them into an Outcome, so none of them reach the menu loop.
"""

from typing import List, Optional, Tuple


class ScriptTimerError(Exception):
    """Base exception for all script timer errors."""
    pass


class ValidationError(ScriptTimerError):
    """Bad or missing input, or an unmet precondition."""
    pass


class PermissionDenied(ScriptTimerError):
    """The caller does not hold administrative rights."""
    pass


class SchedulerUnavailable(ScriptTimerError):
    """The native scheduling service is not running."""
    pass


class RegistrationFailure(ScriptTimerError):
    """
    Raised when a task could not be registered.

    Either every principal in the fallback chain was rejected, or the
    scheduler accepted the registration but a re-query could not see it.
    """

    def __init__(self, name: str, message: str, attempts: Optional[List[Tuple[str, str]]] = None):
        self.name = name
        self.attempts = attempts or []
        super().__init__(message)


class SchedulerError(ScriptTimerError):
    """A scheduler call failed for a reason other than "task is absent"."""
    pass


class LedgerCorruption(ScriptTimerError):
    """The ledger file could not be parsed. Handled inside the ledger store."""
    pass


class NotFound(ScriptTimerError):
    """An index or search selection does not refer to anything."""
    pass
