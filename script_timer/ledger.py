"""
Ledger of jobs this tool registered with the OS scheduler.

The ledger is a JSON file wrapped in a versioned envelope:

    {
      "ScheduledTasksEnvelope": {
        "MetaData": {"FormatVersion": "1.0", "CreatedDate": "...", "CreatedTime": "..."},
        "Entries": [{"name": ..., "scriptPath": ..., "createdAt": ..., "intervalMinutes": ...}]
      }
    }

Loading never raises: a missing, empty or malformed file reads as an
empty ledger. Callers that must tell "empty" from "unreadable" (the
reconciler) load with strict=True. Saving reports failure through its
return value.
"""

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, List, Set, Tuple

from script_timer.errors import LedgerCorruption
from script_timer.models import JobRecord

logger = logging.getLogger(__name__)

ENVELOPE_KEY = "ScheduledTasksEnvelope"
FORMAT_VERSION = "1.0"


class LedgerStore:
    """
    JSON-backed ledger of JobRecords.

    Each save fully rewrites the file; there is no in-process cache, so
    every load reflects what is on disk.
    """

    def __init__(self, path: Path):
        """
        Initialize ledger store.

        Args:
            path: Location of the ledger JSON file
        """
        self.path = Path(path)

    def load(self, strict: bool = False) -> List[JobRecord]:
        """
        Load all ledger entries.

        Args:
            strict: Raise instead of returning an empty list when the file
                    exists but cannot be read or parsed

        Returns:
            List of JobRecords (empty if the file is missing, or unreadable
            when not strict)

        Raises:
            LedgerCorruption: Only when strict, for an unreadable file
        """
        if not self.path.exists():
            logger.info(f"No ledger found at {self.path}, starting empty")
            return []

        try:
            with open(self.path, 'rb') as f:
                raw = f.read()
            entries = self._parse(raw)
        except LedgerCorruption as e:
            if strict:
                raise
            logger.warning(f"Ledger {self.path} is unusable, treating it as empty: {e}")
            return []
        except OSError as e:
            if strict:
                raise LedgerCorruption(f"cannot read {self.path}: {e}") from e
            logger.error(f"Failed to read ledger {self.path}: {e}")
            return []

        records = []
        for entry in entries:
            record = JobRecord.from_dict(entry)
            if record is None:
                logger.warning(f"Skipping ledger entry without a name: {entry!r}")
                continue
            records.append(record)

        logger.debug(f"Loaded {len(records)} ledger entr{'y' if len(records) == 1 else 'ies'} from {self.path}")
        return records

    def _parse(self, raw: bytes) -> List[Any]:
        """Extract the raw entry list from the ledger file contents."""
        try:
            text = raw.decode('utf-8-sig')
        except UnicodeDecodeError as e:
            raise LedgerCorruption(f"not valid UTF-8: {e}") from e

        if not text.strip():
            raise LedgerCorruption("file is empty")

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise LedgerCorruption(f"invalid JSON: {e}") from e

        if not isinstance(data, dict) or ENVELOPE_KEY not in data:
            raise LedgerCorruption(f"missing '{ENVELOPE_KEY}' envelope")

        envelope = data[ENVELOPE_KEY]
        if not isinstance(envelope, dict) or 'Entries' not in envelope:
            raise LedgerCorruption("envelope has no 'Entries'")

        entries = envelope['Entries']
        if entries is None:
            return []
        # A lone entry may be written as an object rather than a list
        if isinstance(entries, dict):
            return [entries]
        if not isinstance(entries, list):
            raise LedgerCorruption(f"'Entries' is a {type(entries).__name__}, expected a list")
        return entries

    def save(self, records: Iterable[JobRecord]) -> bool:
        """
        Overwrite the ledger with the given records.

        Args:
            records: Complete set of entries to persist

        Returns:
            True if written, False if the write failed (already logged)
        """
        records = list(records)
        now = datetime.now()
        data = {
            ENVELOPE_KEY: {
                'MetaData': {
                    'FormatVersion': FORMAT_VERSION,
                    'CreatedDate': now.strftime('%Y-%m-%d'),
                    'CreatedTime': now.strftime('%H:%M:%S'),
                },
                'Entries': [record.to_dict() for record in records],
            }
        }

        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to save ledger to {self.path}: {e}")
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            return False

        logger.info(f"Saved {len(records)} ledger entr{'y' if len(records) == 1 else 'ies'} to {self.path}")
        return True

    def append(self, record: JobRecord) -> bool:
        """Add one record and persist. Returns the save result."""
        records = self.load()
        records.append(record)
        return self.save(records)

    def remove(self, name: str) -> Tuple[bool, bool]:
        """
        Remove every entry with the given name.

        Returns:
            Tuple of (removed, saved). Nothing is written when no entry matched.
        """
        records = self.load()
        remaining = [r for r in records if r.name != name]
        if len(remaining) == len(records):
            return False, True
        return True, self.save(remaining)

    def names(self, strict: bool = False) -> Set[str]:
        return {record.name for record in self.load(strict=strict)}

    def __repr__(self):
        return f"LedgerStore(path={self.path})"
