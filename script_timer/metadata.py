"""
First-run metadata and version-indexed backups.

metadata.json records which version of the tool last ran against this
data directory. When the version changes, the ledger and config file
are copied to backups/<previous version>/ before anything else runs.
"""

import json
import logging
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from script_timer.config import TimerConfig

logger = logging.getLogger(__name__)


@dataclass
class MetadataStatus:
    """What ensure_metadata found and did"""
    first_run: bool
    previous_version: Optional[str] = None
    backup_dir: Optional[Path] = None


def _read_metadata(path: Path) -> Dict[str, Any]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable metadata file {path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def backup_data_files(config: TimerConfig, version: str) -> Optional[Path]:
    """
    Copy the ledger and config file into backups/<version>/.

    Returns:
        The backup directory, or None if there was nothing to back up
    """
    sources = [path for path in (config.ledger_path, config.config_file) if path.exists()]
    if not sources:
        return None

    target_dir = config.backup_dir / version
    target_dir.mkdir(parents=True, exist_ok=True)
    for source in sources:
        shutil.copy2(source, target_dir / source.name)
        logger.info(f"Backed up {source} to {target_dir}")
    return target_dir


def ensure_metadata(config: TimerConfig, version: str) -> MetadataStatus:
    """
    Record this run in metadata.json, backing up data on a version change.

    Never raises; problems are logged.

    Args:
        config: Timer configuration
        version: Version of the running tool

    Returns:
        MetadataStatus
    """
    path = config.metadata_path
    metadata = _read_metadata(path)
    now = datetime.now().isoformat(timespec='seconds')
    status = MetadataStatus(first_run=not metadata)

    previous = metadata.get('version')
    if previous and previous != version:
        status.previous_version = previous
        logger.info(f"Version changed from {previous} to {version}")
        try:
            status.backup_dir = backup_data_files(config, previous)
        except OSError as e:
            logger.error(f"Backup for version {previous} failed: {e}")

    if status.first_run:
        logger.info(f"First run in {config.data_dir}")
        metadata['first_run'] = now
    metadata['version'] = version
    metadata['last_run'] = now

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(metadata, f, indent=2)
    except OSError as e:
        logger.error(f"Failed to write metadata file {path}: {e}")

    return status
