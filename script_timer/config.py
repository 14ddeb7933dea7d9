"""
Script timer configuration.

Builds one immutable TimerConfig at startup. Every component receives
the same instance, so paths like the ledger location are defined once.

Data directory resolution order (highest to lowest priority):
1. Explicitly passed data_dir
2. SCRIPT_TIMER_HOME environment variable
3. Default (~/.script_timer)

Settings are then read from <data_dir>/config.json if present, and
environment variables override the file.

Directory structure:
    {data_dir}/
    ├── scheduled_tasks.json      # Ledger
    ├── timer_jobs.db             # Job store for the local backend
    ├── metadata.json             # First-run / version metadata
    ├── backups/                  # Version-indexed backups
    └── logs/script_timer.log     # Transcript
"""

import json
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv

from script_timer.errors import ValidationError

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = "~/.script_timer"
DEFAULT_PREFIX = "Script-Timer-Job"
LEDGER_FILE_NAME = "scheduled_tasks.json"
CONFIG_FILE_NAME = "config.json"

ENV_DATA_DIR = "SCRIPT_TIMER_HOME"

# Menu choice -> delay in minutes
INTERVAL_CHOICES: Dict[str, int] = {
    "0": 1,
    "1": 10,
    "2": 30,
    "3": 60,
    "4": 180,
    "5": 360,
    "6": 720,
}

KNOWN_PRINCIPALS = ("interactive", "service")
KNOWN_BACKENDS = ("auto", "schtasks", "systemd", "local")


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(value: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


# config field -> (environment variable, parser)
ENV_OVERRIDES = {
    "name_prefix": ("SCRIPT_TIMER_PREFIX", str),
    "backend": ("SCRIPT_TIMER_BACKEND", str),
    "smoke_test_timeout": ("SCRIPT_TIMER_SMOKE_TIMEOUT", int),
    "require_admin": ("SCRIPT_TIMER_REQUIRE_ADMIN", _env_bool),
    "principals": ("SCRIPT_TIMER_PRINCIPALS", _env_list),
    "log_level": ("SCRIPT_TIMER_LOG_LEVEL", str),
    "ledger_path": ("SCRIPT_TIMER_LEDGER", lambda v: Path(v).expanduser()),
}


def _file_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (str, int)):
        return _env_bool(str(value))
    raise TypeError(f"expected a boolean, got {type(value).__name__}")


def _file_list(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        return _env_list(value)
    if isinstance(value, list):
        return tuple(str(item).strip() for item in value)
    raise TypeError(f"expected a list or comma-separated string, got {type(value).__name__}")


def _file_intervals(value: Any) -> Tuple[int, ...]:
    if not isinstance(value, list):
        raise TypeError(f"expected a list of minutes, got {type(value).__name__}")
    return tuple(int(minutes) for minutes in value)


# config.json key -> parser; JSON gives us strings, numbers and lists
FILE_PARSERS = {
    "name_prefix": str,
    "backend": str,
    "smoke_test_timeout": int,
    "require_admin": _file_bool,
    "principals": _file_list,
    "intervals": _file_intervals,
    "log_level": str,
    "service_poll_seconds": int,
    "ledger_path": lambda v: Path(v).expanduser(),
}


@dataclass(frozen=True)
class TimerConfig:
    """
    Immutable configuration shared by all components.

    Use TimerConfig.load() to resolve it from the environment; construct
    directly (e.g. in tests) to pin every value.
    """
    data_dir: Path
    ledger_path: Path
    name_prefix: str = DEFAULT_PREFIX
    backend: str = "auto"
    smoke_test_timeout: int = 10
    require_admin: bool = True
    principals: Tuple[str, ...] = KNOWN_PRINCIPALS
    intervals: Tuple[int, ...] = tuple(INTERVAL_CHOICES.values())
    log_level: str = "INFO"
    service_poll_seconds: int = 30

    @property
    def log_file(self) -> Path:
        return self.data_dir / "logs" / "script_timer.log"

    @property
    def job_store_path(self) -> Path:
        return self.data_dir / "timer_jobs.db"

    @property
    def pid_file(self) -> Path:
        return self.data_dir / "script_timer_service.pid"

    @property
    def service_info_file(self) -> Path:
        return self.data_dir / "script_timer_service.json"

    @property
    def metadata_path(self) -> Path:
        return self.data_dir / "metadata.json"

    @property
    def backup_dir(self) -> Path:
        return self.data_dir / "backups"

    @property
    def config_file(self) -> Path:
        return self.data_dir / CONFIG_FILE_NAME

    @classmethod
    def for_directory(cls, data_dir, **overrides) -> 'TimerConfig':
        """Config rooted at data_dir with the ledger in its default place."""
        data_dir = Path(data_dir).expanduser().resolve()
        overrides.setdefault("ledger_path", data_dir / LEDGER_FILE_NAME)
        return cls(data_dir=data_dir, **overrides)

    @classmethod
    def load(cls, data_dir: Optional[str] = None) -> 'TimerConfig':
        """
        Resolve configuration from arguments, config file and environment.

        Args:
            data_dir: Base directory for the ledger, job store and logs.
                      If None, resolved from SCRIPT_TIMER_HOME or default.

        Returns:
            TimerConfig instance

        Raises:
            ValueError: If the resolved configuration is invalid
        """
        resolved_dir = _resolve_data_dir(data_dir)
        settings: Dict[str, Any] = {}

        config_path = resolved_dir / CONFIG_FILE_NAME
        for key, value in _load_config_file(config_path).items():
            parser = FILE_PARSERS.get(key)
            if parser is None:
                logger.warning(f"Ignoring unknown config key '{key}' in {config_path}")
                continue
            try:
                settings[key] = parser(value)
            except (TypeError, ValueError) as e:
                logger.warning(f"Ignoring invalid '{key}'={value!r} in {config_path}: {e}")

        for key, (env_var, parser) in ENV_OVERRIDES.items():
            raw = os.environ.get(env_var)
            if raw:
                try:
                    settings[key] = parser(raw)
                except (TypeError, ValueError):
                    logger.warning(f"Ignoring invalid {env_var}={raw!r}")

        config = cls.for_directory(resolved_dir, **settings)

        errors = config.validate()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError("Invalid configuration: " + "; ".join(errors))

        logger.debug(f"Loaded {config!r}")
        return config

    def with_overrides(self, **changes) -> 'TimerConfig':
        return replace(self, **changes)

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not self.name_prefix or not self.name_prefix.strip():
            errors.append("'name_prefix' cannot be empty")

        if self.backend not in KNOWN_BACKENDS:
            errors.append(f"Unknown backend '{self.backend}' (expected one of {', '.join(KNOWN_BACKENDS)})")

        if self.smoke_test_timeout <= 0:
            errors.append("'smoke_test_timeout' must be positive")

        if not self.principals:
            errors.append("'principals' must name at least one principal")
        for principal in self.principals:
            if principal not in KNOWN_PRINCIPALS:
                errors.append(f"Unknown principal '{principal}'")

        if any(minutes <= 0 for minutes in self.intervals):
            errors.append("'intervals' must all be positive")

        return errors

    def interval_for_choice(self, choice: str) -> int:
        """
        Map a menu choice ("0".."6") to a delay in minutes.

        Raises:
            ValidationError: If the choice is not one of the listed options
        """
        choices = self.interval_choices()
        key = (choice or "").strip()
        if key not in choices:
            raise ValidationError(f"Invalid interval choice '{choice}' (expected 0-{len(choices) - 1})")
        return choices[key]

    def interval_choices(self) -> Dict[str, int]:
        return {str(index): minutes for index, minutes in enumerate(self.intervals)}

    def __repr__(self):
        return (
            f"TimerConfig(data_dir={self.data_dir}, ledger={self.ledger_path}, "
            f"prefix={self.name_prefix}, backend={self.backend})"
        )


def _resolve_data_dir(data_dir: Optional[str]) -> Path:
    """Resolve the data directory from argument, environment or default."""
    if data_dir:
        logger.debug(f"Using explicitly provided data_dir: {data_dir}")
        return Path(data_dir).expanduser().resolve()

    env_dir = os.getenv(ENV_DATA_DIR)
    if env_dir:
        logger.debug(f"Using data_dir from {ENV_DATA_DIR}: {env_dir}")
        return Path(env_dir).expanduser().resolve()

    logger.debug(f"Using default data_dir: {DEFAULT_DATA_DIR}")
    return Path(DEFAULT_DATA_DIR).expanduser().resolve()


def _load_config_file(config_path: Path) -> Dict[str, Any]:
    """Load settings from the optional config file."""
    if not config_path.exists():
        return {}
    try:
        with open(config_path, 'r') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to load config file {config_path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Config file {config_path} does not contain an object, ignoring it")
        return {}
    return data
