"""Scheduler gateway detection and factory."""

import importlib
import sys

from script_timer.config import TimerConfig
from script_timer.gateways.base import SchedulerGateway, resolve_principals

BACKENDS = {
    "schtasks": "script_timer.gateways.schtasks.SchtasksGateway",
    "systemd": "script_timer.gateways.systemd.SystemdGateway",
    "local": "script_timer.gateways.local.LocalGateway",
}


def _load_backend(name: str, config: TimerConfig) -> SchedulerGateway:
    # Import lazily so APScheduler is only loaded for the local backend
    module_path, class_name = BACKENDS[name].rsplit(".", 1)
    module = importlib.import_module(module_path)
    backend_class = getattr(module, class_name)
    return backend_class.from_config(config)


def detect_backend(config: TimerConfig) -> SchedulerGateway:
    """Detect the best available scheduler backend for the current system.

    Detection order:
    1. Windows: Task Scheduler via schtasks
    2. Linux: systemd timers (if systemctl works)
    3. Fallback: local APScheduler job store
    """
    if sys.platform == "win32":
        backend = _load_backend("schtasks", config)
        if backend.is_available:
            return backend

    if sys.platform.startswith("linux"):
        backend = _load_backend("systemd", config)
        if backend.is_available:
            return backend

    return _load_backend("local", config)


def get_gateway(config: TimerConfig, name: str = None) -> SchedulerGateway:
    """Get a specific backend by name, or auto-detect.

    Args:
        config: Timer configuration
        name: Backend name ('schtasks', 'systemd', 'local', 'auto').
              Defaults to config.backend.

    Raises:
        ValueError: If the named backend doesn't exist.
    """
    name = name or config.backend
    if name == "auto":
        return detect_backend(config)

    if name not in BACKENDS:
        raise ValueError(f"Unknown backend: {name}. Available: {list(BACKENDS)}")
    return _load_backend(name, config)


__all__ = ["SchedulerGateway", "detect_backend", "get_gateway", "resolve_principals"]
