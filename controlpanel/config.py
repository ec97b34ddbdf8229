"""
Settings for the Control Panel engine and backend.

Values come from ``config.json`` at the repository root (or the file named
by ``CONTROLPANEL_CONFIG``). Anything missing falls back to the defaults.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config.json"
CONFIG_ENV_VAR = "CONTROLPANEL_CONFIG"


@dataclass(frozen=True)
class Settings:
    """
    Runtime settings.

    Parameters
    ----------
    history_window : int
        Successful runs averaged per task for duration estimates
    tick_interval_seconds : float
        Refresh interval of a displayed running task
    log_poll_interval_seconds : float
        Interval between host log requests while the debug view is open
    log_buffer_size : int
        Records kept in the in-process log ring buffer
    port : int
        Backend HTTP port
    log_level : str
        Console log level
    log_buffer_level : str
        Lowest level kept in the debug-view log buffer
    """

    history_window: int = 10
    tick_interval_seconds: float = 1.0
    log_poll_interval_seconds: float = 2.0
    log_buffer_size: int = 200
    port: int = 4301
    log_level: str = "INFO"
    log_buffer_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        defaults = cls()
        backend = data.get("backend") or {}
        return cls(
            history_window=int(data.get("history_window", defaults.history_window)),
            tick_interval_seconds=float(
                data.get("tick_interval_seconds", defaults.tick_interval_seconds)
            ),
            log_poll_interval_seconds=float(
                data.get("log_poll_interval_seconds", defaults.log_poll_interval_seconds)
            ),
            log_buffer_size=int(data.get("log_buffer_size", defaults.log_buffer_size)),
            port=int(backend.get("port", defaults.port)),
            log_level=str(data.get("log_level", defaults.log_level)),
            log_buffer_level=str(data.get("log_buffer_level", defaults.log_buffer_level)),
        )


def load_settings(path: Optional[Path] = None) -> Settings:
    """
    Load settings from a JSON config file.

    Parameters
    ----------
    path : Optional[Path]
        Config file; defaults to ``$CONTROLPANEL_CONFIG`` or ``config.json``

    Returns
    -------
    Settings
        Parsed settings, or defaults when the file is missing or invalid
    """
    if path is None:
        env_path = os.environ.get(CONFIG_ENV_VAR)
        path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH

    try:
        with open(path, "r") as f:
            config = json.load(f)
        settings = Settings.from_dict(config)
        logger.info(f"Loaded settings from {path}")
        return settings
    except FileNotFoundError:
        logger.info(f"No config file at {path}, using defaults")
    except (OSError, ValueError, TypeError, AttributeError) as e:
        logger.warning(f"Could not load {path}: {e}, using defaults")
    return Settings()
