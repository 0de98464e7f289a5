"""Settings management - loads and saves server configuration."""
import json
import logging
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

# Settings file location (in user's home directory)
SETTINGS_DIR = Path.home() / ".gamerelay"
SETTINGS_FILE = SETTINGS_DIR / "settings.json"

# Default settings
DEFAULT_SETTINGS = {
    "host": "0.0.0.0",
    "port": 7777,
    "tick_delay": 0.01,
    "log_level": "INFO",
    "backlog": 16,
}


def load_settings(path: Optional[Union[str, Path]] = None) -> dict:
    """Load settings from file, or return defaults if file doesn't exist."""
    path = Path(path) if path is not None else SETTINGS_FILE
    try:
        if path.exists():
            with open(path, 'r', encoding='utf-8') as f:
                saved = json.load(f)
            if not isinstance(saved, dict):
                raise ValueError("settings file must hold a JSON object")
            # Merge with defaults (in case new settings were added)
            settings = DEFAULT_SETTINGS.copy()
            settings.update(saved)
            logger.info(f"Settings loaded from {path}")
            return settings
        logger.debug(f"Settings file not found at {path}, using defaults")
    except (json.JSONDecodeError, ValueError, OSError) as e:
        logger.warning(f"Failed to load settings from {path}: {e}")
    return DEFAULT_SETTINGS.copy()


def save_settings(settings: dict, path: Optional[Union[str, Path]] = None):
    """Save settings to file."""
    path = Path(path) if path is not None else SETTINGS_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(settings, f, indent=2)
    logger.info(f"Settings saved to {path}")
