import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

DB_URL_KEY = "TOOTAPP_DB_URL"
IMPORT_STRATEGY_KEY = "TOOTAPP_IMPORT_STRATEGY"

IMPORT_STRATEGY_CHOICES = ("ask", "replace", "merge")
DEFAULT_IMPORT_STRATEGY = "ask"

_KNOWN_KEYS = (DB_URL_KEY, IMPORT_STRATEGY_KEY)


def get_config_path() -> Path:
    """Get the path to the user-level config file."""
    config_dir = Path.home() / ".config" / "tootapp"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir / "config.json"


def load_config() -> Dict[str, Any]:
    """Load configuration from the user-level config file."""
    config_path = get_config_path()
    if not config_path.exists():
        return {}

    try:
        with open(config_path, 'r') as f:
            config = json.load(f)
    except (json.JSONDecodeError, IOError):
        return {}
    if not isinstance(config, dict):
        return {}
    return config


def save_config(config: Dict[str, Any]) -> None:
    """Save configuration to the user-level config file."""
    config_path = get_config_path()

    try:
        with open(config_path, 'w') as f:
            json.dump(config, f, indent=2)

        # Owner read/write only
        os.chmod(config_path, 0o600)
    except IOError as e:
        raise RuntimeError(f"Failed to save config: {e}")


def _validate(key: str, value: str) -> str:
    if key not in _KNOWN_KEYS:
        raise ValueError(f"Unknown setting '{key}'. Known settings: {', '.join(_KNOWN_KEYS)}")
    value = value.strip()
    if key == IMPORT_STRATEGY_KEY:
        value = value.lower()
        if value not in IMPORT_STRATEGY_CHOICES:
            raise ValueError(
                f"Invalid import strategy '{value}'. Use one of: {', '.join(IMPORT_STRATEGY_CHOICES)}"
            )
    return value


def get_setting(key: str) -> Optional[str]:
    """Environment variables win over the config file."""
    env_value = os.environ.get(key)
    if env_value and env_value.strip():
        return env_value.strip()
    value = load_config().get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def set_setting(key: str, value: str) -> None:
    config = load_config()
    config[key] = _validate(key, value)
    save_config(config)


def get_db_url() -> Optional[str]:
    return get_setting(DB_URL_KEY)


def get_import_strategy() -> str:
    value = get_setting(IMPORT_STRATEGY_KEY)
    if value and value.lower() in IMPORT_STRATEGY_CHOICES:
        return value.lower()
    return DEFAULT_IMPORT_STRATEGY


def show_config() -> None:
    """Show current configuration."""
    config = load_config()
    print("Current configuration:")
    print(f"  Config file: {get_config_path()}")
    for key in _KNOWN_KEYS:
        value = get_setting(key)
        source = ""
        if os.environ.get(key, "").strip():
            source = " (from environment)"
        elif key in config:
            source = " (from config file)"
        print(f"  {key}: {value or 'Not set'}{source}")
