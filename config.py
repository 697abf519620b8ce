import json
import os
from typing import Any, Dict, Mapping, Optional

CONFIG_PATH = "config.json"

# Default configuration values
DEFAULT_CONFIG = {
    # Spotify app credentials (Authorization Code flow with client secret).
    # Prefer the SPOTIFY_CLIENT_ID / SPOTIFY_CLIENT_SECRET environment variables.
    "spotify_client_id": "",
    "spotify_client_secret": "",
    "spotify_redirect_uri": "http://127.0.0.1:8888/callback",
    "spotify_auth_flow": "loopback",
    "credential_store_path": "data/spotify_credentials.json",

    # Widget behavior
    "poll_interval": 3,
    "action_settle_delay": 0.3,
    "http_timeout": 10.0,
    "auth_timeout": 180,

    "log_level": "INFO",
    "log_file": "data/spotify_floater.log",
}

# Environment variables win over config.json
ENV_OVERRIDES = {
    "SPOTIFY_CLIENT_ID": "spotify_client_id",
    "SPOTIFY_CLIENT_SECRET": "spotify_client_secret",
    "SPOTIFY_REDIRECT_URI": "spotify_redirect_uri",
}

# Validation rules for config fields
CONFIG_SCHEMA = {
    "spotify_client_id": {"type": str, "required": False},
    "spotify_client_secret": {"type": str, "required": False},
    "spotify_redirect_uri": {"type": str, "required": True},
    "spotify_auth_flow": {"type": str, "required": False, "choices": ["loopback", "paste"]},
    "credential_store_path": {"type": str, "required": True},
    "poll_interval": {"type": (int, float), "required": False, "min": 1, "max": 60},
    "action_settle_delay": {"type": (int, float), "required": False, "min": 0, "max": 5},
    "http_timeout": {"type": (int, float), "required": False, "min": 1, "max": 120},
    "auth_timeout": {"type": (int, float), "required": False, "min": 10, "max": 900},
    "log_level": {"type": str, "required": False, "choices": ["DEBUG", "INFO", "WARNING", "ERROR"]},
    "log_file": {"type": str, "required": False},
}


def apply_env_overrides(config: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Overlay Spotify credentials from the environment onto CONFIG."""
    environ = os.environ if environ is None else environ
    for env_key, config_key in ENV_OVERRIDES.items():
        value = (environ.get(env_key) or "").strip()
        if value:
            config[config_key] = value
    return config


def load_config(path: str = CONFIG_PATH, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Load configuration from file, applying defaults for missing fields.

    A missing file is not an error: defaults plus environment are used.
    Invalid JSON still raises json.JSONDecodeError.
    """
    config: Dict[str, Any] = {}
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            config = json.load(f)
        if not isinstance(config, dict):
            raise ValueError(f"Config file {path} must contain a JSON object.")

    # Apply defaults for missing fields
    for key, value in DEFAULT_CONFIG.items():
        if key not in config:
            config[key] = value

    return apply_env_overrides(config, environ)


def validate_config(config: Dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate configuration against schema.
    Returns (is_valid, list_of_errors).
    """
    errors = []

    for key, rules in CONFIG_SCHEMA.items():
        # Check required fields
        if rules.get("required", False) and key not in config:
            errors.append(f"Missing required field: {key}")
            continue

        if key not in config:
            continue

        value = config[key]

        # Type check
        expected_type = rules.get("type")
        if expected_type and not isinstance(value, expected_type):
            type_names = expected_type.__name__ if not isinstance(expected_type, tuple) else "/".join(t.__name__ for t in expected_type)
            errors.append(f"Field '{key}' must be {type_names}, got {type(value).__name__}")
            continue

        # Choices check
        if "choices" in rules and value not in rules["choices"]:
            errors.append(f"Field '{key}' must be one of {rules['choices']}, got '{value}'")

        # Range check for numeric values
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if "min" in rules and value < rules["min"]:
                errors.append(f"Field '{key}' must be >= {rules['min']}, got {value}")
            if "max" in rules and value > rules["max"]:
                errors.append(f"Field '{key}' must be <= {rules['max']}, got {value}")

    return len(errors) == 0, errors
