"""Per-user location of the persisted token record.

Storage Location:
    Windows: %APPDATA%/gworkspace-credentials/tokens.json
    macOS:   ~/Library/Application Support/gworkspace-credentials/tokens.json
    Other:   $XDG_CONFIG_HOME/gworkspace-credentials/tokens.json (~/.config by default)
"""

import os
import sys
from pathlib import Path

APP_NAME = "gworkspace-credentials"
TOKEN_FILENAME = "tokens.json"


def get_config_dir(app_name: str = APP_NAME) -> Path:
    """Get the platform-appropriate per-user config directory."""
    if sys.platform == "win32":
        base = os.environ.get("APPDATA")
        root = Path(base) if base else Path.home() / "AppData" / "Roaming"
    elif sys.platform == "darwin":
        root = Path.home() / "Library" / "Application Support"
    else:
        base = os.environ.get("XDG_CONFIG_HOME")
        root = Path(base) if base else Path.home() / ".config"
    return root / app_name


def get_secure_token_path(app_name: str = APP_NAME) -> Path:
    """Get the token storage path.

    Returns:
        Path to tokens.json inside the per-user config directory.
    """
    return get_config_dir(app_name) / TOKEN_FILENAME
