"""Path helpers for per-user app data and the cava config location."""

from __future__ import annotations

import os
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path

from platformdirs import AppDirs

DEFAULT_APP_NAME = "cava-art"
VISUALIZER_APP_NAME = "cava"
CONFIG_ENV_VAR = "CAVA_CONFIG_LOCATION"


@lru_cache(maxsize=4)
def get_app_dirs(app_name: str = DEFAULT_APP_NAME) -> AppDirs:
    """Return platform-specific app directories."""
    return AppDirs(app_name)


def _ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def data_dir(app_name: str = DEFAULT_APP_NAME) -> Path:
    """Return the per-user data directory, creating it if needed."""
    return _ensure_dir(Path(get_app_dirs(app_name).user_data_dir))


def log_dir(app_name: str = DEFAULT_APP_NAME) -> Path:
    """Return the per-user log directory, creating it if needed."""
    return _ensure_dir(data_dir(app_name) / "logs")


def default_visualizer_config_path() -> Path:
    """Return cava's own per-user config file (not created)."""
    return Path(get_app_dirs(VISUALIZER_APP_NAME).user_config_dir) / "config"


def resolve_visualizer_config_path(
    explicit: str | None, environ: Mapping[str, str] | None = None
) -> Path:
    """Pick the config path: explicit flag, then environment, then cava default."""
    env = os.environ if environ is None else environ
    if explicit:
        return Path(explicit).expanduser()
    from_env = env.get(CONFIG_ENV_VAR, "").strip()
    if from_env:
        return Path(from_env).expanduser()
    return default_visualizer_config_path()
