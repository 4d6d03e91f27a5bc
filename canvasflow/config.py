from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError


logger = logging.getLogger(__name__)

yaml = YAML()
yaml.preserve_quotes = True

CONFIG_FILENAME = "canvasflow.yml"

# env var -> (settings field, converter)
ENV_OVERRIDES: dict[str, tuple[str, Any]] = {
    "CANVASFLOW_STATE_PATH": ("state_path", str),
    "CANVASFLOW_REMOTE_URL": ("remote_url", str),
    "CANVASFLOW_REMOTE_KEY": ("remote_key", str),
    "CANVASFLOW_USER_ID": ("user_id", str),
    "CANVASFLOW_SESSION_ID": ("session_id", str),
    "CANVASFLOW_LOG_LEVEL": ("log_level", str),
    "CANVASFLOW_PORT": ("port", int),
}


@dataclass
class Settings:
    state_path: str = ".canvasflow_state.json"
    backup_dir: str | None = None
    keep_backups: int = 5
    grid_size: int = 16
    cell_size: int | None = None
    remote_url: str | None = None
    remote_key: str | None = None
    user_id: str | None = None
    session_id: str = "local"
    fetch_metadata: bool = True
    metadata_timeout: float = 5.0
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(message)s",
    )


def _config_path(path: str | Path | None) -> Path:
    if path:
        return Path(path)
    env = os.environ.get("CANVASFLOW_CONFIG")
    if env:
        return Path(env)
    return Path.cwd() / CONFIG_FILENAME


def _coerce(name: str, value: Any, default: Any) -> Any:
    if value is None:
        return None
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(default, int) and not isinstance(default, bool):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if name == "cell_size":
        return int(value)
    return str(value)


def load_settings(path: str | Path | None = None, environ: Mapping[str, str] | None = None) -> Settings:
    """Settings from `canvasflow.yml`, then environment overrides on top."""
    environ = os.environ if environ is None else environ
    settings = Settings()
    defaults = {f.name: getattr(settings, f.name) for f in fields(Settings)}

    config_file = _config_path(path)
    if config_file.exists():
        try:
            with config_file.open("r", encoding="utf-8") as handle:
                data = yaml.load(handle) or {}
        except (OSError, YAMLError) as exc:
            raise ValueError(f"Could not read {config_file}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise ValueError(f"{config_file} must contain a mapping.")
        section = data.get("canvasflow", data)
        for key, value in section.items():
            name = str(key).replace("-", "_")
            if name not in defaults:
                logger.warning("Unknown setting %r in %s", key, config_file)
                continue
            setattr(settings, name, _coerce(name, value, defaults[name]))

    for env_name, (name, convert) in ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw in (None, ""):
            continue
        try:
            setattr(settings, name, convert(raw))
        except ValueError as exc:
            raise ValueError(f"Invalid {env_name}: {raw!r}") from exc

    if settings.state_path and not Path(settings.state_path).is_absolute():
        settings.state_path = str(config_file.parent / settings.state_path)
    return settings
