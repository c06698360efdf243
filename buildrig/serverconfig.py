"""Configuration and directories of the background build server."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path

CONFIG_FILENAME = "config.toml"
SHARED_DIR = "shared"
CONTROLLER_DIR = "controller"
LOG_FILENAME = "buildx.{}.log"
SOCKET_FILENAME = "buildx.{}.sock"
PID_FILENAME = "buildx.{}.pid"

_FIELDS = ("root", "log_level", "log_file")


@dataclass
class ServerConfig:
    # Server root directory.
    root: str = ""
    # One of trace, debug, info, warn, error, fatal, panic.
    log_level: str = ""
    # File the server writes its log to.
    log_file: str = ""


def root_data_dir(config_dir: str | os.PathLike[str]) -> str:
    """The default data directory of the server under a config directory."""
    return os.path.join(config_dir, CONTROLLER_DIR)


def load_config(config_path: str, default_root: str) -> ServerConfig:
    """Read the server config.

    With no path, ``config.toml`` under ``default_root`` is used and may be
    missing. Raises OSError when the file cannot be read and ValueError when
    it cannot be parsed or holds values of the wrong type.
    """
    is_default = not config_path
    if is_default:
        config_path = os.path.join(default_root, CONFIG_FILENAME)
    try:
        raw = Path(config_path).read_bytes()
    except FileNotFoundError as exc:
        if is_default:
            return ServerConfig()
        raise OSError(f'failed to read config "{config_path}": {exc}') from exc
    except OSError as exc:
        raise OSError(f'failed to read config "{config_path}": {exc}') from exc
    try:
        data = tomllib.loads(raw.decode())
    except (UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        raise ValueError(f'failed to read config "{config_path}": {exc}') from exc

    values: dict[str, str] = {}
    for name in _FIELDS:
        value = data.get(name, "")
        if not isinstance(value, str):
            raise ValueError(
                f'failed to unmarshal config "{config_path}": '
                f"{name} must be a string, not {type(value).__name__}"
            )
        values[name] = value
    return ServerConfig(**values)


def prepare_root_dir(config: ServerConfig, default_root: str) -> str:
    """Create the server root and its shared directory; return the shared one."""
    root = config.root or default_root
    if not root:
        raise ValueError("buildx root dir must be determined")
    shared = Path(root, SHARED_DIR)
    Path(root).mkdir(mode=0o700, parents=True, exist_ok=True)
    shared.mkdir(mode=0o700, exist_ok=True)
    return str(shared)


def log_file_path(config_path: str, default_root: str, revision: str) -> str:
    """Where the server logs: the configured file or one in the shared root."""
    config = load_config(config_path, default_root)
    if config.log_file:
        return config.log_file
    root = prepare_root_dir(config, default_root)
    return os.path.join(root, LOG_FILENAME.format(revision))