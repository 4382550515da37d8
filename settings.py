"""
settings.py
-----------
Runtime configuration and logging for dotchat.

- Settings: defaults, optionally overridden from a YAML file, then from CLI flags
- Recorder: the record(level, message) capability handed to the server, the
  command handlers and the client session
"""

import argparse
import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional, Union

import yaml

from protocol import MAX_FRAME_SIZE

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 11111

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class Settings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    files_dir: str = "files"
    images_dir: str = "images"
    max_frame_size: int = MAX_FRAME_SIZE
    log_level: str = "INFO"

    @property
    def files_path(self) -> Path:
        return Path(self.files_dir)

    @property
    def images_path(self) -> Path:
        return Path(self.images_dir)


def load_settings(yaml_path: Optional[Union[str, Path]] = None) -> Settings:
    """Read settings from a YAML mapping; missing keys keep their defaults."""
    if yaml_path is None:
        return Settings()
    with open(yaml_path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"{yaml_path}: malformed YAML: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"{yaml_path}: expected a mapping at top level")

    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"{yaml_path}: unknown settings {unknown}")

    settings = Settings(**data)
    if not isinstance(settings.port, int) or not isinstance(settings.max_frame_size, int):
        raise ValueError(f"{yaml_path}: port and max_frame_size must be integers")
    for name in ("host", "files_dir", "images_dir", "log_level"):
        if not isinstance(getattr(settings, name), str):
            raise ValueError(f"{yaml_path}: {name} must be a string")
    if not isinstance(logging.getLevelName(settings.log_level.upper()), int):
        raise ValueError(f"{yaml_path}: unknown log_level {settings.log_level!r}")
    return settings


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--host", "-H", default=None, help=f"Server host (default: {DEFAULT_HOST})")
    parser.add_argument("--port", "-p", default=None, type=int, help=f"Server port (default: {DEFAULT_PORT})")
    parser.add_argument("--config", "-c", default=None, help="YAML settings file")
    parser.add_argument("--debug", "-d", action="store_true", help="Enable debug logging")


def settings_from_args(args: argparse.Namespace) -> Settings:
    """Apply CLI flags on top of the YAML file (or the defaults)."""
    settings = load_settings(args.config)
    overrides = {}
    for name in ("host", "port", "files_dir", "images_dir"):
        value = getattr(args, name, None)
        if value is not None:
            overrides[name] = value
    if getattr(args, "debug", False):
        overrides["log_level"] = "DEBUG"
    return replace(settings, **overrides)


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


class Recorder:
    """Thin logging capability: record(level, message)."""

    def __init__(self, logger: Optional[logging.Logger] = None, name: str = "dotchat"):
        self.logger = logger or logging.getLogger(name)

    def record(self, level: Union[str, int], message: str) -> None:
        if isinstance(level, str):
            level = logging.getLevelName(level.upper())
            if not isinstance(level, int):
                level = logging.INFO
        self.logger.log(level, message)

    def child(self, suffix: str) -> "Recorder":
        return Recorder(self.logger.getChild(suffix))
