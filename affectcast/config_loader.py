"""Load YAML configuration files from the config/ directory."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"

_cache: dict[str, dict[str, Any]] = {}


def load_config(
    name: str,
    *,
    reload: bool = False,
    config_dir: Path | None = None,
) -> dict[str, Any]:
    """Load a YAML config by name (without extension).

    Parameters
    ----------
    name:
        Config filename stem, e.g. ``"engine_config"`` loads
        ``config/engine_config.yml``.
    reload:
        If *True*, bypass the in-memory cache and re-read from disk.
    config_dir:
        Alternative directory to read from.  Results read from a custom
        directory are cached under ``"<dir>/<name>"``.

    Returns
    -------
    dict
        Parsed YAML as a Python dict.

    Raises
    ------
    FileNotFoundError
        If the config file does not exist.
    """
    base = Path(config_dir) if config_dir is not None else _CONFIG_DIR
    key = name if config_dir is None else f"{base}/{name}"

    if not reload and key in _cache:
        return _cache[key]

    path = base / f"{name}.yml"
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config {path} must contain a mapping, got {type(data).__name__}")

    logger.debug("Loaded config %s from %s", name, path)
    _cache[key] = data
    return data


def get_engine_config() -> dict[str, Any]:
    """Convenience accessor for ``config/engine_config.yml``."""
    return load_config("engine_config")


def get_section(section: str) -> dict[str, Any]:
    """Return one top-level section of the engine config.

    A missing file or section yields an empty dict (logged), so callers
    fall back to their dataclass defaults.
    """
    try:
        cfg = get_engine_config()
    except FileNotFoundError:
        logger.warning("engine_config.yml not found -- using built-in defaults")
        return {}
    value = cfg.get(section) or {}
    if not isinstance(value, dict):
        logger.warning("Config section %r is not a mapping -- ignored", section)
        return {}
    return value
