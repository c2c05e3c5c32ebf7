"""Settings: environment variables win over ``config.json``."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .client import BASE_URL
from .storage import default_path

logger = logging.getLogger(__name__)

CONFIG_ENV = "ZENMONEY_CONFIG"
DEFAULT_CONFIG = Path("config.json")


@dataclass
class Settings:
    token: str = ""
    base_url: str = BASE_URL
    cache_path: Path = field(default_factory=default_path)
    timeout: float = 60.0
    log_level: str = "INFO"


def _read_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        cfg = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable config %s: %s", path, e)
        return {}
    return cfg if isinstance(cfg, dict) else {}


def load_settings(config_path: Path | str | None = None, env: dict[str, str] | None = None) -> Settings:
    env = os.environ if env is None else env
    path = Path(config_path or env.get(CONFIG_ENV) or DEFAULT_CONFIG)
    cfg = _read_config(path)
    settings = Settings()
    settings.token = env.get("ZENMONEY_TOKEN") or cfg.get("token") or ""
    settings.base_url = env.get("ZENMONEY_BASE_URL") or cfg.get("base_url") or BASE_URL
    cache = env.get("ZENMONEY_CACHE_PATH") or cfg.get("cache_path")
    if cache:
        settings.cache_path = Path(cache).expanduser()
    timeout = env.get("ZENMONEY_TIMEOUT") or cfg.get("timeout")
    if timeout:
        try:
            settings.timeout = float(timeout)
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid timeout %r", timeout)
    settings.log_level = (env.get("ZENMONEY_LOG_LEVEL") or cfg.get("log_level") or "INFO").upper()
    return settings
