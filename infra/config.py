"""
Config loading and process logging setup shared by every worker entry point.
"""
import copy
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

APP_CONFIG_FILE = "app.yaml"


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping; a missing or empty file yields ``{}``."""
    path = Path(path)
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def deep_merge(base: Dict[str, Any], overlay: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Recursively merge ``overlay`` onto a copy of ``base``.

    Nested dicts merge key by key; any other value in ``overlay`` replaces the
    base value. Neither input is mutated.
    """
    merged = copy.deepcopy(base)
    for key, value in (overlay or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def bootstrap(config_dir: str, log_file: str) -> Dict[str, Any]:
    """
    Common start-up for every entry point: validated config, logging, and
    rate limits from config.

    Raises:
        ValueError: If the config is invalid
    """
    from tools.config_validator import load_app_config
    from infra.rate_limiter import configure_rate_limits

    config = load_app_config(config_dir)
    setup_logging(config, log_file)
    configure_rate_limits((config.get("exchange", {}) or {}).get("rate_limits"))
    return config


def setup_logging(config: Dict[str, Any], default_file: str) -> None:
    """
    Configure root logging for a worker process.

    Logs go to a per-worker file and stderr. Stdout is left alone so that
    pipeline steps can print their JSON result there.
    """
    log_cfg = config.get("logging", {}) or {}
    general = config.get("general", {}) or {}
    level_name = str(log_cfg.get("level") or general.get("log_level") or "INFO").upper()
    log_dir = Path(log_cfg.get("dir", "logs"))
    log_file = log_dir / default_file
    log_file.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
    )
