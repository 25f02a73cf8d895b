"""Preferences document: source toggles, display filters, exclusions, custom names."""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger("inventory_audit.config")

CONFIG_ENV_VAR = "INVENTORY_AUDIT_CONFIG"


class ConfigError(RuntimeError):
    """The preferences document exists but cannot be used"""


def default_config_path() -> str:
    base = os.environ.get("APPDATA") or os.path.join(os.path.expanduser("~"), ".config")
    return os.path.join(base, "InventoryAudit", "settings.json")


@dataclass
class AppConfig:
    sources: Dict[str, bool] = field(default_factory=lambda: {
        "registry": True,
        "appx": True,
        "winget": False,
    })
    show_system_components: bool = False
    show_frameworks: bool = False
    exclusions: List[str] = field(default_factory=list)
    visible_fields: Dict[str, List[str]] = field(default_factory=dict)
    custom_names: Dict[str, str] = field(default_factory=dict)
    batch_size: int = 5
    query_timeout: int = 30  # seconds, per secondary query
    poll_interval_ms: int = 500
    path: str = field(default="", compare=False)

    def source_enabled(self, name: str) -> bool:
        return bool(self.sources.get(name, False))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("path", None)
        return data


def _pick(data: Dict[str, Any], key: str, expected: type, default: Any) -> Any:
    """Presence check only: keep the stored value if it has the expected type"""
    value = data.get(key, default)
    if expected is int and isinstance(value, bool):
        return default
    return value if isinstance(value, expected) else default


def from_dict(data: Dict[str, Any], path: str = "") -> AppConfig:
    defaults = AppConfig()
    sources = dict(defaults.sources)
    sources.update({k: bool(v) for k, v in _pick(data, "sources", dict, {}).items()})
    return AppConfig(
        sources=sources,
        show_system_components=_pick(data, "show_system_components", bool, defaults.show_system_components),
        show_frameworks=_pick(data, "show_frameworks", bool, defaults.show_frameworks),
        exclusions=[str(p) for p in _pick(data, "exclusions", list, [])],
        visible_fields=_pick(data, "visible_fields", dict, {}),
        custom_names={str(k): str(v) for k, v in _pick(data, "custom_names", dict, {}).items()},
        batch_size=max(1, _pick(data, "batch_size", int, defaults.batch_size)),
        query_timeout=max(1, _pick(data, "query_timeout", int, defaults.query_timeout)),
        poll_interval_ms=max(50, _pick(data, "poll_interval_ms", int, defaults.poll_interval_ms)),
        path=path,
    )


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load preferences. A missing file yields defaults.

    Raises:
        ConfigError: if the file exists but is unreadable or not a JSON object
    """
    path = path or os.environ.get(CONFIG_ENV_VAR) or default_config_path()

    if not os.path.exists(path):
        logger.info("No settings file at %s, using defaults", path)
        return AppConfig(path=path)

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ConfigError(f"Unable to load settings from {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Settings file {path} must contain a JSON object")

    return from_dict(data, path)


def save_config(config: AppConfig, path: Optional[str] = None) -> bool:
    """Write preferences back. Failure is logged and keeps the in-memory state."""
    path = path or config.path or default_config_path()
    try:
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        tmp_path = path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(config.to_dict(), f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    except OSError as e:
        logger.warning("Could not save settings to %s: %s", path, e)
        return False
    config.path = path
    return True
