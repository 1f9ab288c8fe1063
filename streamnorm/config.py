"""YAML-backed configuration for streamnorm."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

_FALSE_STRINGS = {"0", "false", "no", "off", ""}


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() not in _FALSE_STRINGS


def _coerce_positive_int(value: Any, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def _coerce_non_negative_int(value: Any, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number >= 0 else default


def _coerce_str_list(value: Any, default: List[str]) -> List[str]:
    if value is None:
        return list(default)
    if isinstance(value, str):
        value = [part for part in value.split(",")]
    if not isinstance(value, (list, tuple)):
        return list(default)
    return [str(item).strip() for item in value if str(item).strip()]


@dataclass
class NormalizerConfig:
    snapshot_slack: int = 8
    final_marker: str = "<final>"
    marker_window: int = 64
    strict_json: bool = True
    reasoning_prefixes: List[str] = field(default_factory=lambda: ["response.reasoning"])
    role_labels: List[str] = field(
        default_factory=lambda: ["assistant", "user", "system", "analysis", "commentary", "thought"]
    )
    done_sentinel: str = "[DONE]"


@dataclass
class StreamConfig:
    default_mode: str = "normalize"
    read_chunk_size: int = 4096


@dataclass
class LoggingConfig:
    log_level: str = "INFO"
    log_file: Path = field(default_factory=lambda: Path.home() / ".streamnorm" / "streamnorm.log")


@dataclass
class DeveloperConfig:
    debug_mode: bool = False


class Config:
    """Application configuration loaded from a flat YAML mapping."""

    CONFIG_FILE = Path.home() / ".streamnorm" / "config.yaml"

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = self._resolve_path(config_path)
        self.normalizer = NormalizerConfig()
        self.stream = StreamConfig()
        self.logging = LoggingConfig()
        self.developer = DeveloperConfig()

        raw = self._load_raw(self.config_path)
        self._apply(raw)

    @classmethod
    def _resolve_path(cls, config_path: Optional[Path]) -> Path:
        if config_path is not None:
            return Path(config_path).expanduser()
        env_path = os.environ.get("STREAMNORM_CONFIG", "").strip()
        if env_path:
            return Path(env_path).expanduser()
        return cls.CONFIG_FILE

    @staticmethod
    def _load_raw(path: Path) -> Dict[str, Any]:
        if not path.exists():
            return {}
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("Ignoring unreadable config file %s: %s", path, exc)
            return {}
        if not isinstance(payload, dict):
            logger.warning("Ignoring config file %s: top level is not a mapping", path)
            return {}
        return payload

    def _sections(self) -> Dict[str, Any]:
        return {
            "normalizer": self.normalizer,
            "stream": self.stream,
            "logging": self.logging,
            "developer": self.developer,
        }

    def _apply(self, raw: Dict[str, Any]) -> None:
        owners: Dict[str, Any] = {}
        for section in self._sections().values():
            for item in fields(section):
                owners[item.name] = section

        for key, value in raw.items():
            section = owners.get(str(key))
            if section is None:
                logger.warning("Unknown config key ignored: %s", key)
                continue
            setattr(section, str(key), value)

        self._normalize()

    def _normalize(self) -> None:
        defaults = NormalizerConfig()
        norm = self.normalizer
        norm.snapshot_slack = _coerce_non_negative_int(norm.snapshot_slack, defaults.snapshot_slack)
        norm.marker_window = _coerce_positive_int(norm.marker_window, defaults.marker_window)
        norm.strict_json = _coerce_bool(norm.strict_json, defaults.strict_json)
        norm.final_marker = str(norm.final_marker or "")
        norm.done_sentinel = str(norm.done_sentinel or defaults.done_sentinel)
        norm.reasoning_prefixes = _coerce_str_list(norm.reasoning_prefixes, defaults.reasoning_prefixes)
        norm.role_labels = _coerce_str_list(norm.role_labels, defaults.role_labels)
        # The marker must fit in the window to be detected across fragments.
        norm.marker_window = max(norm.marker_window, len(norm.final_marker))

        mode = str(self.stream.default_mode or "").strip().lower()
        self.stream.default_mode = mode if mode in {"normalize", "passthrough"} else "normalize"
        self.stream.read_chunk_size = _coerce_positive_int(self.stream.read_chunk_size, 4096)

        self.logging.log_level = str(self.logging.log_level or "INFO").upper()
        self.logging.log_file = Path(str(self.logging.log_file)).expanduser()

        self.developer.debug_mode = _coerce_bool(self.developer.debug_mode, False)
