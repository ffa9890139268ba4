from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from tripboard.errors import ValidationError
from tripboard.models import AppConfig, default_app_config


logger = logging.getLogger(__name__)

MASK = "***"
SECRET_FIELDS = (("notifications", "api_key"),)


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _dump(config_dict: dict[str, Any], handle: Any) -> None:
    yaml.safe_dump(config_dict, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)


def _write_atomic(path: Path, config_dict: dict[str, Any]) -> None:
    tmp_path = path.with_name(f"{path.name}.tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        _dump(config_dict, handle)
    try:
        tmp_path.replace(path)
    except OSError as exc:
        # Bind-mounted single files cannot be swapped by rename.
        if exc.errno != errno.EBUSY:
            raise
        logger.debug("atomic replace of %s busy, writing in place", path)
        with path.open("w", encoding="utf-8") as handle:
            _dump(config_dict, handle)
        tmp_path.unlink(missing_ok=True)


def strip_masked_secrets(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Drop secrets echoed back as the mask so a round-tripped form keeps them."""
    sanitized = copy.deepcopy(payload)
    for section, key in SECRET_FIELDS:
        block = sanitized.get(section)
        if not isinstance(block, dict) or key not in block:
            continue
        text = str(block.get(key) or "").strip()
        if text in {"", MASK}:
            if current.get(section, {}).get(key):
                block.pop(key, None)
            else:
                block[key] = ""
        if not block:
            sanitized.pop(section, None)
    return sanitized


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            if not isinstance(data, dict):
                raise ValidationError(f"{self.config_path} must contain a mapping")
            return AppConfig.from_dict(data)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            _write_atomic(self.config_path, config.to_dict())

    def update(self, payload: dict[str, Any]) -> AppConfig:
        if not isinstance(payload, dict):
            raise ValidationError("config update must be an object", fields=["payload"])
        with self._lock:
            current = self.load().to_dict()
            merged = _deep_merge(current, strip_masked_secrets(payload, current))
            try:
                config = AppConfig.from_dict(merged)
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"invalid config: {exc}") from exc
            self.save(config)
            logger.info("config updated: %s", sorted(payload))
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if config.get(section, {}).get(key):
                config[section][key] = MASK
        return config
