# apps/common/settings.py
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from services.batch import CoordinatorSettings
from services.segmentation.models import ModelType, OutputMode


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return data or {}


def _env(key: str) -> Optional[str]:
    v = os.getenv(key)
    return v.strip() if isinstance(v, str) and v.strip() else None


def _as_path(v: str) -> Path:
    return Path(v).expanduser().resolve()


def _as_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    return str(v).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class AppSettings:
    gateway_url: str
    storage_root: Path
    output_mode: OutputMode
    include_original: bool
    manual_review_mode: bool
    min_confidence: float
    model_type: ModelType
    batch_limit: int
    customer_id_strip_pattern: Optional[str]
    ollama_url: str
    ollama_model_flash: str
    ollama_model_pro: str
    ollama_timeout_s: float
    render_dpi: int

    def coordinator_settings(self) -> CoordinatorSettings:
        return CoordinatorSettings(
            output_mode=self.output_mode,
            include_original=self.include_original,
            manual_review_mode=self.manual_review_mode,
            min_confidence=self.min_confidence,
            model_type=self.model_type,
            batch_limit=self.batch_limit,
            customer_id_strip_pattern=self.customer_id_strip_pattern,
        )


_DEFAULTS: Dict[str, Any] = {
    "gateway_url": "http://127.0.0.1:8000",
    "storage_root": "data/splitter",
    "output_mode": OutputMode.BY_DATE.value,
    "include_original": False,
    "manual_review_mode": True,
    "min_confidence": 0.8,
    "model_type": ModelType.FLASH.value,
    "batch_limit": 50,
    "customer_id_strip_pattern": "^#",
    "ollama_url": "http://host.docker.internal:11434",
    "ollama_model_flash": "qwen2.5vl:7b",
    "ollama_model_pro": "qwen2.5vl:32b",
    "ollama_timeout_s": 180,
    "render_dpi": 180,
}


def load_settings(config_path: Optional[str] = None) -> AppSettings:
    """
    Resolution order (highest -> lowest):
      1) SPLITTER_<FIELD> env var (e.g. SPLITTER_OUTPUT_MODE, SPLITTER_MIN_CONFIDENCE)
      2) the YAML file: explicit argument, else SPLITTER_CONFIG_PATH, else config/app.yaml
      3) built-in defaults
    Invalid values raise ValueError naming every offending field.
    """
    cfg_path = (
        Path(config_path)
        if config_path
        else Path(_env("SPLITTER_CONFIG_PATH") or "config/app.yaml")
    )
    cfg = _read_yaml(cfg_path)

    raw: Dict[str, Any] = {}
    for key, default in _DEFAULTS.items():
        env_v = _env(f"SPLITTER_{key.upper()}")
        raw[key] = env_v if env_v is not None else cfg.get(key, default)

    errors = []

    try:
        output_mode = OutputMode(str(raw["output_mode"]))
    except ValueError:
        errors.append(f"output_mode must be one of {[m.value for m in OutputMode]}")
        output_mode = OutputMode.BY_DATE

    try:
        model_type = ModelType(str(raw["model_type"]))
    except ValueError:
        errors.append(f"model_type must be one of {[m.value for m in ModelType]}")
        model_type = ModelType.FLASH

    try:
        min_confidence = float(raw["min_confidence"])
        if not 0.0 <= min_confidence <= 1.0:
            raise ValueError
    except (TypeError, ValueError):
        errors.append("min_confidence must be a number between 0.0 and 1.0")
        min_confidence = 0.8

    try:
        batch_limit = int(raw["batch_limit"])
        if batch_limit < 1:
            raise ValueError
    except (TypeError, ValueError):
        errors.append("batch_limit must be a positive integer")
        batch_limit = 50

    try:
        timeout_s = float(raw["ollama_timeout_s"])
        render_dpi = int(raw["render_dpi"])
    except (TypeError, ValueError):
        errors.append("ollama_timeout_s and render_dpi must be numeric")
        timeout_s, render_dpi = 180.0, 180

    strip = raw["customer_id_strip_pattern"]
    if strip:
        try:
            re.compile(str(strip))
        except re.error:
            errors.append("customer_id_strip_pattern must be a valid regular expression")

    if errors:
        raise ValueError(
            "Invalid configuration: " + "; ".join(errors) +
            f". Config file used: {cfg_path}"
        )

    return AppSettings(
        gateway_url=str(raw["gateway_url"]),
        storage_root=_as_path(str(raw["storage_root"])),
        output_mode=output_mode,
        include_original=_as_bool(raw["include_original"]),
        manual_review_mode=_as_bool(raw["manual_review_mode"]),
        min_confidence=min_confidence,
        model_type=model_type,
        batch_limit=batch_limit,
        customer_id_strip_pattern=str(strip) if strip else None,
        ollama_url=str(raw["ollama_url"]),
        ollama_model_flash=str(raw["ollama_model_flash"]),
        ollama_model_pro=str(raw["ollama_model_pro"]),
        ollama_timeout_s=timeout_s,
        render_dpi=render_dpi,
    )
