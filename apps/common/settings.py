# apps/common/settings.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return data or {}


def _env(key: str) -> Optional[str]:
    v = os.getenv(key)
    return v.strip() if isinstance(v, str) and v.strip() else None


def _as_list(v: Any) -> List[str]:
    if v is None:
        return []
    if isinstance(v, str):
        return [s.strip() for s in v.split(",") if s.strip()]
    return [str(s).strip() for s in v if str(s).strip()]


def _as_extensions(vs: List[str]) -> Tuple[str, ...]:
    return tuple(v.lower() if v.startswith(".") else f".{v.lower()}" for v in vs)


@dataclass(frozen=True)
class AppSettings:
    gateway_url: str
    poll_interval_s: float = 2.0
    request_timeout_s: float = 30.0
    accepted_extensions: Tuple[str, ...] = (".pdf",)
    columns: Tuple[str, ...] = ("question", "answer")
    log_level: str = "INFO"


def load_settings(config_path: Optional[str] = None, *, gateway_url: Optional[str] = None) -> AppSettings:
    """
    An explicit gateway_url wins over both the env var and the config file.

    Resolution order (highest -> lowest):
      1) Explicit function argument
      2) IMPORT_WIZARD_CONFIG_PATH env var
      3) config/app.yaml
    Individual fields can be overridden via env vars:
      - IMPORT_WIZARD_GATEWAY_URL
      - IMPORT_WIZARD_POLL_INTERVAL_S
      - IMPORT_WIZARD_TIMEOUT_S
      - IMPORT_WIZARD_ACCEPTED_EXTENSIONS (comma-separated)
      - IMPORT_WIZARD_COLUMNS (comma-separated)
      - IMPORT_WIZARD_LOG_LEVEL
    """
    cfg_path = (
        Path(config_path)
        if config_path
        else Path(_env("IMPORT_WIZARD_CONFIG_PATH") or "config/app.yaml")
    )
    cfg = _read_yaml(cfg_path)
    defaults = AppSettings(gateway_url="")

    gateway_url = gateway_url or _env("IMPORT_WIZARD_GATEWAY_URL") or cfg.get("gateway_url")
    interval_raw = _env("IMPORT_WIZARD_POLL_INTERVAL_S") or cfg.get("poll_interval_s")
    timeout_raw = _env("IMPORT_WIZARD_TIMEOUT_S") or cfg.get("request_timeout_s")
    extensions = _as_list(_env("IMPORT_WIZARD_ACCEPTED_EXTENSIONS") or cfg.get("accepted_extensions"))
    columns = _as_list(_env("IMPORT_WIZARD_COLUMNS") or cfg.get("columns"))
    log_level = _env("IMPORT_WIZARD_LOG_LEVEL") or cfg.get("log_level") or defaults.log_level

    if not gateway_url:
        raise ValueError(
            "Missing required configuration: gateway_url / IMPORT_WIZARD_GATEWAY_URL"
            f". Config file used: {cfg_path}"
        )

    try:
        poll_interval_s = float(interval_raw) if interval_raw is not None else defaults.poll_interval_s
        request_timeout_s = float(timeout_raw) if timeout_raw is not None else defaults.request_timeout_s
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid numeric setting in {cfg_path}: {e}") from e
    if poll_interval_s <= 0:
        raise ValueError(f"poll_interval_s must be > 0, got {poll_interval_s}")

    return AppSettings(
        gateway_url=str(gateway_url).rstrip("/"),
        poll_interval_s=poll_interval_s,
        request_timeout_s=request_timeout_s,
        accepted_extensions=_as_extensions(extensions) if extensions else defaults.accepted_extensions,
        columns=tuple(columns) if columns else defaults.columns,
        log_level=str(log_level).upper(),
    )
