"""Load worker.yaml and resolve policy config (params -> env -> YAML -> defaults)."""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from env_utils import POSWORKER_CONFIG_PATH, env_bool, env_float, env_present, env_str
from logging_utils import get_logger
from ltv_policy import LtvConfig
from networks import WORKER_KIND_YIELD
from yield_policy import DEFAULT_STABLE_SYMBOLS, YieldConfig

PathKey = Tuple[str, ...]

log = get_logger("config_env")

DEFAULT_CONFIG: Dict[str, Any] = {
    "lending": {
        "max_ltv": 0.75,
        "target_ltv": 0.60,
        "min_yield_spread": 0.02,
        "paused": False,
        "critical_ltv_ratio": 0.95,
    },
    "yield": {
        "min_apr_delta": 0.5,
        "stable_symbols": list(DEFAULT_STABLE_SYMBOLS),
        "top_n": 5,
        "paused": False,
    },
    "worker": {
        "interval_seconds": 300,
        "max_consecutive_errors": 5,
        "dry_run": True,
        "log_limit": 10,
        "shutdown_timeout_seconds": 30.0,
    },
    "notifier": {
        "timeout_seconds": 5.0,
    },
    "adapters": {},
}

# Env names accepted per lending field, first present wins.
LENDING_ENV_OVERRIDES: Dict[str, Tuple[str, ...]] = {
    "max_ltv": ("AGENT_MAX_LTV", "VENUS_AGENT_MAX_LTV"),
    "target_ltv": ("AGENT_TARGET_LTV", "VENUS_AGENT_TARGET_LTV"),
    "min_yield_spread": ("AGENT_MIN_YIELD_SPREAD", "VENUS_AGENT_MIN_YIELD_SPREAD"),
}
LENDING_PAUSED_ENV = ("AGENT_PAUSED", "VENUS_AGENT_PAUSED")

WEBHOOK_ENV = {
    "lending": "AGENT_WORKER_WEBHOOK_URL",
    WORKER_KIND_YIELD: "YIELD_WORKER_WEBHOOK_URL",
}


def _get_path(cfg: Mapping[str, Any], path: PathKey, default: Any = None) -> Any:
    cur: Any = cfg
    for key in path:
        if not isinstance(cur, Mapping) or key not in cur:
            return default
        cur = cur[key]
    return cur


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    out = deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, Mapping) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def load_worker_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load worker.yaml merged over built-in defaults.

    A missing or unreadable file yields the defaults.
    """
    cfg_path = Path(path or POSWORKER_CONFIG_PATH)
    raw: Dict[str, Any] = {}
    if cfg_path.exists():
        try:
            loaded = yaml.safe_load(cfg_path.read_text()) or {}
            if isinstance(loaded, dict):
                raw = loaded
            else:
                log.warning(f"Ignoring {cfg_path}: top-level YAML is not a mapping")
        except (OSError, yaml.YAMLError) as exc:
            log.warning(f"Failed to read {cfg_path}: {exc}")
    return _merge(DEFAULT_CONFIG, raw)


def _env_non_negative(names: Tuple[str, ...]) -> Optional[float]:
    for name in names:
        if not env_present(name):
            continue
        value = env_float(name, -1.0)
        if value >= 0:
            return value
    return None


def _env_flag(names: Tuple[str, ...]) -> Optional[bool]:
    for name in names:
        if env_present(name) and env_bool(name, False):
            return True
    return None


def resolve_ltv_config(params: Mapping[str, Any], file_cfg: Optional[Mapping[str, Any]] = None) -> LtvConfig:
    """Lending thresholds: explicit param, then env, then worker.yaml."""
    cfg = file_cfg if file_cfg is not None else load_worker_config()
    section = _get_path(cfg, ("lending",), {}) or {}

    def pick(param_key: str, field: str) -> float:
        if params.get(param_key) is not None:
            return float(params[param_key])
        from_env = _env_non_negative(LENDING_ENV_OVERRIDES[field])
        if from_env is not None:
            return from_env
        return float(section.get(field, DEFAULT_CONFIG["lending"][field]))

    if params.get("paused") is not None:
        paused = bool(params["paused"])
    else:
        paused = bool(_env_flag(LENDING_PAUSED_ENV) or section.get("paused", False))

    return LtvConfig(
        max_ltv=pick("maxLTV", "max_ltv"),
        target_ltv=pick("targetLTV", "target_ltv"),
        min_yield_spread=pick("minYieldSpread", "min_yield_spread"),
        paused=paused,
        critical_ltv_ratio=float(section.get("critical_ltv_ratio", DEFAULT_CONFIG["lending"]["critical_ltv_ratio"])),
    )


def resolve_yield_config(params: Mapping[str, Any], file_cfg: Optional[Mapping[str, Any]] = None) -> YieldConfig:
    cfg = file_cfg if file_cfg is not None else load_worker_config()
    section = _get_path(cfg, ("yield",), {}) or {}

    symbols = params.get("stableSymbols")
    if not symbols:
        symbols = section.get("stable_symbols") or list(DEFAULT_STABLE_SYMBOLS)

    return YieldConfig(
        min_apr_delta=float(
            params["minAprDelta"] if params.get("minAprDelta") is not None
            else section.get("min_apr_delta", DEFAULT_CONFIG["yield"]["min_apr_delta"])
        ),
        stable_symbols=tuple(str(s) for s in symbols),
        top_n=int(
            params["topN"] if params.get("topN") is not None
            else section.get("top_n", DEFAULT_CONFIG["yield"]["top_n"])
        ),
        paused=bool(
            params["paused"] if params.get("paused") is not None
            else section.get("paused", False)
        ),
    )


def resolve_webhook_url(kind: str, explicit: Optional[str] = None) -> Optional[str]:
    """Explicit URL, then the per-kind env fallback."""
    url = str(explicit or "").strip()
    if url:
        return url
    return env_str(WEBHOOK_ENV.get(kind, WEBHOOK_ENV["lending"])) or None


def worker_defaults(file_cfg: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    cfg = file_cfg if file_cfg is not None else load_worker_config()
    return dict(_get_path(cfg, ("worker",), {}) or DEFAULT_CONFIG["worker"])


def notifier_timeout(file_cfg: Optional[Mapping[str, Any]] = None) -> float:
    cfg = file_cfg if file_cfg is not None else load_worker_config()
    return float(_get_path(cfg, ("notifier", "timeout_seconds"), 5.0) or 5.0)
