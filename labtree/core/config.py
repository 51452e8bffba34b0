from __future__ import annotations

import os
import re
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

from labtree.core.errors import LabConfigError


DEFAULT_MODEL = "gpt-4.1-mini"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class EngineConfig:
    # Recursion ceiling for automatic expansion chains.
    max_depth: int = 15
    # Pause between consecutive oracle calls inside one chain.
    step_delay_s: float = 0.3

    model: str = DEFAULT_MODEL
    base_url: str | None = None

    retry_attempts: int = 3
    backoff_base_s: float = 2.0
    backoff_jitter_s: float = 1.0

    log_level: str = "INFO"


_ENV_OVERRIDES: dict[str, str] = {
    "LABTREE_MAX_DEPTH": "max_depth",
    "LABTREE_STEP_DELAY_S": "step_delay_s",
    "LABTREE_LOG_LEVEL": "log_level",
    "OPENAI_MODEL": "model",
    "OPENAI_BASE_URL": "base_url",
}


def _role_env_key(role: str) -> str:
    """Map a role name to a role-specific env var key.

    Examples:
      - expand -> OPENAI_MODEL_EXPAND
      - initial-analysis -> OPENAI_MODEL_INITIAL_ANALYSIS
    """

    role_key = re.sub(r"[^A-Za-z0-9]+", "_", role).strip("_").upper()
    return f"OPENAI_MODEL_{role_key}"


def model_for_role(role: str, default_model: str) -> str:
    """Return the model to use for a given role.

    Resolution order:
      1) OPENAI_MODEL_<ROLE>
      2) default_model
    """

    override = (os.getenv(_role_env_key(role), "") or "").strip()
    return override or default_model


def _coerce(name: str, value: Any) -> Any:
    kinds = {f.name: f.type for f in fields(EngineConfig)}
    kind = kinds[name]
    try:
        if kind == "int":
            if isinstance(value, bool):
                raise ValueError(value)
            if isinstance(value, float) and not value.is_integer():
                raise ValueError(value)
            out: Any = int(value)
            if out < 0:
                raise ValueError(value)
            return out
        if kind == "float":
            out = float(value)
            if out < 0:
                raise ValueError(value)
            return out
    except (TypeError, ValueError):
        raise LabConfigError(
            code="E_CONFIG_INVALID",
            message=f"{name} must be a non-negative {kind}, got {value!r}",
            path=name,
        )
    if value is None and kind == "str | None":
        return None
    if name == "log_level" and isinstance(value, str):
        level = value.strip().upper()
        if level not in LOG_LEVELS:
            raise LabConfigError(
                code="E_CONFIG_INVALID",
                message=f"log_level must be one of: {', '.join(LOG_LEVELS)}, got {value!r}",
                path=name,
            )
        return level
    if not isinstance(value, str) or not value.strip():
        raise LabConfigError(
            code="E_CONFIG_INVALID",
            message=f"{name} must be a non-empty string",
            path=name,
        )
    return value.strip()


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Load engine overrides from a YAML mapping.

    Format:
      max_depth: 6
      step_delay_s: 0.5
      model: gpt-4.1-mini
    """
    p = Path(path)
    if not p.exists():
        raise LabConfigError(
            code="E_CONFIG_NOT_FOUND", message="config file does not exist", file=str(p)
        )
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise LabConfigError(code="E_CONFIG_PARSE", message=str(e), file=str(p)) from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise LabConfigError(
            code="E_CONFIG_INVALID",
            message="config file must be a mapping of setting -> value",
            file=str(p),
        )

    known = {f.name for f in fields(EngineConfig)}
    out: dict[str, Any] = {}
    for k, v in raw.items():
        if k not in known:
            raise LabConfigError(
                code="E_CONFIG_UNKNOWN_KEY",
                message=f"unknown setting: {k} (choose from: {', '.join(sorted(known))})",
                file=str(p),
                path=str(k),
            )
        out[k] = _coerce(k, v)
    return out


def load_config(path: str | Path | None = None, **overrides: Any) -> EngineConfig:
    """Defaults, then the YAML file, then environment, then explicit overrides.

    Overrides set to None are ignored so CLI options can be passed straight through.
    """
    cfg = EngineConfig()
    if path:
        cfg = replace(cfg, **load_config_file(path))

    env_values: dict[str, Any] = {}
    for env_key, name in _ENV_OVERRIDES.items():
        raw = os.getenv(env_key)
        if raw is not None and raw.strip():
            env_values[name] = _coerce(name, raw)
    if env_values:
        cfg = replace(cfg, **env_values)

    explicit = {k: _coerce(k, v) for k, v in overrides.items() if v is not None}
    if explicit:
        cfg = replace(cfg, **explicit)
    return cfg
