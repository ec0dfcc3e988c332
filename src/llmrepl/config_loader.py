# src/llmrepl/config_loader.py

from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Tuple
import yaml

from llmrepl.core.state import RenderMode, Theme

KNOWN_PROVIDERS: Tuple[str, ...] = ("ollama", "groq", "gemini", "openai", "echo")


class ConfigError(ValueError):
    pass


def _require(d: Dict[str, Any], dotted: str, typ: type) -> Any:
    cur: Any = d
    for k in dotted.split("."):
        if not isinstance(cur, dict) or k not in cur:
            raise ConfigError(f"Missing config key: {dotted}")
        cur = cur[k]
    if typ is bool and not isinstance(cur, bool):
        raise ConfigError(f"'{dotted}' must be a boolean")
    if typ is str and not isinstance(cur, str):
        raise ConfigError(f"'{dotted}' must be a string")
    return cur


def _check_enum(raw: Dict[str, Any], key: str, enum_cls) -> None:
    value = raw["session"].get(key)
    if value is None:
        return
    if value is False:
        # YAML 1.1 reads a bare `off` as a boolean
        value = "off"
    allowed = [e.value for e in enum_cls]
    value = str(value).strip().lower()
    if value not in allowed:
        raise ConfigError(f"Unknown session.{key} '{value}' (expected one of {allowed}).")
    raw["session"][key] = value


def load_config(path: Path) -> Dict[str, Any]:
    if not path or not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    raw = yaml.safe_load(path.read_text())
    if not isinstance(raw, dict) or not raw:
        raise ConfigError(f"Config is empty or invalid YAML: {path}")

    # Validate required keys (no defaults here)
    _require(raw, "session.provider", str)
    _require(raw, "session.model", str)
    _require(raw, "runtime.stream", bool)

    providers = raw.get("providers")
    if not isinstance(providers, dict) or not providers:
        raise ConfigError("Missing config key: providers")

    # Normalise provider names; a bare `name:` entry means "use defaults"
    normalised: Dict[str, Dict[str, Any]] = {}
    for name, cfg in providers.items():
        key = str(name).strip().lower()
        if key not in KNOWN_PROVIDERS:
            raise ConfigError(f"Unknown provider '{name}' (expected one of {list(KNOWN_PROVIDERS)}).")
        if cfg is not None and not isinstance(cfg, dict):
            raise ConfigError(f"'providers.{name}' must be a mapping")
        normalised[key] = dict(cfg or {})
    raw["providers"] = normalised

    provider = raw["session"]["provider"].strip().lower()
    if provider not in normalised:
        raise ConfigError(f"session.provider '{provider}' is not configured under 'providers'.")
    raw["session"]["provider"] = provider

    _check_enum(raw, "render_mode", RenderMode)
    _check_enum(raw, "theme", Theme)

    retries = raw["runtime"].get("retries", 0)
    if not isinstance(retries, int) or isinstance(retries, bool) or retries < 0:
        raise ConfigError("'runtime.retries' must be a non-negative integer")

    # Leave paths as provided; resolve them later in bootstrap/composition
    return raw
