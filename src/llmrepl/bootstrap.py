from __future__ import annotations
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from dotenv import load_dotenv

from .commands.builtins import build_router
from .config_loader import load_config
from .core.context import ContextPolicy, ContextWindowManager
from .core.pipeline import StreamingPipeline
from .core.service import ReplService
from .core.state import RenderMode, SessionState, Theme
from .log_utils import log_event
from .providers.param_policy import ParamPolicy
from .providers.registry import BackendRegistry
from .resilience.retry import RetryPolicy
from .secrets.sources import SecretsResolver
from .shell import run_shell

logger = logging.getLogger(__name__)


def _policy_path(config_path: Path, name: str, provider_cfg: Dict[str, Any]) -> Path:
    policy_file = provider_cfg.get("policy_file")
    if policy_file:
        policy_path = Path(policy_file)
        if not policy_path.is_absolute():
            # resolve relative to config dir
            policy_path = config_path.parent / policy_path
        return policy_path
    # default location: config/providers/<name>.yaml
    return config_path.parent / "providers" / f"{name}.yaml"


def build_registry(cfg: Dict[str, Any], config_path: Path) -> BackendRegistry:
    """One adapter per configured provider. A missing credential does not prevent registration."""
    BackendRegistry.ensure_imports()  # make sure built-ins register

    secrets_cfg = cfg.get("secrets") or {}
    resolver = SecretsResolver(method=secrets_cfg.get("method", "env"), mapping=secrets_cfg.get("mapping", {}))

    registry = BackendRegistry()
    for name, provider_cfg in cfg["providers"].items():
        path = _policy_path(config_path, name, provider_cfg)
        policy = ParamPolicy.load(path) if path.exists() else None
        Adapter = BackendRegistry.adapter_class(name)
        registry.register(Adapter.create(provider_cfg=provider_cfg, secrets=resolver, policy=policy))
        log_event(logger, "backend.registered", backend=name, policy=str(path) if policy else None)
    return registry


def build_app(config_path: Path, *, provider: Optional[str] = None, model: Optional[str] = None) -> Dict[str, Any]:
    """
    Composition root: load YAML, build every configured backend, the shared session
    state, pipeline, command router and service.
    Returns: dict with cfg, registry, state, service, warnings.
    """
    load_dotenv()
    cfg = load_config(config_path)
    session_cfg = cfg["session"]
    runtime = cfg.get("runtime") or {}

    registry = build_registry(cfg, config_path)
    state = SessionState(
        registry,
        backend=(provider or session_cfg["provider"]),
        model=(model or session_cfg["model"]),
        render_mode=RenderMode(session_cfg.get("render_mode", RenderMode.APPEND.value)),
        theme=Theme(session_cfg.get("theme", Theme.NORD.value)),
    )
    registry.bind(state)

    retry = RetryPolicy.from_config(runtime)
    pipeline = StreamingPipeline(registry, state, retry=retry if retry.max_retries > 0 else None)

    ctx_cfg = cfg.get("context") or {}
    context_window = ContextWindowManager(
        ContextPolicy(
            max_input_tokens=int(ctx_cfg.get("max_input_tokens", 6000)),
            response_reserve_tokens=int(ctx_cfg.get("response_reserve_tokens", 1024)),
            always_keep_last_n=int(ctx_cfg.get("always_keep_last_n", 4)),
        )
    )
    router = build_router(registry, state, pipeline, context_window)
    service = ReplService(
        registry=registry,
        state=state,
        pipeline=pipeline,
        router=router,
        shell=run_shell,
        stream=bool(runtime["stream"]),
    )

    warnings: List[str] = []
    current = registry.get(state.selection()[0])
    if current is not None and current.identity.requires_credential and not getattr(current, "api_key", None):
        warnings.append(f"Provider '{current.identify()}' has no credential configured; queries will fail until one is set.")

    return {
        "cfg": cfg,
        "registry": registry,
        "state": state,
        "service": service,
        "warnings": warnings,
    }
