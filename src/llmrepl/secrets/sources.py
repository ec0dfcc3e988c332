# src/llmrepl/secrets/sources.py

from __future__ import annotations
from typing import Protocol, Optional, Dict, Iterable, List, Union
import getpass
import logging
import os

import keyring
from keyring.errors import KeyringError

logger = logging.getLogger(__name__)


class SecretSource(Protocol):
    def get(self, service: str) -> Optional[str]: ...


class EnvSource:
    def get(self, service: str) -> Optional[str]:
        # mapping value may be an exact env var name or a provider name
        val = os.getenv(service)
        if val:
            return val.strip()
        for key in (f"{service.upper()}_API_KEY", service.upper()):
            val = os.getenv(key)
            if val:
                return val.strip()
        return None


class SystemKeyringSource:
    """Look a credential up in the OS keyring under a handful of conventional account names."""

    def get(self, service: str) -> Optional[str]:
        try:
            cred = keyring.get_credential(service, None)
        except KeyringError as e:
            logger.debug("keyring credential lookup failed for %s: %s", service, e)
            cred = None
        if cred is not None and cred.password:
            return cred.password.strip()
        for account in ("API_KEY", f"{service.upper()}_API_KEY", "default", service, getpass.getuser()):
            try:
                val = keyring.get_password(service, account)
            except KeyringError as e:
                logger.debug("keyring lookup failed for %s/%s: %s", service, account, e)
                continue
            if val:
                return val.strip()
        return None


_ALLOWED_METHODS = {"env", "keyring"}


def _normalise_methods(method: Union[str, Iterable[str]]) -> List[str]:
    methods = [method] if isinstance(method, str) else list(method)
    norm = []
    for m in methods:
        key = str(m).strip().lower()
        if key not in _ALLOWED_METHODS:
            raise ValueError(f"Unknown secrets method '{m}'. Allowed: {sorted(_ALLOWED_METHODS)}")
        if key not in norm:
            norm.append(key)
    return norm


def build_secret_sources(method: Union[str, Iterable[str]]) -> List[SecretSource]:
    sources: List[SecretSource] = []
    for name in _normalise_methods(method):
        if name == "env":
            sources.append(EnvSource())
        elif name == "keyring":
            sources.append(SystemKeyringSource())
    return sources


class SecretsResolver:
    """
    Resolve backend credentials using one or more methods in order.
    mapping: per-backend map of names -> service/env-key
      e.g. { "groq": { "api_key": "GROQ_API_KEY" } } or { "gemini": { "api_key": "gemini" } }
    Unmapped backends fall back to the backend name (so env GEMINI_API_KEY also works).
    """

    def __init__(self, method: Union[str, Iterable[str]], mapping: Dict[str, Dict[str, str]] | None = None):
        self._sources = build_secret_sources(method)
        self._map = mapping or {}

    def secret(self, backend: str, name: str = "api_key") -> Optional[str]:
        service = self._map.get(backend, {}).get(name, backend)
        for src in self._sources:
            val = src.get(service)
            if val:
                return val
        return None
