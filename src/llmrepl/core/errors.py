from __future__ import annotations
from typing import Optional


class ReplError(Exception):
    """Base class for every per-request failure the core reports."""


class BackendError(ReplError):
    """Transport, parse or provider failure while talking to a backend."""

    def __init__(self, backend: str, message: str):
        super().__init__(f"{backend}: {message}")
        self.backend = backend
        self.message = message


class BackendClientError(BackendError):
    """
    Non-retryable: caller/config issue (4xx invalid request, auth, unknown model,
    rejected option). The fix is change input/config, not retry.
    """


class BackendTransientError(BackendError):
    """
    Retryable: rate limits, timeouts, network hiccups, 5xx, etc.
    Retrying with backoff is appropriate (caller's decision, never the adapter's).
    """


class NotReady(BackendClientError):
    """A prerequisite (usually a credential) is missing; fixed by configuration."""

    def __init__(self, backend: str, hint: Optional[str] = None):
        message = "backend is not ready"
        if hint:
            message = f"{message}: {hint}"
        super().__init__(backend, message)
        self.hint = hint


class StreamError(BackendError):
    """Mid-stream failure. Fragments delivered before it stay valid."""


class UnknownBackend(ReplError):
    def __init__(self, name: str):
        super().__init__(f"Unknown backend: {name}")
        self.name = name


class UnknownModel(ReplError):
    def __init__(self, backend: str, model: str):
        super().__init__(f"Model '{model}' not found for backend '{backend}'")
        self.backend = backend
        self.model = model


class CommandError(ReplError):
    """Failure raised by a command handler."""


class UnknownCommand(CommandError):
    def __init__(self, name: str):
        super().__init__(f"Unknown command: {name}")
        self.name = name


class ShellError(CommandError):
    """Shell pass-through failed to start or exited non-zero."""
