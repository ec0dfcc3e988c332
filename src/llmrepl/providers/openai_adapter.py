# src/llmrepl/providers/openai_adapter.py
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from llmrepl.core.errors import (
    BackendClientError,
    BackendError,
    BackendTransientError,
    NotReady,
    StreamError,
)
from llmrepl.core.ports import BackendIdentity, Fragment
from llmrepl.log_utils import log_event
from llmrepl.providers.param_policy import ParamPolicy, PolicyRejected
from llmrepl.providers.registry import BackendRegistry

logger = logging.getLogger(__name__)


def _classify_openai_exception(exc: Exception) -> BackendError:
    """
    Convert OpenAI/client exceptions into neutral backend errors.
    Avoid hard dependency on specific SDK exception classes by inspecting attributes/message.
    """
    status = getattr(exc, "status_code", None) or getattr(exc, "http_status", None)
    msg = str(exc)

    if status is not None:
        s = int(status)
        if s == 429 or s >= 500:
            return BackendTransientError("openai", msg)
        return BackendClientError("openai", msg)

    lower = msg.lower()
    if any(k in lower for k in ("rate limit", "temporarily unavailable", "timeout", "timed out", "connection")):
        return BackendTransientError("openai", msg)
    if any(k in lower for k in ("invalid_request_error", "unsupported", "parameter", "authentication")):
        return BackendClientError("openai", msg)
    return BackendTransientError("openai", msg)


class SdkStream:
    """Fragments from an SDK AsyncStream of chat.completion.chunk objects."""

    def __init__(self, stream):
        self._stream = stream
        self._chunks = stream.__aiter__()
        self._finished = False

    def __aiter__(self) -> "SdkStream":
        return self

    async def __anext__(self) -> Fragment:
        if self._finished:
            raise StopAsyncIteration
        try:
            while True:
                chunk = await self._chunks.__anext__()
                try:
                    piece = chunk.choices[0].delta.content
                except (AttributeError, IndexError):
                    piece = None
                if piece is not None and not isinstance(piece, str):
                    raise ValueError(f"chunk content is {type(piece).__name__}, not text")
                if piece:
                    return Fragment.delta(piece)
        except StopAsyncIteration:
            await self.aclose()
            return Fragment.end()
        except ValueError as e:
            await self.aclose()
            return Fragment.failure(StreamError("openai", f"malformed stream chunk: {e}"))
        except Exception as e:
            await self.aclose()
            err = _classify_openai_exception(e)
            return Fragment.failure(StreamError("openai", err.message))

    async def aclose(self) -> None:
        if self._finished:
            return
        self._finished = True
        await self._stream.close()


@BackendRegistry.adapter("openai")
class OpenAIBackend:
    """
    Thin adapter over the OpenAI SDK:
    - the SDK owns the SSE framing; we only map chunks to Fragments
    - maps SDK errors to neutral BackendClientError / BackendTransientError
    - a missing key leaves the backend registered but not ready
    """

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        *,
        params: Optional[Dict[str, Any]] = None,
        policy: Optional[ParamPolicy] = None,
        timeout: Optional[float] = None,
        base_url: Optional[str] = None,
        organization: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.identity = BackendIdentity(name=self.name, supports_streaming=True, requires_credential=True)
        self.api_key = api_key or None
        self.params = dict(params or {})
        self.policy = policy
        self.timeout = timeout

        self.client = client
        if self.client is None and self.api_key:
            client_kwargs: Dict[str, Any] = {"api_key": self.api_key}
            if base_url:
                client_kwargs["base_url"] = base_url
            if organization:
                client_kwargs["organization"] = organization
            self.client = AsyncOpenAI(**client_kwargs)

    @classmethod
    def create(cls, *, provider_cfg: Dict[str, Any], secrets, policy: Optional[ParamPolicy] = None) -> "OpenAIBackend":
        cfg = provider_cfg or {}
        return cls(
            api_key=secrets.secret("openai", "api_key"),
            params=cfg.get("params"),
            policy=policy,
            timeout=cfg.get("timeout"),
            base_url=cfg.get("base_url"),
            organization=cfg.get("organization"),
        )

    def identify(self) -> str:
        return self.name

    async def check_readiness(self) -> None:
        self._require_client()

    def _require_client(self) -> AsyncOpenAI:
        if self.client is None:
            raise NotReady(self.name, "set the OPENAI_API_KEY environment variable (or configure secrets) and restart")
        return self.client

    def _build_args(self, model: str, prompt: str, options: Optional[Dict[str, Any]], *, stream: bool) -> Dict[str, Any]:
        merged = {**self.params, **(options or {})}
        if self.policy is not None:
            try:
                result = self.policy.evaluate(model, merged)
            except PolicyRejected as e:
                raise BackendClientError(self.name, str(e))
            for w in result.warnings:
                log_event(logger, "options.dropped", level=logging.WARNING, backend=self.name, model=model, message=w)
            merged = result.effective
        args: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": stream,
            **merged,
        }
        if self.timeout is not None:
            args["timeout"] = self.timeout
        return args

    async def enumerate_models(self) -> List[str]:
        client = self._require_client()
        try:
            page = await client.models.list()
        except Exception as e:
            raise _classify_openai_exception(e)
        try:
            return [m.id for m in page.data]
        except (AttributeError, TypeError) as e:
            raise BackendError(self.name, f"unexpected model list shape: {e}") from e

    async def query(self, model: str, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        client = self._require_client()
        args = self._build_args(model, prompt, options, stream=False)
        try:
            resp = await client.chat.completions.create(**args)
        except Exception as e:
            raise _classify_openai_exception(e)
        try:
            content = resp.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as e:
            raise BackendError(self.name, f"response missing message content: {e}") from e
        if content is not None and not isinstance(content, str):
            raise BackendError(self.name, "message content is not text")
        return content or ""

    async def query_stream(self, model: str, prompt: str, options: Optional[Dict[str, Any]] = None) -> Optional[SdkStream]:
        client = self._require_client()
        args = self._build_args(model, prompt, options, stream=True)
        try:
            stream = await client.chat.completions.create(**args)
        except Exception as e:
            raise _classify_openai_exception(e)
        return SdkStream(stream)

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.close()
