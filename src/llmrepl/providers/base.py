from __future__ import annotations
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from llmrepl.core.errors import (
    BackendClientError,
    BackendError,
    BackendTransientError,
    NotReady,
    StreamError,
)
from llmrepl.core.ports import BackendIdentity, Fragment
from llmrepl.log_utils import log_chunks_enabled, log_event
from llmrepl.providers.param_policy import ParamPolicy, PolicyRejected

logger = logging.getLogger(__name__)


def classify_status(backend: str, status: int, message: str) -> BackendError:
    """Map an HTTP status to a neutral backend error (429/5xx retryable, other 4xx not)."""
    text = f"HTTP {status} - {message}" if message else f"HTTP {status}"
    if status == 429 or status >= 500:
        return BackendTransientError(backend, text)
    return BackendClientError(backend, text)


def error_message_from_body(body: str) -> str:
    """Pull a human message out of common provider error envelopes."""
    try:
        data = json.loads(body)
    except ValueError:
        return body.strip()
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict):
        parts = [str(err.get("message") or "").strip()]
        if err.get("status"):
            parts.append(f"(status: {err['status']})")
        return " ".join(p for p in parts if p) or body.strip()
    if isinstance(err, str):
        return err
    return body.strip()


def expect_object(value: Any, what: str) -> Dict[str, Any]:
    """A decoded JSON value that must be an object; ValueError otherwise."""
    if not isinstance(value, dict):
        raise ValueError(f"expected {what} to be a JSON object, got {type(value).__name__}")
    return value


def expect_list(value: Any, what: str) -> list:
    """A missing/null list reads as empty; anything else that is not a list is malformed."""
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"expected {what} to be a JSON array, got {type(value).__name__}")
    return value


def expect_text(value: Any, what: str) -> str:
    """A missing/null text field reads as ""; a non-string is malformed."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"expected {what} to be a string, got {type(value).__name__}")
    return value


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """Yield the data payload of each server-sent event (multi-line data joined)."""
    buffered: list[str] = []
    async for line in response.aiter_lines():
        if line.startswith("data:"):
            buffered.append(line[5:].strip())
        elif line.strip() == "":
            if buffered:
                yield "\n".join(buffered)
                buffered = []
    if buffered:
        yield "\n".join(buffered)


class WireStream:
    """
    Fragments decoded from one streaming HTTP response.

    `texts` is the adapter's decoder: an async generator of text deltas that raises
    ValueError (or StreamError) on a malformed chunk. Any failure becomes a single
    terminal ERROR fragment for this stream only; the response is released on the
    terminal fragment or on aclose(), whichever comes first.
    """

    def __init__(self, backend: str, response: httpx.Response, texts: AsyncIterator[str]):
        self.backend = backend
        self._response = response
        self._texts = texts
        self._finished = False
        self._closed = False

    def __aiter__(self) -> "WireStream":
        return self

    async def __anext__(self) -> Fragment:
        if self._finished:
            raise StopAsyncIteration
        try:
            piece = ""
            while not piece:
                piece = await self._texts.__anext__()
        except StopAsyncIteration:
            await self.aclose()
            return Fragment.end()
        except StreamError as exc:
            await self.aclose()
            return Fragment.failure(exc)
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            await self.aclose()
            log_event(logger, "stream.malformed_chunk", level=logging.WARNING, backend=self.backend, error=str(exc))
            return Fragment.failure(StreamError(self.backend, f"malformed stream chunk: {exc}"))
        except httpx.HTTPError as exc:
            await self.aclose()
            return Fragment.failure(StreamError(self.backend, f"stream interrupted: {exc}"))
        if log_chunks_enabled():
            log_event(logger, "stream.chunk", level=logging.DEBUG, backend=self.backend, size=len(piece))
        return Fragment.delta(piece)

    async def aclose(self) -> None:
        self._finished = True
        if self._closed:
            return
        self._closed = True
        try:
            await self._texts.aclose()  # type: ignore[attr-defined]
        finally:
            await self._response.aclose()


class HttpBackend:
    """
    Shared plumbing for HTTP adapters: client ownership, credential readiness,
    option merging/policy, status classification and stream opening.
    Subclasses set the class attributes and implement the four operations.
    """

    name: str = ""
    default_base_url: str = ""
    requires_credential: bool = False
    supports_streaming: bool = True
    credential_hint: Optional[str] = None

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        params: Optional[Dict[str, Any]] = None,
        policy: Optional[ParamPolicy] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        base = base_url or self.default_base_url
        self.base_url = base if base.endswith("/") else base + "/"
        self.api_key = api_key or None
        self.params = dict(params or {})
        self.policy = policy
        # No default timeout: that is the caller's policy (None = wait indefinitely).
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self.identity = BackendIdentity(
            name=self.name,
            supports_streaming=self.supports_streaming,
            requires_credential=self.requires_credential,
        )

    @classmethod
    def create(cls, *, provider_cfg: Dict[str, Any], secrets, policy: Optional[ParamPolicy] = None):
        cfg = provider_cfg or {}
        api_key = secrets.secret(cls.name, "api_key") if cls.requires_credential else None
        return cls(
            base_url=cfg.get("base_url"),
            api_key=api_key,
            timeout=cfg.get("timeout"),
            params=cfg.get("params"),
            policy=policy,
        )

    def identify(self) -> str:
        return self.name

    async def check_readiness(self) -> None:
        self._require_key()

    def _require_key(self) -> Optional[str]:
        if self.requires_credential and not self.api_key:
            raise NotReady(self.name, self.credential_hint)
        return self.api_key

    def _url(self, endpoint: str) -> httpx.URL:
        return httpx.URL(self.base_url).join(endpoint)

    def _options(self, model: str, options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        merged = {**self.params, **(options or {})}
        if self.policy is None:
            return merged
        try:
            result = self.policy.evaluate(model, merged)
        except PolicyRejected as e:
            raise BackendClientError(self.name, str(e))
        for w in result.warnings:
            log_event(logger, "options.dropped", level=logging.WARNING, backend=self.name, model=model, message=w)
        return result.effective

    def _status_error(self, status: int, body: str) -> BackendError:
        return classify_status(self.name, status, error_message_from_body(body))

    async def _request_json(self, method: str, url: httpx.URL, **kwargs: Any) -> Any:
        log_event(logger, "backend.request", level=logging.DEBUG, backend=self.name, method=method, path=url.path)
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            raise BackendTransientError(self.name, f"request failed: {e}") from e
        if resp.is_error:
            err = self._status_error(resp.status_code, resp.text)
            log_event(logger, "backend.error", level=logging.WARNING, backend=self.name, status=resp.status_code)
            raise err
        try:
            return resp.json()
        except ValueError as e:
            raise BackendError(self.name, f"response is not valid JSON: {e}") from e

    async def _open_stream(self, method: str, url: httpx.URL, **kwargs: Any) -> httpx.Response:
        """Send a request and return the open response; status errors are raised here, not mid-stream."""
        log_event(logger, "backend.stream_open", level=logging.DEBUG, backend=self.name, method=method, path=url.path)
        request = self._client.build_request(method, url, **kwargs)
        try:
            resp = await self._client.send(request, stream=True)
        except httpx.RequestError as e:
            raise BackendTransientError(self.name, f"request failed: {e}") from e
        if resp.is_error:
            try:
                body = (await resp.aread()).decode("utf-8", errors="replace")
            finally:
                await resp.aclose()
            log_event(logger, "backend.error", level=logging.WARNING, backend=self.name, status=resp.status_code)
            raise self._status_error(resp.status_code, body)
        return resp

    async def aclose(self) -> None:
        await self._client.aclose()
