from __future__ import annotations
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from llmrepl.core.errors import BackendError, StreamError
from llmrepl.log_utils import log_event
from llmrepl.providers.base import (
    HttpBackend,
    WireStream,
    error_message_from_body,
    expect_list,
    expect_object,
    expect_text,
    iter_sse_data,
)
from llmrepl.providers.registry import BackendRegistry

logger = logging.getLogger(__name__)


def _strip_prefix(model: str) -> str:
    return model[len("models/"):] if model.startswith("models/") else model


def _candidate_text(payload: Dict[str, Any]) -> str:
    """
    Concatenate every text part of every candidate in one GenerateContentResponse.
    Raises ValueError when the payload does not have that shape.
    """
    out: List[str] = []
    for cand in expect_list(payload.get("candidates"), "candidates"):
        cand = expect_object(cand, "candidate")
        if str(cand.get("finishReason", "")).upper() == "SAFETY":
            log_event(logger, "gemini.safety_block", level=logging.WARNING)
        content = expect_object(cand.get("content") or {}, "content")
        for part in expect_list(content.get("parts"), "parts"):
            out.append(expect_text(expect_object(part, "part").get("text"), "part text"))
    return "".join(out)


@BackendRegistry.adapter("gemini")
class GeminiBackend(HttpBackend):
    """
    Google Generative Language API (v1beta). Key goes in the `key` query param.
    Streaming uses `streamGenerateContent?alt=sse`: one GenerateContentResponse per event.
    """

    name = "gemini"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta/"
    requires_credential = True
    credential_hint = "set the GOOGLE_API_KEY environment variable (or configure secrets) and restart"

    def _action_url(self, model: str, action: str) -> httpx.URL:
        return self._url(f"models/{_strip_prefix(model)}:{action}")

    def _body(self, model: str, prompt: str, options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        body: Dict[str, Any] = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
        opts = self._options(model, options)
        if opts:
            body["generationConfig"] = opts
        return body

    async def enumerate_models(self) -> List[str]:
        data = await self._request_json("GET", self._url("models"), params={"key": self._require_key()})
        try:
            return [
                _strip_prefix(m["name"])
                for m in data.get("models", [])
                if "generateContent" in (m.get("supportedGenerationMethods") or [])
            ]
        except (AttributeError, KeyError, TypeError) as e:
            raise BackendError(self.name, f"unexpected model list shape: {e}") from e

    async def query(self, model: str, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        key = self._require_key()
        data = await self._request_json(
            "POST", self._action_url(model, "generateContent"), params={"key": key}, json=self._body(model, prompt, options)
        )
        try:
            text = _candidate_text(expect_object(data, "response"))
        except ValueError as e:
            raise BackendError(self.name, f"unexpected response shape: {e}") from e
        if not text:
            raise BackendError(self.name, "non-streaming response missing expected text content")
        return text

    async def query_stream(self, model: str, prompt: str, options: Optional[Dict[str, Any]] = None) -> Optional[WireStream]:
        key = self._require_key()
        resp = await self._open_stream(
            "POST",
            self._action_url(model, "streamGenerateContent"),
            params={"alt": "sse", "key": key},
            json=self._body(model, prompt, options),
        )
        return WireStream(self.name, resp, self._decode(resp))

    async def _decode(self, resp: httpx.Response) -> AsyncIterator[str]:
        async for data in iter_sse_data(resp):
            if not data:
                continue
            payload = expect_object(json.loads(data), "chunk")
            if payload.get("error"):
                raise StreamError(self.name, error_message_from_body(data))
            text = _candidate_text(payload)
            if text:
                yield text
