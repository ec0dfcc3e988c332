from __future__ import annotations
import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from llmrepl.core.errors import BackendError, StreamError
from llmrepl.providers.base import HttpBackend, WireStream, expect_list, expect_object, expect_text, iter_sse_data
from llmrepl.providers.registry import BackendRegistry


@BackendRegistry.adapter("groq")
class GroqBackend(HttpBackend):
    """
    Groq's OpenAI-compatible REST API.
    Streaming framing: server-sent events, `data: {chat.completion.chunk}` ... `data: [DONE]`.
    """

    name = "groq"
    default_base_url = "https://api.groq.com/openai/v1/"
    requires_credential = True
    credential_hint = "set the GROQ_API_KEY environment variable (or configure secrets) and restart"

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._require_key()}"}

    def _body(self, model: str, prompt: str, options: Optional[Dict[str, Any]], *, stream: bool) -> Dict[str, Any]:
        return {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": stream,
            **self._options(model, options),
        }

    async def enumerate_models(self) -> List[str]:
        data = await self._request_json("GET", self._url("models"), headers=self._headers())
        try:
            return [m["id"] for m in data["data"]]
        except (AttributeError, KeyError, TypeError) as e:
            raise BackendError(self.name, f"unexpected model list shape: {e}") from e

    async def query(self, model: str, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        headers = self._headers()
        data = await self._request_json(
            "POST", self._url("chat/completions"), headers=headers, json=self._body(model, prompt, options, stream=False)
        )
        try:
            return expect_text(data["choices"][0]["message"]["content"], "message content")
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise BackendError(self.name, f"response missing message content: {e}") from e

    async def query_stream(self, model: str, prompt: str, options: Optional[Dict[str, Any]] = None) -> Optional[WireStream]:
        headers = self._headers()
        resp = await self._open_stream(
            "POST", self._url("chat/completions"), headers=headers, json=self._body(model, prompt, options, stream=True)
        )
        return WireStream(self.name, resp, self._decode(resp))

    async def _decode(self, resp: httpx.Response) -> AsyncIterator[str]:
        async for data in iter_sse_data(resp):
            if data == "[DONE]":
                return
            if not data:
                continue
            chunk = expect_object(json.loads(data), "chunk")
            if chunk.get("error"):
                err = chunk["error"]
                raise StreamError(self.name, str(err.get("message") if isinstance(err, dict) else err))
            pieces = []
            for choice in expect_list(chunk["choices"], "choices"):
                delta = expect_object(expect_object(choice, "choice").get("delta") or {}, "delta")
                pieces.append(expect_text(delta.get("content"), "delta content"))
            text = "".join(pieces)
            if text:
                yield text
