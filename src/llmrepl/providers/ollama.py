from __future__ import annotations
import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from llmrepl.core.errors import BackendError, StreamError
from llmrepl.providers.base import HttpBackend, WireStream, expect_object, expect_text
from llmrepl.providers.registry import BackendRegistry


@BackendRegistry.adapter("ollama")
class OllamaBackend(HttpBackend):
    """
    Local Ollama server. No credential.
    Streaming framing: one JSON object per line, {"response": "...", "done": bool}.
    """

    name = "ollama"
    default_base_url = "http://localhost:11434/"

    def _body(self, model: str, prompt: str, options: Optional[Dict[str, Any]], *, stream: bool) -> Dict[str, Any]:
        body: Dict[str, Any] = {"model": model, "prompt": prompt, "stream": stream}
        opts = self._options(model, options)
        if opts:
            body["options"] = opts
        return body

    async def enumerate_models(self) -> List[str]:
        data = await self._request_json("GET", self._url("api/tags"))
        try:
            return [m["name"] for m in data.get("models", [])]
        except (AttributeError, KeyError, TypeError) as e:
            raise BackendError(self.name, f"unexpected model list shape: {e}") from e

    async def query(self, model: str, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        data = await self._request_json("POST", self._url("api/generate"), json=self._body(model, prompt, options, stream=False))
        if not isinstance(data, dict) or "response" not in data:
            raise BackendError(self.name, "response missing 'response' field")
        if not isinstance(data["response"], str):
            raise BackendError(self.name, "response field is not text")
        return data["response"]

    async def query_stream(self, model: str, prompt: str, options: Optional[Dict[str, Any]] = None) -> Optional[WireStream]:
        resp = await self._open_stream("POST", self._url("api/generate"), json=self._body(model, prompt, options, stream=True))
        return WireStream(self.name, resp, self._decode(resp))

    async def _decode(self, resp: httpx.Response) -> AsyncIterator[str]:
        async for line in resp.aiter_lines():
            if not line.strip():
                continue
            chunk = expect_object(json.loads(line), "chunk")
            if chunk.get("error"):
                raise StreamError(self.name, str(chunk["error"]))
            piece = expect_text(chunk.get("response"), "response")
            if piece:
                yield piece
            if chunk.get("done"):
                return
