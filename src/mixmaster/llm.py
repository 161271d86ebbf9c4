from __future__ import annotations
import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import requests

from .errors import UpstreamModelError

logger = logging.getLogger(__name__)

OLLAMA_CHAT_URL = "http://localhost:11434/api/chat"
MODEL = "llama3.1"
REQUEST_TIMEOUT = 120


class LanguageModel(Protocol):
    async def chat(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        format: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        One complete assistant message: ``{"role", "content", "tool_calls"?}``.

        With ``format`` (a JSON schema) the content is JSON matching that schema.
        """
        ...

    def stream_chat(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]) -> AsyncIterator[Dict[str, Any]]:
        """Partial assistant messages, in order, until the model is done."""
        ...


class OllamaClient:
    """Ollama /api/chat over requests. Blocking calls run in a worker thread."""

    def __init__(self, url: str = OLLAMA_CHAT_URL, model: str = MODEL, timeout: float = REQUEST_TIMEOUT):
        self.url = url
        self.model = model
        self.timeout = timeout

    def _payload(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        stream: bool,
        format: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": self.model, "stream": stream, "messages": messages}
        if tools:
            payload["tools"] = tools
        if format:
            payload["format"] = format
        return payload

    def _post(self, payload: Dict[str, Any]) -> requests.Response:
        logger.debug("ollama_chat model=%s stream=%s messages=%d", self.model, payload["stream"], len(payload["messages"]))
        try:
            r = requests.post(self.url, json=payload, timeout=self.timeout, stream=payload["stream"])
            r.raise_for_status()
        except requests.RequestException as exc:
            raise UpstreamModelError(f"Model request failed: {exc}") from exc
        return r

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        format: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        r = await asyncio.to_thread(self._post, self._payload(messages, tools, stream=False, format=format))
        try:
            data = r.json()
        except ValueError as exc:
            raise UpstreamModelError("Model returned invalid JSON") from exc
        if "error" in data:
            raise UpstreamModelError(str(data["error"]))
        return data.get("message", {})

    async def stream_chat(
        self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]
    ) -> AsyncIterator[Dict[str, Any]]:
        r = await asyncio.to_thread(self._post, self._payload(messages, tools, stream=True))
        lines = r.iter_lines()
        try:
            while True:
                line = await asyncio.to_thread(_next_line, lines)
                if line is None:
                    break
                if not line:
                    continue
                try:
                    chunk = json.loads(line)
                except ValueError as exc:
                    raise UpstreamModelError("Model stream sent invalid JSON") from exc
                if "error" in chunk:
                    raise UpstreamModelError(str(chunk["error"]))
                yield chunk.get("message", {})
                if chunk.get("done"):
                    break
        finally:
            # runs on normal end, on error and when the consumer stops early
            r.close()


def _next_line(lines: Any) -> Optional[bytes]:
    try:
        return next(lines, None)
    except requests.RequestException as exc:
        raise UpstreamModelError(f"Model stream interrupted: {exc}") from exc
