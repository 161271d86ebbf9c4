from __future__ import annotations
import json

import pytest
import requests

from mixmaster import llm
from mixmaster.errors import UpstreamModelError
from mixmaster.llm import OllamaClient


class FakeResponse:
    def __init__(self, payload=None, lines=None, status_code=200):
        self.payload = payload
        self.lines = lines or []
        self.status_code = status_code
        self.closed = False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload

    def iter_lines(self):
        return iter(self.lines)

    def close(self):
        self.closed = True


@pytest.fixture
def posted(monkeypatch):
    """Capture requests.post calls and answer with the queued FakeResponse."""
    calls = {"requests": [], "responses": []}

    def fake_post(url, json=None, timeout=None, stream=False):
        calls["requests"].append({"url": url, "json": json, "stream": stream})
        response = calls["responses"].pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(llm.requests, "post", fake_post)
    return calls


def ndjson(*chunks):
    return [json.dumps(chunk).encode() for chunk in chunks]


class TestBufferedChat:
    @pytest.mark.asyncio
    async def test_returns_message_and_sends_tools(self, posted):
        posted["responses"].append(FakeResponse({"message": {"role": "assistant", "content": "Cheers"}, "done": True}))
        client = OllamaClient("http://ollama/api/chat", "llama3.1")
        tools = [{"type": "function", "function": {"name": "create_recipe"}}]

        message = await client.chat([{"role": "user", "content": "Hi"}], tools)

        assert message["content"] == "Cheers"
        sent = posted["requests"][0]
        assert sent["url"] == "http://ollama/api/chat"
        assert sent["json"]["model"] == "llama3.1"
        assert sent["json"]["stream"] is False
        assert sent["json"]["tools"] == tools

    @pytest.mark.asyncio
    async def test_no_tools_key_when_empty(self, posted):
        posted["responses"].append(FakeResponse({"message": {"role": "assistant", "content": "ok"}}))

        await OllamaClient().chat([{"role": "user", "content": "Hi"}], [])

        assert "tools" not in posted["requests"][0]["json"]
        assert "format" not in posted["requests"][0]["json"]

    @pytest.mark.asyncio
    async def test_sends_json_schema_format(self, posted):
        schema = {"type": "object", "properties": {"tags": {"type": "array"}}}
        posted["responses"].append(FakeResponse({"message": {"role": "assistant", "content": "{\"tags\": []}"}}))

        message = await OllamaClient().chat([{"role": "user", "content": "Tag it"}], [], format=schema)

        assert posted["requests"][0]["json"]["format"] == schema
        assert message["content"] == "{\"tags\": []}"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            requests.ConnectionError("refused"),
            FakeResponse(status_code=500),
            FakeResponse({"error": "model 'llama9' not found"}),
            FakeResponse(ValueError("not json")),
        ],
    )
    async def test_failures_are_upstream_errors(self, posted, response):
        posted["responses"].append(response)

        with pytest.raises(UpstreamModelError):
            await OllamaClient().chat([{"role": "user", "content": "Hi"}], [])


class TestStreamingChat:
    @pytest.mark.asyncio
    async def test_yields_messages_until_done(self, posted):
        response = FakeResponse(
            lines=ndjson(
                {"message": {"role": "assistant", "content": "Shaken "}, "done": False},
                {"message": {"role": "assistant", "content": "not stirred"}, "done": False},
                {"message": {"role": "assistant", "content": ""}, "done": True},
            )
            + [b""]
        )
        posted["responses"].append(response)

        chunks = [chunk async for chunk in OllamaClient().stream_chat([{"role": "user", "content": "Hi"}], [])]

        assert [c["content"] for c in chunks] == ["Shaken ", "not stirred", ""]
        assert posted["requests"][0]["stream"] is True
        assert response.closed

    @pytest.mark.asyncio
    async def test_bad_line_raises_and_closes(self, posted):
        response = FakeResponse(lines=[b"{not json"])
        posted["responses"].append(response)

        with pytest.raises(UpstreamModelError):
            async for _ in OllamaClient().stream_chat([{"role": "user", "content": "Hi"}], []):
                pass
        assert response.closed

    @pytest.mark.asyncio
    async def test_error_chunk_raises(self, posted):
        posted["responses"].append(FakeResponse(lines=ndjson({"error": "out of memory"})))

        with pytest.raises(UpstreamModelError):
            async for _ in OllamaClient().stream_chat([{"role": "user", "content": "Hi"}], []):
                pass
