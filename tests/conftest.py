"""
Shared fixtures and fakes for the mixmaster tests.

This module provides:
- an in-memory stand-in for the async Cosmos client (database, containers, queries)
- a scripted language model for chat tests
- storage fixtures parametrized over both backends
"""
from __future__ import annotations
import asyncio
import copy
import re
from typing import Any, AsyncIterator, Dict, List, Optional

import pytest
import pytest_asyncio
from azure.cosmos.exceptions import CosmosResourceExistsError, CosmosResourceNotFoundError

from mixmaster.errors import UpstreamModelError
from mixmaster.storage import CosmosAdapter, SqliteAdapter
from mixmaster.storage.cosmos import COUNT_QUERY, SCAN_QUERY
from mixmaster.tools import ToolRegistry

# =============================================================================
# Cosmos fakes
# =============================================================================

_SEARCHABLE = ("name", "category", "notes", "barcode")


def _matches(doc: Dict[str, Any], term: str) -> bool:
    for key in _SEARCHABLE:
        value = doc.get(key)
        if isinstance(value, str) and term in value.lower():
            return True
    for ingredient in doc.get("ingredients") or []:
        if term in str(ingredient.get("name", "")).lower():
            return True
    return any(term in str(tag).lower() for tag in doc.get("tags") or [])


async def _aiter(items: List[Any]) -> AsyncIterator[Any]:
    for item in items:
        yield item


class FakeContainer:
    """Dict-backed container. Reads and replaces yield to the loop like real network calls."""

    def __init__(self, container_id: str):
        self.id = container_id
        self.docs: Dict[str, Dict[str, Any]] = {}
        self.queries: List[str] = []

    def _stored(self, body: Dict[str, Any]) -> Dict[str, Any]:
        doc = copy.deepcopy(body)
        doc.update(_rid=f"rid-{body['id']}", _etag='"0"', _ts=0)
        return doc

    async def read_item(self, item: str, partition_key: str) -> Dict[str, Any]:
        await asyncio.sleep(0)
        if item not in self.docs:
            raise CosmosResourceNotFoundError(status_code=404, message=f"{item} not found")
        return copy.deepcopy(self.docs[item])

    async def create_item(self, body: Dict[str, Any]) -> Dict[str, Any]:
        if body["id"] in self.docs:
            raise CosmosResourceExistsError(status_code=409, message=f"{body['id']} exists")
        self.docs[body["id"]] = self._stored(body)
        return copy.deepcopy(self.docs[body["id"]])

    async def replace_item(self, item: str, body: Dict[str, Any]) -> Dict[str, Any]:
        await asyncio.sleep(0)
        if item not in self.docs:
            raise CosmosResourceNotFoundError(status_code=404, message=f"{item} not found")
        self.docs[item] = self._stored(body)
        return copy.deepcopy(self.docs[item])

    async def delete_item(self, item: str, partition_key: str) -> None:
        if item not in self.docs:
            raise CosmosResourceNotFoundError(status_code=404, message=f"{item} not found")
        del self.docs[item]

    def query_items(self, query: str, parameters: Optional[List[Dict[str, Any]]] = None, **kwargs: Any) -> AsyncIterator[Any]:
        self.queries.append(query)
        return _aiter(self._run(query, {p["name"]: p["value"] for p in parameters or []}))

    def _run(self, query: str, params: Dict[str, Any]) -> List[Any]:
        docs = [copy.deepcopy(doc) for doc in self.docs.values()]
        newest_first = sorted(reversed(docs), key=lambda d: d["createdAt"], reverse=True)
        if query == COUNT_QUERY:
            return [len(docs)]
        if query == SCAN_QUERY:
            return docs
        if query.startswith("SELECT TOP 1"):
            field = re.search(r"c\.(\w+) = @value", query).group(1)
            hits = [d for d in sorted(docs, key=lambda d: d["createdAt"]) if d.get(field) == params["@value"]]
            return hits[:1]
        if "@term" in query:
            return [d for d in newest_first if _matches(d, params["@term"])]
        return newest_first


class FakeDatabase:
    def __init__(self, database_id: str):
        self.id = database_id
        self.containers: Dict[str, FakeContainer] = {}

    def container(self, container_id: str) -> FakeContainer:
        return self.containers.setdefault(container_id, FakeContainer(container_id))

    async def create_container_if_not_exists(self, id: str, partition_key: Any) -> FakeContainer:
        return self.container(id)


class FakeCosmosClient:
    def __init__(self) -> None:
        self.databases: Dict[str, FakeDatabase] = {}
        self.close_calls = 0

    def database(self, database_id: str = "drinks") -> FakeDatabase:
        return self.databases.setdefault(database_id, FakeDatabase(database_id))

    async def create_database_if_not_exists(self, id: str) -> FakeDatabase:
        return self.database(id)

    async def close(self) -> None:
        self.close_calls += 1


# =============================================================================
# Language model fake
# =============================================================================


class ScriptedModel:
    """
    Plays back canned model output.

    ``replies`` feed ``chat`` one message per call; ``streams`` feed ``stream_chat``
    one list of chunks per call. An exception in either list is raised in its place.
    A ``chat`` call with nothing left to play back fails like an unreachable model.
    """

    def __init__(self, replies: Optional[List[Any]] = None, streams: Optional[List[List[Any]]] = None):
        self.replies = list(replies or [])
        self.streams = list(streams or [])
        self.calls: List[List[Dict[str, Any]]] = []
        self.tools_seen: List[List[Dict[str, Any]]] = []
        self.formats_seen: List[Optional[Dict[str, Any]]] = []
        self.closed_streams = 0

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        format: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        self.calls.append(copy.deepcopy(messages))
        self.tools_seen.append(tools)
        self.formats_seen.append(format)
        if not self.replies:
            raise UpstreamModelError("no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def stream_chat(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]]) -> AsyncIterator[Dict[str, Any]]:
        self.calls.append(copy.deepcopy(messages))
        self.tools_seen.append(tools)
        chunks = self.streams.pop(0)
        try:
            for chunk in chunks:
                if isinstance(chunk, Exception):
                    raise chunk
                yield chunk
        finally:
            self.closed_streams += 1


def tool_call(name: str, arguments: Any) -> Dict[str, Any]:
    return {"function": {"name": name, "arguments": arguments}}


# =============================================================================
# Payloads
# =============================================================================


def margarita_payload(**overrides: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "name": "Test Margarita",
        "ingredients": [{"name": "Tequila", "amount": 2, "unit": "oz"}],
        "instructions": "Shake",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_payload():
    return margarita_payload


# =============================================================================
# Stores
# =============================================================================


def sqlite_url(tmp_path: Any) -> str:
    return f"sqlite+aiosqlite:///{(tmp_path / 'mixmaster.db').as_posix()}"


@pytest_asyncio.fixture(params=["sqlite", "cosmos"])
async def store(request: pytest.FixtureRequest, tmp_path: Any) -> AsyncIterator[Any]:
    if request.param == "sqlite":
        adapter: Any = SqliteAdapter(sqlite_url(tmp_path), seed=False)
    else:
        adapter = CosmosAdapter(seed=False, client=FakeCosmosClient())
    await adapter.initialize()
    yield adapter
    await adapter.close()


@pytest_asyncio.fixture
async def sqlite_store(tmp_path: Any) -> AsyncIterator[SqliteAdapter]:
    adapter = SqliteAdapter(sqlite_url(tmp_path), seed=False)
    await adapter.initialize()
    yield adapter
    await adapter.close()


@pytest.fixture
def registry(store: Any) -> ToolRegistry:
    return ToolRegistry(store)
