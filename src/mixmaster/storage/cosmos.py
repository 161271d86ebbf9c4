from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from azure.core.exceptions import AzureError
from azure.cosmos import PartitionKey
from azure.cosmos.aio import CosmosClient
from azure.cosmos.exceptions import CosmosResourceExistsError, CosmosResourceNotFoundError

from ..errors import BackendError, DuplicateRecordError
from ..models import Record
from .base import (
    INVENTORY,
    RECIPES,
    Clock,
    EntitySpec,
    ensure_unique,
    imported_record,
    known_changes,
    new_record,
    next_updated_at,
    seed_if_empty,
)

logger = logging.getLogger(__name__)

LIST_QUERY = "SELECT * FROM c ORDER BY c.createdAt DESC"
COUNT_QUERY = "SELECT VALUE COUNT(1) FROM c"
SCAN_QUERY = "SELECT * FROM c"

_TIMESTAMP_KEYS = {"created_at": "createdAt", "updated_at": "updatedAt"}


def search_query(spec: EntitySpec) -> str:
    """Case-normalized substring match on scalar fields plus an EXISTS sub-query per list field."""
    parts = [f"CONTAINS(LOWER(c.{name}), @term)" for name in spec.search_fields]
    for list_field, key in spec.search_lists:
        value = f"LOWER(x.{key})" if key else "LOWER(x)"
        parts.append(f"EXISTS(SELECT VALUE x FROM x IN c.{list_field} WHERE CONTAINS({value}, @term))")
    return f"SELECT * FROM c WHERE {' OR '.join(parts)} ORDER BY c.createdAt DESC"


def find_query(field_name: str) -> str:
    return f"SELECT TOP 1 * FROM c WHERE c.{field_name} = @value ORDER BY c.createdAt ASC"


class CosmosCollection:
    def __init__(self, adapter: "CosmosAdapter", spec: EntitySpec):
        self.adapter = adapter
        self.spec = spec

    @property
    def container(self) -> Any:
        container = self.adapter.containers.get(self.spec.name)
        if container is None:
            raise BackendError(f"Container {self.spec.name} not initialized")
        return container

    def _to_document(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return {_TIMESTAMP_KEYS.get(key, key): value for key, value in record.items()}

    def _from_document(self, doc: Dict[str, Any]) -> Record:
        data = {key: value for key, value in doc.items() if not key.startswith("_")}
        for name in self.spec.list_fields:
            if data.get(name) is None:
                data[name] = []
        return self.spec.model.model_validate(data)

    async def _query(self, query: str, parameters: Optional[List[Dict[str, Any]]] = None) -> List[Any]:
        async with self.adapter.guard(f"{self.spec.name} query"):
            return [item async for item in self.container.query_items(query=query, parameters=parameters or [])]

    # --- reads ---
    async def list(self) -> List[Record]:
        return [self._from_document(doc) for doc in await self._query(LIST_QUERY)]

    async def get(self, record_id: str) -> Optional[Record]:
        async with self.adapter.guard(f"{self.spec.name} read"):
            try:
                doc = await self.container.read_item(item=record_id, partition_key=record_id)
            except CosmosResourceNotFoundError:
                return None
        return self._from_document(doc)

    async def find_one(self, field_name: str, value: Any) -> Optional[Record]:
        if field_name not in self.spec.fields:
            raise ValueError(f"Unknown field {field_name!r} for {self.spec.name}")
        docs = await self._query(find_query(field_name), [{"name": "@value", "value": value}])
        return self._from_document(docs[0]) if docs else None

    async def search(self, query: str) -> List[Record]:
        docs = await self._query(search_query(self.spec), [{"name": "@term", "value": query.strip().lower()}])
        return [self._from_document(doc) for doc in docs]

    async def count(self) -> int:
        result = await self._query(COUNT_QUERY)
        return int(result[0]) if result else 0

    # --- writes ---
    async def create(self, fields: Dict[str, Any]) -> Record:
        record = new_record(self.spec, fields, self.adapter.clock)
        await ensure_unique(self, record)
        async with self.adapter.guard(f"{self.spec.name} create"):
            await self.container.create_item(body=self._to_document(record))
        return self.spec.model.model_validate(record)

    async def insert_if_absent(self, fields: Dict[str, Any]) -> bool:
        record = imported_record(self.spec, fields, self.adapter.clock)
        async with self.adapter.guard(f"{self.spec.name} import"):
            try:
                await self.container.create_item(body=self._to_document(record))
            except CosmosResourceExistsError:
                return False
        return True

    async def update(self, record_id: str, changes: Dict[str, Any]) -> Optional[Record]:
        existing = await self.get(record_id)
        if existing is None:
            return None
        changes = known_changes(self.spec, changes)
        await ensure_unique(self, changes, record_id)
        record = existing.model_dump()
        record.update(changes)
        record["id"] = record_id
        record["updated_at"] = next_updated_at(existing.updated_at, self.adapter.clock)
        # per-document atomicity only: a concurrent replace of the same id wins if it lands last
        async with self.adapter.guard(f"{self.spec.name} replace"):
            try:
                await self.container.replace_item(item=record_id, body=self._to_document(record))
            except CosmosResourceNotFoundError:
                return None
        return self.spec.model.model_validate(record)

    async def delete(self, record_id: str) -> Optional[Record]:
        existing = await self.get(record_id)
        if existing is None:
            return None
        async with self.adapter.guard(f"{self.spec.name} delete"):
            try:
                await self.container.delete_item(item=record_id, partition_key=record_id)
            except CosmosResourceNotFoundError:
                return None
        return existing

    async def backfill(self) -> int:
        """Give documents written before a field existed that field's default."""
        patched = 0
        for doc in await self._query(SCAN_QUERY):
            missing = {name: value for name, value in self.spec.backfill.items() if name not in doc}
            if not missing:
                continue
            body = {key: value for key, value in doc.items() if not key.startswith("_")}
            body.update(missing)
            async with self.adapter.guard(f"{self.spec.name} backfill"):
                await self.container.replace_item(item=body["id"], body=body)
            patched += 1
        if patched:
            logger.info("Backfilled %d %s documents", patched, self.spec.name)
        return patched


class CosmosAdapter:
    """Document store backend: one Cosmos DB container per entity family, partitioned by id."""

    def __init__(
        self,
        connection_string: str = "",
        database_id: str = "drinks",
        seed: bool = True,
        client: Optional[Any] = None,
    ):
        self.connection_string = connection_string
        self.database_id = database_id
        self.seed = seed
        self.client = client
        self.clock = Clock()
        self.containers: Dict[str, Any] = {}
        self.recipes = CosmosCollection(self, RECIPES)
        self.inventory = CosmosCollection(self, INVENTORY)
        self._closed = False

    @asynccontextmanager
    async def guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except CosmosResourceExistsError as exc:
            raise DuplicateRecordError("A record with the same id already exists") from exc
        except AzureError as exc:
            logger.exception("Cosmos %s failed", operation)
            raise BackendError(f"{operation} failed") from exc

    async def initialize(self) -> None:
        logger.info("Initializing Cosmos DB connection...")
        async with self.guard("initialize"):
            if self.client is None:
                self.client = CosmosClient.from_connection_string(self.connection_string)
            database = await self.client.create_database_if_not_exists(id=self.database_id)
            for spec in (RECIPES, INVENTORY):
                self.containers[spec.name] = await database.create_container_if_not_exists(
                    id=spec.name, partition_key=PartitionKey(path="/id")
                )

        await self.recipes.backfill()
        await self.inventory.backfill()
        if self.seed:
            await seed_if_empty(self.recipes)
        logger.info("Cosmos DB initialized successfully")

    async def close(self) -> None:
        if self._closed or self.client is None:
            return
        self._closed = True
        await self.client.close()
        logger.info("Cosmos DB connection closed")
