from __future__ import annotations
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

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
    seed_if_empty,
)

logger = logging.getLogger(__name__)

TABLES = {
    "recipes": """
        CREATE TABLE IF NOT EXISTS recipes (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT,
            ingredients TEXT NOT NULL,
            instructions TEXT NOT NULL,
            glass TEXT,
            garnish TEXT,
            tags TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """,
    "inventory": """
        CREATE TABLE IF NOT EXISTS inventory (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            quantity REAL NOT NULL,
            unit TEXT NOT NULL,
            barcode TEXT,
            category TEXT,
            notes TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """,
}

INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_recipes_created_at ON recipes (created_at)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_inventory_barcode ON inventory (barcode)",
)

# column type used when a field is added to an existing table
COLUMN_TYPES = {"quantity": "REAL"}


def unicode_lower(value: Any) -> Any:
    """SQL function folding case the way ``str.lower`` does. SQLite's LOWER only folds ASCII."""
    return value.lower() if isinstance(value, str) else value


def _register_functions(dbapi_connection: Any, connection_record: Any) -> None:
    dbapi_connection.create_function("unicode_lower", 1, unicode_lower)


def _like_pattern(query: str) -> str:
    escaped = query.strip().lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def search_clause(spec: EntitySpec) -> str:
    """WHERE clause matching :q against the entity's scalar fields and list elements."""
    parts = [f"unicode_lower({name}) LIKE :q ESCAPE '\\'" for name in spec.search_fields]
    for list_field, key in spec.search_lists:
        value = f"json_extract(item.value, '$.{key}')" if key else "item.value"
        parts.append(
            f"EXISTS (SELECT 1 FROM json_each({list_field}) AS item WHERE unicode_lower({value}) LIKE :q ESCAPE '\\')"
        )
    return " OR ".join(parts)


class SqliteCollection:
    def __init__(self, adapter: "SqliteAdapter", spec: EntitySpec):
        self.adapter = adapter
        self.spec = spec
        self.table = spec.name

    # --- row mapping ---
    def _to_row(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        row = dict(fields)
        for name in self.spec.list_fields:
            if name in row:
                row[name] = json.dumps(row[name] or [])
        return row

    def _from_row(self, row: Mapping[str, Any]) -> Record:
        data = dict(row)
        for name in self.spec.list_fields:
            data[name] = json.loads(data[name]) if data.get(name) else []
        return self.spec.model.model_validate(data)

    async def _fetch(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Record]:
        async with self.adapter.connect(f"{self.table} query") as conn:
            res = await conn.execute(text(sql), params or {})
            rows = res.mappings().all()
        return [self._from_row(row) for row in rows]

    # --- reads ---
    async def list(self) -> List[Record]:
        return await self._fetch(f"SELECT * FROM {self.table} ORDER BY created_at DESC, rowid DESC")

    async def get(self, record_id: str) -> Optional[Record]:
        rows = await self._fetch(f"SELECT * FROM {self.table} WHERE id = :id", {"id": record_id})
        return rows[0] if rows else None

    async def find_one(self, field_name: str, value: Any) -> Optional[Record]:
        if field_name not in self.spec.fields:
            raise ValueError(f"Unknown field {field_name!r} for {self.table}")
        rows = await self._fetch(
            f"SELECT * FROM {self.table} WHERE {field_name} = :value ORDER BY created_at LIMIT 1",
            {"value": value},
        )
        return rows[0] if rows else None

    async def search(self, query: str) -> List[Record]:
        return await self._fetch(
            f"SELECT * FROM {self.table} WHERE {search_clause(self.spec)} ORDER BY created_at DESC, rowid DESC",
            {"q": _like_pattern(query)},
        )

    async def count(self) -> int:
        async with self.adapter.connect(f"{self.table} count") as conn:
            res = await conn.execute(text(f"SELECT COUNT(*) FROM {self.table}"))
            return int(res.scalar_one())

    # --- writes ---
    def _insert_sql(self, verb: str = "INSERT") -> str:
        columns = ("id",) + self.spec.fields + ("created_at", "updated_at")
        return (
            f"{verb} INTO {self.table} ({', '.join(columns)}) "
            f"VALUES ({', '.join(':' + c for c in columns)})"
        )

    async def create(self, fields: Dict[str, Any]) -> Record:
        record = new_record(self.spec, fields, self.adapter.clock)
        await ensure_unique(self, record)
        async with self.adapter.connect(f"{self.table} insert") as conn:
            await conn.execute(text(self._insert_sql()), self._to_row(record))
        return self.spec.model.model_validate(record)

    async def insert_if_absent(self, fields: Dict[str, Any]) -> bool:
        record = imported_record(self.spec, fields, self.adapter.clock)
        async with self.adapter.connect(f"{self.table} import") as conn:
            res = await conn.execute(text(self._insert_sql("INSERT OR IGNORE")), self._to_row(record))
        return res.rowcount > 0

    async def update(self, record_id: str, changes: Dict[str, Any]) -> Optional[Record]:
        changes = known_changes(self.spec, changes)
        await ensure_unique(self, changes, record_id)
        assignments = [f"{name} = :{name}" for name in changes]
        # never move updated_at backwards, even for imported records stamped by another clock
        assignments.append("updated_at = CASE WHEN updated_at > :now THEN updated_at ELSE :now END")
        params = {**self._to_row(changes), "id": record_id, "now": self.adapter.clock.now()}
        # single UPDATE plus read-back in one transaction: the engine's write lock makes the merge atomic
        async with self.adapter.connect(f"{self.table} update") as conn:
            res = await conn.execute(
                text(f"UPDATE {self.table} SET {', '.join(assignments)} WHERE id = :id"), params
            )
            if res.rowcount == 0:
                return None
            row = (
                await conn.execute(text(f"SELECT * FROM {self.table} WHERE id = :id"), {"id": record_id})
            ).mappings().first()
        return self._from_row(row)

    async def delete(self, record_id: str) -> Optional[Record]:
        async with self.adapter.connect(f"{self.table} delete") as conn:
            row = (
                await conn.execute(text(f"SELECT * FROM {self.table} WHERE id = :id"), {"id": record_id})
            ).mappings().first()
            if row is None:
                return None
            res = await conn.execute(text(f"DELETE FROM {self.table} WHERE id = :id"), {"id": record_id})
            if res.rowcount == 0:
                return None
        return self._from_row(row)


class SqliteAdapter:
    """Embedded relational backend: one SQLite file, one table per entity family."""

    def __init__(self, db_url: str, seed: bool = True):
        self.db_url = db_url
        self.seed = seed
        self.clock = Clock()
        self.engine: AsyncEngine = create_async_engine(db_url, future=True)
        event.listen(self.engine.sync_engine, "connect", _register_functions)
        self.recipes = SqliteCollection(self, RECIPES)
        self.inventory = SqliteCollection(self, INVENTORY)
        self._closed = False

    @asynccontextmanager
    async def connect(self, operation: str) -> AsyncIterator[AsyncConnection]:
        try:
            async with self.engine.begin() as conn:
                yield conn
        except IntegrityError as exc:
            raise DuplicateRecordError("A record with the same unique value already exists") from exc
        except SQLAlchemyError as exc:
            logger.exception("SQLite %s failed", operation)
            raise BackendError(f"{operation} failed") from exc

    async def initialize(self) -> None:
        database = make_url(self.db_url).database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        logger.info("Initializing SQLite database at %s", database or ":memory:")

        async with self.connect("initialize") as conn:
            for spec in (RECIPES, INVENTORY):
                await conn.execute(text(TABLES[spec.name]))
                await self._migrate(conn, spec)
            for statement in INDEXES:
                await conn.execute(text(statement))

        if self.seed:
            await seed_if_empty(self.recipes)

    async def _migrate(self, conn: AsyncConnection, spec: EntitySpec) -> None:
        res = await conn.execute(text(f"PRAGMA table_info({spec.name})"))
        existing = {row[1] for row in res.all()}
        for name in spec.backfill:
            if name in existing:
                continue
            logger.info("Adding %s column to %s table", name, spec.name)
            await conn.execute(text(f"ALTER TABLE {spec.name} ADD COLUMN {name} {COLUMN_TYPES.get(name, 'TEXT')}"))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.engine.dispose()
        logger.info("SQLite database connection closed")
