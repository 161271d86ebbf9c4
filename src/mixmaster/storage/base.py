"""
Backend-agnostic storage contract plus the helpers both backends share.

A backend is an adapter holding one ``RecordCollection`` per entity family.
Collections are driven by an ``EntitySpec`` describing which fields exist,
which are list-valued, which are searched and which must be unique, so the
SQLite and Cosmos implementations stay in lock step.
"""
from __future__ import annotations
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple, Type, TypeVar

from ..errors import DuplicateRecordError
from ..models import GlassType, InventoryItem, Recipe, Record, format_timestamp, new_id

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Record)


@dataclass(frozen=True)
class EntitySpec:
    name: str
    model: Type[Record]
    fields: Tuple[str, ...]
    list_fields: Tuple[str, ...] = ()
    # scalar fields matched by search
    search_fields: Tuple[str, ...] = ("name",)
    # (list field, key inside each element or None for plain strings)
    search_lists: Tuple[Tuple[str, Optional[str]], ...] = ()
    unique_fields: Tuple[str, ...] = ()
    # fields added after the first release, with the value existing records get
    backfill: Dict[str, Any] = field(default_factory=dict)


RECIPES = EntitySpec(
    name="recipes",
    model=Recipe,
    fields=("name", "description", "ingredients", "instructions", "glass", "garnish", "tags"),
    list_fields=("ingredients", "tags"),
    search_lists=(("ingredients", "name"), ("tags", None)),
    backfill={"description": None, "glass": None, "garnish": None, "tags": []},
)

INVENTORY = EntitySpec(
    name="inventory",
    model=InventoryItem,
    fields=("name", "quantity", "unit", "barcode", "category", "notes"),
    search_fields=("name", "category", "notes", "barcode"),
    unique_fields=("barcode",),
    backfill={"barcode": None, "category": None, "notes": None},
)


class Clock:
    """Issues strictly increasing UTC timestamps, so creation order is a total order."""

    def __init__(self) -> None:
        self._last = datetime.min.replace(tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> str:
        with self._lock:
            current = datetime.now(timezone.utc)
            if current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
            return format_timestamp(current)


class RecordCollection(Protocol[T]):
    spec: EntitySpec

    async def list(self) -> List[T]: ...

    async def get(self, record_id: str) -> Optional[T]: ...

    async def find_one(self, field_name: str, value: Any) -> Optional[T]: ...

    async def create(self, fields: Dict[str, Any]) -> T: ...

    async def insert_if_absent(self, fields: Dict[str, Any]) -> bool: ...

    async def update(self, record_id: str, changes: Dict[str, Any]) -> Optional[T]: ...

    async def delete(self, record_id: str) -> Optional[T]: ...

    async def search(self, query: str) -> List[T]: ...

    async def count(self) -> int: ...


class StorageAdapter(Protocol):
    recipes: RecordCollection[Recipe]
    inventory: RecordCollection[InventoryItem]

    async def initialize(self) -> None: ...

    async def close(self) -> None: ...


def new_record(spec: EntitySpec, fields: Dict[str, Any], clock: Clock) -> Dict[str, Any]:
    """Full field dict for a fresh record: known fields only, plus a new id and timestamps."""
    now = clock.now()
    record = {name: fields.get(name) for name in spec.fields}
    for name in spec.list_fields:
        if record[name] is None:
            record[name] = []
    record.update(id=new_id(), created_at=now, updated_at=now)
    return record


def imported_record(spec: EntitySpec, fields: Dict[str, Any], clock: Clock) -> Dict[str, Any]:
    """Like ``new_record`` but keeps the supplied id and any timestamps."""
    record = new_record(spec, fields, clock)
    record["id"] = fields["id"]
    record["created_at"] = fields.get("created_at") or record["created_at"]
    record["updated_at"] = max(fields.get("updated_at") or record["created_at"], record["created_at"])
    return record


def known_changes(spec: EntitySpec, changes: Dict[str, Any]) -> Dict[str, Any]:
    return {name: value for name, value in changes.items() if name in spec.fields}


def next_updated_at(previous: str, clock: Clock) -> str:
    return max(clock.now(), previous)


async def ensure_unique(collection: RecordCollection[Any], fields: Dict[str, Any], record_id: Optional[str] = None) -> None:
    for name in collection.spec.unique_fields:
        value = fields.get(name)
        if value is None:
            continue
        existing = await collection.find_one(name, value)
        if existing is not None and existing.id != record_id:
            raise DuplicateRecordError(f"An item with {name} {value} already exists")


SEED_RECIPES: List[Dict[str, Any]] = [
    {
        "name": "Classic Margarita",
        "description": "A perfect balance of tequila, citrus, and orange liqueur with a salted rim",
        "glass": GlassType.COUPE.value,
        "garnish": "Lime wheel",
        "instructions": "Shake all ingredients with ice and strain over fresh ice.",
        "ingredients": [
            {"name": "Tequila", "amount": 2, "unit": "oz"},
            {"name": "Cointreau", "amount": 1, "unit": "oz"},
            {"name": "Fresh lime juice", "amount": 1, "unit": "oz"},
        ],
        "tags": ["classic", "citrus"],
    },
    {
        "name": "Old Fashioned",
        "description": "The quintessential whiskey cocktail - simple, strong, and timeless",
        "glass": GlassType.ROCKS.value,
        "garnish": "Orange peel",
        "instructions": "Muddle sugar with bitters, add whiskey and ice, stir.",
        "ingredients": [
            {"name": "Bourbon whiskey", "amount": 2, "unit": "oz"},
            {"name": "Simple syrup", "amount": 0.25, "unit": "oz"},
            {"name": "Angostura bitters", "amount": 2, "unit": "dashes"},
        ],
        "tags": ["classic", "whiskey"],
    },
]


async def seed_if_empty(recipes: RecordCollection[Recipe], seeds: Optional[List[Dict[str, Any]]] = None) -> int:
    if await recipes.count() > 0:
        logger.info("Database already contains recipes, skipping seed")
        return 0
    seeds = SEED_RECIPES if seeds is None else seeds
    for seed in seeds:
        ingredients = [{"id": new_id(), **ingredient} for ingredient in seed["ingredients"]]
        await recipes.create({**seed, "ingredients": ingredients})
    logger.info("Seeded %s with %d recipes", recipes.spec.name, len(seeds))
    return len(seeds)
