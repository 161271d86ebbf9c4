from __future__ import annotations
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class GlassType(str, Enum):
    COUPE = "coupe"
    MARTINI = "martini"
    ROCKS = "rocks"
    DOUBLE_ROCKS = "double-rocks"
    COLLINS = "collins"
    HIGHBALL = "highball"
    NICK_AND_NORA = "nick-and-nora"
    WINE = "wine"
    FLUTE = "flute"
    HURRICANE = "hurricane"
    TIKI = "tiki"
    COPPER_MUG = "copper-mug"
    JULEP = "julep"
    OTHER = "other"


class Record(BaseModel):
    """Fields shared by every persisted entity. JSON uses camelCase timestamps."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    id: str
    created_at: str = Field(..., alias="createdAt")
    updated_at: str = Field(..., alias="updatedAt")

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Ingredient(BaseModel):
    id: Optional[str] = None
    name: str
    amount: float
    unit: str


class Recipe(Record):
    name: str
    description: Optional[str] = None
    ingredients: List[Ingredient] = []
    instructions: str
    glass: Optional[GlassType] = None
    garnish: Optional[str] = None
    tags: List[str] = []


class InventoryItem(Record):
    name: str
    quantity: float
    unit: str
    barcode: Optional[str] = None
    category: Optional[str] = None
    notes: Optional[str] = None


def new_id() -> str:
    return uuid.uuid4().hex


def format_timestamp(moment: datetime) -> str:
    """UTC, microsecond precision. Stored timestamps only sort correctly in this one format."""
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)
