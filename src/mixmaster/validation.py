"""
Field rules for every mutation payload.

The pydantic models below are the single source of truth for both HTTP request
validation and assistant tool-call validation; their JSON schema is what the
language model sees. The ``validate_*`` helpers turn a raw payload into a
normalized dict ready for storage, or raise ``ValidationFailed`` with the first
broken rule as its reason. Nothing in here touches storage.
"""
from __future__ import annotations
from typing import Any, Dict, List, Literal, Mapping, Optional, Type
from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_core import PydanticCustomError

from .errors import MessageTooLong, ValidationFailed
from .models import GlassType, format_timestamp, new_id

MAX_MESSAGE_LENGTH = 1000

RECIPE_MESSAGES = {
    "id": "Recipe ID is required",
    "name": "Recipe name is required",
    "ingredients": "At least one ingredient is required",
    "instructions": "Instructions are required",
}

INGREDIENT_MESSAGES = {
    "name": "Ingredient name is required",
    "amount": "Ingredient amount must be positive",
    "unit": "Ingredient unit is required",
}

INVENTORY_MESSAGES = {
    "name": "Item name is required",
    "quantity": "Quantity cannot be negative",
    "unit": "Unit is required",
}

CHAT_MESSAGES = {
    "message": "Message is required",
}

CONVERSATION_MESSAGES = {
    "messages": "Messages array is required",
    "empty": "At least one message is required to generate recipes",
}

# pydantic error types that mean "the field is absent or null"
_ABSENT = {"missing", "string_type", "list_type", "float_type"}


def _invalid(message: str) -> PydanticCustomError:
    return PydanticCustomError("invalid_input", message)


def _required_text(value: Optional[str], message: str) -> str:
    if value is None or not value.strip():
        raise _invalid(message)
    return value.strip()


def _optional_text(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


# --- recipes ---


class IngredientInput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., description="Ingredient name, e.g. 'Fresh lime juice'")
    amount: float = Field(..., description="Strictly positive quantity", json_schema_extra={"exclusiveMinimum": 0})
    unit: str = Field(..., description="Unit such as 'oz', 'ml', 'dash'")

    @field_validator("name")
    @classmethod
    def check_name(cls, v: str) -> str:
        return _required_text(v, INGREDIENT_MESSAGES["name"])

    @field_validator("amount")
    @classmethod
    def check_amount(cls, v: float) -> float:
        if not v > 0:
            raise _invalid(INGREDIENT_MESSAGES["amount"])
        return v

    @field_validator("unit")
    @classmethod
    def check_unit(cls, v: str) -> str:
        return _required_text(v, INGREDIENT_MESSAGES["unit"])


class _RecipeRules(BaseModel):
    """Per-field rules shared by create and edit. They only run on supplied fields."""

    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    @field_validator("name", check_fields=False)
    @classmethod
    def check_name(cls, v: Optional[str]) -> str:
        return _required_text(v, RECIPE_MESSAGES["name"])

    @field_validator("ingredients", check_fields=False)
    @classmethod
    def check_ingredients(cls, v: Optional[List[IngredientInput]]) -> List[IngredientInput]:
        if not v:
            raise _invalid(RECIPE_MESSAGES["ingredients"])
        return v

    @field_validator("instructions", check_fields=False)
    @classmethod
    def check_instructions(cls, v: Optional[str]) -> str:
        return _required_text(v, RECIPE_MESSAGES["instructions"])

    @field_validator("description", "garnish", mode="before", check_fields=False)
    @classmethod
    def check_blank_is_none(cls, v: Any) -> Any:
        return _optional_text(v)

    @field_validator("glass", mode="before", check_fields=False)
    @classmethod
    def check_glass(cls, v: Any) -> Any:
        v = _optional_text(v)
        if isinstance(v, str):
            return v.lower().replace(" ", "-").replace("_", "-")
        return v

    @field_validator("tags", mode="before", check_fields=False)
    @classmethod
    def check_tags_default(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("tags", check_fields=False)
    @classmethod
    def check_tags(cls, v: List[str]) -> List[str]:
        seen: List[str] = []
        for tag in v:
            tag = tag.strip()
            if tag and tag not in seen:
                seen.append(tag)
        return seen


class CreateRecipeInput(_RecipeRules):
    name: str = Field(..., description="The name of the cocktail")
    description: Optional[str] = Field(None, description="Short description of the cocktail")
    ingredients: List[IngredientInput] = Field(..., description="Ingredients with name, amount and unit")
    instructions: str = Field(..., description="Preparation instructions")
    glass: Optional[GlassType] = Field(None, description="Glass to serve in")
    garnish: Optional[str] = Field(None, description="Garnish description")
    tags: List[str] = Field(default_factory=list, description="Free-text tags for categorization")


class RecipeChanges(_RecipeRules):
    name: Optional[str] = Field(None, description="New name")
    description: Optional[str] = Field(None, description="New description")
    ingredients: Optional[List[IngredientInput]] = Field(
        None, description="Replacement ingredient list (replaces the whole list)"
    )
    instructions: Optional[str] = Field(None, description="New instructions")
    glass: Optional[GlassType] = Field(None, description="New glass type")
    garnish: Optional[str] = Field(None, description="New garnish")
    tags: Optional[List[str]] = Field(None, description="Replacement tag list")


class EditRecipeInput(RecipeChanges):
    id: str = Field(..., description="ID of the recipe to edit")


class ImportedTimestamps(BaseModel):
    """Timestamps carried by an exported recipe. Both must name an instant with a timezone."""

    created_at: Optional[AwareDatetime] = Field(None, alias="createdAt")
    updated_at: Optional[AwareDatetime] = Field(None, alias="updatedAt")

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def check_blank_is_none(cls, v: Any) -> Any:
        return _optional_text(v)


# --- inventory ---


class _InventoryRules(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @field_validator("name", check_fields=False)
    @classmethod
    def check_name(cls, v: Optional[str]) -> str:
        return _required_text(v, INVENTORY_MESSAGES["name"])

    @field_validator("quantity", check_fields=False)
    @classmethod
    def check_quantity(cls, v: Optional[float]) -> float:
        if v is None or not v >= 0:
            raise _invalid(INVENTORY_MESSAGES["quantity"])
        return v

    @field_validator("unit", check_fields=False)
    @classmethod
    def check_unit(cls, v: Optional[str]) -> str:
        return _required_text(v, INVENTORY_MESSAGES["unit"])

    @field_validator("barcode", "category", "notes", mode="before", check_fields=False)
    @classmethod
    def check_blank_is_none(cls, v: Any) -> Any:
        return _optional_text(v)


class CreateInventoryInput(_InventoryRules):
    name: str
    quantity: float
    unit: str
    barcode: Optional[str] = None
    category: Optional[str] = None
    notes: Optional[str] = None


class InventoryChanges(_InventoryRules):
    name: Optional[str] = None
    quantity: Optional[float] = None
    unit: Optional[str] = None
    barcode: Optional[str] = None
    category: Optional[str] = None
    notes: Optional[str] = None


# --- chat ---


class ChatTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    message: str
    history: List[ChatTurn] = []
    stream: bool = False

    @field_validator("message")
    @classmethod
    def check_message(cls, v: str) -> str:
        if not v.strip():
            raise _invalid(CHAT_MESSAGES["message"])
        if len(v) > MAX_MESSAGE_LENGTH:
            raise PydanticCustomError("message_too_long", "Message too long")
        return v

    @field_validator("history", mode="before")
    @classmethod
    def check_history(cls, v: Any) -> Any:
        return [] if v is None else v


# --- helpers ---


def _reason(exc: ValidationError, messages: Mapping[str, str], nested: Optional[Mapping[str, str]] = None) -> str:
    error = exc.errors()[0]
    loc = error["loc"]
    kind = error["type"]
    if kind == "invalid_input":
        return error["msg"]
    if kind in _ABSENT:
        if len(loc) == 1 and loc[0] in messages:
            return messages[loc[0]]
        if nested and len(loc) == 3 and loc[0] == "ingredients" and loc[2] in nested:
            return nested[loc[2]]
    path = ".".join(str(part) for part in loc)
    return f"{path}: {error['msg']}" if path else error["msg"]


def _parse(model: Type[BaseModel], payload: Any, messages: Mapping[str, str], nested: Optional[Mapping[str, str]] = None) -> BaseModel:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise ValidationFailed(_reason(exc, messages, nested)) from exc


def _mint_ingredient_ids(ingredients: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{"id": new_id(), **ingredient} for ingredient in ingredients]


def validate_recipe_create(payload: Any) -> Dict[str, Any]:
    """Normalized fields for a new recipe. Any ``id`` or timestamps in the payload are dropped."""
    data = _parse(CreateRecipeInput, payload, RECIPE_MESSAGES, INGREDIENT_MESSAGES).model_dump()
    data["ingredients"] = _mint_ingredient_ids(data["ingredients"])
    return data


def validate_recipe_changes(payload: Any) -> Dict[str, Any]:
    """Only the fields actually present in ``payload``, each checked with the create rules."""
    changes = _parse(RecipeChanges, payload, RECIPE_MESSAGES, INGREDIENT_MESSAGES).model_dump(exclude_unset=True)
    if "ingredients" in changes:
        changes["ingredients"] = _mint_ingredient_ids(changes["ingredients"])
    return changes


def require_id(payload: Any, message: str = RECIPE_MESSAGES["id"]) -> str:
    record_id = payload.get("id") if isinstance(payload, Mapping) else None
    if not isinstance(record_id, str) or not record_id.strip():
        raise ValidationFailed(message)
    return record_id.strip()


def validate_recipe_import(payload: Any) -> Dict[str, Any]:
    """A complete recipe from an export. Keeps its id and, when present, its timestamps."""
    record_id = require_id(payload)
    data = validate_recipe_create(payload)
    data["id"] = record_id
    try:
        stamps = ImportedTimestamps.model_validate(payload)
    except ValidationError as exc:
        key = exc.errors()[0]["loc"][0]
        raise ValidationFailed(f"{key} must be an ISO 8601 timestamp with a timezone") from exc
    # re-formatted so imported and server-issued timestamps compare as text
    for field in ("created_at", "updated_at"):
        moment = getattr(stamps, field)
        data[field] = format_timestamp(moment) if moment is not None else None
    return data


def validate_inventory_create(payload: Any) -> Dict[str, Any]:
    return _parse(CreateInventoryInput, payload, INVENTORY_MESSAGES).model_dump()


def validate_inventory_changes(payload: Any) -> Dict[str, Any]:
    return _parse(InventoryChanges, payload, INVENTORY_MESSAGES).model_dump(exclude_unset=True)


def validate_chat_request(payload: Any) -> ChatRequest:
    try:
        return ChatRequest.model_validate(payload)
    except ValidationError as exc:
        if exc.errors()[0]["type"] == "message_too_long":
            raise MessageTooLong("Message too long") from exc
        raise ValidationFailed(_reason(exc, CHAT_MESSAGES)) from exc


def validate_conversation(payload: Any) -> List[ChatTurn]:
    """The ``messages`` of a recipe-generation request, as chat turns."""
    messages = payload.get("messages") if isinstance(payload, Mapping) else None
    if not isinstance(messages, list):
        raise ValidationFailed(CONVERSATION_MESSAGES["messages"])
    if not messages:
        raise ValidationFailed(CONVERSATION_MESSAGES["empty"])
    turns = []
    for index, message in enumerate(messages):
        try:
            turns.append(ChatTurn.model_validate(message))
        except ValidationError as exc:
            error = exc.errors()[0]
            path = ".".join(["messages", str(index), *(str(part) for part in error["loc"])])
            raise ValidationFailed(f"{path}: {error['msg']}") from exc
    return turns
