from __future__ import annotations
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Literal, Type, Union

from pydantic import BaseModel

from .errors import ErrorKind, MixmasterError, ValidationFailed
from .models import Recipe
from .storage import StorageAdapter
from .validation import (
    CreateRecipeInput,
    EditRecipeInput,
    require_id,
    validate_recipe_changes,
    validate_recipe_create,
)

logger = logging.getLogger(__name__)


class ToolSuccess(BaseModel):
    success: Literal[True] = True
    recipe: Recipe
    message: str


class ToolFailure(BaseModel):
    success: Literal[False] = False
    kind: ErrorKind
    error: str
    message: str


ToolResult = Union[ToolSuccess, ToolFailure]


def result_payload(result: ToolResult) -> Dict[str, Any]:
    return result.model_dump(mode="json", by_alias=True)


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    input_model: Type[BaseModel]
    handler: Callable[[Dict[str, Any]], Awaitable[ToolResult]]

    def definition(self) -> Dict[str, Any]:
        """Function-calling declaration in the shape chat models expect."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_model.model_json_schema(),
            },
        }


def normalize_tool_arguments(args: Any) -> Dict[str, Any]:
    # models sometimes return arguments as a JSON string
    if args is None:
        return {}
    if isinstance(args, str):
        args = json.loads(args) if args.strip() else {}
    if isinstance(args, dict):
        return args
    raise TypeError(f"Tool arguments must be an object, got {type(args).__name__}")


def _preview(result: ToolResult, max_len: int = 120) -> str:
    """Short summary of a tool result for logs (avoid huge payloads)."""
    text = result.message if result.success else f"{result.kind.value}: {result.error}"
    return text[:max_len] + "..." if len(text) > max_len else text


class ToolRegistry:
    """
    Mutation tools the assistant may call. Each one composes the validator with
    the storage adapter and always returns a ``ToolResult`` instead of raising.
    """

    def __init__(self, store: StorageAdapter):
        self.store = store
        self.tools: Dict[str, Tool] = {
            tool.name: tool
            for tool in (
                Tool("create_recipe", inspect.getdoc(self.create_recipe) or "", CreateRecipeInput, self.create_recipe),
                Tool("edit_recipe", inspect.getdoc(self.edit_recipe) or "", EditRecipeInput, self.edit_recipe),
            )
        }

    def definitions(self) -> List[Dict[str, Any]]:
        return [tool.definition() for tool in self.tools.values()]

    async def call(self, name: str, arguments: Any) -> ToolResult:
        tool = self.tools.get(name)
        if tool is None:
            return ToolFailure(
                kind=ErrorKind.INVALID_INPUT,
                error=f"Unknown tool {name}",
                message=f"Tool {name} is not available",
            )
        try:
            args = normalize_tool_arguments(arguments)
        except (ValueError, TypeError) as exc:
            return ToolFailure(kind=ErrorKind.INVALID_INPUT, error=str(exc), message=f"Invalid arguments for {name}")

        logger.info("tool_call name=%s args=%s", name, json.dumps(args, default=str))
        result = await tool.handler(args)
        logger.info("tool_result name=%s -> %s", name, _preview(result))
        return result

    async def create_recipe(self, payload: Dict[str, Any]) -> ToolResult:
        """
        Create a new cocktail recipe in the database.

        Use this when the user asks you to save, store, or create a recipe.
        This is a WRITE operation.

        Args:
          name (required): the name of the cocktail
          ingredients (required): at least one {name, amount, unit}; amount must be positive
          instructions (required): preparation instructions
          description, glass, garnish (optional)
          tags (optional): list of free-text tags

        Returns:
          {success: true, recipe, message} or {success: false, error, message}.
        """
        try:
            fields = validate_recipe_create(payload)
            recipe = await self.store.recipes.create(fields)
        except ValidationFailed as exc:
            return ToolFailure(kind=exc.kind, error=exc.reason, message=f"Failed to create recipe: {exc.reason}")
        except Exception as exc:
            return self._unexpected("create", exc)
        return ToolSuccess(recipe=recipe, message=f"Successfully created recipe {recipe.name}")

    async def edit_recipe(self, payload: Dict[str, Any]) -> ToolResult:
        """
        Edit an existing cocktail recipe in the database.

        Use this when the user asks you to modify, update, or change a stored recipe.
        This is a WRITE operation. Only the fields you pass are changed; everything
        else is left as it is. Passing ingredients replaces the whole ingredient list.

        Args:
          id (required): the ID of the recipe to edit
          name, description, ingredients, instructions, glass, garnish, tags (optional)

        Returns:
          {success: true, recipe, message} or {success: false, error, message}.
        """
        try:
            record_id = require_id(payload)
            existing = await self.store.recipes.get(record_id)
            if existing is None:
                return self._not_found(record_id)
            changes = validate_recipe_changes({k: v for k, v in payload.items() if k != "id"})
            recipe = await self.store.recipes.update(record_id, changes)
        except ValidationFailed as exc:
            return ToolFailure(kind=exc.kind, error=exc.reason, message=f"Failed to edit recipe: {exc.reason}")
        except Exception as exc:
            return self._unexpected("edit", exc)
        if recipe is None:
            return self._not_found(record_id)
        return ToolSuccess(recipe=recipe, message=f"Successfully updated recipe {recipe.name}")

    @staticmethod
    def _not_found(record_id: str) -> ToolFailure:
        return ToolFailure(
            kind=ErrorKind.NOT_FOUND,
            error=f"Recipe with ID {record_id} not found",
            message="Cannot edit recipe: Recipe not found",
        )

    @staticmethod
    def _unexpected(action: str, exc: Exception) -> ToolFailure:
        # storage detail stays in the log; the assistant only gets a generic reason
        if not isinstance(exc, MixmasterError):
            logger.exception("Unexpected error in %s_recipe", action)
        kind = exc.kind if isinstance(exc, MixmasterError) else ErrorKind.BACKEND_ERROR
        return ToolFailure(
            kind=kind,
            error="The recipe store is unavailable",
            message=f"Failed to {action} recipe: the recipe store is unavailable",
        )

