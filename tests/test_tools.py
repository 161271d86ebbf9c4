"""Tool registry behavior: validator + storage behind a never-raising result envelope."""
from __future__ import annotations
import json

import pytest

from mixmaster.errors import BackendError, ErrorKind
from mixmaster.tools import ToolFailure, ToolRegistry, ToolSuccess, normalize_tool_arguments, result_payload

from .conftest import margarita_payload


class TestCreateRecipe:
    @pytest.mark.asyncio
    async def test_create_then_edit_ingredients(self, registry):
        created = await registry.create_recipe(margarita_payload())

        assert isinstance(created, ToolSuccess)
        assert created.message == "Successfully created recipe Test Margarita"
        assert len(created.recipe.ingredients) == 1
        assert created.recipe.tags == []

        edited = await registry.edit_recipe(
            {
                "id": created.recipe.id,
                "ingredients": [
                    {"name": "Gin", "amount": 2.5, "unit": "oz"},
                    {"name": "Tonic", "amount": 4, "unit": "oz"},
                ],
            }
        )

        assert isinstance(edited, ToolSuccess)
        assert edited.message == "Successfully updated recipe Test Margarita"
        assert len(edited.recipe.ingredients) == 2
        assert edited.recipe.name == "Test Margarita"

    @pytest.mark.asyncio
    async def test_round_trip_through_store(self, registry):
        created = await registry.create_recipe(margarita_payload(garnish="Salt rim", tags=["classic"]))
        assert await registry.store.recipes.get(created.recipe.id) == created.recipe

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -0.5, -3])
    async def test_non_positive_amount_fails(self, registry, amount):
        result = await registry.create_recipe(
            margarita_payload(ingredients=[{"name": "Tequila", "amount": amount, "unit": "oz"}])
        )

        assert isinstance(result, ToolFailure)
        assert result.kind is ErrorKind.INVALID_INPUT
        assert result.error == "Ingredient amount must be positive"
        assert result.message == "Failed to create recipe: Ingredient amount must be positive"
        assert await registry.store.recipes.count() == 0

    @pytest.mark.asyncio
    async def test_empty_name_and_ingredients_fail(self, registry):
        assert (await registry.create_recipe(margarita_payload(name=""))).error == "Recipe name is required"
        assert (await registry.create_recipe(margarita_payload(ingredients=[]))).error == (
            "At least one ingredient is required"
        )

    @pytest.mark.asyncio
    async def test_backend_error_becomes_generic_failure(self, registry, monkeypatch):
        async def broken(fields):
            raise BackendError("recipes insert failed: disk I/O error")

        monkeypatch.setattr(registry.store.recipes, "create", broken)

        result = await registry.create_recipe(margarita_payload())

        assert isinstance(result, ToolFailure)
        assert result.kind is ErrorKind.BACKEND_ERROR
        assert "disk" not in result.error


class TestEditRecipe:
    @pytest.mark.asyncio
    async def test_unknown_id_is_not_found(self, registry):
        result = await registry.edit_recipe({"id": "never-created", "name": "X"})

        assert isinstance(result, ToolFailure)
        assert result.kind is ErrorKind.NOT_FOUND
        assert "not found" in result.error
        assert result.message == "Cannot edit recipe: Recipe not found"

    @pytest.mark.asyncio
    async def test_missing_id(self, registry):
        result = await registry.edit_recipe({"name": "X"})
        assert result.error == "Recipe ID is required"
        assert result.kind is ErrorKind.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_no_op_edit_keeps_content(self, registry):
        created = (await registry.create_recipe(margarita_payload(tags=["sour"]))).recipe

        result = await registry.edit_recipe({"id": created.id})

        assert isinstance(result, ToolSuccess)
        keep = {"updated_at"}
        assert result.recipe.model_dump(exclude=keep) == created.model_dump(exclude=keep)

    @pytest.mark.asyncio
    async def test_partial_edit_keeps_other_fields(self, registry):
        created = (await registry.create_recipe(margarita_payload(tags=["sour"]))).recipe

        result = await registry.edit_recipe({"id": created.id, "name": "Renamed"})

        assert result.recipe.name == "Renamed"
        assert result.recipe.instructions == created.instructions
        assert result.recipe.ingredients == created.ingredients
        assert result.recipe.tags == created.tags

    @pytest.mark.asyncio
    async def test_invalid_change_leaves_record_alone(self, registry):
        created = (await registry.create_recipe(margarita_payload())).recipe

        result = await registry.edit_recipe(
            {"id": created.id, "ingredients": [{"name": "Gin", "amount": 0, "unit": "oz"}]}
        )

        assert result.message == "Failed to edit recipe: Ingredient amount must be positive"
        assert await registry.store.recipes.get(created.id) == created


class TestDispatch:
    @pytest.mark.asyncio
    async def test_call_accepts_json_string_arguments(self, registry):
        result = await registry.call("create_recipe", json.dumps(margarita_payload()))
        assert isinstance(result, ToolSuccess)

    @pytest.mark.asyncio
    async def test_unknown_tool(self, registry):
        result = await registry.call("drop_everything", {})
        assert isinstance(result, ToolFailure)
        assert result.kind is ErrorKind.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_garbage_arguments(self, registry):
        result = await registry.call("create_recipe", "{not json")
        assert isinstance(result, ToolFailure)
        assert result.message == "Invalid arguments for create_recipe"

    @pytest.mark.asyncio
    async def test_definitions_describe_both_tools(self, sqlite_store):
        definitions = ToolRegistry(sqlite_store).definitions()

        by_name = {d["function"]["name"]: d["function"] for d in definitions}
        assert set(by_name) == {"create_recipe", "edit_recipe"}
        assert "WRITE" in by_name["create_recipe"]["description"]
        assert set(by_name["create_recipe"]["parameters"]["required"]) == {"name", "ingredients", "instructions"}
        assert by_name["edit_recipe"]["parameters"]["required"] == ["id"]

    def test_normalize_tool_arguments(self):
        assert normalize_tool_arguments(None) == {}
        assert normalize_tool_arguments("") == {}
        assert normalize_tool_arguments('{"a": 1}') == {"a": 1}
        with pytest.raises(TypeError):
            normalize_tool_arguments([1, 2])

    @pytest.mark.asyncio
    async def test_result_payload_is_camel_case_json(self, registry):
        payload = result_payload(await registry.create_recipe(margarita_payload()))
        assert payload["success"] is True
        assert "createdAt" in payload["recipe"]
        json.dumps(payload)
