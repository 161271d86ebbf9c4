from __future__ import annotations

import pytest

from mixmaster.server import build_server
from mixmaster.validation import validate_recipe_create

from .conftest import margarita_payload


@pytest.mark.asyncio
async def test_exposes_recipe_tools(sqlite_store):
    server = build_server(store=sqlite_store)

    tools = {tool.name: tool for tool in await server.list_tools()}

    assert set(tools) == {"create_recipe", "edit_recipe", "search_recipes", "get_recipe"}
    assert "WRITE" in tools["create_recipe"].description
    assert "READ-ONLY" in tools["get_recipe"].description
    assert tools["edit_recipe"].inputSchema["required"] == ["id"]


@pytest.mark.asyncio
async def test_edit_recipe_clears_listed_fields(sqlite_store):
    server = build_server(store=sqlite_store)
    created = await sqlite_store.recipes.create(
        validate_recipe_create(margarita_payload(description="Tart", glass="coupe", garnish="Salt rim", tags=["classic"]))
    )

    await server.call_tool("edit_recipe", {"id": created.id, "name": "Bare Margarita", "clear": ["garnish", "glass", "name"]})

    recipe = await sqlite_store.recipes.get(created.id)
    assert recipe.name == "Bare Margarita"
    assert recipe.garnish is None
    assert recipe.glass is None
    assert recipe.description == "Tart"
    assert recipe.tags == ["classic"]


@pytest.mark.asyncio
async def test_edit_recipe_omitted_fields_stay(sqlite_store):
    server = build_server(store=sqlite_store)
    created = await sqlite_store.recipes.create(validate_recipe_create(margarita_payload(garnish="Salt rim")))

    await server.call_tool("edit_recipe", {"id": created.id, "instructions": "Shake hard"})

    recipe = await sqlite_store.recipes.get(created.id)
    assert recipe.instructions == "Shake hard"
    assert recipe.garnish == "Salt rim"
