from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from .config import Settings, configure_logging
from .storage import StorageAdapter, build_store
from .tools import ToolRegistry, result_payload

# optional recipe fields an MCP client may reset through edit_recipe
CLEARABLE_FIELDS = ("description", "glass", "garnish", "tags")


def build_server(store: Optional[StorageAdapter] = None, settings: Optional[Settings] = None) -> FastMCP:
    """MCP server over stdio exposing the recipe tools. The lifespan owns the store."""
    settings = settings or Settings()
    store = store if store is not None else build_store(settings)
    registry = ToolRegistry(store)

    @asynccontextmanager
    async def lifespan(server: FastMCP) -> AsyncIterator[ToolRegistry]:
        await store.initialize()
        try:
            yield registry
        finally:
            await store.close()

    mcp = FastMCP("mixmaster", lifespan=lifespan)

    @mcp.tool()
    async def create_recipe(
        name: str,
        ingredients: List[Dict[str, Any]],
        instructions: str,
        description: Optional[str] = None,
        glass: Optional[str] = None,
        garnish: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Create a new cocktail recipe in the recipe store.

        Use this when the user asks to save, store, or add a cocktail recipe.

        This is a WRITE operation (it adds a recipe).

        Args:
          name (required): cocktail name, e.g. "Paper Plane"
          ingredients (required): at least one {name, amount, unit}, e.g.
            {"name": "Bourbon", "amount": 0.75, "unit": "oz"}; amount must be positive
          instructions (required): how to make it
          description (optional): one-line description
          glass (optional): coupe, martini, rocks, double-rocks, collins, highball,
            nick-and-nora, wine, flute, hurricane, tiki, copper-mug, julep or other
          garnish (optional): e.g. "Lemon twist"
          tags (optional): e.g. ["modern", "sour"]

        Returns:
          {success: true, recipe, message} on success,
          {success: false, kind, error, message} when the input was rejected.
        """
        payload: Dict[str, Any] = {
            "name": name,
            "ingredients": ingredients,
            "instructions": instructions,
            "description": description,
            "glass": glass,
            "garnish": garnish,
            "tags": tags,
        }
        return result_payload(await registry.create_recipe(payload))

    @mcp.tool()
    async def edit_recipe(
        id: str,
        name: Optional[str] = None,
        ingredients: Optional[List[Dict[str, Any]]] = None,
        instructions: Optional[str] = None,
        description: Optional[str] = None,
        glass: Optional[str] = None,
        garnish: Optional[str] = None,
        tags: Optional[List[str]] = None,
        clear: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Change an existing cocktail recipe by id.

        Use this when the user asks to modify, fix, or update a stored recipe.
        Find the id first with search_recipes.

        This is a WRITE operation. Only the fields you pass change; the rest stay as
        they are. Passing ingredients replaces the whole ingredient list, so send the
        complete list.

        Args:
          id (required): recipe id from search_recipes or get_recipe
          name, ingredients, instructions, description, glass, garnish, tags (optional)
          clear (optional): fields to empty, any of "description", "glass", "garnish", "tags";
            omitting a field leaves it unchanged, so this is the only way to remove one

        Returns:
          {success: true, recipe, message} on success,
          {success: false, kind, error, message} if the recipe is missing or a field is invalid.
        """
        supplied = {
            "name": name,
            "ingredients": ingredients,
            "instructions": instructions,
            "description": description,
            "glass": glass,
            "garnish": garnish,
            "tags": tags,
        }
        payload = {key: value for key, value in supplied.items() if value is not None}
        for key in clear or []:
            if key in CLEARABLE_FIELDS:
                payload[key] = None
        payload["id"] = id
        return result_payload(await registry.edit_recipe(payload))

    @mcp.tool()
    async def search_recipes(query: str) -> List[Dict[str, Any]]:
        """
        Search stored recipes by name, ingredient name or tag (case-insensitive substring).

        This is a READ-ONLY operation. Newest recipes come first; an empty list means no match.
        """
        return [recipe.to_json() for recipe in await store.recipes.search(query)]

    @mcp.tool()
    async def get_recipe(recipe_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch one recipe by id, or null if it does not exist.

        This is a READ-ONLY operation.
        """
        recipe = await store.recipes.get(recipe_id)
        return recipe.to_json() if recipe is not None else None

    return mcp


def main() -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    build_server(settings=settings).run()


if __name__ == "__main__":
    main()
