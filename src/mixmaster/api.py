"""
HTTP API for the cocktail recipe store and the recipe chat.

Exposes the storage adapter as REST endpoints under /api/recipes and
/api/inventory, the chat orchestrator at POST /api/chat (JSON or SSE), and
recipe extraction from a conversation at POST /api/chat/generate-recipe.
"""
from __future__ import annotations
import asyncio
import hmac
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import uvicorn
from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .chat import ChatOrchestrator, ChatTrace
from .config import Settings, configure_logging
from .errors import BackendError, ErrorKind, MixmasterError, RecordNotFound, UpstreamModelError, ValidationFailed
from .generation import RecipeGenerator, RecipeTagger
from .llm import LanguageModel, OllamaClient
from .storage import StorageAdapter, build_store
from .tools import ToolFailure, ToolRegistry, ToolResult
from .validation import (
    validate_conversation,
    validate_inventory_changes,
    validate_inventory_create,
    validate_recipe_changes,
    validate_recipe_create,
    validate_recipe_import,
)

logger = logging.getLogger(__name__)

Authorizer = Callable[[Request], bool]

STATUS_BY_KIND = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.RATE_OR_SIZE_LIMIT: 413,
    ErrorKind.BACKEND_ERROR: 500,
    ErrorKind.UPSTREAM_MODEL_ERROR: 502,
}

DISCONNECT_POLL_SECONDS = 0.25


def api_key_authorizer(api_key: str) -> Authorizer:
    """Allow everything when no key is configured, otherwise require a matching X-API-Key header."""

    def authorize(request: Request) -> bool:
        if not api_key:
            return True
        return hmac.compare_digest(request.headers.get("X-API-Key", ""), api_key)

    return authorize


# --- dependencies ---


def get_store(request: Request) -> StorageAdapter:
    return request.app.state.store


def get_registry(request: Request) -> ToolRegistry:
    return request.app.state.registry


def get_orchestrator(request: Request) -> ChatOrchestrator:
    return request.app.state.orchestrator


def get_tagger(request: Request) -> Optional[RecipeTagger]:
    return request.app.state.tagger


def get_generator(request: Request) -> RecipeGenerator:
    return request.app.state.generator


def require_authorized(request: Request) -> None:
    if not request.app.state.authorizer(request):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _tool_response(result: ToolResult, not_found: str) -> Dict[str, Any]:
    """Unwrap a tool result for HTTP callers, raising on failure so the handlers pick the status."""
    if isinstance(result, ToolFailure):
        if result.kind is ErrorKind.NOT_FOUND:
            raise RecordNotFound(not_found)
        if result.kind is ErrorKind.INVALID_INPUT:
            raise ValidationFailed(result.error)
        raise BackendError(result.error)
    return result.recipe.to_json()


# --- recipes ---

recipes_router = APIRouter(prefix="/api/recipes", tags=["recipes"])


@recipes_router.get("")
async def list_recipes(store: StorageAdapter = Depends(get_store)) -> List[Dict[str, Any]]:
    return [recipe.to_json() for recipe in await store.recipes.list()]


@recipes_router.get("/search")
async def search_recipes(q: Optional[str] = None, store: StorageAdapter = Depends(get_store)) -> List[Dict[str, Any]]:
    if not q or not q.strip():
        raise ValidationFailed("Query parameter is required")
    return [recipe.to_json() for recipe in await store.recipes.search(q)]


@recipes_router.post("/import", dependencies=[Depends(require_authorized)])
async def import_recipes(
    payload: Dict[str, Any] = Body(...), store: StorageAdapter = Depends(get_store)
) -> Dict[str, Any]:
    items = payload.get("recipes")
    if not isinstance(items, list):
        raise ValidationFailed("Recipes array is required")
    records = []
    for index, item in enumerate(items):
        try:
            records.append(validate_recipe_import(item))
        except ValidationFailed as exc:
            raise ValidationFailed(f"Recipe {index}: {exc.reason}") from exc

    imported = 0
    for record in records:
        if await store.recipes.insert_if_absent(record):
            imported += 1
    skipped = len(records) - imported
    logger.info("Imported %d recipes (%d already present)", imported, skipped)
    return {"success": True, "imported": imported, "skipped": skipped}


@recipes_router.get("/{recipe_id}")
async def get_recipe(recipe_id: str, store: StorageAdapter = Depends(get_store)) -> Dict[str, Any]:
    recipe = await store.recipes.get(recipe_id)
    if recipe is None:
        raise RecordNotFound("Recipe not found")
    return recipe.to_json()


@recipes_router.post("", status_code=201, dependencies=[Depends(require_authorized)])
async def create_recipe(
    payload: Dict[str, Any] = Body(...),
    registry: ToolRegistry = Depends(get_registry),
    tagger: Optional[RecipeTagger] = Depends(get_tagger),
) -> Dict[str, Any]:
    if tagger is not None and not payload.get("tags"):
        data = validate_recipe_create(payload)
        payload = {**payload, "tags": await tagger.suggest(data["name"], data["ingredients"])}
    return _tool_response(await registry.create_recipe(payload), "Recipe not found")


@recipes_router.put("/{recipe_id}", dependencies=[Depends(require_authorized)])
async def update_recipe(
    recipe_id: str,
    payload: Dict[str, Any] = Body(...),
    registry: ToolRegistry = Depends(get_registry),
    store: StorageAdapter = Depends(get_store),
    tagger: Optional[RecipeTagger] = Depends(get_tagger),
) -> Dict[str, Any]:
    # an explicit empty tag list asks for fresh tags
    if tagger is not None and payload.get("tags") == []:
        changes = validate_recipe_changes(payload)
        existing = await store.recipes.get(recipe_id)
        if existing is not None:
            name = changes.get("name", existing.name)
            ingredients = changes.get("ingredients") or [i.model_dump() for i in existing.ingredients]
            payload = {**payload, "tags": await tagger.suggest(name, ingredients)}
    return _tool_response(await registry.edit_recipe({**payload, "id": recipe_id}), "Recipe not found")


@recipes_router.delete("/{recipe_id}", dependencies=[Depends(require_authorized)])
async def delete_recipe(recipe_id: str, store: StorageAdapter = Depends(get_store)) -> Dict[str, Any]:
    recipe = await store.recipes.delete(recipe_id)
    if recipe is None:
        raise RecordNotFound("Recipe not found")
    return recipe.to_json()


# --- inventory ---

inventory_router = APIRouter(prefix="/api/inventory", tags=["inventory"])


@inventory_router.get("")
async def list_inventory(store: StorageAdapter = Depends(get_store)) -> List[Dict[str, Any]]:
    return [item.to_json() for item in await store.inventory.list()]


@inventory_router.get("/search/{query}")
async def search_inventory(query: str, store: StorageAdapter = Depends(get_store)) -> List[Dict[str, Any]]:
    return [item.to_json() for item in await store.inventory.search(query)]


@inventory_router.get("/barcode/{barcode}")
async def get_inventory_by_barcode(barcode: str, store: StorageAdapter = Depends(get_store)) -> Dict[str, Any]:
    item = await store.inventory.find_one("barcode", barcode)
    if item is None:
        raise RecordNotFound("Inventory item not found")
    return item.to_json()


@inventory_router.get("/{item_id}")
async def get_inventory_item(item_id: str, store: StorageAdapter = Depends(get_store)) -> Dict[str, Any]:
    item = await store.inventory.get(item_id)
    if item is None:
        raise RecordNotFound("Inventory item not found")
    return item.to_json()


@inventory_router.post("", status_code=201, dependencies=[Depends(require_authorized)])
async def create_inventory_item(
    payload: Dict[str, Any] = Body(...), store: StorageAdapter = Depends(get_store)
) -> Dict[str, Any]:
    item = await store.inventory.create(validate_inventory_create(payload))
    return item.to_json()


@inventory_router.put("/{item_id}", dependencies=[Depends(require_authorized)])
async def update_inventory_item(
    item_id: str, payload: Dict[str, Any] = Body(...), store: StorageAdapter = Depends(get_store)
) -> Dict[str, Any]:
    item = await store.inventory.update(item_id, validate_inventory_changes(payload))
    if item is None:
        raise RecordNotFound("Inventory item not found")
    return item.to_json()


@inventory_router.delete("/{item_id}", dependencies=[Depends(require_authorized)])
async def delete_inventory_item(item_id: str, store: StorageAdapter = Depends(get_store)) -> Dict[str, Any]:
    item = await store.inventory.delete(item_id)
    if item is None:
        raise RecordNotFound("Inventory item not found")
    return item.to_json()


# --- chat ---

chat_router = APIRouter(prefix="/api", tags=["chat"])


def wants_stream(request: Request, stream_flag: bool) -> bool:
    return stream_flag or "text/event-stream" in request.headers.get("accept", "")


@chat_router.post("/chat", dependencies=[Depends(require_authorized)])
async def api_chat(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> Any:
    """Run one assistant turn, buffered or as server-sent events."""
    trace = ChatTrace()
    chat_request = orchestrator.accept(payload, trace)

    if not wants_stream(request, chat_request.stream):
        reply = await orchestrator.respond(chat_request, trace)
        return reply.to_json()

    async def events() -> AsyncIterator[str]:
        cancelled = asyncio.Event()

        async def watch_disconnect() -> None:
            while not cancelled.is_set():
                if await request.is_disconnected():
                    logger.info("Chat client disconnected")
                    cancelled.set()
                    return
                await asyncio.sleep(DISCONNECT_POLL_SECONDS)

        watcher = asyncio.create_task(watch_disconnect())
        try:
            async for event in orchestrator.stream(chat_request, trace, cancelled):
                yield event.sse()
        finally:
            watcher.cancel()

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@chat_router.post("/chat/generate-recipe", dependencies=[Depends(require_authorized)])
async def generate_recipe(
    payload: Dict[str, Any] = Body(...), generator: RecipeGenerator = Depends(get_generator)
) -> Any:
    """Extract up to three structured recipes from a chat transcript."""
    turns = validate_conversation(payload)
    try:
        generation = await generator.from_conversation(turns)
    except UpstreamModelError as exc:
        logger.error("Recipe generation failed: %s", exc.reason)
        return _error(502, "Failed to generate recipe from conversation")
    return generation.model_dump(exclude_none=True)


# --- health ---

health_router = APIRouter(prefix="/api", tags=["health"])


@health_router.get("/health")
async def health(store: StorageAdapter = Depends(get_store)) -> Dict[str, Any]:
    try:
        recipes_count = await store.recipes.count()
        inventory_count = await store.inventory.count()
    except MixmasterError:
        logger.error("Health check could not count records")
        recipes_count = inventory_count = 0
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "recipesCount": recipes_count,
        "inventoryCount": inventory_count,
    }


# --- app factory ---


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(MixmasterError)
    async def handle_mixmaster_error(request: Request, exc: MixmasterError) -> JSONResponse:
        status_code = STATUS_BY_KIND.get(exc.kind, 500)
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.reason)
            return _error(status_code, "Internal server error")
        return _error(status_code, exc.reason)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return _error(400, message)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _error(exc.status_code, str(exc.detail))


def create_app(
    store: Optional[StorageAdapter] = None,
    model: Optional[LanguageModel] = None,
    settings: Optional[Settings] = None,
    authorizer: Optional[Authorizer] = None,
) -> FastAPI:
    """Build the app around one shared store. The lifespan initializes and closes it."""
    settings = settings or Settings()
    store = store if store is not None else build_store(settings)
    model = model if model is not None else OllamaClient(settings.ollama_url, settings.chat_model)
    registry = ToolRegistry(store)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await store.initialize()
        try:
            yield
        finally:
            await store.close()

    app = FastAPI(title="Mixmaster API", version=__version__, lifespan=lifespan)
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

    app.state.settings = settings
    app.state.store = store
    app.state.registry = registry
    app.state.orchestrator = ChatOrchestrator(registry, model, store)
    app.state.tagger = RecipeTagger(model) if settings.auto_tag_recipes else None
    app.state.generator = RecipeGenerator(model)
    app.state.authorizer = authorizer or api_key_authorizer(settings.api_key)

    _install_error_handlers(app)
    for router in (recipes_router, inventory_router, chat_router, health_router):
        app.include_router(router)
    return app


def main() -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings=settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
