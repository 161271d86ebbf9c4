"""
One assistant turn: build the prompt, let the model pick tools, run them through
the registry and deliver the reply either buffered or as ordered delta events.
"""
from __future__ import annotations
import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from .errors import MixmasterError, UpstreamModelError
from .llm import LanguageModel
from .models import Recipe
from .storage import StorageAdapter
from .tools import ToolRegistry, ToolResult, result_payload
from .validation import ChatRequest, validate_chat_request

logger = logging.getLogger(__name__)

MAX_TOOL_STEPS = 8

APOLOGY = "Sorry, I couldn't reach the cocktail assistant just now. Please try again in a moment."
STOPPED = "(stopped after too many tool steps)"

SYSTEM_PROMPT = (
    "You are an expert cocktail mixologist and recipe developer. "
    "Help users create and discover cocktail recipes.\n"
    "\n"
    "Your expertise includes classic and modern recipes, ingredient substitutions, "
    "flavor pairings, techniques and garnish ideas.\n"
    "\n"
    "You can save recipes with the create_recipe tool and change stored recipes with "
    "the edit_recipe tool. Only call them when the user asks you to save or change a "
    "recipe. After a tool runs, tell the user plainly whether it worked. Never show "
    "tool names or JSON in your reply.\n"
    "\n"
    "EXISTING RECIPES IN THE SYSTEM:\n"
    "{recipes}\n"
    "\n"
    "Keep responses concise but informative. Use markdown for ingredient lists and "
    "instructions."
)


class ChatState(str, Enum):
    RECEIVED = "RECEIVED"
    VALIDATING_INPUT = "VALIDATING_INPUT"
    TOOL_SELECTION = "TOOL_SELECTION"
    DIRECT_RESPONSE = "DIRECT_RESPONSE"
    TOOL_EXECUTING = "TOOL_EXECUTING"
    TOOL_RESULT_INCORPORATED = "TOOL_RESULT_INCORPORATED"
    RESPONDING = "RESPONDING"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass
class ChatTrace:
    """States one turn has passed through, in order."""

    states: List[ChatState] = field(default_factory=lambda: [ChatState.RECEIVED])

    def advance(self, state: ChatState) -> None:
        self.states.append(state)

    @property
    def current(self) -> ChatState:
        return self.states[-1]


@dataclass(frozen=True)
class DeltaEvent:
    content: str

    def sse(self) -> str:
        return f"data: {json.dumps({'content': self.content})}\n\n"


@dataclass(frozen=True)
class DoneEvent:
    def sse(self) -> str:
        return f"data: {json.dumps({'done': True})}\n\n"


ChatEvent = Union[DeltaEvent, DoneEvent]


@dataclass
class ChatReply:
    response: str
    tool_call: Optional[Dict[str, Any]] = None
    trace: ChatTrace = field(default_factory=ChatTrace)

    def to_json(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"response": self.response}
        if self.tool_call is not None:
            body["toolCall"] = self.tool_call
        return body


def describe_recipe(recipe: Recipe) -> str:
    ingredients = ", ".join(f"{i.amount:g} {i.unit} {i.name}" for i in recipe.ingredients)
    return f"{recipe.name}: {ingredients} - {recipe.instructions}"


class ChatOrchestrator:
    def __init__(
        self,
        registry: ToolRegistry,
        model: LanguageModel,
        store: Optional[StorageAdapter] = None,
        max_tool_steps: int = MAX_TOOL_STEPS,
    ):
        self.registry = registry
        self.model = model
        self.store = store if store is not None else registry.store
        self.max_tool_steps = max_tool_steps

    def accept(self, payload: Any, trace: Optional[ChatTrace] = None) -> ChatRequest:
        """Validate an incoming chat payload. Raises ``ValidationFailed`` or ``MessageTooLong``."""
        trace = trace if trace is not None else ChatTrace()
        trace.advance(ChatState.VALIDATING_INPUT)
        if isinstance(payload, ChatRequest):
            return payload
        try:
            return validate_chat_request(payload)
        except MixmasterError:
            trace.advance(ChatState.FAILED)
            raise

    async def system_prompt(self) -> str:
        recipes = await self.store.recipes.list()
        listing = "\n".join(describe_recipe(r) for r in recipes) or "(none yet)"
        return SYSTEM_PROMPT.format(recipes=listing)

    async def build_messages(self, request: ChatRequest) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = [{"role": "system", "content": await self.system_prompt()}]
        messages.extend(turn.model_dump() for turn in request.history)
        messages.append({"role": "user", "content": request.message})
        return messages

    async def _run_tools(
        self, calls: List[Dict[str, Any]], messages: List[Dict[str, Any]], trace: ChatTrace
    ) -> Optional[Dict[str, Any]]:
        """Execute the model's tool calls in order and append each result as a tool message."""
        last: Optional[Dict[str, Any]] = None
        for call in calls:
            fn = call.get("function", {})
            name = fn.get("name")
            if not name:
                continue
            trace.advance(ChatState.TOOL_EXECUTING)
            result: ToolResult = await self.registry.call(name, fn.get("arguments"))
            payload = result_payload(result)
            messages.append({"role": "tool", "name": name, "content": json.dumps(payload)})
            trace.advance(ChatState.TOOL_RESULT_INCORPORATED)
            last = {"tool": name, "result": payload}
        return last

    async def respond(self, request: ChatRequest, trace: Optional[ChatTrace] = None) -> ChatReply:
        """Buffered turn. Model failures become an apology, never an exception."""
        trace = trace if trace is not None else ChatTrace()
        messages = await self.build_messages(request)
        tools = self.registry.definitions()
        tool_call: Optional[Dict[str, Any]] = None
        content = STOPPED
        try:
            for step in range(self.max_tool_steps):
                msg = await self.model.chat(messages, tools)
                calls = msg.get("tool_calls") or []
                if step == 0:
                    trace.advance(ChatState.TOOL_SELECTION if calls else ChatState.DIRECT_RESPONSE)
                if not calls:
                    content = (msg.get("content") or "").strip() or "(no content)"
                    break
                messages.append(msg)
                tool_call = await self._run_tools(calls, messages, trace) or tool_call
        except UpstreamModelError as exc:
            logger.warning("Chat model failed: %s", exc.reason)
            trace.advance(ChatState.FAILED)
            return ChatReply(response=APOLOGY, tool_call=tool_call, trace=trace)

        trace.advance(ChatState.RESPONDING)
        trace.advance(ChatState.DONE)
        return ChatReply(response=content, tool_call=tool_call, trace=trace)

    async def stream(
        self,
        request: ChatRequest,
        trace: Optional[ChatTrace] = None,
        cancelled: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[ChatEvent]:
        """
        Streaming turn: ordered ``DeltaEvent``s, then exactly one ``DoneEvent``.

        Setting ``cancelled`` (or closing this generator) stops emission without
        a done marker and closes the upstream model stream. Tool effects already
        committed stay.
        """
        trace = trace if trace is not None else ChatTrace()

        def stopped() -> bool:
            return cancelled is not None and cancelled.is_set()

        try:
            messages = await self.build_messages(request)
            tools = self.registry.definitions()
            for step in range(self.max_tool_steps):
                calls: List[Dict[str, Any]] = []
                content: List[str] = []
                chunks = self.model.stream_chat(messages, tools)
                try:
                    async for chunk in chunks:
                        if stopped():
                            break
                        calls.extend(chunk.get("tool_calls") or [])
                        text = chunk.get("content") or ""
                        if not text:
                            continue
                        content.append(text)
                        yield DeltaEvent(text)
                finally:
                    aclose = getattr(chunks, "aclose", None)
                    if aclose is not None:
                        await aclose()

                if stopped():
                    logger.info("Chat stream cancelled by client")
                    trace.advance(ChatState.FAILED)
                    return
                if step == 0:
                    trace.advance(ChatState.TOOL_SELECTION if calls else ChatState.DIRECT_RESPONSE)
                if not calls:
                    break
                messages.append({"role": "assistant", "content": "".join(content), "tool_calls": calls})
                await self._run_tools(calls, messages, trace)
            else:
                yield DeltaEvent(STOPPED)
        except UpstreamModelError as exc:
            logger.warning("Chat model failed mid-stream: %s", exc.reason)
            trace.advance(ChatState.FAILED)
            yield DeltaEvent(APOLOGY)
            yield DoneEvent()
            return
        except MixmasterError:
            logger.exception("Chat stream failed")
            trace.advance(ChatState.FAILED)
            yield DeltaEvent(APOLOGY)
            yield DoneEvent()
            return

        trace.advance(ChatState.RESPONDING)
        trace.advance(ChatState.DONE)
        yield DoneEvent()
