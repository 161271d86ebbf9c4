"""
Schema-constrained model calls outside the chat loop: tag suggestions for a
recipe, and structured recipes pulled out of a finished conversation.

The pydantic models here double as the JSON schema sent as Ollama's ``format``,
so the model's reply can be validated straight back into them.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from .errors import UpstreamModelError
from .llm import LanguageModel
from .validation import ChatTurn

logger = logging.getLogger(__name__)

MAX_TAGS = 5
MAX_GENERATED_RECIPES = 3

TAG_PROMPT = (
    "You label cocktail recipes. Suggest up to 5 short lowercase tags for the recipe the "
    "user sends: base spirit, flavor profile, style or occasion (for example \"gin\", "
    "\"citrus\", \"classic\", \"tiki\"). Answer with JSON only."
)

GENERATION_PROMPT = (
    "You are an expert cocktail recipe developer. Analyze the following conversation and "
    "extract specific cocktail recipes that were discussed, suggested, or would be "
    "appropriate based on the conversation context.\n"
    "\n"
    "Your task is to:\n"
    "1. Identify concrete cocktail recipes from the conversation\n"
    "2. Extract or infer complete recipe information including ingredients with measurements\n"
    "3. If recipes were only partially discussed, complete them with standard proportions\n"
    "4. Only include recipes that make sense given the conversation context\n"
    "5. Provide 1-3 recipes maximum to avoid overwhelming the user\n"
    "\n"
    "Use standard cocktail measurements (oz, ml, dashes, splashes) and include "
    "appropriate glass types and garnishes.\n"
    "\n"
    "Conversation to analyze:\n"
    "{conversation}"
)

GENERATION_REQUEST = (
    "Based on this conversation, extract or suggest appropriate cocktail recipes with complete details."
)


class TagSuggestions(BaseModel):
    tags: List[str] = Field(..., description="Short lowercase tags")


class GeneratedIngredient(BaseModel):
    name: str = Field(..., description="The name of the ingredient")
    amount: float = Field(..., description="The amount/quantity of the ingredient")
    unit: str = Field(..., description="The unit of measurement (e.g., 'oz', 'dash', 'splash', 'ml')")


class GeneratedRecipe(BaseModel):
    name: str = Field(..., description="The name of the cocktail recipe")
    ingredients: List[GeneratedIngredient] = Field(..., description="List of ingredients with amounts and units")
    instructions: str = Field(..., description="Step-by-step instructions for making the cocktail")
    glass: Optional[str] = Field(None, description="Type of glass to serve in (e.g., 'Coupe', 'Rocks', 'Martini')")
    garnish: Optional[str] = Field(None, description="Garnish for the cocktail")
    category: Optional[str] = Field(None, description="Category of the cocktail (e.g., 'Classic', 'Modern', 'Tropical')")


class RecipeGeneration(BaseModel):
    recipes: List[GeneratedRecipe] = Field(..., description="Array of cocktail recipes extracted from the conversation")
    reasoning: str = Field(..., description="Explanation of why these recipes were chosen based on the conversation")


def _clean_tags(tags: List[str]) -> List[str]:
    cleaned: List[str] = []
    for tag in tags:
        tag = tag.strip().lower()
        if tag and tag not in cleaned:
            cleaned.append(tag)
    return cleaned[:MAX_TAGS]


class RecipeTagger:
    """Suggests tags for a recipe. A model failure means no tags, never a failed save."""

    def __init__(self, model: LanguageModel):
        self.model = model

    async def suggest(self, name: str, ingredients: List[Dict[str, Any]]) -> List[str]:
        listing = ", ".join(str(i.get("name", "")) for i in ingredients)
        messages = [
            {"role": "system", "content": TAG_PROMPT},
            {"role": "user", "content": f"{name}\nIngredients: {listing}"},
        ]
        try:
            msg = await self.model.chat(messages, [], format=TagSuggestions.model_json_schema())
            suggestions = TagSuggestions.model_validate_json(msg.get("content") or "")
        except UpstreamModelError as exc:
            logger.warning("Tag generation for %r failed: %s", name, exc.reason)
            return []
        except ValidationError:
            logger.warning("Tag generation for %r returned malformed tags", name)
            return []
        tags = _clean_tags(suggestions.tags)
        logger.info("Generated tags for %r: %s", name, tags)
        return tags


class RecipeGenerator:
    def __init__(self, model: LanguageModel):
        self.model = model

    async def from_conversation(self, turns: List[ChatTurn]) -> RecipeGeneration:
        """Raises ``UpstreamModelError`` when the model fails or answers off-schema."""
        conversation = "\n\n".join(f"{turn.role.upper()}: {turn.content}" for turn in turns)
        messages = [
            {"role": "system", "content": GENERATION_PROMPT.format(conversation=conversation)},
            {"role": "user", "content": GENERATION_REQUEST},
        ]
        msg = await self.model.chat(messages, [], format=RecipeGeneration.model_json_schema())
        try:
            generation = RecipeGeneration.model_validate_json(msg.get("content") or "")
        except ValidationError as exc:
            raise UpstreamModelError("Model returned recipes that do not match the schema") from exc
        generation.recipes = generation.recipes[:MAX_GENERATED_RECIPES]
        logger.info("Generated %d recipes from %d chat turns", len(generation.recipes), len(turns))
        return generation
