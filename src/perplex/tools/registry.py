"""
Tool registry.

Declares the tools the model may call and decides, per request, which of
them to advertise. Selection is a pure function of (mode, prompt, year).
"""

import re
from datetime import date
from typing import List, Optional

from src.perplex.models import Mode, SideEffect, ToolDescriptor

WEB_SEARCH = "web_search"
GENERATE_IMAGE = "generate_image"

IMAGE_SIZES = ["1024x1024", "1024x1536", "1536x1024", "auto"]
IMAGE_QUALITIES = ["auto", "low", "medium", "high"]

WEB_SEARCH_TOOL = ToolDescriptor(
    name=WEB_SEARCH,
    description=(
        "Search the web for current information. Use for recent events, news, "
        "weather, prices, scores or anything that may have changed after training."
    ),
    parameters={
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "The search query",
            },
        },
        "required": ["query"],
    },
    side_effect=SideEffect.PURE_READONLY,
)

GENERATE_IMAGE_TOOL = ToolDescriptor(
    name=GENERATE_IMAGE,
    description=(
        "Generate an image from a text description. The image is delivered to the "
        "user directly; you only receive a confirmation."
    ),
    parameters={
        "type": "object",
        "properties": {
            "prompt": {
                "type": "string",
                "description": "Detailed description of the image to generate",
            },
            "size": {
                "type": "string",
                "enum": IMAGE_SIZES,
                "description": "Image dimensions",
            },
            "quality": {
                "type": "string",
                "enum": IMAGE_QUALITIES,
                "description": "Rendering quality",
            },
        },
        "required": ["prompt"],
    },
    side_effect=SideEffect.PRODUCES_MEDIA,
)

# Recall-oriented English keyword lists for quick mode
SEARCH_KEYWORDS = [
    # explicit search verbs
    "search", "look up", "lookup", "google", "find out", "browse",
    # recency
    "latest", "current", "currently", "today", "tonight", "tomorrow", "yesterday",
    "this week", "this month", "this year", "right now", "recent", "recently",
    "breaking", "update", "upcoming",
    # weather
    "weather", "forecast", "temperature", "rain", "snow",
    # news
    "news", "headline", "announced", "election",
    # finance
    "stock", "stocks", "share price", "market", "crypto", "bitcoin", "exchange rate",
    "inflation", "interest rate",
    # sports
    "score", "scores", "match", "game result", "standings", "fixture",
    # location
    "near me", "nearby", "directions", "open now", "address of",
    # pricing
    "price", "prices", "cost", "how much", "cheapest", "deal",
]

IMAGE_VERBS = r"(draw|generate|create|make|render|design|paint|sketch|illustrate|produce)"
IMAGE_NOUNS = (
    r"(image|images|picture|pictures|pic|photo|photos|logo|icon|icons|illustration|"
    r"drawing|artwork|wallpaper|poster|painting|portrait|sketch|banner|avatar)"
)

_SEARCH_PATTERN = re.compile(
    r"\b(" + "|".join(re.escape(k) for k in SEARCH_KEYWORDS) + r")\b",
    re.IGNORECASE,
)
_IMAGE_VERB_PATTERN = re.compile(r"\b" + IMAGE_VERBS + r"\b", re.IGNORECASE)
_IMAGE_NOUN_PATTERN = re.compile(r"\b" + IMAGE_NOUNS + r"\b", re.IGNORECASE)


class ToolRegistry:
    """Selects the ordered tool list for an exchange."""

    def __init__(self, current_year: Optional[int] = None):
        """
        Args:
            current_year: Pin the year used by the date-anchored heuristic
        """
        self._current_year = current_year

    @property
    def current_year(self) -> int:
        return self._current_year or date.today().year

    def tools_for(self, mode: Mode, prompt_text: Optional[str]) -> List[ToolDescriptor]:
        """
        Return the tools to advertise, web search first.

        An empty list means the model call carries no tool parameters at all.
        """
        prompt = prompt_text or ""
        tools: List[ToolDescriptor] = []

        if mode in ("think", "research") or self.needs_web_search(prompt):
            tools.append(WEB_SEARCH_TOOL)
        if self.wants_image(prompt):
            tools.append(GENERATE_IMAGE_TOOL)

        return tools

    def needs_web_search(self, prompt: str) -> bool:
        """Best-effort recall heuristic for quick mode."""
        if not prompt:
            return False
        if _SEARCH_PATTERN.search(prompt):
            return True
        year = self.current_year
        years = {str(year - 1), str(year), str(year + 1)}
        return any(re.search(rf"\b{y}\b", prompt) for y in years)

    def wants_image(self, prompt: str) -> bool:
        """A creation verb co-occurring with a visual noun."""
        if not prompt:
            return False
        return bool(_IMAGE_VERB_PATTERN.search(prompt) and _IMAGE_NOUN_PATTERN.search(prompt))
