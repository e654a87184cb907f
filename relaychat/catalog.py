"""
Model catalog — what the OpenRouter /models endpoint offers.

The chat core only needs one thing from here: a sensible max_tokens default
for the selected model when Config doesn't set one. The rest (category,
pricing and context tiers) feeds the `relaychat models` listing.

The list is fetched with httpx and cached in memory for ttl_seconds.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

import httpx

from relaychat.config import DEFAULT_BASE_URL

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 6 * 60 * 60
DEFAULT_MAX_TOKENS = 4000
DEFAULT_CONTEXT_LENGTH = 4096

# Category → (model id keywords, description keywords). First match wins.
CATEGORY_RULES: list[tuple[str, tuple[str, ...], tuple[str, ...]]] = [
    ("Programming", ("code", "coder", "deepseek", "wizardlm"), ("code", "programming")),
    ("Roleplay", ("roleplay", "rp", "hermes", "magnum"), ("roleplay", "storytelling")),
    ("Marketing", (), ("marketing", "business", "commercial")),
    ("Multimodal", ("vision", "vl"), ("multimodal", "vision", "image")),
    ("Reasoning", ("reasoning", "o1", "o3"), ("reasoning", "thinking")),
]

# (prompt price per token upper bound, token cap, share of context window)
_TOKEN_BUDGETS: list[tuple[float, int, float]] = [
    (0.000001, 6000, 0.08),
    (0.00001, 5000, 0.06),
    (0.0001, 4000, 0.05),
    (0.001, 3000, 0.04),
]


def _price(value) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


@dataclass
class ModelInfo:
    """One entry of the /models listing."""
    id: str
    name: str = ""
    description: str = ""
    context_length: int = DEFAULT_CONTEXT_LENGTH
    prompt_price: float = 0.0
    completion_price: float = 0.0
    input_modalities: list[str] = field(default_factory=list)
    supported_features: list[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict) -> "ModelInfo":
        pricing = data.get("pricing") or {}
        return cls(
            id=data.get("id", ""),
            name=data.get("name") or data.get("id", ""),
            description=data.get("description") or "",
            context_length=int(data.get("context_length") or DEFAULT_CONTEXT_LENGTH),
            prompt_price=_price(pricing.get("prompt")),
            completion_price=_price(pricing.get("completion")),
            input_modalities=list(data.get("input_modalities") or []),
            supported_features=list(data.get("supported_features") or []),
        )

    @property
    def is_free(self) -> bool:
        return self.prompt_price == 0 and self.completion_price == 0

    @property
    def category(self) -> str:
        model_id = self.id.lower()
        description = self.description.lower()
        for name, id_words, desc_words in CATEGORY_RULES:
            if any(w in model_id for w in id_words) or any(w in description for w in desc_words):
                return name
        return "General"

    @property
    def pricing_tier(self) -> str:
        if self.is_free:
            return "FREE"
        if self.prompt_price < 0.00001:
            return "$0.5"
        if self.prompt_price < 0.0001:
            return "$10+"
        return "$50+"

    @property
    def context_tier(self) -> str:
        if self.context_length <= 4096:
            return "4K"
        if self.context_length <= 65536:
            return "64K"
        return "1M"

    @property
    def smart_max_tokens(self) -> int:
        """
        Default completion budget: cheaper models get a larger share of their
        context window. Never more than half the window.
        """
        ctx = self.context_length
        if self.is_free:
            budget = min(8000, int(ctx * 0.1))
        else:
            budget = min(2000, int(ctx * 0.03))
            for ceiling, cap, share in _TOKEN_BUDGETS:
                if self.prompt_price < ceiling:
                    budget = min(cap, int(ctx * share))
                    break
        return min(budget, int(ctx * 0.5))


class ModelCatalog:
    """Cached view of the provider's model list."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        timeout: float = 10,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout
        self.transport = transport
        self._models: dict[str, ModelInfo] = {}
        self._fetched_at: float | None = None

    @property
    def is_fresh(self) -> bool:
        return self._fetched_at is not None and (time.monotonic() - self._fetched_at) < self.ttl_seconds

    async def refresh(self) -> list[ModelInfo]:
        """Fetch /models and replace the cache. Raises httpx errors to the caller."""
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.get(f"{self.base_url}/models")
            resp.raise_for_status()
            data = resp.json()

        models = [ModelInfo.from_api(m) for m in data.get("data", []) if m.get("id")]
        self._models = {m.id: m for m in models}
        self._fetched_at = time.monotonic()
        logger.info("Model catalog refreshed: %d models", len(models))
        return models

    async def models(self) -> list[ModelInfo]:
        """Cached list, refetched once the TTL has lapsed."""
        if not self.is_fresh:
            await self.refresh()
        return list(self._models.values())

    def get(self, model_id: str) -> ModelInfo | None:
        return self._models.get(model_id)

    def default_max_tokens(self, model_id: str) -> int:
        """Cache-only lookup; never blocks a submission on the network."""
        info = self.get(model_id)
        return info.smart_max_tokens if info else DEFAULT_MAX_TOKENS
