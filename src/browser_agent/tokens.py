"""Token usage and cost accounting.

``TokenCost`` is a passive observer: it records one ``UsageEntry`` per successful
LLM call and turns them into costs on demand using a ``PricingCache``. Pricing is
optional; when it is unavailable every model costs zero but keeps its tokens.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from .config import INCLUDE_COST, PRICING_CACHE_DIR, PRICING_URL
from .llm import BaseChatModel, ChatInvokeCompletion, ChatInvokeUsage

logger = logging.getLogger(__name__)

CACHE_TTL = timedelta(days=1)


class ModelPricing(BaseModel):
    model: str
    input_cost_per_token: Optional[float] = None
    output_cost_per_token: Optional[float] = None
    cache_read_input_token_cost: Optional[float] = None
    cache_creation_input_token_cost: Optional[float] = None
    max_tokens: Optional[int] = None
    max_input_tokens: Optional[int] = None
    max_output_tokens: Optional[int] = None


class UsageEntry(BaseModel):
    model: str
    timestamp: datetime
    usage: ChatInvokeUsage


class TokenCostCalculated(BaseModel):
    new_prompt_tokens: int
    new_prompt_cost: float
    prompt_read_cached_tokens: Optional[int] = None
    prompt_read_cached_cost: Optional[float] = None
    prompt_cached_creation_tokens: Optional[int] = None
    prompt_cache_creation_cost: Optional[float] = None
    completion_tokens: int
    completion_cost: float

    @property
    def prompt_cost(self) -> float:
        return self.new_prompt_cost + (self.prompt_read_cached_cost or 0.0) + (self.prompt_cache_creation_cost or 0.0)

    @property
    def total_cost(self) -> float:
        return self.prompt_cost + self.completion_cost


class ModelUsageStats(BaseModel):
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    invocations: int = 0
    average_tokens_per_invocation: float = 0.0


class UsageSummary(BaseModel):
    total_prompt_tokens: int = 0
    total_prompt_cost: float = 0.0
    total_prompt_cached_tokens: int = 0
    total_prompt_cached_cost: float = 0.0
    total_completion_tokens: int = 0
    total_completion_cost: float = 0.0
    total_tokens: int = 0
    total_cost: float = 0.0
    entry_count: int = 0
    by_model: Dict[str, ModelUsageStats] = Field(default_factory=dict)


class PricingCache:
    """Per-model pricing table with an explicit lifecycle.

    ``load()`` reads a fresh on-disk copy or fetches once; ``refresh()`` forces a
    fetch; ``invalidate()`` drops both the in-memory and on-disk copies. Fetch or
    parse failures leave the table empty instead of raising.
    """

    def __init__(
        self,
        cache_dir: Path = PRICING_CACHE_DIR,
        url: str = PRICING_URL,
        ttl: timedelta = CACHE_TTL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.url = url
        self.ttl = ttl
        self.timeout = timeout
        self._client = client
        self._data: Optional[Dict[str, Any]] = None
        self.loaded_at: Optional[datetime] = None

    @classmethod
    def from_table(cls, table: Dict[str, Dict[str, Any]]) -> "PricingCache":
        """Build a cache pre-populated with a bundled pricing table; nothing is fetched."""
        cache = cls()
        cache._data = dict(table)
        cache.loaded_at = datetime.now(timezone.utc)
        return cache

    @property
    def is_loaded(self) -> bool:
        return self._data is not None

    async def load(self) -> None:
        if self._data is not None:
            return
        cached = self._read_disk_cache()
        if cached is not None:
            self._data, self.loaded_at = cached
            return
        await self.refresh()

    async def refresh(self) -> None:
        try:
            data = await self._fetch()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Pricing data unavailable (%s); costs will be reported as zero", exc)
            self._data = {}
            self.loaded_at = datetime.now(timezone.utc)
            return
        self._data = data
        self.loaded_at = datetime.now(timezone.utc)
        self._write_disk_cache(data)

    def invalidate(self) -> None:
        self._data = None
        self.loaded_at = None
        if self.cache_dir.exists():
            for path in self.cache_dir.glob("pricing_*.json"):
                try:
                    path.unlink()
                except OSError as exc:
                    logger.debug("Could not remove pricing cache %s: %s", path, exc)

    def get(self, model: str) -> Optional[ModelPricing]:
        if not self._data:
            return None
        entry = self._data.get(model)
        if entry is None and "/" in model:
            entry = self._data.get(model.split("/", 1)[1])
        if not isinstance(entry, dict):
            return None
        try:
            return ModelPricing.model_validate({"model": model, **entry})
        except ValidationError:
            logger.debug("Malformed pricing entry for %s", model)
            return None

    async def _fetch(self) -> Dict[str, Any]:
        logger.debug("Fetching pricing data from %s", self.url)
        if self._client is not None:
            response = await self._client.get(self.url)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(self.url)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError("Pricing payload must be a JSON object")
        return data

    def _read_disk_cache(self) -> Optional[tuple]:
        if not self.cache_dir.exists():
            return None
        candidates = sorted(self.cache_dir.glob("pricing_*.json"), key=lambda item: item.stat().st_mtime, reverse=True)
        for path in candidates:
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
                timestamp = datetime.fromisoformat(payload["timestamp"])
                data = payload["data"]
            except (OSError, KeyError, TypeError, ValueError) as exc:
                logger.debug("Ignoring unreadable pricing cache %s: %s", path, exc)
                continue
            if timestamp.tzinfo is None:
                timestamp = timestamp.replace(tzinfo=timezone.utc)
            if datetime.now(timezone.utc) - timestamp < self.ttl and isinstance(data, dict):
                return data, timestamp
            return None
        return None

    def _write_disk_cache(self, data: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc)
        path = self.cache_dir / f"pricing_{now.strftime('%Y%m%d_%H%M%S')}.json"
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps({"timestamp": now.isoformat(), "data": data}), encoding="utf-8")
        except OSError as exc:
            logger.debug("Could not write pricing cache %s: %s", path, exc)


class TokenCost:
    """Aggregate usage per model and compute costs."""

    def __init__(self, pricing: Optional[PricingCache] = None, include_cost: bool = INCLUDE_COST) -> None:
        self.include_cost = include_cost
        self.pricing = pricing if pricing is not None else PricingCache()
        self.usage_history: List[UsageEntry] = []
        self.registered_llms: Dict[int, BaseChatModel] = {}

    async def initialize(self) -> None:
        if self.include_cost:
            await self.pricing.load()

    def add_usage(self, model: str, usage: ChatInvokeUsage) -> UsageEntry:
        entry = UsageEntry(model=model, timestamp=datetime.now(timezone.utc), usage=usage)
        self.usage_history.append(entry)
        return entry

    def calculate_cost(self, model: str, usage: ChatInvokeUsage) -> Optional[TokenCostCalculated]:
        if not self.include_cost:
            return None
        pricing = self.pricing.get(model)
        if pricing is None:
            return None
        cached = usage.prompt_cached_tokens or 0
        new_prompt = max(0, usage.prompt_tokens - cached)
        return TokenCostCalculated(
            new_prompt_tokens=new_prompt,
            new_prompt_cost=new_prompt * (pricing.input_cost_per_token or 0.0),
            prompt_read_cached_tokens=usage.prompt_cached_tokens,
            prompt_read_cached_cost=(
                cached * pricing.cache_read_input_token_cost if pricing.cache_read_input_token_cost else None
            ),
            prompt_cached_creation_tokens=usage.prompt_cache_creation_tokens,
            prompt_cache_creation_cost=(
                (usage.prompt_cache_creation_tokens or 0) * pricing.cache_creation_input_token_cost
                if pricing.cache_creation_input_token_cost
                else None
            ),
            completion_tokens=usage.completion_tokens,
            completion_cost=usage.completion_tokens * (pricing.output_cost_per_token or 0.0),
        )

    def register_llm(self, llm: BaseChatModel) -> BaseChatModel:
        """Wrap ``llm.ainvoke`` so every call reporting usage is recorded. Idempotent."""
        key = id(llm)
        if key in self.registered_llms:
            return llm
        self.registered_llms[key] = llm
        original = llm.ainvoke
        tracker = self

        async def tracked_ainvoke(messages, output_format=None):
            result: ChatInvokeCompletion = await original(messages, output_format)
            if result.usage is not None:
                entry = tracker.add_usage(llm.model, result.usage)
                cost = tracker.calculate_cost(llm.model, result.usage)
                logger.debug(
                    "🔢 %s: %s prompt + %s completion tokens%s",
                    llm.model,
                    entry.usage.prompt_tokens,
                    entry.usage.completion_tokens,
                    f" (${cost.total_cost:.4f})" if cost else "",
                )
            return result

        setattr(llm, "ainvoke", tracked_ainvoke)
        return llm

    def get_usage_tokens_for_model(self, model: str) -> ModelUsageStats:
        entries = [entry for entry in self.usage_history if entry.model == model]
        return self._stats_for(model, entries)

    def get_usage_summary(self, model: Optional[str] = None, since: Optional[datetime] = None) -> UsageSummary:
        entries = self.usage_history
        if model is not None:
            entries = [entry for entry in entries if entry.model == model]
        if since is not None:
            entries = [entry for entry in entries if entry.timestamp >= since]

        summary = UsageSummary(entry_count=len(entries))
        grouped: Dict[str, List[UsageEntry]] = {}
        for entry in entries:
            grouped.setdefault(entry.model, []).append(entry)
            usage = entry.usage
            summary.total_prompt_tokens += usage.prompt_tokens
            summary.total_prompt_cached_tokens += usage.prompt_cached_tokens or 0
            summary.total_completion_tokens += usage.completion_tokens
            cost = self.calculate_cost(entry.model, usage)
            if cost is not None:
                summary.total_prompt_cost += cost.prompt_cost
                summary.total_prompt_cached_cost += cost.prompt_read_cached_cost or 0.0
                summary.total_completion_cost += cost.completion_cost

        for name, model_entries in grouped.items():
            summary.by_model[name] = self._stats_for(name, model_entries)

        summary.total_tokens = summary.total_prompt_tokens + summary.total_completion_tokens
        summary.total_cost = sum(stats.cost for stats in summary.by_model.values())
        return summary

    def _stats_for(self, model: str, entries: List[UsageEntry]) -> ModelUsageStats:
        stats = ModelUsageStats(model=model)
        for entry in entries:
            stats.prompt_tokens += entry.usage.prompt_tokens
            stats.completion_tokens += entry.usage.completion_tokens
            stats.total_tokens += entry.usage.prompt_tokens + entry.usage.completion_tokens
            stats.invocations += 1
            cost = self.calculate_cost(model, entry.usage)
            if cost is not None:
                stats.cost += cost.total_cost
        if stats.invocations:
            stats.average_tokens_per_invocation = stats.total_tokens / stats.invocations
        return stats

    def log_usage_summary(self) -> None:
        if not self.usage_history:
            return
        summary = self.get_usage_summary()
        cost_part = f" (${summary.total_cost:.4f})" if self.include_cost else ""
        logger.info(
            "💲 Total usage: %s tokens%s across %s call(s)", summary.total_tokens, cost_part, summary.entry_count
        )
        for model, stats in summary.by_model.items():
            logger.info(
                "   %s: %s prompt + %s completion tokens, %s call(s)%s",
                model,
                stats.prompt_tokens,
                stats.completion_tokens,
                stats.invocations,
                f", ${stats.cost:.4f}" if self.include_cost else "",
            )

    def clear(self) -> None:
        self.usage_history.clear()
