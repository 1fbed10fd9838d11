"""
Three-layer intent resolution, cheapest first:

    1. explicit command grammar (synchronous, free)
    2. per-user semantic cache (local lookup)
    3. external language model (metered by the daily quota)

Explicit commands are resolved by Layer 1 alone. Free-form text never matches the
command grammar, so it starts at Layer 2 and falls through until a layer produces an
intent.
"""

import asyncio
from dataclasses import dataclass

from loguru import logger

from chatledger.engine.errors import ParseFailure, QuotaExceeded
from chatledger.engine.interfaces import IntentModel
from chatledger.engine.quota import DailyQuota
from chatledger.llm.parser import MODEL_ERROR
from chatledger.models.schemas import ParsingStrategy, ResolvedIntent, UserContext
from chatledger.nlp.cache import SemanticCache
from chatledger.nlp.commands import parse_command

QUOTA_EXCEEDED = "quota_exceeded"


@dataclass
class ParseOutcome:
    intent: ResolvedIntent | None
    strategy: ParsingStrategy
    cache_hit: bool = False
    cache_similarity: float | None = None
    error: str | None = None

    def raise_for_error(self, user_id: str, limit: int = 0) -> None:
        if self.error == QUOTA_EXCEEDED:
            raise QuotaExceeded(user_id, limit)
        if self.error:
            raise ParseFailure(self.error)
        if self.intent is None:
            raise ParseFailure(MODEL_ERROR)


class LayeredIntentParser:
    def __init__(
        self,
        model: IntentModel,
        cache: SemanticCache,
        quota: DailyQuota,
        cache_write_min_confidence: float = 0.8,
    ):
        self.model = model
        self.cache = cache
        self.quota = quota
        self.cache_write_min_confidence = cache_write_min_confidence
        self._writes: set[asyncio.Task] = set()

    def parse_command_only(self, text: str) -> ParseOutcome:
        intent = parse_command(text)
        if intent is None:
            intent = ResolvedIntent(action="unknown", confidence=0.0, entities={})
        return ParseOutcome(intent=intent, strategy=ParsingStrategy.EXPLICIT_COMMAND)

    async def parse_free_form(
        self,
        user_id: str,
        text: str,
        context: UserContext,
        quoted_text: str | None = None,
        transaction_id: str | None = None,
    ) -> ParseOutcome:
        # Layer 2: a reply about a specific transaction is never answered from cache
        if transaction_id is None:
            hit = self.cache.lookup(user_id, text)
            if hit is not None:
                return ParseOutcome(
                    intent=hit.intent,
                    strategy=ParsingStrategy.SEMANTIC_CACHE,
                    cache_hit=True,
                    cache_similarity=hit.similarity,
                )

        # Layer 3
        if not await self.quota.try_acquire(user_id):
            return ParseOutcome(intent=None, strategy=ParsingStrategy.AI_FUNCTION_CALLING, error=QUOTA_EXCEEDED)

        model_text = f"{text} [transaction_id: {transaction_id}]" if transaction_id else text
        result = await self.model.parse(model_text, context, quoted_text)
        if result.intent is None:
            logger.warning("Layer 3 gave no intent for {}: {}", user_id, result.error)
            return ParseOutcome(
                intent=None,
                strategy=ParsingStrategy.AI_FUNCTION_CALLING,
                error=result.error or MODEL_ERROR,
            )

        intent = result.intent
        logger.info("Layer 3 resolved {} ({:.2f}) for {}", intent.action, intent.confidence, user_id)
        if (
            transaction_id is None
            and intent.action != "unknown"
            and intent.confidence >= self.cache_write_min_confidence
        ):
            self._schedule_cache_write(user_id, text, intent)
        return ParseOutcome(intent=intent, strategy=ParsingStrategy.AI_FUNCTION_CALLING)

    def _schedule_cache_write(self, user_id: str, text: str, intent: ResolvedIntent) -> None:
        task = asyncio.create_task(self._write_cache(user_id, text, intent))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    async def _write_cache(self, user_id: str, text: str, intent: ResolvedIntent) -> None:
        try:
            self.cache.store(user_id, text, intent)
        except Exception as e:
            logger.error("Cache write failed for {}: {}", user_id, e)

    async def drain(self) -> None:
        """Wait for outstanding cache writes."""
        if self._writes:
            await asyncio.gather(*list(self._writes))
