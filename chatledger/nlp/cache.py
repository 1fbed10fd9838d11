"""
Layer 2: per-user semantic cache of resolved intents.

Entries are written after a confident Layer 3 resolution and looked up by
string similarity of the normalized message text.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from difflib import SequenceMatcher

from loguru import logger
from tinydb import Query, TinyDB

from chatledger.models.schemas import ResolvedIntent

NUMBER_RE = re.compile(r"\d+(?:[.,]\d+)?")


@dataclass
class CacheHit:
    intent: ResolvedIntent
    similarity: float
    message_text: str


def normalize_message(text: str) -> str:
    text = text.lower().strip()
    text = re.sub(r"[^\w\s.,]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def similarity(a: str, b: str) -> float:
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a, b).ratio()


def same_numbers(a: str, b: str) -> bool:
    """Amounts and dates must agree exactly; a cached '50' never answers '500'."""
    return NUMBER_RE.findall(a) == NUMBER_RE.findall(b)


class SemanticCache:
    def __init__(self, db: TinyDB, threshold: float = 0.85):
        self.table = db.table("message_cache")
        self.threshold = threshold

    def lookup(self, user_id: str, text: str) -> CacheHit | None:
        normalized = normalize_message(text)
        if not normalized:
            return None

        Entry = Query()
        best_doc = None
        best_score = 0.0
        for doc in self.table.search(Entry.user_id == user_id):
            if doc["intent"].get("action") == "unknown":
                continue
            if not same_numbers(normalized, doc["normalized_text"]):
                continue
            score = similarity(normalized, doc["normalized_text"])
            if score > best_score:
                best_doc, best_score = doc, score

        if best_doc is None or best_score <= self.threshold:
            return None

        self.table.update(
            {
                "usage_count": best_doc.get("usage_count", 0) + 1,
                "last_used_at": datetime.now().isoformat(),
            },
            doc_ids=[best_doc.doc_id],
        )
        logger.info("Cache hit for {} ({:.2f}): {!r} ~ {!r}", user_id, best_score, text, best_doc["message_text"])
        return CacheHit(
            intent=ResolvedIntent.model_validate(best_doc["intent"]),
            similarity=round(best_score, 4),
            message_text=best_doc["message_text"],
        )

    def store(self, user_id: str, text: str, intent: ResolvedIntent) -> int:
        normalized = normalize_message(text)
        now = datetime.now().isoformat()
        Entry = Query()
        existing = self.table.get((Entry.user_id == user_id) & (Entry.normalized_text == normalized))
        if existing:
            self.table.update(
                {"intent": intent.model_dump(mode="json"), "last_used_at": now},
                doc_ids=[existing.doc_id],
            )
            logger.debug("Refreshed cache entry #{} for {}", existing.doc_id, user_id)
            return existing.doc_id

        doc_id = self.table.insert({
            "user_id": user_id,
            "message_text": text,
            "normalized_text": normalized,
            "intent": intent.model_dump(mode="json"),
            "usage_count": 0,
            "created_at": now,
            "last_used_at": now,
        })
        logger.info("Cached intent {} for {}: {!r}", intent.action, user_id, text)
        return doc_id

    def entries(self, user_id: str) -> list[dict]:
        return self.table.search(Query().user_id == user_id)
