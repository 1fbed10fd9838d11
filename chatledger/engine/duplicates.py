"""
Duplicate detection for new ledger entries.

A candidate entry is compared against the user's recent entries of the same
type using a weighted factor model:

    amount 0.4 | description 0.3 | category 0.2 | payment method 0.1

Scores at or above the block threshold are rejected outright; scores between
the warn floor and the block threshold are offered to the user for
confirmation.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Protocol

from loguru import logger

from chatledger.models.schemas import Entry

AMOUNT_WEIGHT = 0.4
DESCRIPTION_WEIGHT = 0.3
CATEGORY_WEIGHT = 0.2
PAYMENT_METHOD_WEIGHT = 0.1

WARN_THRESHOLD = 0.7
BLOCK_THRESHOLD = 0.95
DEFAULT_TOLERANCE_PERCENT = 5.0


class Verdict(str, Enum):
    NONE = "none"
    WARN = "warn"
    BLOCK = "block"


@dataclass
class DuplicateCheck:
    verdict: Verdict
    confidence: float = 0.0
    match: Entry | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.verdict is not Verdict.NONE


def normalize_text(text: str) -> str:
    text = text.lower().strip()
    text = re.sub(r"[^\w\s]", "", text)
    return re.sub(r"\s+", " ", text).strip()


def amount_similarity(a: float, b: float, tolerance_percent: float = DEFAULT_TOLERANCE_PERCENT) -> float:
    """1.0 on equality, linearly down to 0.8 at the tolerance edge, 0 beyond it."""
    if a == b:
        return 1.0
    tolerance = (tolerance_percent / 100) * max(abs(a), abs(b))
    difference = abs(a - b)
    if tolerance <= 0 or difference > tolerance:
        return 0.0
    return 1.0 - (difference / tolerance) * 0.2


def description_similarity(a: str | None, b: str | None) -> float:
    left, right = normalize_text(a or ""), normalize_text(b or "")
    if left == right:
        return 1.0
    if not left or not right:
        return 0.0
    left_tokens, right_tokens = set(left.split()), set(right.split())
    return len(left_tokens & right_tokens) / len(left_tokens | right_tokens)


def exact_match(a: str | None, b: str | None) -> float:
    """Case-insensitive equality; two absent values are equal."""
    return 1.0 if (a or "").strip().lower() == (b or "").strip().lower() else 0.0


def score_entry(candidate: Entry, existing: Entry,
                tolerance_percent: float = DEFAULT_TOLERANCE_PERCENT) -> float:
    score = (
        amount_similarity(candidate.amount, existing.amount, tolerance_percent) * AMOUNT_WEIGHT
        + description_similarity(candidate.description, existing.description) * DESCRIPTION_WEIGHT
        + exact_match(candidate.category, existing.category) * CATEGORY_WEIGHT
        + exact_match(candidate.payment_method, existing.payment_method) * PAYMENT_METHOD_WEIGHT
    )
    # Round away float noise so 0.4 + 0.3 + 0.2 + 0.1 lands exactly on 1.0
    return round(score, 6)


def verdict_for(confidence: float, warn_threshold: float = WARN_THRESHOLD,
                block_threshold: float = BLOCK_THRESHOLD) -> Verdict:
    if confidence >= block_threshold:
        return Verdict.BLOCK
    if confidence >= warn_threshold:
        return Verdict.WARN
    return Verdict.NONE


def select_duplicate(
    candidate: Entry,
    recent: list[Entry],
    tolerance_percent: float = DEFAULT_TOLERANCE_PERCENT,
    warn_threshold: float = WARN_THRESHOLD,
    block_threshold: float = BLOCK_THRESHOLD,
) -> DuplicateCheck:
    """Pick the best duplicate among ``recent`` (newest first).

    Returns on the first entry that reaches the block threshold; otherwise the
    highest scorer at or above the warn threshold.
    """
    best: DuplicateCheck | None = None
    for existing in recent:
        confidence = score_entry(candidate, existing, tolerance_percent)
        verdict = verdict_for(confidence, warn_threshold, block_threshold)
        if verdict is Verdict.BLOCK:
            return DuplicateCheck(Verdict.BLOCK, confidence, existing)
        if verdict is Verdict.WARN and (best is None or confidence > best.confidence):
            best = DuplicateCheck(Verdict.WARN, confidence, existing)
    return best or DuplicateCheck(Verdict.NONE)


class RecentEntrySource(Protocol):
    def recent_entries(self, user_id: str, entry_type: str, since: datetime, limit: int) -> list[Entry]: ...


class DuplicateDetector:
    def __init__(
        self,
        source: RecentEntrySource,
        window_hours: int = 24,
        max_candidates: int = 50,
        tolerance_percent: float = DEFAULT_TOLERANCE_PERCENT,
        warn_threshold: float = WARN_THRESHOLD,
        block_threshold: float = BLOCK_THRESHOLD,
    ):
        self.source = source
        self.window_hours = window_hours
        self.max_candidates = max_candidates
        self.tolerance_percent = tolerance_percent
        self.warn_threshold = warn_threshold
        self.block_threshold = block_threshold

    async def check(self, user_id: str, candidate: Entry) -> DuplicateCheck:
        since = datetime.now() - timedelta(hours=self.window_hours)
        try:
            recent = self.source.recent_entries(user_id, candidate.type, since, self.max_candidates)
        except Exception as e:
            logger.error("Could not load recent entries for duplicate check ({}): {}", user_id, e)
            return DuplicateCheck(Verdict.NONE)

        result = select_duplicate(
            candidate,
            recent,
            tolerance_percent=self.tolerance_percent,
            warn_threshold=self.warn_threshold,
            block_threshold=self.block_threshold,
        )
        if result.is_duplicate:
            logger.info(
                "Duplicate {} for {}: confidence {:.2f} vs entry #{}",
                result.verdict.value, user_id, result.confidence, result.match.id,
            )
        return result
