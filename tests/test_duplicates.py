from datetime import datetime, timedelta

import pytest

from chatledger.engine.duplicates import (
    DuplicateDetector,
    Verdict,
    amount_similarity,
    description_similarity,
    exact_match,
    score_entry,
    select_duplicate,
    verdict_for,
)
from chatledger.models.schemas import Entry

from tests.conftest import run


def make_entry(amount=50.0, description="comida", category="comida", payment_method=None, id=None, **kw):
    return Entry(
        id=id,
        user_id="acc-1",
        amount=amount,
        description=description,
        category=category,
        payment_method=payment_method,
        **kw,
    )


class TestFactors:
    def test_equal_amounts(self):
        assert amount_similarity(100, 100) == 1.0

    def test_amount_within_tolerance(self):
        # 5% of 100 = 5; 3.125/5 * 0.2 = 0.125 off
        assert amount_similarity(100, 96.875) == pytest.approx(0.875)

    def test_amount_at_tolerance_edge(self):
        assert amount_similarity(100, 95) == pytest.approx(0.8)

    def test_amount_beyond_tolerance(self):
        assert amount_similarity(100, 94) == 0.0

    def test_description_normalization(self):
        assert description_similarity("Almoço, no Restaurante!", "almoço no   restaurante") == 1.0

    def test_description_token_overlap(self):
        assert description_similarity("almoço no restaurante", "almoço restaurante") == pytest.approx(2 / 3)

    def test_description_one_side_empty(self):
        assert description_similarity("almoço", None) == 0.0

    def test_exact_match_is_case_insensitive(self):
        assert exact_match("Pix", "pix") == 1.0
        assert exact_match("pix", "nubank") == 0.0
        assert exact_match("pix", None) == 0.0

    def test_two_absent_values_match(self):
        assert exact_match(None, None) == 1.0
        assert description_similarity(None, "") == 1.0


class TestScore:
    def test_identical_entries_score_one(self):
        assert score_entry(make_entry(), make_entry()) == 1.0

    def test_payment_method_difference(self):
        assert score_entry(make_entry(payment_method="pix"), make_entry()) == 0.9

    def test_amount_and_description_only(self):
        candidate = make_entry(category="mercado", payment_method="pix")
        assert score_entry(candidate, make_entry()) == 0.7

    def test_constructed_block_boundary(self):
        # 0.875 * 0.4 + 0.3 + 0.2 + 0.1
        assert score_entry(make_entry(amount=96.875), make_entry(amount=100)) == 0.95

    def test_score_is_monotonic_in_amount_difference(self):
        existing = make_entry(amount=100)
        scores = [score_entry(make_entry(amount=100 - d), existing) for d in (0, 1, 2, 3, 4, 5, 6, 10)]
        assert scores == sorted(scores, reverse=True)

    def test_score_is_monotonic_in_field_agreement(self):
        existing = make_entry(payment_method="pix")
        fewer = score_entry(make_entry(category="other", payment_method="pix"), existing)
        more = score_entry(make_entry(payment_method="pix"), existing)
        assert more >= fewer


class TestVerdict:
    def test_thresholds(self):
        assert verdict_for(0.95) is Verdict.BLOCK
        assert verdict_for(0.9499) is Verdict.WARN
        assert verdict_for(0.7) is Verdict.WARN
        assert verdict_for(0.6999) is Verdict.NONE

    def test_first_block_in_recency_order_wins(self):
        newest = make_entry(id=2)
        older = make_entry(id=1)
        result = select_duplicate(make_entry(), [newest, older])
        assert result.verdict is Verdict.BLOCK
        assert result.match.id == 2

    def test_best_warning_is_selected(self):
        weaker = make_entry(id=1, category="mercado", payment_method="pix")  # 0.7
        stronger = make_entry(id=2, payment_method="pix")  # 0.9
        result = select_duplicate(make_entry(), [weaker, stronger])
        assert result.verdict is Verdict.WARN
        assert result.match.id == 2
        assert result.confidence == 0.9

    def test_no_duplicate(self):
        result = select_duplicate(make_entry(), [make_entry(amount=500, description="aluguel", category="casa")])
        assert result.verdict is Verdict.NONE
        assert not result.is_duplicate


class StaticSource:
    def __init__(self, entries=None, error=None):
        self.entries = entries or []
        self.error = error
        self.calls = []

    def recent_entries(self, user_id, entry_type, since, limit):
        self.calls.append((user_id, entry_type, since, limit))
        if self.error:
            raise self.error
        return self.entries


def test_detector_queries_the_configured_window():
    source = StaticSource([make_entry(id=7)])
    detector = DuplicateDetector(source, window_hours=24, max_candidates=50)
    result = run(detector.check("acc-1", make_entry()))
    assert result.verdict is Verdict.BLOCK
    user_id, entry_type, since, limit = source.calls[0]
    assert (user_id, entry_type, limit) == ("acc-1", "expense", 50)
    assert timedelta(hours=23, minutes=59) < datetime.now() - since < timedelta(hours=24, seconds=5)


def test_detector_treats_load_failure_as_no_duplicate():
    detector = DuplicateDetector(StaticSource(error=RuntimeError("db down")))
    result = run(detector.check("acc-1", make_entry()))
    assert result.verdict is Verdict.NONE
