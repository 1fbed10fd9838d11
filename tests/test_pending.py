import asyncio

from chatledger.config import Settings
from chatledger.engine.pending import InMemoryPendingStateStore, ttls_from_settings
from chatledger.models.schemas import PendingKind

from tests.conftest import run

OCR = PendingKind.OCR_CONFIRMATION
CREDIT = PendingKind.CREDIT_MODE_SELECTION


class TestPendingStateStore:
    def setup_method(self):
        self.now = [0.0]
        self.store = InMemoryPendingStateStore(default_ttl=300, clock=lambda: self.now[0])

    def test_set_then_get(self):
        self.store.set("u1", OCR, {"candidates": [1, 2]})
        record = self.store.get("u1", OCR)
        assert record is not None
        assert record.payload == {"candidates": [1, 2]}

    def test_set_replaces_existing_record_of_same_kind(self):
        self.store.set("u1", OCR, {"n": 1})
        self.store.set("u1", OCR, {"n": 2})
        assert self.store.get("u1", OCR).payload == {"n": 2}
        assert self.store.kinds("u1") == [OCR]

    def test_different_kinds_coexist(self):
        self.store.set("u1", OCR, {})
        self.store.set("u1", CREDIT, {})
        assert set(self.store.kinds("u1")) == {OCR, CREDIT}

    def test_records_are_per_user(self):
        self.store.set("u1", OCR, {})
        assert self.store.get("u2", OCR) is None

    def test_expired_record_reads_as_absent_and_is_removed(self):
        self.store.set("u1", OCR, {})
        self.now[0] = 299
        assert self.store.has("u1", OCR)
        self.now[0] = 300
        assert self.store.get("u1", OCR) is None
        assert self.store._records == {}

    def test_sweep_removes_only_expired(self):
        self.store.set("u1", OCR, {})
        self.now[0] = 200
        self.store.set("u2", OCR, {})
        self.now[0] = 350
        assert self.store.sweep() == 1
        assert self.store.get("u1", OCR) is None
        assert self.store.get("u2", OCR) is not None

    def test_claim_consumes_once(self):
        self.store.set("u1", OCR, {"a": 1})
        assert self.store.claim("u1", OCR).payload == {"a": 1}
        assert self.store.claim("u1", OCR) is None

    def test_claim_with_non_matching_predicate_keeps_record(self):
        self.store.set("u1", OCR, {"id": "ABC123"})
        assert self.store.claim("u1", OCR, lambda r: r.payload["id"] == "ZZZ999") is None
        assert self.store.has("u1", OCR)

    def test_delete(self):
        self.store.set("u1", OCR, {})
        assert self.store.delete("u1", OCR) is True
        assert self.store.delete("u1", OCR) is False

    def test_explicit_ttl_overrides_kind_default(self):
        self.store.set("u1", OCR, {}, ttl=10)
        self.now[0] = 10
        assert self.store.get("u1", OCR) is None


def test_kind_ttls_from_settings():
    ttls = ttls_from_settings(Settings(_env_file=None))
    assert ttls[PendingKind.OCR_CONFIRMATION] == 300
    assert ttls[PendingKind.DUPLICATE_CONFIRMATION] == 300
    assert ttls[PendingKind.CREDIT_MODE_SELECTION] == 600
    assert ttls[PendingKind.INSTALLMENT_CARD_SELECTION] == 600
    assert ttls[PendingKind.PAYOFF_FLOW] == 300
    assert ttls[PendingKind.MODE_SWITCH_WARNING] == 300


def test_credit_mode_record_outlives_ocr_record(clock):
    store = InMemoryPendingStateStore(ttls=ttls_from_settings(Settings(_env_file=None)), clock=clock)
    store.set("u1", OCR, {})
    store.set("u1", CREDIT, {})
    clock.advance(400)
    assert store.get("u1", OCR) is None
    assert store.get("u1", CREDIT) is not None


def test_background_sweep_evicts_expired_records(clock):
    store = InMemoryPendingStateStore(default_ttl=300, clock=clock, sweep_interval=0.01)
    store.set("u1", OCR, {})
    store.set("u2", OCR, {})
    clock.advance(301)
    store.set("u3", OCR, {})

    async def sweep_once():
        store.start()
        await asyncio.sleep(0.05)
        await store.stop()

    run(sweep_once())
    # read the raw map: get() would also drop expired records
    assert list(store._records) == ["u3"]
    assert not store.sweeper.running
