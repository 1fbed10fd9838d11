import asyncio

import pytest
from tinydb import TinyDB
from tinydb.storages import MemoryStorage

from chatledger.db.repository import LedgerRepository, SessionRepository
from chatledger.engine.duplicates import DuplicateDetector
from chatledger.engine.metrics import MetricsRecorder
from chatledger.engine.pending import InMemoryPendingStateStore
from chatledger.engine.quota import DailyQuota
from chatledger.engine.router import ConversationRouter
from chatledger.engine.undo import UndoStack
from chatledger.handlers.ledger import LedgerActions
from chatledger.llm.parser import ModelResult
from chatledger.models.schemas import InboundMessage, ResolvedIntent
from chatledger.nlp.cache import SemanticCache
from chatledger.nlp.layers import LayeredIntentParser


def run(coro):
    return asyncio.run(coro)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeModel:
    """Stands in for the language model: answers from a text -> result table."""

    def __init__(self, answers: dict[str, ModelResult] | None = None):
        self.answers = answers or {}
        self.calls: list[dict] = []

    def answer(self, text: str, action: str, confidence: float = 0.95, **entities) -> None:
        self.answers[text] = ModelResult(
            intent=ResolvedIntent(action=action, confidence=confidence, entities=entities)
        )

    async def parse(self, text, context, quoted_text=None) -> ModelResult:
        self.calls.append({"text": text, "context": context, "quoted_text": quoted_text})
        return self.answers.get(text, ModelResult(intent=ResolvedIntent(action="unknown", confidence=0.1)))


class Harness:
    """A router wired to in-memory storage, a fake model and a controllable clock."""

    def __init__(self, daily_limit: int = 50):
        self.db = TinyDB(storage=MemoryStorage)
        self.clock = FakeClock()
        self.model = FakeModel()
        self.repo = LedgerRepository(self.db)
        self.sessions = SessionRepository(self.db)
        self.metrics = MetricsRecorder(self.db)
        self.pending = InMemoryPendingStateStore(default_ttl=300, clock=self.clock)
        self.undo = UndoStack(target=self.repo, clock=self.clock)
        self.cache = SemanticCache(self.db)
        self.parser = LayeredIntentParser(self.model, self.cache, DailyQuota(daily_limit))
        self.handler = LedgerActions(self.repo, self.sessions)
        self.router = ConversationRouter(
            sessions=self.sessions,
            authorizer=self.sessions,
            entries=self.repo,
            parser=self.parser,
            handler=self.handler,
            pending=self.pending,
            undo=self.undo,
            duplicates=DuplicateDetector(self.repo),
            metrics=self.metrics,
            daily_limit=daily_limit,
        )

    def send(self, user_id: str, text: str, quoted_text: str | None = None, **kwargs):
        async def _send():
            reply = await self.router.resolve(
                InboundMessage(user_id=user_id, text=text, quoted_text=quoted_text, **kwargs)
            )
            await self.parser.drain()
            return reply

        return run(_send())

    def login(self, user_id: str, account_id: str = "acc-1"):
        return self.sessions.login(user_id, account_id)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db():
    return TinyDB(storage=MemoryStorage)


@pytest.fixture
def harness():
    return Harness()
