from tinydb import TinyDB

from chatledger.config import get_settings
from chatledger.db.repository import LedgerRepository, SessionRepository
from chatledger.engine.duplicates import DuplicateDetector
from chatledger.engine.metrics import MetricsRecorder
from chatledger.engine.pending import InMemoryPendingStateStore, ttls_from_settings
from chatledger.engine.quota import DailyQuota
from chatledger.engine.router import ConversationRouter
from chatledger.engine.undo import UndoStack
from chatledger.handlers.ledger import LedgerActions
from chatledger.llm.parser import IntentParser
from chatledger.nlp.cache import SemanticCache
from chatledger.nlp.layers import LayeredIntentParser

settings = get_settings()

db = TinyDB(settings.db_path)
repo = LedgerRepository(db)
sessions = SessionRepository(db)
metrics = MetricsRecorder(db)

pending = InMemoryPendingStateStore(
    ttls=ttls_from_settings(settings),
    default_ttl=settings.pending_ttl_seconds,
    sweep_interval=settings.sweep_interval_seconds,
)
undo = UndoStack(
    target=repo,
    max_depth=settings.undo_max_depth,
    ttl=settings.undo_ttl_seconds,
    sweep_interval=settings.sweep_interval_seconds,
)

parser = LayeredIntentParser(
    model=IntentParser(
        api_key=settings.openrouter_api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        timeout=settings.llm_timeout_seconds,
    ),
    cache=SemanticCache(db, threshold=settings.cache_similarity_threshold),
    quota=DailyQuota(settings.llm_daily_limit),
    cache_write_min_confidence=settings.cache_write_min_confidence,
)

router = ConversationRouter(
    sessions=sessions,
    authorizer=sessions,
    entries=repo,
    parser=parser,
    handler=LedgerActions(repo, sessions),
    pending=pending,
    undo=undo,
    duplicates=DuplicateDetector(
        repo,
        window_hours=settings.duplicate_window_hours,
        max_candidates=settings.duplicate_max_candidates,
        tolerance_percent=settings.duplicate_amount_tolerance_percent,
        warn_threshold=settings.duplicate_warn_threshold,
        block_threshold=settings.duplicate_block_threshold,
    ),
    metrics=metrics,
    min_execute_confidence=settings.min_execute_confidence,
    daily_limit=settings.llm_daily_limit,
)
