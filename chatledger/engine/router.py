"""
Conversation router: the single entry point for inbound chat messages.

For every message, in order:

    1. pull reply context (a quoted duplicate warning or transaction id)
    2. answer a pending question (STATE_ROUTES, first live record wins)
    3. explicit /commands, resolved by the command grammar alone
    4. free-form text, resolved by cache -> language model
    5. permission check, duplicate check for new entries, then execution

Each message is handled under its user's lock and produces exactly one
parsing metric, whatever happens.
"""

import re
import time
from collections.abc import Awaitable, Callable
from functools import partial

from loguru import logger

from chatledger.db.repository import short_id
from chatledger.engine import messages
from chatledger.engine.duplicates import DuplicateDetector, Verdict
from chatledger.engine.errors import (
    AuthenticationRequired,
    ParseFailure,
    PermissionDenied,
    QuotaExceeded,
)
from chatledger.engine.flows import (
    STATE_ROUTES,
    FlowContext,
    FlowReply,
    StateRoute,
    continue_scoped_duplicate,
    entry_intent,
    first_line,
)
from chatledger.engine.interfaces import ActionHandler, Authorizer, EntryStore, SessionProvider
from chatledger.engine.locks import UserLocks
from chatledger.engine.metrics import MetricsRecorder
from chatledger.engine.pending import InMemoryPendingStateStore
from chatledger.engine.permissions import describe_action, has_permission, required_permission
from chatledger.engine.undo import UndoStack, UndoStatus
from chatledger.handlers.ledger import build_entry
from chatledger.models.schemas import (
    InboundMessage,
    OcrCandidate,
    ParsingMetric,
    ParsingStrategy,
    PendingKind,
    ResolvedIntent,
    Session,
    UserContext,
)
from chatledger.nlp.layers import LayeredIntentParser

Reply = str | list[str]

DUPLICATE_ID_RE = re.compile(r"(?:🆔\s*)?Duplicate\s*ID:\s*([A-Z0-9]{6})", re.IGNORECASE)
TRANSACTION_ID_RE = re.compile(r"(?:🆔\s*)?ID:\s*([A-Z0-9]{6})")

ENTRY_ACTIONS = {"add_expense": "expense", "add_income": "income"}
SESSIONLESS_ACTIONS = {"help", "login"}


def extract_reply_ids(quoted_text: str | None) -> tuple[str | None, str | None]:
    """Returns (duplicate_id, transaction_id); at most one is set."""
    if not quoted_text:
        return None, None
    duplicate = DUPLICATE_ID_RE.search(quoted_text)
    if duplicate:
        return duplicate.group(1).upper(), None
    transaction = TRANSACTION_ID_RE.search(quoted_text)
    if transaction:
        return None, transaction.group(1)
    return None, None


def with_greeting(reply: Reply, greeting: str) -> Reply:
    if isinstance(reply, list):
        return [greeting, *reply]
    return f"{greeting}\n\n{reply}"


class ConversationRouter:
    def __init__(
        self,
        sessions: SessionProvider,
        authorizer: Authorizer,
        entries: EntryStore,
        parser: LayeredIntentParser,
        handler: ActionHandler,
        pending: InMemoryPendingStateStore,
        undo: UndoStack,
        duplicates: DuplicateDetector,
        metrics: MetricsRecorder,
        min_execute_confidence: float = 0.5,
        daily_limit: int = 50,
        routes: tuple[StateRoute, ...] = STATE_ROUTES,
    ):
        self.sessions = sessions
        self.authorizer = authorizer
        self.entries = entries
        self.parser = parser
        self.handler = handler
        self.pending = pending
        self.undo = undo
        self.duplicates = duplicates
        self.metrics = metrics
        self.min_execute_confidence = min_execute_confidence
        self.daily_limit = daily_limit
        self.routes = routes
        self.locks = UserLocks()

    async def resolve(self, message: InboundMessage) -> Reply:
        async with self.locks.hold(message.user_id):
            trace = ParsingMetric(user_id=message.user_id, message_text=message.text)
            return await self._traced(trace, partial(self._resolve, message, trace))

    async def offer_ocr_candidates(self, user_id: str, candidates: list[OcrCandidate]) -> Reply:
        """Entry point for text extracted from a receipt or statement image."""
        async with self.locks.hold(user_id):
            trace = ParsingMetric(
                user_id=user_id,
                message_text=f"[ocr] {len(candidates)} candidate(s)",
                strategy_used=ParsingStrategy.OCR_INTAKE,
            )
            return await self._traced(trace, partial(self._offer_ocr, user_id, candidates, trace))

    async def _traced(self, trace: ParsingMetric, work: Callable[[], Awaitable[Reply]]) -> Reply:
        started = time.perf_counter()
        try:
            reply = await work()
        except AuthenticationRequired as e:
            logger.warning("Unauthenticated message from {}", e.user_id)
            trace.success = False
            trace.error_message = "authentication_required"
            reply = messages.LOGIN_PROMPT
        except PermissionDenied as e:
            logger.warning("{} denied {} (needs {})", trace.user_id, e.action, e.permission)
            trace.success = False
            trace.error_message = "permission_denied"
            trace.permission_required = e.permission
            trace.permission_granted = False
            reply = messages.permission_denied(describe_action(e.action))
        except QuotaExceeded:
            trace.success = False
            trace.error_message = "quota_exceeded"
            reply = messages.QUOTA_EXCEEDED
        except ParseFailure as e:
            trace.success = False
            trace.error_message = e.reason
            reply = messages.TRY_EXPLICIT_COMMAND
        except Exception as e:
            logger.exception("Failed to handle message from {}: {}", trace.user_id, e)
            trace.success = False
            trace.error_message = str(e) or type(e).__name__
            reply = messages.GENERIC_ERROR
        finally:
            trace.latency_ms = int((time.perf_counter() - started) * 1000)
            self.metrics.record(trace)
        return reply

    async def _resolve(self, message: InboundMessage, trace: ParsingMetric) -> Reply:
        text = message.text.strip()
        duplicate_id, transaction_id = extract_reply_ids(message.quoted_text)
        session = self.sessions.get_or_create_session(
            message.user_id,
            message.group_owner_id if message.is_group_context else None,
        )
        ctx = FlowContext(
            user_id=message.user_id,
            text=text,
            store=self.pending,
            dispatch=partial(self._dispatch, message, session),
        )

        if duplicate_id:
            trace.strategy_used = ParsingStrategy.DUPLICATE_CONFIRMATION
            return self._flow_reply(trace, await continue_scoped_duplicate(ctx, duplicate_id))

        if transaction_id is None:
            for route in self.routes:
                record = route.matches(ctx)
                if record is None:
                    continue
                logger.info("{} answered pending {}", message.user_id, route.name)
                trace.strategy_used = route.strategy
                return self._flow_reply(trace, await route.handle(ctx, record))

        if text.startswith("/"):
            return await self._handle_command(message, session, text, trace)
        return await self._handle_free_form(message, session, text, transaction_id, trace)

    def _flow_reply(self, trace: ParsingMetric, flow: FlowReply) -> Reply:
        trace.intent_action = flow.action
        trace.success = flow.success
        return flow.text

    async def _handle_command(self, message: InboundMessage, session: Session | None,
                              text: str, trace: ParsingMetric) -> Reply:
        outcome = self.parser.parse_command_only(text)
        intent = outcome.intent
        trace.strategy_used = outcome.strategy
        trace.intent_action = intent.action
        trace.confidence = intent.confidence

        if intent.action == "unknown":
            trace.success = False
            trace.error_message = intent.entities.get("reason", "unknown_command")
            return messages.unknown_command(intent.entities.get("command"))

        if intent.action in SESSIONLESS_ACTIONS:
            return self._sessionless(message, intent, trace)
        if session is None:
            raise AuthenticationRequired(message.user_id)
        return await self._execute(message, session, intent, trace)

    def _sessionless(self, message: InboundMessage, intent: ResolvedIntent, trace: ParsingMetric) -> Reply:
        if intent.action == "login":
            account_id = intent.entities.get("account_id")
            if not account_id:
                trace.success = False
                trace.error_message = "missing_account_id"
                return messages.command_help("login")
            trace.success = True
            session = self.sessions.login(message.user_id, str(account_id))
            return messages.LOGIN_OK.format(account_id=session.account_id)
        trace.success = True
        return messages.command_help(intent.entities.get("command"))

    async def _handle_free_form(self, message: InboundMessage, session: Session | None, text: str,
                                transaction_id: str | None, trace: ParsingMetric) -> Reply:
        if session is None:
            raise AuthenticationRequired(message.user_id)

        context = UserContext(
            user_id=message.user_id,
            recent_categories=self.entries.recent_categories(session.account_id),
            recent_payment_methods=self.entries.recent_payment_methods(session.account_id),
        )
        outcome = await self.parser.parse_free_form(
            message.user_id, text, context, message.quoted_text, transaction_id,
        )
        trace.strategy_used = outcome.strategy
        trace.cache_hit = outcome.cache_hit
        trace.cache_similarity = outcome.cache_similarity
        outcome.raise_for_error(message.user_id, self.daily_limit)

        intent = outcome.intent
        trace.intent_action = intent.action
        trace.confidence = intent.confidence
        if intent.action == "unknown" or intent.confidence < self.min_execute_confidence:
            logger.info("Low confidence {} ({:.2f}) for {}", intent.action, intent.confidence, message.user_id)
            raise ParseFailure("low_confidence")

        if intent.action in SESSIONLESS_ACTIONS:
            reply = self._sessionless(message, intent, trace)
        else:
            reply = await self._execute(message, session, intent, trace)

        if not session.greeted:
            self.sessions.mark_greeted(message.user_id)
            reply = with_greeting(reply, messages.greeting(message.push_name))
        return reply

    def _authorize(self, message: InboundMessage, session: Session, action: str, trace: ParsingMetric) -> None:
        permission = required_permission(action)
        if permission is None:
            return
        trace.permission_required = permission
        auth = self.authorizer.check_authorization({
            "user_id": message.user_id,
            "account_id": session.account_id,
            "group_owner_id": message.group_owner_id if message.is_group_context else None,
        })
        granted = auth.authorized and has_permission(auth.permissions, permission)
        trace.permission_granted = granted
        if not granted:
            raise PermissionDenied(action, permission)

    async def _execute(self, message: InboundMessage, session: Session,
                       intent: ResolvedIntent, trace: ParsingMetric) -> Reply:
        self._authorize(message, session, intent.action, trace)

        if intent.action == "undo_last":
            return await self._undo(message.user_id, trace)

        if intent.action in ENTRY_ACTIONS:
            candidate = build_entry(session.account_id, ENTRY_ACTIONS[intent.action], intent.entities)
            if candidate is not None:
                check = await self.duplicates.check(session.account_id, candidate)
                if check.verdict is Verdict.BLOCK:
                    trace.success = False
                    trace.error_message = "duplicate_blocked"
                    return messages.duplicate_blocked(check.match, check.confidence)
                if check.verdict is Verdict.WARN:
                    duplicate_id = short_id()
                    self.pending.set(message.user_id, PendingKind.DUPLICATE_CONFIRMATION, {
                        "duplicate_id": duplicate_id,
                        "action": intent.action,
                        "entities": intent.entities,
                    })
                    trace.success = True
                    return messages.duplicate_warning(candidate, check.match, check.confidence, duplicate_id)

        reply = await self._dispatch(message, session, intent)
        trace.success = True
        return reply

    async def _undo(self, user_id: str, trace: ParsingMetric) -> Reply:
        outcome = await self.undo.undo_last(user_id)
        if outcome.status is UndoStatus.UNDONE:
            trace.success = True
            return messages.undo_done(outcome.record.action_kind.value)
        if outcome.status is UndoStatus.EMPTY:
            trace.success = True
            return messages.UNDO_EMPTY
        trace.success = False
        trace.error_message = outcome.error
        return messages.UNDO_FAILED

    async def _dispatch(self, message: InboundMessage, session: Session | None, intent: ResolvedIntent) -> Reply:
        """Run the action handler and keep whatever undo snapshot or pending question it asks for."""
        if session is None:
            raise AuthenticationRequired(message.user_id)
        result = await self.handler.execute(session, intent)
        if result.undo is not None:
            self.undo.record(message.user_id, result.undo.action_kind, result.undo.prior_state)
        if result.pending is not None:
            self.pending.set(message.user_id, result.pending.kind, result.pending.payload)
        return result.text

    async def _offer_ocr(self, user_id: str, candidates: list[OcrCandidate], trace: ParsingMetric) -> Reply:
        session = self.sessions.get_or_create_session(user_id)
        if session is None:
            raise AuthenticationRequired(user_id)
        message = InboundMessage(user_id=user_id, text=trace.message_text)

        if not session.ocr_auto_add:
            self.pending.set(user_id, PendingKind.OCR_CONFIRMATION, {
                "candidates": [c.model_dump() for c in candidates],
                "editing_index": None,
            })
            trace.success = True
            return messages.ocr_prompt(candidates)

        self._authorize(message, session, "add_expense", trace)
        lines = []
        total = len(candidates)
        for i, candidate in enumerate(candidates, start=1):
            result = await self._dispatch(message, session, entry_intent(candidate))
            lines.append(f"{i}/{total} - {first_line(result)}")
        lines.append(messages.ocr_summary(total, total))
        trace.intent_action = "add_expense"
        trace.success = True
        return lines
