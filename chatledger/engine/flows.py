"""
Continuations for multi-turn conversations.

When a user has a pending record, their next message is an answer to the
question we asked. STATE_ROUTES lists the pending kinds in the order they are
checked; the first live record wins. Every continuation either consumes the
record (claim, then act), replaces it (next step), clears it (cancel) or leaves
it in place and asks again.
"""

import re
import unicodedata
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date

from loguru import logger

from chatledger.engine import messages
from chatledger.engine.pending import PendingRecord, PendingStateStore
from chatledger.models.schemas import (
    OcrCandidate,
    ParsingStrategy,
    PendingKind,
    ResolvedIntent,
)
from chatledger.nlp.commands import parse_amount, parse_date

Reply = str | list[str]
Dispatch = Callable[[ResolvedIntent], Awaitable[Reply]]

YES_WORDS = {"sim", "s", "yes", "y", "confirmar", "confirm", "ok"}
NO_WORDS = {"não", "nao", "no", "n", "cancelar", "cancel"}
OCR_CONFIRM_WORDS = {"sim", "confirmar", "confirm", "ok", "yes"}
OCR_CANCEL_WORDS = {"não", "nao", "cancelar", "cancel", "no"}
CANCEL_WORDS = {"cancelar", "cancel"}

CREDIT_MODE_CHOICES = {
    "1": "credit", "crédito": "credit", "credito": "credit", "credit": "credit",
    "2": "simple", "simples": "simple", "simple": "simple",
}
MODE_SWITCH_CHOICES = {
    "1": "keep", "manter": "keep", "keep": "keep",
    "2": "pay_off", "quitar": "pay_off", "pay": "pay_off",
    "3": "cancel", "cancelar": "cancel", "cancel": "cancel",
}

OCR_FIELDS = {
    "categoria": "category", "category": "category",
    "valor": "amount", "amount": "amount",
    "descrição": "description", "descricao": "description", "description": "description",
    "data": "date", "date": "date",
    "pagamento": "payment_method", "payment": "payment_method",
}

OCR_CONFIDENCE = 0.95

EDIT_RE = re.compile(r"^(?:editar|edit)\s+(\d+)$")
FIELD_RE = re.compile(r"^([^\s:]+)\s*:\s*(.+)$")


@dataclass
class FlowContext:
    user_id: str
    text: str
    store: PendingStateStore
    dispatch: Dispatch


@dataclass
class FlowReply:
    text: Reply
    action: str | None = None
    success: bool = True


@dataclass(frozen=True)
class StateRoute:
    name: str
    strategy: ParsingStrategy
    kind: PendingKind
    handle: Callable[[FlowContext, PendingRecord], Awaitable[FlowReply]]

    def matches(self, ctx: FlowContext) -> PendingRecord | None:
        return ctx.store.get(ctx.user_id, self.kind)


def normalize_reply(text: str) -> str:
    return re.sub(r"\s+", " ", text.strip().lower()).strip(" .!?")


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(c for c in decomposed if unicodedata.category(c) != "Mn")


def first_line(reply: Reply) -> str:
    text = reply[0] if isinstance(reply, list) else reply
    return text.split("\n")[0]


def entry_intent(candidate: OcrCandidate) -> ResolvedIntent:
    action = "add_income" if candidate.type == "income" else "add_expense"
    entities = candidate.model_dump(exclude_none=True)
    return ResolvedIntent(action=action, confidence=OCR_CONFIDENCE, entities=entities)


def _claimed(ctx: FlowContext, record: PendingRecord, match=None) -> PendingRecord | None:
    claimed = ctx.store.claim(ctx.user_id, record.kind, match)
    if claimed is None:
        logger.warning("Pending {} for {} vanished before it could be claimed", record.kind.value, ctx.user_id)
    return claimed


# OCR confirmation

async def continue_ocr(ctx: FlowContext, record: PendingRecord) -> FlowReply:
    reply = normalize_reply(ctx.text)
    candidates = [OcrCandidate.model_validate(c) for c in record.payload["candidates"]]

    if reply in OCR_CONFIRM_WORDS:
        if _claimed(ctx, record) is None:
            return FlowReply(messages.OCR_CANCELLED, success=False)
        return await _save_candidates(ctx, candidates)

    if reply in OCR_CANCEL_WORDS:
        ctx.store.delete(ctx.user_id, record.kind)
        return FlowReply(messages.OCR_CANCELLED, action="cancel")

    edit = EDIT_RE.match(reply)
    if edit:
        index = int(edit.group(1)) - 1
        if not 0 <= index < len(candidates):
            return FlowReply(messages.ocr_invalid_number(len(candidates)), success=False)
        ctx.store.set(ctx.user_id, record.kind, {**record.payload, "editing_index": index})
        return FlowReply(messages.ocr_editing(index, candidates[index]), action="edit_candidate")

    field = FIELD_RE.match(ctx.text.strip())
    if field:
        index = record.payload.get("editing_index")
        if index is None:
            return FlowReply(messages.OCR_EDIT_HELP, success=False)
        return _edit_candidate(ctx, record, candidates, index, field.group(1), field.group(2))

    return FlowReply(messages.OCR_REPROMPT, success=False)


async def _save_candidates(ctx: FlowContext, candidates: list[OcrCandidate]) -> FlowReply:
    total = len(candidates)
    lines = []
    saved = 0
    for i, candidate in enumerate(candidates, start=1):
        try:
            result = await ctx.dispatch(entry_intent(candidate))
        except Exception as e:
            logger.error("Saving OCR candidate {}/{} for {} failed: {}", i, total, ctx.user_id, e)
            lines.append(f"{i}/{total} - ❌ {messages.GENERIC_ERROR}")
            continue
        saved += 1
        lines.append(f"{i}/{total} - {first_line(result)}")
    lines.append(messages.ocr_summary(saved, total))
    return FlowReply(lines, action="add_expense", success=saved == total)


def _edit_candidate(ctx: FlowContext, record: PendingRecord, candidates: list[OcrCandidate],
                    index: int, field_name: str, raw_value: str) -> FlowReply:
    field = OCR_FIELDS.get(field_name.lower())
    if field is None:
        return FlowReply(messages.ocr_invalid_field(field_name), success=False)

    value: object = raw_value.strip()
    if field == "amount":
        value = parse_amount(raw_value)
        if value is None:
            return FlowReply(messages.ocr_invalid_field(field_name), success=False)
    elif field == "date":
        try:
            value = parse_date(raw_value.strip(), date.today())
        except ValueError:
            value = None
        if value is None:
            return FlowReply(messages.ocr_invalid_field(field_name), success=False)

    updated = candidates[index].model_copy(update={field: value})
    payload_candidates = list(record.payload["candidates"])
    payload_candidates[index] = updated.model_dump()
    ctx.store.set(ctx.user_id, record.kind, {**record.payload, "candidates": payload_candidates})
    return FlowReply(messages.ocr_editing(index, updated), action="edit_candidate")


# Credit mode selection

async def continue_credit_mode(ctx: FlowContext, record: PendingRecord) -> FlowReply:
    mode = CREDIT_MODE_CHOICES.get(normalize_reply(ctx.text))
    if mode is None:
        return FlowReply(messages.CREDIT_MODE_INVALID, success=False)
    if _claimed(ctx, record) is None:
        return FlowReply(messages.CANCELLED, success=False)

    intent = ResolvedIntent(
        action="set_credit_mode",
        confidence=1.0,
        entities={**record.payload, "mode": mode},
    )
    return FlowReply(await ctx.dispatch(intent), action=intent.action)


# Installment card selection

def match_card(reply: str, cards: list[dict]) -> dict | None:
    if reply.isdigit():
        index = int(reply) - 1
        return cards[index] if 0 <= index < len(cards) else None
    wanted = strip_accents(reply)
    if not wanted:
        return None
    for card in cards:
        if wanted in strip_accents(card["name"].lower()):
            return card
    return None


async def continue_installment_card(ctx: FlowContext, record: PendingRecord) -> FlowReply:
    cards = record.payload["cards"]
    card = match_card(normalize_reply(ctx.text), cards)
    if card is None:
        return FlowReply(messages.installment_card_invalid(cards), success=False)
    if _claimed(ctx, record) is None:
        return FlowReply(messages.CANCELLED, success=False)

    intent = ResolvedIntent(
        action="add_installment",
        confidence=1.0,
        entities={**record.payload["installment"], "payment_method": card["name"], "card_id": card["id"]},
    )
    return FlowReply(await ctx.dispatch(intent), action=intent.action)


# Payoff

def match_plans(reply: str, plans: list[dict]) -> list[dict]:
    if reply.isdigit():
        index = int(reply) - 1
        return [plans[index]] if 0 <= index < len(plans) else []
    wanted = strip_accents(reply)
    return [p for p in plans if wanted and wanted in strip_accents(p["description"].lower())]


async def continue_payoff(ctx: FlowContext, record: PendingRecord) -> FlowReply:
    reply = normalize_reply(ctx.text)
    if reply in CANCEL_WORDS:
        ctx.store.delete(ctx.user_id, record.kind)
        return FlowReply(messages.PAYOFF_CANCELLED, action="cancel")

    plans = record.payload["plans"]
    if record.payload.get("step") == "confirm":
        plan = next(p for p in plans if p["id"] == record.payload["plan_id"])
        if reply in YES_WORDS:
            if _claimed(ctx, record) is None:
                return FlowReply(messages.PAYOFF_CANCELLED, success=False)
            intent = ResolvedIntent(action="payoff_installment", confidence=1.0, entities={"plan_id": plan["id"]})
            return FlowReply(await ctx.dispatch(intent), action=intent.action)
        if reply in NO_WORDS:
            ctx.store.delete(ctx.user_id, record.kind)
            return FlowReply(messages.PAYOFF_CANCELLED, action="cancel")
        return FlowReply(messages.payoff_confirm_prompt(plan), success=False)

    matches = match_plans(reply, plans)
    if len(matches) == 1:
        plan = matches[0]
        ctx.store.set(ctx.user_id, record.kind, {**record.payload, "step": "confirm", "plan_id": plan["id"]})
        return FlowReply(messages.payoff_confirm_prompt(plan), action="payoff_installment")
    if len(matches) > 1:
        return FlowReply(messages.payoff_ambiguous(plans), success=False)
    return FlowReply(messages.payoff_select_prompt(plans), success=False)


# Mode switch warning

async def continue_mode_switch(ctx: FlowContext, record: PendingRecord) -> FlowReply:
    choice = MODE_SWITCH_CHOICES.get(normalize_reply(ctx.text))
    if choice is None:
        return FlowReply(messages.MODE_SWITCH_INVALID, success=False)
    if _claimed(ctx, record) is None:
        return FlowReply(messages.CANCELLED, success=False)
    if choice == "cancel":
        return FlowReply(messages.CANCELLED, action="cancel")

    intent = ResolvedIntent(
        action="switch_credit_mode",
        confidence=1.0,
        entities={**record.payload, "cleanup_installments": choice},
    )
    return FlowReply(await ctx.dispatch(intent), action=intent.action)


# Duplicate confirmation

async def continue_duplicate(ctx: FlowContext, record: PendingRecord) -> FlowReply:
    reply = normalize_reply(ctx.text)
    duplicate_id = record.payload["duplicate_id"]

    def same_duplicate(r: PendingRecord) -> bool:
        return r.payload.get("duplicate_id") == duplicate_id

    if reply in YES_WORDS:
        if _claimed(ctx, record, same_duplicate) is None:
            return FlowReply(messages.duplicate_not_found(duplicate_id), success=False)
        intent = ResolvedIntent(
            action=record.payload["action"],
            confidence=1.0,
            entities=record.payload["entities"],
        )
        return FlowReply(await ctx.dispatch(intent), action=intent.action)

    ctx.store.claim(ctx.user_id, record.kind, same_duplicate)
    if reply in NO_WORDS:
        return FlowReply(messages.DUPLICATE_DISCARDED, action="cancel")

    # Anything other than yes/no ends the confirmation too
    logger.info("Unrecognized duplicate reply from {}, discarding {}", ctx.user_id, duplicate_id)
    return FlowReply(messages.DUPLICATE_NOT_RECOGNIZED, action="cancel", success=False)


async def continue_scoped_duplicate(ctx: FlowContext, duplicate_id: str) -> FlowReply:
    """Answer to a quoted duplicate warning: only the duplicate with that id may be resolved."""
    record = ctx.store.get(ctx.user_id, PendingKind.DUPLICATE_CONFIRMATION)
    if record is None or record.payload.get("duplicate_id") != duplicate_id:
        return FlowReply(messages.duplicate_not_found(duplicate_id), success=False)
    return await continue_duplicate(ctx, record)


STATE_ROUTES: tuple[StateRoute, ...] = (
    StateRoute("ocr", ParsingStrategy.OCR_CONFIRMATION, PendingKind.OCR_CONFIRMATION, continue_ocr),
    StateRoute("credit_mode", ParsingStrategy.CREDIT_MODE_SELECTION, PendingKind.CREDIT_MODE_SELECTION,
               continue_credit_mode),
    StateRoute("installment_card", ParsingStrategy.INSTALLMENT_CARD_SELECTION,
               PendingKind.INSTALLMENT_CARD_SELECTION, continue_installment_card),
    StateRoute("payoff", ParsingStrategy.PAYOFF_CONVERSATION, PendingKind.PAYOFF_FLOW, continue_payoff),
    StateRoute("mode_switch", ParsingStrategy.MODE_SWITCH_WARNING, PendingKind.MODE_SWITCH_WARNING,
               continue_mode_switch),
    StateRoute("duplicate", ParsingStrategy.DUPLICATE_CONFIRMATION, PendingKind.DUPLICATE_CONFIRMATION,
               continue_duplicate),
)
