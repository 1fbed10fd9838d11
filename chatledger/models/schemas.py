from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class PendingKind(str, Enum):
    OCR_CONFIRMATION = "ocr_confirmation"
    DUPLICATE_CONFIRMATION = "duplicate_confirmation"
    CREDIT_MODE_SELECTION = "credit_mode_selection"
    INSTALLMENT_CARD_SELECTION = "installment_card_selection"
    PAYOFF_FLOW = "payoff_flow"
    MODE_SWITCH_WARNING = "mode_switch_warning"


class UndoKind(str, Enum):
    ADD_TRANSACTION = "add_transaction"
    EDIT_TRANSACTION = "edit_transaction"
    DELETE_TRANSACTION = "delete_transaction"
    CHANGE_CATEGORY = "change_category"
    ADD_RECURRING = "add_recurring"
    DELETE_RECURRING = "delete_recurring"
    ADD_CATEGORY = "add_category"
    REMOVE_CATEGORY = "remove_category"
    SET_BUDGET = "set_budget"
    DELETE_BUDGET = "delete_budget"


class ParsingStrategy(str, Enum):
    OCR_CONFIRMATION = "ocr_confirmation"
    CREDIT_MODE_SELECTION = "credit_mode_selection"
    INSTALLMENT_CARD_SELECTION = "installment_card_selection"
    PAYOFF_CONVERSATION = "payoff_conversation"
    MODE_SWITCH_WARNING = "mode_switch_warning_response"
    DUPLICATE_CONFIRMATION = "duplicate_confirmation"
    EXPLICIT_COMMAND = "explicit_command"
    SEMANTIC_CACHE = "semantic_cache"
    AI_FUNCTION_CALLING = "ai_function_calling"
    OCR_INTAKE = "ocr_intake"
    UNKNOWN = "unknown"


class Entry(BaseModel):
    id: int | None = None
    user_id: str
    type: Literal["expense", "income"] = "expense"
    amount: float
    category: str | None = None
    description: str | None = None
    payment_method: str | None = None
    date: str | None = None
    readable_id: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)


class ResolvedIntent(BaseModel):
    action: str
    confidence: float = Field(ge=0.0, le=1.0)
    entities: dict[str, Any] = {}


class InboundMessage(BaseModel):
    user_id: str
    text: str
    quoted_text: str | None = None
    is_group_context: bool = False
    group_owner_id: str | None = None
    push_name: str | None = None


class Session(BaseModel):
    user_id: str
    account_id: str
    greeted: bool = False
    ocr_auto_add: bool = False


class AuthorizationResult(BaseModel):
    authorized: bool
    permissions: list[str] = []


class UserContext(BaseModel):
    user_id: str
    recent_categories: list[str] = []
    recent_payment_methods: list[str] = []


class OcrCandidate(BaseModel):
    amount: float
    type: Literal["expense", "income"] = "expense"
    category: str | None = None
    description: str | None = None
    date: str | None = None
    payment_method: str | None = None


class UndoRequest(BaseModel):
    action_kind: UndoKind
    prior_state: dict[str, Any]


class PendingRequest(BaseModel):
    kind: PendingKind
    payload: dict[str, Any]


class ActionResult(BaseModel):
    text: str | list[str]
    undo: UndoRequest | None = None
    pending: PendingRequest | None = None
    entry: Entry | None = None


class ParsingMetric(BaseModel):
    user_id: str
    message_text: str
    strategy_used: ParsingStrategy = ParsingStrategy.UNKNOWN
    intent_action: str | None = None
    confidence: float | None = None
    success: bool = False
    error_message: str | None = None
    latency_ms: int = 0
    cache_hit: bool | None = None
    cache_similarity: float | None = None
    permission_required: str | None = None
    permission_granted: bool | None = None
    created_at: datetime = Field(default_factory=datetime.now)


class MessageRequest(BaseModel):
    user_id: str
    text: str
    quoted_text: str | None = None
    is_group_context: bool = False
    group_owner_id: str | None = None


class MessageResponse(BaseModel):
    messages: list[str]


class OcrRequest(BaseModel):
    candidates: list[OcrCandidate]
