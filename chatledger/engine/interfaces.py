"""Collaborators the router depends on. Defaults live in db.repository, llm.parser and handlers.ledger."""

from datetime import datetime
from typing import Any, Protocol

from chatledger.models.schemas import (
    ActionResult,
    AuthorizationResult,
    Entry,
    ResolvedIntent,
    Session,
    UserContext,
)


class SessionProvider(Protocol):
    def get_or_create_session(self, user_id: str, group_owner_id: str | None = None) -> Session | None: ...

    def mark_greeted(self, user_id: str) -> None: ...

    def set_ocr_auto_add(self, user_id: str, enabled: bool) -> None: ...

    def login(self, user_id: str, account_id: str) -> Session: ...


class Authorizer(Protocol):
    def check_authorization(self, identifiers: dict[str, Any]) -> AuthorizationResult: ...


class EntryStore(Protocol):
    def recent_entries(self, user_id: str, entry_type: str, since: datetime, limit: int) -> list[Entry]: ...

    def recent_categories(self, user_id: str, limit: int = 10) -> list[str]: ...

    def recent_payment_methods(self, user_id: str, limit: int = 5) -> list[str]: ...

    def delete_record(self, table: str, record_id: int) -> None: ...

    def restore_record(self, table: str, snapshot: dict[str, Any]) -> None: ...

    def overwrite_record(self, table: str, record_id: int, snapshot: dict[str, Any]) -> None: ...


class ModelResultLike(Protocol):
    intent: ResolvedIntent | None
    error: str | None


class IntentModel(Protocol):
    async def parse(self, text: str, context: UserContext, quoted_text: str | None = None) -> ModelResultLike: ...


class ActionHandler(Protocol):
    async def execute(self, session: Session, intent: ResolvedIntent) -> ActionResult: ...
