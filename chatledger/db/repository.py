import random
import string
from datetime import datetime
from typing import Any

from loguru import logger
from tinydb import Query, TinyDB
from tinydb.table import Document

from chatledger.engine.errors import PersistenceError
from chatledger.models.schemas import AuthorizationResult, Entry, Session

ALL_PERMISSIONS = ["view", "add", "edit", "delete", "manage_budgets", "view_reports"]
DEFAULT_MEMBER_PERMISSIONS = ["view", "add"]

READABLE_ID_ALPHABET = string.ascii_uppercase + string.digits

CREDIT_KEYWORDS = ("crédito", "credito", "credit")


def short_id() -> str:
    return "".join(random.choices(READABLE_ID_ALPHABET, k=6))


def _snapshot(doc: Document) -> dict[str, Any]:
    return {**doc, "id": doc.doc_id}


class LedgerRepository:
    """Financial records: entries, budgets, recurring payments, categories, cards and installment plans."""

    def __init__(self, db: TinyDB):
        self.db = db
        self.entries = db.table("entries")
        self.budgets = db.table("budgets")
        self.recurring = db.table("recurring")
        self.categories = db.table("categories")
        self.payment_methods = db.table("payment_methods")
        self.installment_plans = db.table("installment_plans")

    # Entries

    def add_entry(self, entry: Entry) -> Entry:
        entry.readable_id = entry.readable_id or self._unused_readable_id(entry.user_id)
        data = entry.model_dump(mode="json")
        data.pop("id", None)
        entry.id = self.entries.insert(data)
        logger.info("Saved {} #{} ({}) for {}", entry.type, entry.id, entry.readable_id, entry.user_id)
        return entry

    def _unused_readable_id(self, user_id: str) -> str:
        E = Query()
        while True:
            candidate = short_id()
            if not self.entries.contains((E.user_id == user_id) & (E.readable_id == candidate)):
                return candidate

    def get_entry(self, id: int) -> Entry | None:
        doc = self.entries.get(doc_id=id)
        if doc is None:
            return None
        return Entry(**{**doc, "id": doc.doc_id})

    def get_by_readable_id(self, user_id: str, readable_id: str) -> Entry | None:
        E = Query()
        doc = self.entries.get((E.user_id == user_id) & (E.readable_id == readable_id.upper()))
        if doc is None:
            return None
        return Entry(**{**doc, "id": doc.doc_id})

    def last_entry(self, user_id: str) -> Entry | None:
        entries = self.list_entries(user_id)
        return entries[0] if entries else None

    def update_entry(self, id: int, **fields) -> Entry | None:
        doc = self.entries.get(doc_id=id)
        if doc is None:
            return None
        # Filter out None values so we only update provided fields
        updates = {k: v for k, v in fields.items() if v is not None}
        if updates:
            self.entries.update(updates, doc_ids=[id])
        return self.get_entry(id)

    def delete_entry(self, id: int) -> bool:
        if self.entries.get(doc_id=id) is None:
            return False
        self.entries.remove(doc_ids=[id])
        return True

    def list_entries(
        self,
        user_id: str,
        entry_type: str | None = None,
        since: datetime | None = None,
        category: str | None = None,
    ) -> list[Entry]:
        """Entries newest first."""
        E = Query()
        docs = self.entries.search(E.user_id == user_id)
        result = []
        for doc in docs:
            entry = Entry(**{**doc, "id": doc.doc_id})
            if entry_type and entry.type != entry_type:
                continue
            if since and entry.created_at < since:
                continue
            if category and (entry.category or "").lower() != category.lower():
                continue
            result.append(entry)
        result.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return result

    def recent_entries(self, user_id: str, entry_type: str, since: datetime, limit: int) -> list[Entry]:
        return self.list_entries(user_id, entry_type=entry_type, since=since)[:limit]

    def recent_categories(self, user_id: str, limit: int = 10) -> list[str]:
        seen: list[str] = []
        for entry in self.list_entries(user_id):
            if entry.category and entry.category not in seen:
                seen.append(entry.category)
        for category in self.list_categories(user_id):
            if category not in seen:
                seen.append(category)
        return seen[:limit]

    def recent_payment_methods(self, user_id: str, limit: int = 5) -> list[str]:
        seen: list[str] = []
        for entry in self.list_entries(user_id):
            if entry.payment_method and entry.payment_method not in seen:
                seen.append(entry.payment_method)
        return seen[:limit]

    # Budgets

    def get_budget(self, user_id: str, category: str) -> Document | None:
        B = Query()
        return self.budgets.get(
            (B.user_id == user_id) & (B.category.test(lambda val: val.lower() == category.lower()))
        )

    def upsert_budget(self, user_id: str, category: str, amount: float, period: str) -> tuple[int, dict | None]:
        """Returns the budget id and the snapshot it replaced, if any."""
        existing = self.get_budget(user_id, category)
        if existing is not None:
            previous = _snapshot(existing)
            self.budgets.update({"amount": amount, "period": period}, doc_ids=[existing.doc_id])
            return existing.doc_id, previous
        doc_id = self.budgets.insert({
            "user_id": user_id,
            "category": category,
            "amount": amount,
            "period": period,
            "created_at": datetime.now().isoformat(),
        })
        return doc_id, None

    def list_budgets(self, user_id: str) -> list[dict]:
        return [_snapshot(doc) for doc in self.budgets.search(Query().user_id == user_id)]

    # Recurring

    def add_recurring(self, user_id: str, description: str, amount: float, day: int,
                      category: str | None = None) -> int:
        return self.recurring.insert({
            "user_id": user_id,
            "description": description,
            "amount": amount,
            "day": day,
            "category": category,
            "created_at": datetime.now().isoformat(),
        })

    def list_recurring(self, user_id: str) -> list[dict]:
        return [_snapshot(doc) for doc in self.recurring.search(Query().user_id == user_id)]

    def find_recurring(self, user_id: str, description: str) -> Document | None:
        R = Query()
        return self.recurring.get(
            (R.user_id == user_id) & (R.description.test(lambda val: val.lower() == description.lower()))
        )

    # Categories

    def list_categories(self, user_id: str) -> list[str]:
        return [doc["name"] for doc in self.categories.search(Query().user_id == user_id)]

    def find_category(self, user_id: str, name: str) -> Document | None:
        C = Query()
        return self.categories.get(
            (C.user_id == user_id) & (C.name.test(lambda val: val.lower() == name.lower()))
        )

    def add_category(self, user_id: str, name: str) -> int:
        return self.categories.insert({"user_id": user_id, "name": name})

    # Payment methods and installments

    def get_payment_method(self, user_id: str, name: str) -> Document | None:
        P = Query()
        return self.payment_methods.get(
            (P.user_id == user_id) & (P.name.test(lambda val: val.lower() == name.lower()))
        )

    def ensure_payment_method(self, user_id: str, name: str) -> Document:
        doc = self.get_payment_method(user_id, name)
        if doc is not None:
            return doc
        is_credit = any(k in name.lower() for k in CREDIT_KEYWORDS)
        doc_id = self.payment_methods.insert({
            "user_id": user_id,
            "name": name,
            "type": "credit" if is_credit else "other",
            "credit_mode": None,
        })
        return self.payment_methods.get(doc_id=doc_id)

    def set_credit_mode(self, id: int, credit_mode: bool) -> None:
        self.payment_methods.update({"credit_mode": credit_mode}, doc_ids=[id])

    def credit_cards(self, user_id: str) -> list[dict]:
        P = Query()
        docs = self.payment_methods.search((P.user_id == user_id) & (P.credit_mode == True))  # noqa: E712
        return [_snapshot(doc) for doc in docs]

    def add_installment_plan(self, user_id: str, payment_method_id: int, description: str,
                             total_amount: float, installments: int) -> int:
        return self.installment_plans.insert({
            "user_id": user_id,
            "payment_method_id": payment_method_id,
            "description": description,
            "total_amount": total_amount,
            "installments": installments,
            "installment_amount": round(total_amount / installments, 2),
            "paid_installments": 0,
            "remaining_amount": total_amount,
            "status": "active",
            "created_at": datetime.now().isoformat(),
        })

    def active_plans(self, user_id: str, payment_method_id: int | None = None) -> list[dict]:
        P = Query()
        cond = (P.user_id == user_id) & (P.status == "active")
        if payment_method_id is not None:
            cond &= P.payment_method_id == payment_method_id
        return [_snapshot(doc) for doc in self.installment_plans.search(cond)]

    def pay_off_plan(self, id: int) -> dict | None:
        doc = self.installment_plans.get(doc_id=id)
        if doc is None:
            return None
        self.installment_plans.update(
            {"status": "paid_off", "remaining_amount": 0, "paid_installments": doc["installments"]},
            doc_ids=[id],
        )
        return _snapshot(self.installment_plans.get(doc_id=id))

    # Snapshots and compensating writes

    def snapshot(self, table: str, id: int) -> dict[str, Any]:
        doc = self.db.table(table).get(doc_id=id)
        if doc is None:
            raise PersistenceError(f"{table} #{id} not found")
        return _snapshot(doc)

    def delete_record(self, table: str, record_id: int) -> None:
        t = self.db.table(table)
        if t.get(doc_id=record_id) is None:
            raise PersistenceError(f"{table} #{record_id} not found")
        t.remove(doc_ids=[record_id])
        logger.debug("Removed {} #{}", table, record_id)

    def restore_record(self, table: str, snapshot: dict[str, Any]) -> None:
        data = dict(snapshot)
        record_id = data.pop("id")
        t = self.db.table(table)
        if t.get(doc_id=record_id) is not None:
            raise PersistenceError(f"{table} #{record_id} already exists")
        t.insert(Document(data, doc_id=record_id))
        logger.debug("Restored {} #{}", table, record_id)

    def overwrite_record(self, table: str, record_id: int, snapshot: dict[str, Any]) -> None:
        data = {k: v for k, v in snapshot.items() if k != "id"}
        t = self.db.table(table)
        if t.get(doc_id=record_id) is None:
            raise PersistenceError(f"{table} #{record_id} not found")
        t.remove(doc_ids=[record_id])
        t.insert(Document(data, doc_id=record_id))
        logger.debug("Overwrote {} #{}", table, record_id)


class SessionRepository:
    """Chat users, the account they are linked to and what they may do."""

    def __init__(self, db: TinyDB):
        self.table = db.table("users")

    def _get(self, user_id: str) -> Document | None:
        return self.table.get(Query().user_id == user_id)

    def get_or_create_session(self, user_id: str, group_owner_id: str | None = None) -> Session | None:
        doc = self._get(user_id)
        if doc is not None and doc.get("account_id"):
            return Session(
                user_id=user_id,
                account_id=doc["account_id"],
                greeted=doc.get("greeted", False),
                ocr_auto_add=doc.get("ocr_auto_add", False),
            )

        if group_owner_id:
            owner = self._get(group_owner_id)
            if owner is not None and owner.get("account_id"):
                if doc is None:
                    self.table.insert({"user_id": user_id, "account_id": None, "greeted": False})
                logger.info("Group session for {} under {}'s account", user_id, group_owner_id)
                return Session(
                    user_id=user_id,
                    account_id=owner["account_id"],
                    greeted=doc.get("greeted", False) if doc else False,
                    ocr_auto_add=owner.get("ocr_auto_add", False),
                )

        logger.warning("No session for {}", user_id)
        return None

    def login(self, user_id: str, account_id: str) -> Session:
        U = Query()
        has_owner = self.table.contains((U.account_id == account_id) & (U.role == "owner"))
        role = "member" if has_owner else "owner"
        fields = {
            "account_id": account_id,
            "role": role,
            "permissions": ALL_PERMISSIONS if role == "owner" else DEFAULT_MEMBER_PERMISSIONS,
        }
        doc = self._get(user_id)
        if doc is None:
            self.table.insert({"user_id": user_id, "greeted": False, "ocr_auto_add": False, **fields})
        else:
            self.table.update(fields, doc_ids=[doc.doc_id])
        logger.info("{} linked to account {} as {}", user_id, account_id, role)
        return self.get_or_create_session(user_id)

    def mark_greeted(self, user_id: str) -> None:
        self.table.update({"greeted": True}, Query().user_id == user_id)

    def set_ocr_auto_add(self, user_id: str, enabled: bool) -> None:
        self.table.update({"ocr_auto_add": enabled}, Query().user_id == user_id)

    def set_permissions(self, user_id: str, permissions: list[str]) -> None:
        self.table.update({"permissions": permissions}, Query().user_id == user_id)

    def check_authorization(self, identifiers: dict[str, Any]) -> AuthorizationResult:
        doc = self._get(identifiers["user_id"])
        if doc is not None and doc.get("account_id"):
            if doc.get("role") == "owner":
                return AuthorizationResult(authorized=True, permissions=["admin", *ALL_PERMISSIONS])
            return AuthorizationResult(authorized=True, permissions=doc.get("permissions", []))

        group_owner_id = identifiers.get("group_owner_id")
        if group_owner_id:
            owner = self._get(group_owner_id)
            if owner is not None and owner.get("account_id"):
                return AuthorizationResult(
                    authorized=True,
                    permissions=owner.get("group_permissions", DEFAULT_MEMBER_PERMISSIONS),
                )

        return AuthorizationResult(authorized=False)
