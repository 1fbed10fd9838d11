"""
Business-rule handlers for resolved intents.

Handlers read and write the ledger and describe what the router should
remember: an undo snapshot for reversible writes, a pending record when the
user has to answer a follow-up question. They never touch engine state.
"""

from collections import defaultdict
from datetime import date, datetime

from loguru import logger

from chatledger.db.repository import LedgerRepository, SessionRepository
from chatledger.engine import messages
from chatledger.engine.messages import entry_line, format_brl
from chatledger.models.schemas import (
    ActionResult,
    Entry,
    PendingKind,
    PendingRequest,
    ResolvedIntent,
    Session,
    UndoKind,
    UndoRequest,
)

DEFAULT_CATEGORY = "outros"


def _amount(entities: dict) -> float | None:
    try:
        amount = float(entities.get("amount"))
    except (TypeError, ValueError):
        return None
    return amount if amount > 0 else None


def build_entry(account_id: str, entry_type: str, entities: dict) -> Entry | None:
    """The entry an add intent would create, or None when it has no usable amount."""
    amount = _amount(entities)
    if amount is None:
        return None
    category = entities.get("category") or DEFAULT_CATEGORY
    return Entry(
        user_id=account_id,
        type=entry_type,
        amount=amount,
        category=category,
        description=entities.get("description") or category,
        payment_method=entities.get("payment_method"),
        date=entities.get("date") or date.today().isoformat(),
    )


class LedgerActions:
    def __init__(self, repo: LedgerRepository, sessions: SessionRepository):
        self.repo = repo
        self.sessions = sessions
        self.handlers = {
            "add_expense": lambda session, entities: self.add_entry(session, entities, "expense"),
            "add_income": lambda session, entities: self.add_entry(session, entities, "income"),
            "edit_transaction": self.edit_transaction,
            "delete_transaction": self.delete_transaction,
            "change_category": self.change_category,
            "set_budget": self.set_budget,
            "delete_budget": self.delete_budget,
            "add_recurring": self.add_recurring,
            "delete_recurring": self.delete_recurring,
            "list_recurring": self.list_recurring,
            "list_budgets": self.list_budgets,
            "list_categories": self.list_categories,
            "list_transactions": self.list_transactions,
            "show_expenses": self.show_expenses,
            "show_report": self.show_report,
            "add_category": self.add_category,
            "remove_category": self.remove_category,
            "settings": self.settings,
            "set_credit_mode": self.set_credit_mode,
            "add_installment": self.add_installment,
            "payoff_installment": self.payoff_installment,
            "switch_credit_mode": self.switch_credit_mode,
        }

    async def execute(self, session: Session, intent: ResolvedIntent) -> ActionResult:
        handler = self.handlers.get(intent.action)
        if handler is None:
            logger.warning("No handler for action {}", intent.action)
            return ActionResult(text=messages.TRY_EXPLICIT_COMMAND)
        return handler(session, intent.entities)

    # Entries

    def add_entry(self, session: Session, entities: dict, entry_type: str) -> ActionResult:
        entry = build_entry(session.account_id, entry_type, entities)
        if entry is None:
            return ActionResult(text="💰 I need an amount greater than zero, e.g. /add 50 comida")

        if self.repo.find_category(session.account_id, entry.category) is None:
            self.repo.add_category(session.account_id, entry.category)
        entry = self.repo.add_entry(entry)

        label = "Income" if entry.type == "income" else "Expense"
        text = f"✅ {label} saved: {entry_line(entry)}\n🆔 ID: {entry.readable_id}"
        undo = UndoRequest(action_kind=UndoKind.ADD_TRANSACTION, prior_state={"id": entry.id})

        if entry.payment_method and entry.type == "expense":
            method = self.repo.ensure_payment_method(session.account_id, entry.payment_method)
            if method["type"] == "credit" and method.get("credit_mode") is None:
                return ActionResult(
                    text=f"{text}\n\n{messages.CREDIT_MODE_PROMPT}",
                    undo=undo,
                    entry=entry,
                    pending=PendingRequest(
                        kind=PendingKind.CREDIT_MODE_SELECTION,
                        payload={"transaction_id": entry.id, "payment_method": method["name"]},
                    ),
                )
        return ActionResult(text=text, undo=undo, entry=entry)

    def _target(self, session: Session, entities: dict) -> Entry | None:
        readable_id = entities.get("transaction_id")
        if readable_id:
            return self.repo.get_by_readable_id(session.account_id, str(readable_id))
        return self.repo.last_entry(session.account_id)

    def edit_transaction(self, session: Session, entities: dict) -> ActionResult:
        entry = self._target(session, entities)
        if entry is None:
            return ActionResult(text="I couldn't find that transaction.")
        prior = self.repo.snapshot("entries", entry.id)
        updated = self.repo.update_entry(
            entry.id,
            amount=_amount(entities),
            description=entities.get("description"),
            date=entities.get("date"),
            payment_method=entities.get("payment_method"),
        )
        return ActionResult(
            text=f"✏️ Updated: {entry_line(updated)}\n🆔 ID: {updated.readable_id}",
            undo=UndoRequest(action_kind=UndoKind.EDIT_TRANSACTION, prior_state=prior),
            entry=updated,
        )

    def delete_transaction(self, session: Session, entities: dict) -> ActionResult:
        entry = self._target(session, entities)
        if entry is None:
            return ActionResult(text="I couldn't find that transaction.")
        prior = self.repo.snapshot("entries", entry.id)
        self.repo.delete_entry(entry.id)
        return ActionResult(
            text=f"🗑️ Deleted: {entry_line(entry)}",
            undo=UndoRequest(action_kind=UndoKind.DELETE_TRANSACTION, prior_state=prior),
        )

    def change_category(self, session: Session, entities: dict) -> ActionResult:
        entry = self._target(session, entities)
        category = entities.get("category")
        if entry is None or not category:
            return ActionResult(text="Tell me which transaction and the new category.")
        prior = self.repo.snapshot("entries", entry.id)
        updated = self.repo.update_entry(entry.id, category=category)
        return ActionResult(
            text=f"🏷️ Category changed to {category}: {entry_line(updated)}",
            undo=UndoRequest(action_kind=UndoKind.CHANGE_CATEGORY, prior_state=prior),
            entry=updated,
        )

    # Budgets

    def set_budget(self, session: Session, entities: dict) -> ActionResult:
        amount = _amount(entities)
        category = entities.get("category")
        if amount is None or not category:
            return ActionResult(text=messages.COMMAND_USAGE["budget"])
        period = entities.get("period") or "monthly"
        budget_id, previous = self.repo.upsert_budget(session.account_id, category, amount, period)
        return ActionResult(
            text=f"🎯 Budget for {category}: {format_brl(amount)} ({period})",
            undo=UndoRequest(action_kind=UndoKind.SET_BUDGET, prior_state={"id": budget_id, "previous": previous}),
        )

    def delete_budget(self, session: Session, entities: dict) -> ActionResult:
        budget = self.repo.get_budget(session.account_id, entities.get("category") or "")
        if budget is None:
            return ActionResult(text="No budget found for that category.")
        prior = self.repo.snapshot("budgets", budget.doc_id)
        self.repo.delete_record("budgets", budget.doc_id)
        return ActionResult(
            text=f"🗑️ Budget for {budget['category']} removed.",
            undo=UndoRequest(action_kind=UndoKind.DELETE_BUDGET, prior_state=prior),
        )

    def list_budgets(self, session: Session, entities: dict) -> ActionResult:
        budgets = self.repo.list_budgets(session.account_id)
        if not budgets:
            return ActionResult(text="No budgets set. Try /budget comida 800")
        lines = ["*Budgets:*"]
        for budget in budgets:
            lines.append(f"- {budget['category']}: {format_brl(budget['amount'])} ({budget['period']})")
        return ActionResult(text="\n".join(lines))

    # Recurring

    def add_recurring(self, session: Session, entities: dict) -> ActionResult:
        amount = _amount(entities)
        description = entities.get("description")
        day = entities.get("day")
        if amount is None or not description or not day:
            return ActionResult(text=messages.COMMAND_USAGE["recurring"])
        recurring_id = self.repo.add_recurring(
            session.account_id, description, amount, int(day), entities.get("category"),
        )
        return ActionResult(
            text=f"🔁 Recurring payment saved: {description} - {format_brl(amount)} every day {day}",
            undo=UndoRequest(action_kind=UndoKind.ADD_RECURRING, prior_state={"id": recurring_id}),
        )

    def delete_recurring(self, session: Session, entities: dict) -> ActionResult:
        doc = self.repo.find_recurring(session.account_id, entities.get("description") or "")
        if doc is None:
            return ActionResult(text="I couldn't find that recurring payment.")
        prior = self.repo.snapshot("recurring", doc.doc_id)
        self.repo.delete_record("recurring", doc.doc_id)
        return ActionResult(
            text=f"🗑️ Recurring payment {doc['description']} removed.",
            undo=UndoRequest(action_kind=UndoKind.DELETE_RECURRING, prior_state=prior),
        )

    def list_recurring(self, session: Session, entities: dict) -> ActionResult:
        items = self.repo.list_recurring(session.account_id)
        if not items:
            return ActionResult(text="No recurring payments.")
        lines = ["*Recurring payments:*"]
        for item in sorted(items, key=lambda r: r["day"]):
            lines.append(f"- Day {item['day']}: {item['description']} - {format_brl(item['amount'])}")
        return ActionResult(text="\n".join(lines))

    # Categories

    def list_categories(self, session: Session, entities: dict) -> ActionResult:
        categories = self.repo.list_categories(session.account_id)
        if not categories:
            return ActionResult(text="No categories yet. They are created as you add expenses.")
        return ActionResult(text="*Categories:*\n" + "\n".join(f"- {c}" for c in sorted(categories)))

    def add_category(self, session: Session, entities: dict) -> ActionResult:
        name = entities.get("category")
        if not name:
            return ActionResult(text=messages.COMMAND_USAGE["categories"])
        if self.repo.find_category(session.account_id, name) is not None:
            return ActionResult(text=f"Category {name} already exists.")
        category_id = self.repo.add_category(session.account_id, name)
        return ActionResult(
            text=f"🏷️ Category {name} added.",
            undo=UndoRequest(action_kind=UndoKind.ADD_CATEGORY, prior_state={"id": category_id}),
        )

    def remove_category(self, session: Session, entities: dict) -> ActionResult:
        doc = self.repo.find_category(session.account_id, entities.get("category") or "")
        if doc is None:
            return ActionResult(text="I couldn't find that category.")
        prior = self.repo.snapshot("categories", doc.doc_id)
        self.repo.delete_record("categories", doc.doc_id)
        return ActionResult(
            text=f"🗑️ Category {doc['name']} removed.",
            undo=UndoRequest(action_kind=UndoKind.REMOVE_CATEGORY, prior_state=prior),
        )

    # Views

    def list_transactions(self, session: Session, entities: dict) -> ActionResult:
        entries = self.repo.list_entries(session.account_id)[:10]
        if not entries:
            return ActionResult(text="No transactions yet.")
        lines = ["*Latest transactions:*"]
        for entry in entries:
            sign = "+" if entry.type == "income" else "-"
            lines.append(f"{sign} {entry_line(entry)} [{entry.readable_id}]")
        return ActionResult(text="\n".join(lines))

    def show_expenses(self, session: Session, entities: dict) -> ActionResult:
        since = datetime.now().replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        entries = self.repo.list_entries(
            session.account_id, entry_type="expense", since=since, category=entities.get("category"),
        )
        if not entries:
            return ActionResult(text="No expenses this month.")
        total = sum(e.amount for e in entries)
        lines = ["*Expenses this month:*"]
        lines.extend(f"- {entry_line(e)}" for e in entries[:15])
        lines.append(f"\n*Total: {format_brl(total)}*")
        return ActionResult(text="\n".join(lines))

    def show_report(self, session: Session, entities: dict) -> ActionResult:
        entries = self.repo.list_entries(session.account_id, category=entities.get("category"))
        by_category: dict[str, float] = defaultdict(float)
        income = 0.0
        for entry in entries:
            if entry.type == "income":
                income += entry.amount
            else:
                by_category[entry.category or DEFAULT_CATEGORY] += entry.amount

        period = entities.get("period") or "this month"
        if not entries:
            return ActionResult(text=f"Nothing to report for {period}.")

        expenses = sum(by_category.values())
        lines = [f"📊 *Report ({period})*"]
        for category, amount in sorted(by_category.items(), key=lambda kv: kv[1], reverse=True):
            lines.append(f"- {category}: {format_brl(amount)}")
        lines.append(f"\nIncome: {format_brl(income)}")
        lines.append(f"Expenses: {format_brl(expenses)}")
        lines.append(f"*Balance: {format_brl(income - expenses)}*")
        return ActionResult(text="\n".join(lines))

    def settings(self, session: Session, entities: dict) -> ActionResult:
        setting = entities.get("setting")
        value = entities.get("value")
        if setting != "ocr" or value not in ("auto", "confirm"):
            current = "auto" if session.ocr_auto_add else "confirm"
            return ActionResult(text=f"⚙️ OCR mode: {current}\n{messages.COMMAND_USAGE['settings']}")
        self.sessions.set_ocr_auto_add(session.user_id, value == "auto")
        return ActionResult(text=f"⚙️ OCR mode set to {value}.")

    # Credit cards and installments

    def set_credit_mode(self, session: Session, entities: dict) -> ActionResult:
        method = self.repo.ensure_payment_method(session.account_id, entities["payment_method"])
        credit = entities.get("mode") == "credit"
        self.repo.set_credit_mode(method.doc_id, credit)
        logger.info("Credit mode for {} card {} set to {}", session.account_id, method["name"], credit)
        if credit:
            return ActionResult(text=f"💳 {method['name']} is now in credit mode. Installments will be tracked.")
        return ActionResult(text=f"💳 {method['name']} is in simple mode. Expenses are recorded as usual.")

    def add_installment(self, session: Session, entities: dict) -> ActionResult:
        amount = _amount(entities)
        installments = int(entities.get("installments") or 0)
        description = entities.get("description") or "installment"
        if amount is None or installments < 1:
            return ActionResult(text="Tell me the total amount and the number of installments, e.g. TV 1200 in 12x.")

        cards = self.repo.credit_cards(session.account_id)
        card = None
        if entities.get("card_id") is not None:
            card = next((c for c in cards if c["id"] == entities["card_id"]), None)
        elif entities.get("payment_method"):
            card = next((c for c in cards if c["name"].lower() == entities["payment_method"].lower()), None)
        elif len(cards) == 1:
            card = cards[0]

        if card is None:
            if not cards:
                return ActionResult(text="You have no cards in credit mode. Pay with a credit card first to set one up.")
            choices = [{"id": c["id"], "name": c["name"]} for c in cards]
            return ActionResult(
                text=messages.installment_card_prompt(choices),
                pending=PendingRequest(
                    kind=PendingKind.INSTALLMENT_CARD_SELECTION,
                    payload={
                        "cards": choices,
                        "installment": {"description": description, "amount": amount, "installments": installments},
                    },
                ),
            )

        self.repo.add_installment_plan(session.account_id, card["id"], description, amount, installments)
        return ActionResult(
            text=(
                f"💳 {description}: {installments}x {format_brl(round(amount / installments, 2))} "
                f"on {card['name']} (total {format_brl(amount)})"
            )
        )

    def payoff_installment(self, session: Session, entities: dict) -> ActionResult:
        plan_id = entities.get("plan_id")
        if plan_id is not None:
            plan = self.repo.pay_off_plan(int(plan_id))
            if plan is None:
                return ActionResult(text="I couldn't find that installment plan.")
            return ActionResult(text=f"✅ {plan['description']} paid off.")

        plans = self.repo.active_plans(session.account_id)
        if not plans:
            return ActionResult(text="You have no active installment plans.")
        choices = [
            {"id": p["id"], "description": p["description"], "remaining_amount": p["remaining_amount"]}
            for p in plans
        ]

        wanted = (entities.get("description") or "").lower()
        matching = [c for c in choices if wanted and wanted in c["description"].lower()]
        if len(matching) == 1:
            return ActionResult(
                text=messages.payoff_confirm_prompt(matching[0]),
                pending=PendingRequest(
                    kind=PendingKind.PAYOFF_FLOW,
                    payload={"step": "confirm", "plans": choices, "plan_id": matching[0]["id"]},
                ),
            )
        return ActionResult(
            text=messages.payoff_select_prompt(choices),
            pending=PendingRequest(kind=PendingKind.PAYOFF_FLOW, payload={"step": "select", "plans": choices}),
        )

    def switch_credit_mode(self, session: Session, entities: dict) -> ActionResult:
        name = entities.get("payment_method")
        if not name:
            return ActionResult(text="Which card do you want to switch?")
        method = self.repo.ensure_payment_method(session.account_id, name)
        to_credit = entities.get("target_mode", "simple") == "credit"
        plans = self.repo.active_plans(session.account_id, method.doc_id)
        cleanup = entities.get("cleanup_installments")

        if not to_credit and plans and cleanup is None:
            return ActionResult(
                text=messages.MODE_SWITCH_PROMPT,
                pending=PendingRequest(
                    kind=PendingKind.MODE_SWITCH_WARNING,
                    payload={"payment_method": method["name"], "target_mode": "simple"},
                ),
            )

        if cleanup == "pay_off":
            for plan in plans:
                self.repo.pay_off_plan(plan["id"])
        self.repo.set_credit_mode(method.doc_id, to_credit)
        mode = "credit" if to_credit else "simple"
        suffix = f" {len(plans)} plan(s) paid off." if cleanup == "pay_off" and plans else ""
        return ActionResult(text=f"💳 {method['name']} switched to {mode} mode.{suffix}")
