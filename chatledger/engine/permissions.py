"""Intent action -> required permission mapping."""

ADMIN = "admin"

ACTION_PERMISSION_MAP: dict[str, str | None] = {
    # View
    "show_expenses": "view",
    "list_transactions": "view",
    "list_budgets": "view",
    # Add
    "add_expense": "add",
    "add_income": "add",
    "add_recurring": "add",
    "add_category": "add",
    "add_installment": "add",
    # Edit
    "edit_transaction": "edit",
    "change_category": "edit",
    "set_credit_mode": "edit",
    "switch_credit_mode": "edit",
    "payoff_installment": "edit",
    # Delete
    "delete_transaction": "delete",
    "delete_recurring": "delete",
    "remove_category": "delete",
    # Budgets
    "set_budget": "manage_budgets",
    "delete_budget": "manage_budgets",
    # Reports
    "show_report": "view_reports",
    # No specific permission
    "undo_last": None,
    "help": None,
    "login": None,
    "settings": None,
    "list_categories": None,
    "list_recurring": None,
}

ACTION_DESCRIPTIONS: dict[str, str] = {
    "show_expenses": "view expenses",
    "list_transactions": "list transactions",
    "list_budgets": "list budgets",
    "add_expense": "add expenses",
    "add_income": "add income",
    "add_recurring": "add recurring payments",
    "add_category": "add categories",
    "add_installment": "add installments",
    "edit_transaction": "edit transactions",
    "change_category": "change categories",
    "delete_transaction": "delete transactions",
    "delete_recurring": "delete recurring payments",
    "remove_category": "remove categories",
    "set_budget": "manage budgets",
    "delete_budget": "manage budgets",
    "show_report": "view reports",
}


def required_permission(action: str) -> str | None:
    return ACTION_PERMISSION_MAP.get(action)


def has_permission(permissions: list[str], required: str) -> bool:
    return ADMIN in permissions or required in permissions


def describe_action(action: str) -> str:
    return ACTION_DESCRIPTIONS.get(action, "perform this action")
