"""
Layer 1: explicit command grammar.

Commands start with ``/`` and have positional arguments:

    /add <amount> <category> [D/M[/YYYY]] [description...] [payment method]
    /income <amount> <category> [D/M[/YYYY]] [description...] [payment method]
    /budget <category> <amount> [period]
    /recurring <name> <amount> dia|day <1-31>
    /report [month [year]] [category]
    /list [categories|recurring|budgets|transactions]
    /categories [add|remove <name>]
    /settings [ocr [auto|confirm]]
    /help [command]
    /undo
    /login <account>

Parsing never raises: a recognized command with bad arguments (or an
unrecognized command) yields ``unknown`` at low confidence.
"""

import re
from datetime import date

from chatledger.models.schemas import ResolvedIntent

COMMAND_PREFIX = "/"
COMMAND_CONFIDENCE = 1.0
UNPARSED_CONFIDENCE = 0.3

COMMANDS = (
    "add", "income", "budget", "recurring", "report", "list",
    "help", "categories", "settings", "undo", "login",
)

PAYMENT_METHODS = (
    "dinheiro", "cartão", "cartao", "pix", "débito", "debito", "crédito", "credito",
    "nubank", "inter", "itau", "bradesco", "santander", "caixa", "bb",
    "cash", "card", "credit", "debit",
)

MONTHS = (
    "janeiro", "fevereiro", "março", "abril", "maio", "junho",
    "julho", "agosto", "setembro", "outubro", "novembro", "dezembro",
    "jan", "fev", "mar", "abr", "mai", "jun", "jul", "ago", "set", "out", "nov", "dez",
    "january", "february", "march", "april", "may", "june", "july",
    "august", "september", "october", "november", "december",
)

LIST_ACTIONS = {
    "categories": "list_categories",
    "recurring": "list_recurring",
    "budgets": "list_budgets",
    "transactions": "list_transactions",
}

DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})(?:/(\d{4}))?$")


class _Unparsed(ValueError):
    pass


def is_command(text: str) -> bool:
    return text.strip().startswith(COMMAND_PREFIX)


def parse_amount(token: str) -> float | None:
    cleaned = re.sub(r"[R$\s]", "", token).replace(",", ".")
    try:
        amount = float(cleaned)
    except ValueError:
        return None
    if amount <= 0 or amount != amount or amount == float("inf"):
        return None
    return amount


def parse_date(token: str, today: date) -> str | None:
    match = DATE_RE.match(token)
    if not match:
        return None
    day, month = int(match.group(1)), int(match.group(2))
    year = int(match.group(3)) if match.group(3) else today.year
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        raise _Unparsed(f"invalid date {token}")


def is_payment_method(token: str) -> bool:
    lowered = token.lower()
    # Short bank codes like "bb" must match whole tokens
    return any(
        lowered == method or (len(method) > 3 and method in lowered)
        for method in PAYMENT_METHODS
    )


def is_month(token: str) -> bool:
    lowered = token.lower()
    return lowered in MONTHS or (lowered.isdigit() and 1 <= int(lowered) <= 12)


def is_year(token: str) -> bool:
    return token.isdigit() and 2000 <= int(token) <= 2100


def _intent(action: str, **entities) -> ResolvedIntent:
    return ResolvedIntent(
        action=action,
        confidence=COMMAND_CONFIDENCE,
        entities={k: v for k, v in entities.items() if v is not None},
    )


def _parse_entry(action: str, args: list[str], today: date) -> ResolvedIntent:
    if len(args) < 2:
        raise _Unparsed("amount and category required")
    amount = parse_amount(args[0])
    if amount is None:
        raise _Unparsed(f"invalid amount {args[0]}")
    category = args[1]

    entry_date = None
    payment_method = None
    description_parts = []
    for arg in args[2:]:
        parsed_date = parse_date(arg, today)
        if parsed_date:
            entry_date = parsed_date
        elif is_payment_method(arg):
            payment_method = arg
        else:
            description_parts.append(arg)

    return _intent(
        action,
        amount=amount,
        category=category,
        description=" ".join(description_parts) or category,
        date=entry_date,
        payment_method=payment_method,
        type="income" if action == "add_income" else "expense",
    )


def _parse_budget(args: list[str]) -> ResolvedIntent:
    if len(args) < 2:
        raise _Unparsed("category and amount required")
    amount = parse_amount(args[1])
    if amount is None:
        raise _Unparsed(f"invalid amount {args[1]}")
    period = " ".join(args[2:]) or None
    return _intent("set_budget", category=args[0], amount=amount, period=period)


def _parse_recurring(args: list[str]) -> ResolvedIntent:
    if len(args) < 4:
        raise _Unparsed("name, amount and day required")
    amount = parse_amount(args[1])
    if amount is None:
        raise _Unparsed(f"invalid amount {args[1]}")
    day_index = next((i for i, a in enumerate(args) if a.lower() in ("dia", "day")), None)
    if day_index is None or day_index + 1 >= len(args):
        raise _Unparsed("missing day")
    day_token = args[day_index + 1]
    if not day_token.isdigit() or not 1 <= int(day_token) <= 31:
        raise _Unparsed(f"invalid day {day_token}")
    return _intent("add_recurring", description=args[0], amount=amount, day=int(day_token))


def _parse_report(args: list[str]) -> ResolvedIntent:
    period = None
    category = None
    if args:
        if is_month(args[0]):
            period = args[0]
            rest = args[1:]
            if rest and is_year(rest[0]):
                period = f"{period} {rest[0]}"
                rest = rest[1:]
            category = " ".join(rest) or None
        else:
            category = " ".join(args)
    return _intent("show_report", period=period or "this month", category=category)


def _parse_list(args: list[str]) -> ResolvedIntent:
    if not args:
        return _intent("show_expenses")
    kind = args[0].lower()
    if kind not in LIST_ACTIONS:
        raise _Unparsed(f"unknown list type {kind}")
    return _intent(LIST_ACTIONS[kind])


def _parse_categories(args: list[str]) -> ResolvedIntent:
    if not args:
        return _intent("list_categories")
    verb = args[0].lower()
    name = " ".join(args[1:]).strip('"') or None
    if name and verb == "add":
        return _intent("add_category", category=name)
    if name and verb == "remove":
        return _intent("remove_category", category=name)
    raise _Unparsed("usage: categories add|remove <name>")


def _parse_settings(args: list[str]) -> ResolvedIntent:
    lowered = [a.lower() for a in args]
    setting = lowered[0] if lowered else None
    value = lowered[1] if len(lowered) > 1 else None
    return _intent("settings", setting=setting, value=value)


def parse_command(text: str, today: date | None = None) -> ResolvedIntent | None:
    """Parse an explicit command. Returns None when ``text`` is not a command."""
    if not is_command(text):
        return None

    today = today or date.today()
    parts = text.strip().split()
    command = parts[0][len(COMMAND_PREFIX):].lower()
    args = parts[1:]

    try:
        if command == "add":
            return _parse_entry("add_expense", args, today)
        if command == "income":
            return _parse_entry("add_income", args, today)
        if command == "budget":
            return _parse_budget(args)
        if command == "recurring":
            return _parse_recurring(args)
        if command == "report":
            return _parse_report(args)
        if command == "list":
            return _parse_list(args)
        if command == "categories":
            return _parse_categories(args)
        if command == "settings":
            return _parse_settings(args)
        if command == "help":
            return _intent("help", command=args[0].lower().lstrip("/") if args else None)
        if command == "undo":
            return _intent("undo_last")
        if command == "login":
            if not args:
                raise _Unparsed("account required")
            return _intent("login", account_id=args[0])
    except _Unparsed as e:
        return ResolvedIntent(
            action="unknown",
            confidence=UNPARSED_CONFIDENCE,
            entities={"command": command, "reason": str(e)},
        )

    return ResolvedIntent(action="unknown", confidence=UNPARSED_CONFIDENCE, entities={"command": command})
