"""User-facing reply text. Nothing else in the engine builds strings for the user."""

from chatledger.models.schemas import Entry, OcrCandidate


def format_brl(amount: float) -> str:
    """Format amount in BRL style: R$ 1.234,50"""
    text = f"{amount:,.2f}"
    return "R$ " + text.replace(",", "_").replace(".", ",").replace("_", ".")


def entry_line(entry: Entry) -> str:
    label = entry.description or entry.category or entry.type
    line = f"{format_brl(entry.amount)} - {label}"
    if entry.category and entry.category != label:
        line += f" ({entry.category})"
    if entry.date:
        line += f" on {entry.date}"
    if entry.payment_method:
        line += f" via {entry.payment_method}"
    return line


# Greeting / session

GREETING = "👋 Hi! I'm your finance assistant. Send /help any time to see what I can do."

LOGIN_PROMPT = (
    "🔒 You need to link your account first.\n"
    "Send /login <account> to get started."
)

LOGIN_OK = "✅ Linked to account {account_id}."


def greeting(name: str | None) -> str:
    if name:
        return GREETING.replace("Hi!", f"Hi {name}!")
    return GREETING


# Failures

GENERIC_ERROR = "❌ Something went wrong while processing your message. Please try again."

TRY_EXPLICIT_COMMAND = (
    "🤔 I didn't understand that. Try an explicit command, for example:\n"
    "/add 50 comida\n"
    "Send /help to see all commands."
)

QUOTA_EXCEEDED = (
    "⏳ You've reached today's limit of free-text requests.\n"
    "Explicit commands still work, for example: /add 50 comida"
)


def permission_denied(capability: str) -> str:
    return f"🚫 You don't have permission to {capability}. Ask the account owner for access."


# Duplicates

def duplicate_blocked(match: Entry, confidence: float) -> str:
    return (
        "🚫 This looks like a duplicate and was not saved "
        f"({confidence:.0%} match).\n"
        f"Existing: {entry_line(match)}"
        + (f"\n🆔 ID: {match.readable_id}" if match.readable_id else "")
    )


def duplicate_warning(candidate: Entry, match: Entry, confidence: float, duplicate_id: str) -> str:
    return (
        f"⚠️ Possible duplicate ({confidence:.0%} match).\n"
        f"New: {entry_line(candidate)}\n"
        f"Existing: {entry_line(match)}\n\n"
        "Reply to this message with *yes* to save anyway or *no* to discard.\n"
        f"🆔 Duplicate ID: {duplicate_id}"
    )


DUPLICATE_DISCARDED = "🗑️ Discarded. Nothing was saved."

DUPLICATE_NOT_RECOGNIZED = (
    "❓ I didn't recognize that answer, so the possible duplicate was discarded.\n"
    "Send the transaction again if you still want to save it."
)


def duplicate_not_found(duplicate_id: str) -> str:
    return f"❓ Duplicate {duplicate_id} not found or expired."


# OCR

def ocr_prompt(candidates: list[OcrCandidate]) -> str:
    lines = [f"🧾 I found {len(candidates)} transaction(s):\n"]
    for i, candidate in enumerate(candidates, start=1):
        lines.append(f"{i}. {ocr_candidate_line(candidate)}")
    lines.append("")
    lines.append("Reply *yes* to save all, *no* to cancel, or *edit N* to change one.")
    return "\n".join(lines)


def ocr_candidate_line(candidate: OcrCandidate) -> str:
    line = f"{format_brl(candidate.amount)} - {candidate.description or candidate.category or candidate.type}"
    if candidate.category:
        line += f" ({candidate.category})"
    if candidate.date:
        line += f" on {candidate.date}"
    return line


def ocr_editing(index: int, candidate: OcrCandidate) -> str:
    return (
        f"✏️ Editing {index + 1}: {ocr_candidate_line(candidate)}\n"
        "Send changes as *field: value*, e.g. category: food, amount: 42,50, "
        "description: lunch, date: 12/03, payment: pix.\n"
        "Reply *yes* when done."
    )


OCR_EDIT_HELP = "To change a transaction, first send *edit N* (N is its number in the list)."

OCR_REPROMPT = "Reply *yes* to save all, *no* to cancel, or *edit N* to change one."

OCR_CANCELLED = "❌ Cancelled. None of the transactions were saved."


def ocr_invalid_number(total: int) -> str:
    return f"Invalid number. Choose between 1 and {total}."


def ocr_invalid_field(field: str) -> str:
    return f"I can't change '{field}'. Use category, amount, description, date or payment."


def ocr_summary(saved: int, total: int) -> str:
    return f"✅ Saved {saved} of {total} transaction(s)."


# Undo

def undo_done(kind: str) -> str:
    return f"↩️ Undone: {kind.replace('_', ' ')}."


UNDO_EMPTY = "Nothing to undo."

UNDO_FAILED = "❌ I couldn't undo the last action."


# Sub-flows

CREDIT_MODE_PROMPT = (
    "💳 How do you want to track this credit card?\n"
    "1. Credit mode (installments and statements)\n"
    "2. Simple mode (just record the expense)"
)

CREDIT_MODE_INVALID = "Please reply 1 (credit) or 2 (simple).\n\n" + CREDIT_MODE_PROMPT


def installment_card_prompt(cards: list[dict]) -> str:
    lines = ["💳 Which card is this installment on?"]
    for i, card in enumerate(cards, start=1):
        lines.append(f"{i}. {card['name']}")
    return "\n".join(lines)


def installment_card_invalid(cards: list[dict]) -> str:
    return "I couldn't find that card.\n\n" + installment_card_prompt(cards)


def payoff_select_prompt(plans: list[dict]) -> str:
    lines = ["Which installment plan do you want to pay off?"]
    for i, plan in enumerate(plans, start=1):
        lines.append(f"{i}. {plan['description']} - {format_brl(plan['remaining_amount'])} remaining")
    lines.append("\nReply with a number or *cancel*.")
    return "\n".join(lines)


def payoff_ambiguous(plans: list[dict]) -> str:
    return "That matches more than one plan, please pick a number.\n\n" + payoff_select_prompt(plans)


def payoff_confirm_prompt(plan: dict) -> str:
    return (
        f"Pay off *{plan['description']}* ({format_brl(plan['remaining_amount'])} remaining)?\n"
        "Reply *yes* or *no*."
    )


PAYOFF_CANCELLED = "Payoff cancelled."

MODE_SWITCH_PROMPT = (
    "⚠️ You still have active installment plans.\n"
    "1. Keep them\n"
    "2. Pay them off\n"
    "3. Cancel"
)

MODE_SWITCH_INVALID = "Please reply 1, 2 or 3.\n\n" + MODE_SWITCH_PROMPT

CANCELLED = "Cancelled."


# Command usage

HELP_TEXT = (
    "*Commands*\n"
    "/add <amount> <category> [D/M] [description] [payment] - record an expense\n"
    "/income <amount> <category> [D/M] [description] - record income\n"
    "/budget <category> <amount> [period] - set a budget\n"
    "/recurring <name> <amount> day <1-31> - add a recurring payment\n"
    "/report [month [year]] [category] - spending report\n"
    "/list [categories|recurring|budgets|transactions]\n"
    "/categories [add|remove <name>]\n"
    "/settings [ocr auto|confirm]\n"
    "/undo - undo your last change\n"
    "/login <account> - link your account\n\n"
    "You can also just write things like \"spent 50 on food\"."
)

COMMAND_USAGE: dict[str, str] = {
    "add": "Usage: /add <amount> <category> [D/M[/YYYY]] [description] [payment]\nExample: /add 50 comida 12/03 almoço pix",
    "income": "Usage: /income <amount> <category> [D/M[/YYYY]] [description]\nExample: /income 3000 salario",
    "budget": "Usage: /budget <category> <amount> [period]\nExample: /budget comida 800",
    "recurring": "Usage: /recurring <name> <amount> day <1-31>\nExample: /recurring aluguel 1500 day 5",
    "report": "Usage: /report [month [year]] [category]\nExample: /report março 2024",
    "list": "Usage: /list [categories|recurring|budgets|transactions]",
    "categories": "Usage: /categories [add|remove <name>]",
    "settings": "Usage: /settings ocr auto|confirm",
    "undo": "Usage: /undo",
    "login": "Usage: /login <account>",
    "help": "Usage: /help [command]",
}


def command_help(command: str | None) -> str:
    if command and command in COMMAND_USAGE:
        return COMMAND_USAGE[command]
    return HELP_TEXT


def unknown_command(command: str | None) -> str:
    if command and command in COMMAND_USAGE:
        return "❓ I couldn't read that command.\n" + COMMAND_USAGE[command]
    return f"❓ Unknown command /{command or ''}.\n\n" + HELP_TEXT
