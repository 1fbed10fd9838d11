from loguru import logger
from telegram import Message, Update
from telegram.error import BadRequest
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from chatledger.config import get_settings
from chatledger.deps import router
from chatledger.models.schemas import InboundMessage

settings = get_settings()

GROUP_CHAT_TYPES = ("group", "supergroup")


def to_inbound(message: Message) -> InboundMessage:
    """Translate a Telegram message into the router's inbound shape."""
    text = message.text.strip()
    # /start is Telegram's greeting command; answer it with the command list
    if text.split("@")[0].split(" ")[0] == "/start":
        text = "/help"
    elif text.startswith("/"):
        # Drop the @botname suffix Telegram adds to commands in groups
        command, _, rest = text.partition(" ")
        text = f"{command.split('@')[0]} {rest}".strip()

    quoted = message.reply_to_message
    is_group = message.chat.type in GROUP_CHAT_TYPES
    user = message.from_user
    user_id = str(user.id)
    if is_group and text.startswith("/login"):
        # Logging in from a group links the group itself; its members then share that account
        user_id = str(message.chat.id)
    return InboundMessage(
        user_id=user_id,
        text=text,
        quoted_text=(quoted.text or quoted.caption) if quoted else None,
        is_group_context=is_group,
        group_owner_id=str(message.chat.id) if is_group else None,
        push_name=user.first_name,
    )


async def _send(message: Message, text: str) -> None:
    try:
        await message.reply_text(text, parse_mode="Markdown")
    except BadRequest as e:
        # User-supplied text can unbalance Markdown entities
        logger.debug("Markdown rejected ({}), sending plain text", e)
        await message.reply_text(text)


async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle incoming text messages and commands through the conversation router."""
    message = update.message
    logger.info("Telegram message from {}: {}", message.from_user.id, message.text)

    reply = await router.resolve(to_inbound(message))
    for text in reply if isinstance(reply, list) else [reply]:
        await _send(message, text)


def build_bot_app() -> Application:
    """Build and return the Telegram bot application."""
    app = Application.builder().token(settings.telegram_bot_token).build()
    app.add_handler(MessageHandler(filters.TEXT, handle_message))
    return app
