import logging

from telegram import Update
from telegram.constants import ChatAction
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters

logger = logging.getLogger(__name__)

CHAT_PREFIX = "tg:"
MAX_MESSAGE_LENGTH = 4096


def to_chat_id(telegram_chat_id):
    return f"{CHAT_PREFIX}{telegram_chat_id}"


def split_text(text, limit=MAX_MESSAGE_LENGTH):
    return [text[i:i + limit] for i in range(0, len(text), limit)] or [""]


class TelegramChannel:
    """Telegram connector: feeds inbound text to the router, delivers replies."""

    name = "telegram"

    def __init__(self, token, allowed_users, on_inbound):
        self.token = token
        self.allowed_users = set(allowed_users)
        self.on_inbound = on_inbound
        self.app = None

    def owns(self, chat_id):
        return chat_id.startswith(CHAT_PREFIX)

    def _allowed(self, update):
        return not self.allowed_users or update.effective_user.id in self.allowed_users

    async def start(self):
        self.app = Application.builder().token(self.token).build()
        self.app.add_handler(CommandHandler("chatid", self.handle_chatid))
        self.app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self.handle_message))
        await self.app.initialize()
        await self.app.start()
        await self.app.updater.start_polling()
        logger.info("Telegram connected")

    async def stop(self):
        if self.app is None:
            return
        await self.app.updater.stop()
        await self.app.stop()
        await self.app.shutdown()

    async def handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle incoming Telegram messages."""
        if update.effective_user is None or not self._allowed(update):
            return
        chat_id = to_chat_id(update.effective_chat.id)
        sender = update.effective_user.full_name
        outcome = await self.on_inbound(chat_id, update.message.text, sender)
        if outcome != "ignored":
            await update.message.chat.send_action(ChatAction.TYPING)

    async def handle_chatid(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Reply with the chat id used to register this chat."""
        if update.effective_user is None or not self._allowed(update):
            return
        await update.message.reply_text(to_chat_id(update.effective_chat.id))

    async def send_message(self, chat_id, text, files=None):
        telegram_id = int(chat_id[len(CHAT_PREFIX):])
        if text:
            for chunk in split_text(text):
                await self.app.bot.send_message(chat_id=telegram_id, text=chunk)
        for path in files or []:
            with open(path, "rb") as f:
                await self.app.bot.send_document(chat_id=telegram_id, document=f)
