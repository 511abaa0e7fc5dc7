import time

from telegram import Update
from telegram.error import NetworkError
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters

from config import DATABASE_FILE, ENCRYPTION_KEY, RECONNECT_DELAY, STATS_COMMAND, TELEGRAM_TOKEN
from database import CredentialStore
from gemini_client import GeminiClient
from handlers import (
    start_command, startchat_command, analyze_command, help_command, setkey_command,
    endchat_command, stats_command, handle_media, handle_text, user_language
)
from localization import load_languages, get_text
from state import BotState, MediaKind
from utils import setup_logger

logger = setup_logger("geminibot")


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE):
    logger.error(f"Unhandled error while processing an update: {context.error}", exc_info=context.error)
    if isinstance(update, Update) and update.effective_chat:
        await context.bot.send_message(
            chat_id=update.effective_chat.id,
            text=get_text('error_generic', user_language(update)),
        )


def build_application(state: BotState) -> Application:
    app = Application.builder().token(TELEGRAM_TOKEN).build()
    app.bot_data["state"] = state

    app.add_handler(CommandHandler("start", start_command))
    app.add_handler(CommandHandler("startchat", startchat_command))
    app.add_handler(CommandHandler("endchat", endchat_command))
    app.add_handler(CommandHandler("setkey", setkey_command))
    app.add_handler(CommandHandler("help", help_command))
    app.add_handler(CommandHandler(STATS_COMMAND, stats_command))

    # Media analysis commands
    app.add_handler(CommandHandler("imageanalyze", lambda u, c: analyze_command(u, c, MediaKind.IMAGE)))
    app.add_handler(CommandHandler("audioanalyze", lambda u, c: analyze_command(u, c, MediaKind.AUDIO)))
    app.add_handler(CommandHandler("pdfanalyze", lambda u, c: analyze_command(u, c, MediaKind.PDF)))
    app.add_handler(CommandHandler("videoanalyze", lambda u, c: analyze_command(u, c, MediaKind.VIDEO)))

    media_filter = filters.PHOTO | filters.AUDIO | filters.VOICE | filters.Document.ALL | filters.VIDEO
    app.add_handler(MessageHandler(media_filter, handle_media))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text))

    app.add_error_handler(error_handler)
    return app


def main():
    load_languages()
    state = BotState(store=CredentialStore(DATABASE_FILE, ENCRYPTION_KEY), backend=GeminiClient())

    while True:
        app = build_application(state)
        try:
            logger.info("Bot is running...")
            app.run_polling(allowed_updates=Update.ALL_TYPES, close_loop=False)
            break
        except NetworkError as e:
            # TimedOut is a NetworkError too.
            logger.error(f"Polling stopped on a network error: {e}. Reconnecting in {RECONNECT_DELAY}s...")
            time.sleep(RECONNECT_DELAY)

    state.store.close()


if __name__ == '__main__':
    main()
