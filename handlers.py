from telegram import Update
from telegram.constants import ChatAction
from telegram.error import TelegramError
from telegram.ext import ContextTypes

from config import ADMIN_USER_IDS, HELP_CHANNEL_ID, HELP_MESSAGE_ID
from gemini_client import BackendError, BackendErrorKind, classify_backend_error
from localization import get_text, resolve_language
from state import AWAITING_MODE, BotState, MediaKind, Mode, PendingMedia
from utils import log_activity, send_response, setup_logger

logger = setup_logger("handlers")

MEDIA_BY_MODE = {mode: kind for kind, mode in AWAITING_MODE.items()}

ERROR_TEXT_KEYS = {
    BackendErrorKind.TRANSIENT: 'error_transient',
    BackendErrorKind.SAFETY: 'error_safety',
    BackendErrorKind.RATE_LIMIT: 'error_quota',
    BackendErrorKind.OTHER: 'error_generic',
}


def get_state(context: ContextTypes.DEFAULT_TYPE) -> BotState:
    return context.bot_data["state"]


def user_language(update: Update) -> str:
    user = update.effective_user
    return resolve_language(user.language_code if user else None)


async def is_valid_api_key(state: BotState, api_key: str) -> bool:
    cached = state.key_cache.get(api_key)
    if cached is not None:
        return cached
    valid = await state.backend.validate_api_key(api_key)
    state.key_cache.set(api_key, valid)
    return valid


async def report_backend_error(bot, chat_id: int, exc: Exception, lang: str):
    kind = classify_backend_error(exc)
    if kind is BackendErrorKind.OTHER:
        logger.error(f"Backend error in chat {chat_id}: {exc}", exc_info=exc)
    else:
        logger.warning(f"Backend error in chat {chat_id} ({kind.value}): {exc}")
    await bot.send_message(chat_id=chat_id, text=get_text(ERROR_TEXT_KEYS[kind], lang))


# --- COMMAND HANDLERS ---

async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    state = get_state(context)
    user_id = update.effective_user.id
    lang = user_language(update)

    state.conversations.reset(update.effective_chat.id)
    state.store.track_start(user_id)
    log_activity(user_id, "/start")

    key = 'welcome_back' if state.store.has_api_key(user_id) else 'welcome_new'
    await update.message.reply_text(get_text(key, lang))


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    state = get_state(context)
    chat_id = update.effective_chat.id
    state.conversations.reset(chat_id)

    await update.message.reply_text(get_text('help_text', user_language(update)))
    if HELP_CHANNEL_ID and HELP_MESSAGE_ID:
        try:
            await context.bot.copy_message(chat_id=chat_id, from_chat_id=HELP_CHANNEL_ID, message_id=HELP_MESSAGE_ID)
        except TelegramError as e:
            logger.warning(f"Could not copy help message from {HELP_CHANNEL_ID}: {e}")


async def setkey_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    state = get_state(context)
    state.conversations.enter(update.effective_chat.id, Mode.AWAITING_CREDENTIAL)
    await update.message.reply_text(get_text('enter_api_key', user_language(update)))


async def startchat_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    state = get_state(context)
    user_id = update.effective_user.id
    chat_id = update.effective_chat.id
    lang = user_language(update)

    if state.conversations.mode(chat_id) is not Mode.ACTIVE_CHAT:
        state.conversations.reset(chat_id)
    api_key = state.store.get_api_key(user_id)
    if not api_key:
        await update.message.reply_text(get_text('key_required', lang))
        return
    if state.conversations.mode(chat_id) is Mode.ACTIVE_CHAT:
        await update.message.reply_text(get_text('chat_already_active', lang))
        return

    state.conversations.enter(chat_id, Mode.ACTIVE_CHAT)
    state.histories.clear(chat_id)
    log_activity(user_id, "Started a new chat")
    await update.message.reply_text(get_text('chat_started', lang))
    await chat_turn(context.bot, state, chat_id, api_key, get_text('startchat_intro_prompt', lang), lang)


async def endchat_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    state = get_state(context)
    chat_id = update.effective_chat.id
    lang = user_language(update)

    if state.conversations.mode(chat_id) is not Mode.ACTIVE_CHAT:
        await update.message.reply_text(get_text('no_active_chat', lang))
        return
    state.conversations.reset(chat_id)
    state.histories.clear(chat_id)
    log_activity(update.effective_user.id, "Ended chat")
    await update.message.reply_text(get_text('chat_ended', lang))


async def analyze_command(update: Update, context: ContextTypes.DEFAULT_TYPE, kind: MediaKind):
    """Entry point of /imageanalyze, /audioanalyze, /pdfanalyze and /videoanalyze."""
    state = get_state(context)
    chat_id = update.effective_chat.id
    lang = user_language(update)

    state.conversations.reset(chat_id)
    if not state.store.get_api_key(update.effective_user.id):
        await update.message.reply_text(get_text('key_required', lang))
        return

    state.conversations.enter(chat_id, AWAITING_MODE[kind])
    await update.message.reply_text(get_text(f'upload_{kind.value}', lang))


async def stats_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    state = get_state(context)
    user_id = update.effective_user.id
    lang = user_language(update)

    if user_id not in ADMIN_USER_IDS:
        log_activity(user_id, "Refused stats request")
        await update.message.reply_text(get_text('admin_only', lang))
        return

    stats = state.store.start_stats()
    await update.message.reply_text(get_text(
        'stats', lang,
        total_users=stats['total_users'],
        unique_users=stats['unique_users'],
        latest_usage=stats['latest_usage'] or '-',
    ))


# --- MESSAGE HANDLERS ---

def _incoming_media(message):
    """Returns (kind, telegram media object, document mime type) for a media message, or None."""
    if message.photo:
        return MediaKind.IMAGE, message.photo[-1], None
    if message.audio or message.voice:
        return MediaKind.AUDIO, message.audio or message.voice, None
    if message.document:
        return MediaKind.PDF, message.document, message.document.mime_type
    if message.video:
        return MediaKind.VIDEO, message.video, None
    return None


async def handle_media(update: Update, context: ContextTypes.DEFAULT_TYPE):
    state = get_state(context)
    message = update.message
    chat_id = update.effective_chat.id
    lang = user_language(update)

    incoming = _incoming_media(message)
    if incoming is None:
        return
    kind, media, mime_type = incoming
    if not state.conversations.get(chat_id).is_awaiting(kind):
        return
    if kind is MediaKind.PDF and mime_type != 'application/pdf':
        await message.reply_text(get_text('pdf_only', lang))
        return

    tg_file = await media.get_file()
    state.conversations.await_description(chat_id, PendingMedia(kind, tg_file.file_path))
    log_activity(update.effective_user.id, f"Uploaded {kind.value}")
    await message.reply_text(get_text(f'received_{kind.value}', lang))


async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE):
    state = get_state(context)
    text = update.message.text or ""
    if text.startswith('/'):
        return

    chat_id = update.effective_chat.id
    lang = user_language(update)
    mode = state.conversations.mode(chat_id)

    if mode is Mode.AWAITING_CREDENTIAL:
        await receive_api_key(update, context, text, lang)
    elif mode is Mode.AWAITING_DESCRIPTION:
        await analyze_pending(update, context, text, lang)
    elif mode is Mode.ACTIVE_CHAT:
        await chat_message(update, context, text, lang)
    elif mode in MEDIA_BY_MODE:
        await update.message.reply_text(get_text(f'upload_{MEDIA_BY_MODE[mode].value}', lang))
    else:
        await update.message.reply_text(get_text('capability_menu', lang))


async def receive_api_key(update: Update, context: ContextTypes.DEFAULT_TYPE, text: str, lang: str):
    state = get_state(context)
    user_id = update.effective_user.id
    state.conversations.reset(update.effective_chat.id)

    api_key = text.strip()
    if not api_key:
        await update.message.reply_text(get_text('api_key_empty', lang))
        return

    if not await is_valid_api_key(state, api_key):
        log_activity(user_id, "Rejected invalid API key")
        await update.message.reply_text(get_text('api_key_invalid', lang))
        return

    state.store.set_api_key(user_id, api_key)
    log_activity(user_id, "API key updated")
    await update.message.reply_text(get_text('api_key_valid', lang))
    await update.message.reply_text(get_text('capability_menu', lang))


async def analyze_pending(update: Update, context: ContextTypes.DEFAULT_TYPE, text: str, lang: str):
    state = get_state(context)
    user_id = update.effective_user.id
    chat_id = update.effective_chat.id

    # The pending file is consumed whatever the outcome.
    pending = state.conversations.get(chat_id).pending
    state.conversations.reset(chat_id)

    api_key = state.store.get_api_key(user_id)
    if not api_key:
        await update.message.reply_text(get_text('key_required', lang))
        return

    kind = pending.kind
    prompt = text.strip() or get_text(f'default_prompt_{kind.value}', lang)
    log_activity(user_id, f"Requested {kind.value} analysis")
    await update.message.reply_text(get_text(f'analyzing_{kind.value}', lang))
    await context.bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)

    try:
        result = await state.backend.analyze_media(api_key, kind, pending.file_url, prompt, user_id=user_id)
    except BackendError as e:
        await report_backend_error(context.bot, chat_id, e, lang)
        return
    await send_response(context.bot, chat_id, result)


async def chat_message(update: Update, context: ContextTypes.DEFAULT_TYPE, text: str, lang: str):
    state = get_state(context)
    user_id = update.effective_user.id
    chat_id = update.effective_chat.id

    if state.limiter.is_limited(user_id):
        log_activity(user_id, "Rate limited")
        await update.message.reply_text(get_text('rate_limited', lang))
        return

    api_key = state.store.get_api_key(user_id)
    if not api_key:
        state.conversations.reset(chat_id)
        await update.message.reply_text(get_text('key_required', lang))
        return

    await update.message.reply_text(get_text('typing', lang))
    await chat_turn(context.bot, state, chat_id, api_key, text, lang)


async def chat_turn(bot, state: BotState, chat_id: int, api_key: str, text: str, lang: str):
    """One free-chat exchange. History only grows when the backend answered."""
    await bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)
    try:
        reply = await state.backend.generate_text(
            api_key, state.histories.turns(chat_id), text,
            system_instruction=get_text('chat_system_instruction', lang),
        )
    except BackendError as e:
        # The chat stays active; the user can simply try again.
        await report_backend_error(bot, chat_id, e, lang)
        return

    state.histories.append(chat_id, "user", text)
    state.histories.append(chat_id, "model", reply)
    await send_response(bot, chat_id, reply)
