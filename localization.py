import yaml
import logging
from config import LANGUAGE_FILE, DEFAULT_LANGUAGE, SUPPORTED_LANGUAGES

logger = logging.getLogger("bot")

LANGUAGES_DATA = {}

def load_languages(path: str = LANGUAGE_FILE):
    global LANGUAGES_DATA
    try:
        with open(path, 'r', encoding='utf-8') as f:
            LANGUAGES_DATA = yaml.safe_load(f) or {}
        logger.info(f"Loaded {len(LANGUAGES_DATA)} languages from {path}")
    except FileNotFoundError:
        logger.error(f"CRITICAL: {path} not found. Bot cannot run without language definitions.")
        raise
    except yaml.YAMLError as e:
        logger.error(f"CRITICAL: Error parsing {path}. Use the literal block scalar '|' for multi-line texts.")
        logger.error(f"YAML parser error: {e}")
        raise

def resolve_language(language_code) -> str:
    code = (language_code or '').split('-')[0].lower()
    return code if code in SUPPORTED_LANGUAGES else DEFAULT_LANGUAGE

def get_text(key: str, lang: str = DEFAULT_LANGUAGE, **kwargs) -> str:
    lang_dict = LANGUAGES_DATA.get(lang, LANGUAGES_DATA.get('en', {}))
    text = lang_dict.get(key)

    if text is None:
        # Fallback to English
        text = LANGUAGES_DATA.get('en', {}).get(key, f"MISSING_KEY: {key}")

    try:
        return text.format(**kwargs)
    except (KeyError, IndexError):
        return text
