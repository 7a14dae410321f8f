"""
Language selection and translated strings.

Locale resolution runs once per request: cookie first, then the
Accept-Language header, then the fallback. The resulting LanguageContext
is built after the user (or guest context) and the info reel state are
known, and is handed to every template.
"""
import json
import logging
import os
from dataclasses import dataclass
from functools import lru_cache

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = ("en", "fi", "sv")
FALLBACK_LANGUAGE = "en"
DEFAULT_PRIMARY = "fi"
DEFAULT_SECONDARY = "en"
LOCALE_COOKIE = "locale"
DEFAULT_NAMESPACE = "common"

LOCALES_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "locales")


def serialize_locale_cookie(value) -> str:
    return f"{LOCALE_COOKIE}={value}; Path=/; SameSite=Lax"


def normalize_language(value):
    if not value:
        return None
    code = value.strip().lower().replace("_", "-").split("-")[0]
    return code if code in SUPPORTED_LANGUAGES else None


def resolve_language(cookie_value=None, accept_languages=None) -> str:
    """
    Pick the UI language.

    Args:
        cookie_value: Value of the locale cookie, if any.
        accept_languages: Iterable of language tags in preference order
            (werkzeug's request.accept_languages.values() works).

    Returns:
        str: One of SUPPORTED_LANGUAGES.
    """
    language = normalize_language(cookie_value)
    if language:
        return language
    for tag in accept_languages or ():
        language = normalize_language(tag)
        if language:
            return language
    return FALLBACK_LANGUAGE


@lru_cache(maxsize=None)
def load_resources(language, namespace=DEFAULT_NAMESPACE):
    path = os.path.join(LOCALES_DIR, language, f"{namespace}.json")
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        logger.warning(f"Missing translation file: {path}")
        return {}
    except json.JSONDecodeError as e:
        logger.error(f"Invalid translation file {path}: {e}")
        return {}


def _lookup(resources, key):
    node = resources
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node if isinstance(node, str) else None


def translate(key, language, **params):
    """Dotted-key lookup with English fallback; the key itself when nothing matches."""
    text = _lookup(load_resources(language), key)
    if text is None and language != FALLBACK_LANGUAGE:
        text = _lookup(load_resources(FALLBACK_LANGUAGE), key)
    if text is None:
        return key
    for name, value in params.items():
        text = text.replace("{{" + name + "}}", str(value))
    return text


@dataclass(frozen=True)
class BilingualText:
    finnish: str
    english: str


@dataclass
class LanguageContext:
    language: str
    primary_language: str = DEFAULT_PRIMARY
    secondary_language: str = DEFAULT_SECONDARY
    is_info_reel: bool = False

    def get_text(self, text: BilingualText) -> str:
        # The info reel display is always Finnish
        if self.is_info_reel:
            return text.finnish
        if self.language == "fi":
            return text.finnish
        # No Swedish content stored yet
        return text.english

    @property
    def secondary_display_language(self) -> str:
        """Language of the small secondary line; never repeats the active language if avoidable."""
        if self.language == self.secondary_language:
            return self.primary_language
        return self.secondary_language

    def t(self, key, lng=None, **params):
        return translate(key, lng or self.language, **params)

    def t2(self, key, **params):
        """Same key in the secondary display language."""
        return translate(key, self.secondary_display_language, **params)


def build_language_context(language, user=None, guest_languages=None, is_info_reel=False):
    if user is not None:
        primary = user.get("primary_language") or DEFAULT_PRIMARY
        secondary = user.get("secondary_language") or DEFAULT_SECONDARY
    else:
        guest_languages = guest_languages or {}
        primary = guest_languages.get("primary") or DEFAULT_PRIMARY
        secondary = guest_languages.get("secondary") or DEFAULT_SECONDARY
    return LanguageContext(
        language=language,
        primary_language=primary,
        secondary_language=secondary,
        is_info_reel=is_info_reel,
    )
