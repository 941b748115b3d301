"""Supported conversation languages and their platform locale tags."""

from __future__ import annotations

# (code, native label, accent)
SUPPORTED_LANGUAGES: tuple[tuple[str, str, str], ...] = (
    ("en", "English", "US"),
    ("en-gb", "English", "UK"),
    ("en-au", "English", "AU"),
    ("es", "Español", ""),
    ("fr", "Français", ""),
    ("de", "Deutsch", ""),
    ("pt", "Português", ""),
    ("it", "Italiano", ""),
    ("ja", "日本語", ""),
    ("ko", "한국어", ""),
    ("zh", "中文", ""),
    ("hi", "हिंदी", ""),
    ("ar", "العربية", ""),
    ("ru", "Русский", ""),
    ("nl", "Nederlands", ""),
    ("pl", "Polski", ""),
)

# Recognition and synthesis both key off this table.
LOCALE_MAP: dict[str, str] = {
    "en": "en-US",
    "en-gb": "en-GB",
    "en-au": "en-AU",
    "es": "es-ES",
    "fr": "fr-FR",
    "de": "de-DE",
    "pt": "pt-BR",
    "it": "it-IT",
    "ja": "ja-JP",
    "ko": "ko-KR",
    "zh": "zh-CN",
    "hi": "hi-IN",
    "ar": "ar-SA",
    "ru": "ru-RU",
    "nl": "nl-NL",
    "pl": "pl-PL",
}

DEFAULT_LOCALE = "en-US"

# English names engines commonly put in voice names ("Google español" is the
# exception, hence the native label is checked as well).
_ENGLISH_NAMES: dict[str, str] = {
    "en": "english",
    "es": "spanish",
    "fr": "french",
    "de": "german",
    "pt": "portuguese",
    "it": "italian",
    "ja": "japanese",
    "ko": "korean",
    "zh": "chinese",
    "hi": "hindi",
    "ar": "arabic",
    "ru": "russian",
    "nl": "dutch",
    "pl": "polish",
}


def to_locale(code: str | None) -> str:
    """Map a language code to its locale tag; unknown codes fall back to en-US."""
    if not code:
        return DEFAULT_LOCALE
    return LOCALE_MAP.get(code.strip().lower(), DEFAULT_LOCALE)


def language_names(locale: str) -> tuple[str, ...]:
    """Lowercase display names for the language part of *locale*."""
    prefix = locale.split("-")[0].lower()
    names = []
    if prefix in _ENGLISH_NAMES:
        names.append(_ENGLISH_NAMES[prefix])
    for code, label, _accent in SUPPORTED_LANGUAGES:
        if code == prefix:
            names.append(label.lower())
    return tuple(names)
