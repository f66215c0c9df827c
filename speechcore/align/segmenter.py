"""Split decoded text into alignment units."""

from __future__ import annotations

from typing import Callable

from speechcore.asr.errors import UnsupportedLanguageHint

_CJK_HINTS = frozenset({"cjk", "zh", "zh-cn", "zh-tw", "zh-hans", "zh-hant", "chinese", "cantonese", "yue"})
_JAPANESE_HINTS = frozenset({"ja", "japanese"})
_KOREAN_HINTS = frozenset({"ko", "korean"})
_WHITESPACE_HINTS = frozenset(
    {
        "auto", "en", "english", "de", "german", "fr", "french", "es", "spanish", "it", "italian",
        "pt", "portuguese", "ru", "russian", "ar", "arabic", "nl", "dutch", "tr", "turkish",
        "vi", "vietnamese", "id", "indonesian", "th", "thai", "hi", "hindi", "pl", "polish",
        "sv", "swedish", "uk", "ukrainian", "cs", "czech", "ms", "malay", "fil", "filipino",
        "fa", "persian", "el", "greek", "hu", "hungarian", "ro", "romanian", "da", "danish",
        "fi", "finnish", "mk", "macedonian",
    }
)


def is_cjk_ideograph(char: str) -> bool:
    value = ord(char)
    return (
        0x4E00 <= value <= 0x9FFF
        or 0x3400 <= value <= 0x4DBF
        or 0x20000 <= value <= 0x2A6DF
    )


def _is_kana(char: str) -> bool:
    value = ord(char)
    return 0x3040 <= value <= 0x309F or 0x30A0 <= value <= 0x30FF


def _per_character(text: str) -> list[str]:
    return [char for char in text if not char.isspace()]


def _japanese(text: str) -> list[str]:
    units: list[str] = []
    run = ""
    for char in text:
        if _is_kana(char):
            run += char
            continue
        if run:
            units.append(run)
            run = ""
        if not char.isspace():
            units.append(char)
    if run:
        units.append(run)
    return units


def classify_hint(language_hint: str | None) -> str | None:
    """Return ``cjk``, ``ja``, ``ko``, ``whitespace``, or ``None`` for an unknown tag."""

    if language_hint is None:
        return "whitespace"
    hint = language_hint.strip().lower().replace("_", "-")
    if not hint:
        return "whitespace"
    if hint in _CJK_HINTS:
        return "cjk"
    if hint in _JAPANESE_HINTS:
        return "ja"
    if hint in _KOREAN_HINTS:
        return "ko"
    if hint in _WHITESPACE_HINTS or hint.split("-", 1)[0] in _WHITESPACE_HINTS:
        return "whitespace"
    return None


def segment_text(
    text: str,
    language_hint: str | None = None,
    *,
    log_callback: Callable[[str], None] | None = None,
) -> list[str]:
    """Split ``text`` into align units.

    Text containing CJK ideographs, or tagged as Chinese, yields one unit per
    character (punctuation included). Japanese groups kana runs, Korean yields
    one unit per syllable, and everything else splits on whitespace with
    punctuation left attached to its word. Unknown tags fall back to
    whitespace splitting.
    """

    script = classify_hint(language_hint)
    if script is None:
        warning = UnsupportedLanguageHint(str(language_hint))
        if log_callback is not None:
            log_callback(f"segmenter: {warning}")
        script = "whitespace"

    if script == "cjk" or any(is_cjk_ideograph(char) for char in text):
        return _per_character(text)
    if script == "ja":
        return _japanese(text)
    if script == "ko":
        return _per_character(text)
    return text.split()
