"""Tokenizer contract and the Hugging Face tokenizer loader."""

from __future__ import annotations

from importlib import import_module
from pathlib import Path
from typing import Protocol, Sequence

_ASR_TEXT_MARKER = "<asr_text>"


class Tokenizer(Protocol):
    """Minimal encode/decode surface used by decoding and alignment."""

    def encode(self, text: str) -> list[int]:
        ...

    def decode(self, token_ids: Sequence[int]) -> str:
        ...


class HuggingFaceTokenizer:
    """Adapts a ``transformers`` tokenizer to the ``Tokenizer`` contract."""

    def __init__(self, backend: object):
        self._backend = backend

    def encode(self, text: str) -> list[int]:
        return list(self._backend.encode(text, add_special_tokens=False))

    def decode(self, token_ids: Sequence[int]) -> str:
        # <asr_text> is an added special token; keep it so the language prefix can be stripped.
        return str(self._backend.decode(list(token_ids), skip_special_tokens=False))


def load_tokenizer(model_dir: Path) -> HuggingFaceTokenizer:
    try:
        transformers_module = import_module("transformers")
    except ModuleNotFoundError as exc:
        raise ValueError(
            "Tokenizer loading requires transformers. "
            "Install it with: pip install 'speechcore[qwen3]'"
        ) from exc

    auto_tokenizer = getattr(transformers_module, "AutoTokenizer", None)
    if auto_tokenizer is None:
        raise ValueError("Installed transformers package is missing AutoTokenizer.")

    try:
        backend = auto_tokenizer.from_pretrained(str(model_dir))
    except Exception as exc:  # pragma: no cover - depends on model assets
        raise ValueError(
            f"Failed to load tokenizer from '{model_dir}'. Expected tokenizer.json or vocab.json/merges.txt."
        ) from exc
    return HuggingFaceTokenizer(backend)


def clean_asr_output(text: str) -> str:
    """Strip the ``language X<asr_text>`` preamble and special tokens from decoded text."""

    if _ASR_TEXT_MARKER in text:
        text = text.split(_ASR_TEXT_MARKER, 1)[1]
    for special in ("<|im_end|>", "<|endoftext|>"):
        text = text.replace(special, "")
    return text.strip()


def detected_language(text: str) -> str | None:
    """Return the language named before ``<asr_text>``, if the model emitted one."""

    if _ASR_TEXT_MARKER not in text:
        return None
    preamble = text.split(_ASR_TEXT_MARKER, 1)[0].strip()
    if preamble.lower().startswith("language"):
        name = preamble[len("language"):].strip()
        return name or None
    return None
