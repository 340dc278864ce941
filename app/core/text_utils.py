"""Text helpers shared by every pipeline stage: normalization, tokens, hashing."""

import hashlib
import math
import re
from functools import lru_cache

import tiktoken

from app.core.config import get_settings
from app.core.logging import get_logger

logger = get_logger(__name__)

# Traceability tags: [C3] marks an extractive chunk id, [S2] a deep-context source.
REF_TAG_RE = re.compile(r"\[(?:S|C)\d+\]")
SOURCE_TAG_RE = re.compile(r"\[S\d+\]")

_MARKUP_RE = re.compile(r"\*{2,}|_{2,}|[`#]+")
_WHITESPACE_RE = re.compile(r"\s+")
_ELLIPSIS_RE = re.compile(r"[ \t]*(?:\.{3,}|…)[ \t]*")
_WORD_RE = re.compile(r"\S+")

CHARS_PER_TOKEN = 4


@lru_cache(maxsize=1)
def _get_encoding() -> tiktoken.Encoding | None:
    """Load the cl100k encoding once; None when it cannot be loaded."""
    try:
        return tiktoken.get_encoding("cl100k_base")
    except Exception as e:
        logger.warning(f"tiktoken encoding unavailable, using heuristic estimator: {e}")
        return None


def estimate_tokens(text: str) -> int:
    """
    Estimate the token count of text.

    Uses tiktoken when TOKEN_ESTIMATOR is "tiktoken" and the encoding loads,
    otherwise ceil(len / 4). Deterministic and monotonic in the input length
    for the heuristic path.
    """
    if not text:
        return 0

    if get_settings().TOKEN_ESTIMATOR == "tiktoken":
        encoding = _get_encoding()
        if encoding is not None:
            return len(encoding.encode(text, disallowed_special=()))

    return math.ceil(len(text) / CHARS_PER_TOKEN)


def truncate_tokens(text: str, max_tokens: int) -> str:
    """Cut text to roughly max_tokens, on a character budget."""
    if max_tokens <= 0:
        return ""
    budget = max_tokens * CHARS_PER_TOKEN
    if len(text) <= budget:
        return text
    return text[:budget]


def normalize(text: str) -> str:
    """
    Collapse whitespace and strip markdown emphasis and heading markers.

    normalize(normalize(x)) == normalize(x): marker removal repeats until
    nothing is left to remove, so adjacent fragments cannot re-form a marker.
    """
    if not text:
        return ""

    cleaned = text
    while True:
        stripped = _MARKUP_RE.sub("", cleaned)
        if stripped == cleaned:
            break
        cleaned = stripped

    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def content_hash(text: str) -> str:
    """SHA-256 hex digest of text; empty string if hashing fails."""
    try:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()
    except Exception as e:
        logger.warning(f"content hash unavailable: {e}")
        return ""


def strip_evidence(text: str) -> str:
    """Remove [C#]/[S#] reference tags and tidy the spacing they leave."""
    without = REF_TAG_RE.sub("", text)
    without = re.sub(r"[ \t]{2,}", " ", without)
    return re.sub(r"\s+([.,;:])", r"\1", without).strip()


def scrub_placeholders(text: str) -> str:
    """Remove ellipsis placeholders ("..." and "…")."""
    return _ELLIPSIS_RE.sub(" ", text).strip()


def count_words(text: str) -> int:
    return len(_WORD_RE.findall(text or ""))


def count_ref_tags(text: str) -> int:
    return len(REF_TAG_RE.findall(text or ""))


def fit_to_tokens(text: str, max_tokens: int) -> str:
    """
    Cut text so estimate_tokens(result) <= max_tokens, preferring a line break.

    Unlike truncate_tokens this holds for the exact tokenizer as well.
    """
    if estimate_tokens(text) <= max_tokens:
        return text

    cut = truncate_tokens(text, max_tokens)
    while cut and estimate_tokens(cut) > max_tokens:
        cut = cut[: int(len(cut) * 0.9)]

    newline = cut.rfind("\n")
    if newline > len(cut) // 2:
        cut = cut[:newline]
    return cut.rstrip()
