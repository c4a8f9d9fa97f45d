from __future__ import annotations

import hashlib
import re
from typing import Set

_URL_RE = re.compile(r"https?://\S+")
_WHITESPACE_RE = re.compile(r"\s+")
_NON_WORD_RE = re.compile(r"[^a-z0-9]+")

# Filler words that pass the length gate but carry no topic.
_STOPWORDS = frozenset({"will", "this", "that", "with", "from", "into", "over"})


def normalize_snippet(text: str) -> str:
    """Strip URLs, collapse whitespace and trim."""
    no_urls = _URL_RE.sub("", text or "")
    return _WHITESPACE_RE.sub(" ", no_urls).strip()


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def content_words(text: str, min_length: int = 4) -> Set[str]:
    """Lower-cased words of at least `min_length` characters, punctuation stripped."""
    words = _NON_WORD_RE.split((text or "").lower())
    return {w for w in words if len(w) >= min_length and w not in _STOPWORDS}
