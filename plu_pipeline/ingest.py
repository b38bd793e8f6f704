# plu_pipeline/ingest.py
from __future__ import annotations

import re

_LINE_ENDINGS_RE = re.compile(r"\r\n?|[\u2028\u2029\x0b\x0c]")
# any whitespace except newline (covers tabs and non-breaking spaces)
_HSPACE_RE = re.compile(r"[^\S\n]+")
_SPACE_AROUND_NL_RE = re.compile(r" ?\n ?")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


def normalize_document_text(raw: str) -> str:
    """
    Canonicalize decoded document text.

    - every line-ending variant becomes "\\n"
    - runs of horizontal whitespace become a single space
    - spaces touching a newline are dropped
    - 3+ consecutive newlines collapse to one blank line

    Pure and idempotent.
    """
    if not raw:
        return ""
    t = _LINE_ENDINGS_RE.sub("\n", raw)
    t = _HSPACE_RE.sub(" ", t)
    t = _SPACE_AROUND_NL_RE.sub("\n", t)
    t = _BLANK_RUN_RE.sub("\n\n", t)
    return t.strip()


def is_text_usable(text: str, min_chars: int) -> bool:
    return len(text.strip()) >= min_chars
