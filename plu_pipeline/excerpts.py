# plu_pipeline/excerpts.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .contracts import (
    ARTICLE_NUMBERS,
    FALLBACK_SLOT,
    ZoneExcerptSet,
    ZoneSpan,
    article_slot,
    empty_excerpt_set,
)


def _default_article_lengths() -> Dict[int, int]:
    return {6: 6000, 7: 6000, 9: 4000, 10: 4000, 12: 6000}


@dataclass(frozen=True)
class ExcerptConfig:
    """
    Windowing rules (characters):
      - each article window starts lead_in_chars before its heading and is cut
        at its own configured length
      - the search for the next zone starts next_zone_skip_chars after this zone's start
      - fallback_context spans [start - fallback_before, start + fallback_after],
        cut at fallback_max_chars
    """
    article_lengths: Dict[int, int] = field(default_factory=_default_article_lengths)
    lead_in_chars: int = 200
    next_zone_skip_chars: int = 100
    fallback_before_chars: int = 500
    fallback_after_chars: int = 6000
    fallback_max_chars: int = 4000


def _code_body(code: str, bare: bool = False) -> str:
    # discovery uppercases a trailing sub-zone letter ("UBa" -> "UBA"); either case is
    # accepted, except for a bare two-letter code ("Au", "Un" are French words)
    if len(code) < 2 or not code[-1].isalpha() or (bare and len(code) < 3):
        return re.escape(code)
    return re.escape(code[:-1]) + "[" + code[-1].upper() + code[-1].lower() + "]"


def _code_re(code: str, bare: bool = False) -> str:
    return r"(?<![\w])" + _code_body(code, bare) + r"(?![\w])"


def _zone_start_patterns(code: str) -> List[re.Pattern]:
    c = _code_re(code)
    return [
        # "zone UA", "ZONE UBa"
        re.compile(r"(?i:zone)\s+" + c),
        # "UA - ...", "UA – ..."
        re.compile(c + r"\s*[-–]"),
        # bare code
        re.compile(_code_re(code, bare=True)),
    ]


def find_zone_start(text: str, code: str) -> Optional[int]:
    for pat in _zone_start_patterns(code):
        m = pat.search(text)
        if m:
            return m.start()
    return None


def _next_zone_re(other_codes: Sequence[str]) -> Optional[re.Pattern]:
    codes = sorted({c for c in other_codes if c}, key=len, reverse=True)
    if not codes:
        return None
    alt = "|".join(_code_body(c) for c in codes)
    branches = [
        # "zone UB" anywhere
        r"(?i:zone)\s+(?:" + alt + r")(?![\w])",
        # "UB - ...", "UB : ...", "N (naturelle)" or a code alone on its line
        r"^[ \t]*(?:" + alt + r")[ \t]*(?:[-–:(]|$)",
    ]
    # any other multi-letter code in running text; a lone "A" or "N" there is a French word
    words = [_code_body(c, bare=True) for c in codes if len(c) > 1]
    if words:
        branches.append(r"(?<![\w])(?:" + "|".join(words) + r")(?![\w])")
    return re.compile("|".join(branches), re.MULTILINE)


def find_zone_span(text: str, code: str, other_codes: Sequence[str], cfg: ExcerptConfig = ExcerptConfig()) -> Optional[ZoneSpan]:
    """
    The zone runs from its first identifying match to the next occurrence of
    any other known zone code (searched from next_zone_skip_chars past the start), or to
    the end of the document.
    """
    start = find_zone_start(text, code)
    if start is None:
        return None

    end = len(text)
    pat = _next_zone_re([c for c in other_codes if c != code])
    if pat is not None:
        m = pat.search(text, start + cfg.next_zone_skip_chars)
        if m:
            end = m.start()
    return ZoneSpan(zone_code=code, start=start, end=end)


def _article_patterns(n: int, code: str) -> List[re.Pattern]:
    # "Article UA 6", "ARTICLE UA.6", "Article UBa 6", "Article 6"
    zone_prefix = r"(?:" + _code_body(code) + r"\s*[-.]?\s*)?"
    num = str(n) + r"(?!\d)"
    return [
        re.compile(r"(?<![\w])(?i:article)\s+" + zone_prefix + num),
        re.compile(r"(?<![\w])(?i:art\.?)\s*" + zone_prefix + num),
        re.compile(r"^[ \t]*" + num + r"[ \t]*[-–]", re.MULTILINE),
    ]


def find_article_heading(zone_text: str, n: int, code: str) -> Optional[int]:
    for pat in _article_patterns(n, code):
        m = pat.search(zone_text)
        if m:
            return m.start()
    return None


def build_zone_excerpts(
    text: str,
    code: str,
    other_codes: Sequence[str] = (),
    cfg: ExcerptConfig = ExcerptConfig(),
) -> ZoneExcerptSet:
    """
    Article-keyed windows for one zone plus a fallback_context window.

    Never fails: a zone or article that cannot be located yields "" for its slot.
    """
    span = find_zone_span(text, code, other_codes, cfg)
    if span is None:
        return empty_excerpt_set(code)

    zone_text = text[span.start: span.end]
    excerpts: Dict[str, str] = {}
    for n in ARTICLE_NUMBERS:
        pos = find_article_heading(zone_text, n, code)
        if pos is None:
            excerpts[article_slot(n)] = ""
            continue
        window_start = max(0, pos - cfg.lead_in_chars)
        length = cfg.article_lengths.get(n, 4000)
        excerpts[article_slot(n)] = zone_text[window_start: window_start + length]

    fb_start = max(0, span.start - cfg.fallback_before_chars)
    fallback = text[fb_start: span.start + cfg.fallback_after_chars]
    excerpts[FALLBACK_SLOT] = fallback[: cfg.fallback_max_chars]

    return ZoneExcerptSet(zone_code=code, excerpts=excerpts, span=span)
