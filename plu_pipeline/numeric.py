# plu_pipeline/numeric.py
"""
Locale-aware numeric extraction from French planning text.

Every extractor is an ordered chain of independent patterns; the first
pattern that yields a parseable number wins. Patterns are never combined
or cross-checked, so each one can be tested on its own.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from plu_schemas.schemas_rules import RuleType

_WS_RE = re.compile(r"\s+")
_DECIMAL_RE = re.compile(r"[+-]?\d+(?:[.,]\d+)?")

# number not glued to a preceding number ("2,5" must not yield "5")
_NUM = r"(?<![\d.,])(\d+(?:[.,]\d+)?)"
_METRE_WORD = r"m[èeé]tres?"
_AREA_UNIT = r"m(?:²|2)(?!\d)"
# rejects "12 m2", "12 m²", "12 m ²", "12 mètres carrés"
_SURFACE_GUARD = r"(?!\s*²)(?![\w²])(?!\s+carr[ée])"
_LINEAR = r"\s*(?:" + _METRE_WORD + r"|m)" + _SURFACE_GUARD
_APOS = r"['’]"


@dataclass(frozen=True)
class PatternMatcher:
    """One pattern of a fallback chain. Yields the first parseable capture."""
    name: str
    pattern: re.Pattern
    group: int = 1

    def match(self, text: str) -> Optional[float]:
        for m in self.pattern.finditer(text):
            value = parse_decimal(m.group(self.group))
            if value is not None:
                return value
        return None


def first_match(matchers: Sequence[PatternMatcher], text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    for matcher in matchers:
        value = matcher.match(text)
        if value is not None:
            return value
    return None


def _pm(name: str, pattern: str, flags: int = re.IGNORECASE) -> PatternMatcher:
    return PatternMatcher(name=name, pattern=re.compile(pattern, flags))


# ----------------------------
# Scalars
# ----------------------------

def parse_decimal(value: Any) -> Optional[float]:
    """
    "3,5" -> 3.5, "12.0" -> 12.0, "1 000" -> 1000.0, 7 -> 7.0.
    Anything else (None, bools, words, NaN) -> None. Never raises.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        f = float(value)
        return f if math.isfinite(f) else None
    if not isinstance(value, str):
        return None
    s = _WS_RE.sub("", value)
    if not _DECIMAL_RE.fullmatch(s):
        return None
    return float(s.replace(",", "."))


def normalize_ratio(value: Optional[float]) -> Optional[float]:
    """
    Footprint ratios are stored as fractions: 60 -> 0.6, 0.6 -> 0.6.
    Values that stay outside [0, 1] after conversion are dropped.
    """
    if value is None or value < 0:
        return None
    if value > 1:
        value = value / 100
    if value > 1:
        return None
    return round(value, 6)


def clean_note(text: Any, max_len: int = 200) -> Optional[str]:
    if not isinstance(text, str):
        return None
    t = _WS_RE.sub(" ", text).strip()
    if not t:
        return None
    if len(t) > max_len:
        t = t[:max_len].rstrip() + "…"
    return t


# ----------------------------
# Distances
# ----------------------------

LINEAR_METER_MATCHERS = (
    _pm("named_unit", _NUM + r"\s*" + _METRE_WORD + _SURFACE_GUARD),
    _pm("bare_m", _NUM + r"\s*m" + _SURFACE_GUARD),
)

MIN_DISTANCE_MATCHERS = (
    _pm("qualifier_before", r"(?:minimum|minimale?s?|mini|au\s+moins)\b[^\d\n]{0,25}?" + _NUM + _LINEAR),
    _pm("qualifier_after", _NUM + _LINEAR + r"\s*(?:au\s+)?(?:minimum|mini)\b"),
    _pm("not_less_than", r"inf[ée]rieure?s?\s+à\s+" + _NUM + _LINEAR),
)

_H_OVER_2_RE = re.compile(
    r"\bH\s*/\s*2(?!\d)|\bH\s*÷\s*2(?!\d)|hauteur\s*/\s*2(?!\d)|moiti[ée]\s+de\s+(?:la\s+|sa\s+)?hauteur",
    re.IGNORECASE,
)


def extract_linear_meters(text: Optional[str]) -> Optional[float]:
    return first_match(LINEAR_METER_MATCHERS, text)


def extract_min_distance(text: Optional[str]) -> Optional[float]:
    return first_match(MIN_DISTANCE_MATCHERS, text)


def has_h_over_2(text: Optional[str]) -> bool:
    return bool(text) and bool(_H_OVER_2_RE.search(text))


def classify_setback_rule(text: Optional[str]) -> Optional[RuleType]:
    """
    H/2 idiom + minimum distance -> H_OVER_2_MIN
    H/2 idiom alone             -> H_OVER_2
    no idiom, distance present  -> FIXED
    """
    if not text:
        return None
    if has_h_over_2(text):
        if extract_min_distance(text) is not None:
            return RuleType.H_OVER_2_MIN
        return RuleType.H_OVER_2
    if extract_min_distance(text) is not None or extract_linear_meters(text) is not None:
        return RuleType.FIXED
    return None


# ----------------------------
# Parking
# ----------------------------

PLACES_PER_DWELLING_MATCHERS = (
    _pm("places_par_logement", _NUM + r"\s*places?\s+(?:de\s+stationnement\s+)?par\s+logement"),
    _pm("places_slash_logement", _NUM + r"\s*places?\s*/\s*logement"),
    _pm("par_logement_places", r"par\s+logement\s*:?\s*" + _NUM + r"\s*places?"),
)

AREA_PER_SPACE_MATCHERS = (
    _pm("m2_par_place", _NUM + r"\s*" + _AREA_UNIT + r"\s*(?:par|/)\s*place"),
    _pm("place_de_m2", r"places?\s+(?:de|d" + _APOS + r"une\s+surface\s+(?:minimale\s+)?de)\s+" + _NUM + r"\s*" + _AREA_UNIT),
    _pm("surface_par_place", r"surface\s+(?:minimale\s+)?(?:d" + _APOS + r"une\s+place|par\s+place)[^\d\n]{0,20}?" + _NUM + r"\s*" + _AREA_UNIT),
)

_PER_100M2 = r"(?:chaque\s+)?(?:tranche\s+(?:entam[ée]e\s+)?de\s+)?100\s*" + _AREA_UNIT

PLACES_PER_100M2_MATCHERS = (
    _pm("places_par_100m2", _NUM + r"\s*places?[^\d\n]{0,30}?(?:par|pour|/)\s*" + _PER_100M2),
    _pm("par_100m2_places", r"(?:par|pour)\s+" + _PER_100M2 + r"[^\d\n]{0,40}?" + _NUM + r"\s*places?"),
)


def extract_places_per_dwelling(text: Optional[str]) -> Optional[float]:
    return first_match(PLACES_PER_DWELLING_MATCHERS, text)


def extract_area_per_space(text: Optional[str]) -> Optional[float]:
    return first_match(AREA_PER_SPACE_MATCHERS, text)


def extract_places_per_100m2(text: Optional[str]) -> Optional[float]:
    return first_match(PLACES_PER_100M2_MATCHERS, text)


# ----------------------------
# Height / footprint
# ----------------------------

HEIGHT_MAX_MATCHERS = (
    _pm("hauteur_maximale", r"hauteur\s+(?:maximale|maximum|max\.?)[^\d\n]{0,60}?" + _NUM + _LINEAR),
    _pm("ne_doit_pas_exceder", r"(?:ne\s+(?:doit|peut)\s+(?:pas\s+)?(?:exc[ée]der|d[ée]passer)|limit[ée]e?\s+à)\s+" + _NUM + _LINEAR),
    _pm("hauteur_n_m_maximum", r"hauteur[^\d\n]{0,60}?" + _NUM + _LINEAR + r"\s*(?:au\s+)?maximum"),
)

FOOTPRINT_RATIO_MATCHERS = (
    _pm("emprise_percent", r"emprise\s+au\s+sol[^\d\n]{0,80}?" + _NUM + r"\s*%"),
    _pm(
        "percent_of_parcel",
        _NUM + r"\s*%\s*de\s+la\s+(?:superficie|surface)\s+(?:du\s+terrain|de\s+l" + _APOS
        + r"unit[ée]\s+fonci[èe]re|de\s+la\s+parcelle)",
    ),
    _pm("emprise_fraction", r"emprise\s+au\s+sol[^\d\n]{0,80}?(?<![\d.,])(0[.,]\d+)"),
)


def extract_height_max(text: Optional[str]) -> Optional[float]:
    return first_match(HEIGHT_MAX_MATCHERS, text)


def extract_footprint_ratio(text: Optional[str]) -> Optional[float]:
    return normalize_ratio(first_match(FOOTPRINT_RATIO_MATCHERS, text))
