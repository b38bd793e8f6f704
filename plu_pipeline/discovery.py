# plu_pipeline/discovery.py
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from plu_schemas.schemas_pipeline import ZoneCandidate

from .contracts import DiscoveryResult, ZoneExtractor
from .extract import ExtractionError, decode_discovery_response

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscoveryConfig:
    max_zones: int = 15
    # size of each of the three windows sent to the fallback call
    fallback_window_chars: int = 10000
    elision_marker: str = "\n\n[...]\n\n"


_ZONE_PREFIX_RE = re.compile(r"^ZONE\s+", re.IGNORECASE)

# Accepted zone-code shapes: U, UA, UBa, 1AU, 2AUh, AU, A, Ap, N, Nh, ...
_ZONE_CODE_SHAPE_RE = re.compile(r"^(?:[1-9]?AU[A-Z]{0,2}|U[A-Z]{0,2}|A[A-Z]{0,2}|N[A-Z]{0,2})$")

_ZONE = r"(?i:zones?)\s+"

# "ZONE A URBANISER" is the unaccented "zone à urbaniser" heading, not zone A
_NOT_URBANISER = r"(?!\s+(?i:urbanis))"

# Eight independent scans. Each captures the zone code in group 1.
ZONE_CODE_PATTERNS: Tuple[re.Pattern, ...] = (
    # "zone UA", "ZONE UB"
    re.compile(_ZONE + r"(U[A-Z]{0,2}[a-z]?)(?![\w])"),
    # "zone 1AU", "zone AUh"
    re.compile(_ZONE + r"([1-9]?AU[A-Z]{0,2}[a-z]?)(?![\w])"),
    # "zone A", "zone Np"
    re.compile(_ZONE + r"([AN][A-Z]?[a-z]?)(?![\w])" + _NOT_URBANISER),
    # chapter headings at line start: "UA - Zone urbaine centrale", "UB : ..."
    re.compile(r"(?m)^\s*(U[A-Z]{1,2})\s*[-–:]"),
    # future-urbanization codes are distinctive enough to take anywhere
    re.compile(r"(?<![\w])([1-9]AU[A-Z]{0,2})(?![\w])"),
    # "dispositions applicables à la zone UC"
    re.compile(r"(?i:dispositions\s+applicables\s+(?:à|a|aux)\s+(?:la\s+)?zones?)\s+([1-9]?[A-Z]{1,3}[a-z]?)(?![\w])" + _NOT_URBANISER),
    # "zone agricole (A)", "zone agricole - Ap"
    re.compile(r"(?i:zones?\s+agricoles?)\s*[(\-–:]?\s*(A[a-z]?)(?![\w])"),
    # "zone naturelle et forestière (N)"
    re.compile(r"(?i:zones?\s+naturelles?(?:\s+et\s+foresti[èe]res?)?)\s*[(\-–:]?\s*(N[a-z]?)(?![\w])"),
)


def normalize_zone_code(code: Optional[str]) -> str:
    """Trim, uppercase, strip a leading "ZONE " prefix."""
    if not code:
        return ""
    c = code.strip().upper()
    c = _ZONE_PREFIX_RE.sub("", c)
    return c.strip()


def is_valid_zone_code(code: str) -> bool:
    return bool(_ZONE_CODE_SHAPE_RE.match(code))


def scan_zone_codes(text: str, max_zones: int = 15) -> List[str]:
    """
    Pattern-scan tier. Every pattern runs over the full text; hits are ordered by
    first position in the document, so the result does not depend on the order
    the patterns are evaluated in.
    """
    first_seen: Dict[str, int] = {}
    for pat in ZONE_CODE_PATTERNS:
        for m in pat.finditer(text):
            code = normalize_zone_code(m.group(1))
            if not is_valid_zone_code(code):
                continue
            pos = m.start(1)
            if code not in first_seen or pos < first_seen[code]:
                first_seen[code] = pos

    ordered = sorted(first_seen.items(), key=lambda kv: (kv[1], kv[0]))
    return [code for code, _ in ordered][:max_zones]


def build_fallback_excerpt(text: str, cfg: DiscoveryConfig = DiscoveryConfig()) -> str:
    """Head, middle and tail windows of the document, joined with elision markers."""
    w = cfg.fallback_window_chars
    if len(text) <= 3 * w:
        return text
    mid_start = max(0, len(text) // 2 - w // 2)
    parts = [text[:w], text[mid_start: mid_start + w], text[-w:]]
    return cfg.elision_marker.join(parts)


def _dedupe_candidates(candidates: List[ZoneCandidate], max_zones: int) -> List[ZoneCandidate]:
    seen = set()
    out: List[ZoneCandidate] = []
    for c in candidates:
        code = normalize_zone_code(c.zone_code)
        if not code or code in seen:
            continue
        seen.add(code)
        out.append(ZoneCandidate(zone_code=code, zone_libelle=c.zone_libelle))
        if len(out) >= max_zones:
            break
    return out


def discover_zones(
    text: str,
    extractor: Optional[ZoneExtractor],
    cfg: DiscoveryConfig = DiscoveryConfig(),
) -> DiscoveryResult:
    """
    Two-tier discovery:
      1) pattern scan over the whole document
      2) only if (1) found nothing: the external extraction call on three excerpts

    A failing fallback never raises; it yields an empty zone list plus a warning.
    """
    codes = scan_zone_codes(text, max_zones=cfg.max_zones)
    if codes:
        logger.info("Discovery (regex): %d zone(s): %s", len(codes), ", ".join(codes))
        return DiscoveryResult(
            zones=[ZoneCandidate(zone_code=c) for c in codes],
            used_discovery="regex",
        )

    warnings: List[str] = ["DISCOVERY_REGEX_EMPTY"]
    if extractor is None:
        warnings.append("DISCOVERY_LLM_UNAVAILABLE")
        return DiscoveryResult(zones=[], used_discovery="llm", warnings=warnings)

    try:
        raw = extractor.discover_zones(build_fallback_excerpt(text, cfg))
        response = decode_discovery_response(raw)
    except ExtractionError as e:
        logger.warning("Discovery fallback returned unusable output: %s", e)
        warnings.append("DISCOVERY_LLM_INVALID_OUTPUT")
        return DiscoveryResult(zones=[], used_discovery="llm", warnings=warnings)
    except Exception as e:
        logger.warning("Discovery fallback call failed: %s", e)
        warnings.append(f"DISCOVERY_LLM_FAILED: {type(e).__name__}")
        return DiscoveryResult(zones=[], used_discovery="llm", warnings=warnings)

    zones = _dedupe_candidates(list(response.zones), cfg.max_zones)
    if not zones:
        warnings.append("DISCOVERY_LLM_EMPTY")
    logger.info("Discovery (llm): %d zone(s)", len(zones))
    return DiscoveryResult(
        zones=zones,
        used_discovery="llm",
        plu_version_label=response.plu_version_label,
        warnings=warnings,
    )
