# plu_pipeline/contracts.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Protocol, Sequence, Tuple

from plu_schemas.schemas_pipeline import ZoneCandidate


# ---- Article slots ----
# Conventional article numbering of a PLU zone chapter:
#   6 = road setback, 7 = boundary setback, 9 = footprint, 10 = height, 12 = parking
ARTICLE_NUMBERS: Tuple[int, ...] = (6, 7, 9, 10, 12)
FALLBACK_SLOT = "fallback_context"


def article_slot(n: int) -> str:
    return f"article_{n}"


EXCERPT_SLOTS: Tuple[str, ...] = tuple(article_slot(n) for n in ARTICLE_NUMBERS) + (FALLBACK_SLOT,)

DiscoveryStrategy = Literal["regex", "llm"]


class PipelineError(Exception):
    """Fatal for the whole run. `code` is surfaced as PipelineResult.error."""

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(f"{code}: {message}" if message else code)
        self.code = code
        self.message = message


@dataclass(frozen=True)
class ZoneSpan:
    """[start, end) character range of one zone's chapter in the document."""
    zone_code: str
    start: int
    end: int


@dataclass(frozen=True)
class ZoneExcerptSet:
    """
    Bounded text windows for one zone, keyed by slot name
    (article_6, article_7, article_9, article_10, article_12, fallback_context).

    Every slot is always present; a slot with no match is "".
    """
    zone_code: str
    excerpts: Dict[str, str]
    span: Optional[ZoneSpan] = None

    def get(self, slot: str) -> str:
        return self.excerpts.get(slot, "")

    @property
    def is_empty(self) -> bool:
        return not any(self.excerpts.values())

    def found_articles(self) -> List[int]:
        return [n for n in ARTICLE_NUMBERS if self.get(article_slot(n))]


def empty_excerpt_set(zone_code: str) -> ZoneExcerptSet:
    return ZoneExcerptSet(zone_code=zone_code, excerpts={slot: "" for slot in EXCERPT_SLOTS})


@dataclass(frozen=True)
class DiscoveryResult:
    zones: Sequence[ZoneCandidate]
    used_discovery: DiscoveryStrategy
    plu_version_label: Optional[str] = None
    warnings: Sequence[str] = field(default_factory=tuple)

    @property
    def zone_codes(self) -> List[str]:
        return [z.zone_code for z in self.zones]


class ZoneExtractor(Protocol):
    """
    The external extraction call. Both methods return untrusted output
    (a JSON string or an already-parsed mapping); callers decode it with
    plu_pipeline/extract.py and treat any exception as a failure of that call.
    """

    def discover_zones(self, document_excerpt: str) -> Any:
        ...

    def extract_zone(self, candidate: ZoneCandidate, excerpts: ZoneExcerptSet) -> Any:
        ...
