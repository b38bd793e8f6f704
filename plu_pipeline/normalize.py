# plu_pipeline/normalize.py
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, List, Optional

from pydantic import ValidationError

from plu_schemas.schemas_rules import (
    BoundaryPlacement,
    FootprintRule,
    HeightRule,
    ParkingRule,
    RawBoundaryPlacement,
    RawFootprintRule,
    RawHeightRule,
    RawParkingRule,
    RawSetbackRule,
    RawZoneRuleset,
    RuleType,
    SetbackRule,
    ZoneRuleset,
)

from .numeric import (
    classify_setback_rule,
    clean_note,
    extract_area_per_space,
    extract_footprint_ratio,
    extract_height_max,
    extract_linear_meters,
    extract_min_distance,
    extract_places_per_100m2,
    extract_places_per_dwelling,
    normalize_ratio,
)

FAILURE_SENTINEL = "LLM_EXTRACTION_FAILED"

_WS_RE = re.compile(r"\s+")

# checked before the positive idioms: "ne peuvent pas s'implanter en limite"
_LIMIT_FORBIDDEN_RE = re.compile(
    r"interdite?s?\s+en\s+limite"
    r"|ne\s+(?:peu(?:t|vent)|doi(?:t|vent))\s+pas\s+s['’]implanter\s+en\s+limite"
    r"|implantation\s+en\s+limite[^.\n]{0,30}?interdite"
    r"|retrait\s+obligatoire",
    re.IGNORECASE,
)
_LIMIT_ALLOWED_RE = re.compile(
    r"(?:autoris[ée]e?s?|admise?s?|possible)\s+en\s+limite"
    r"|(?:peu(?:t|vent)|doi(?:t|vent))\s+s['’]implanter\s+(?:sur\s+(?:une|les)\s+|en\s+)limites?"
    r"|implantation\s+en\s+limite[^.\n]{0,30}?(?:autoris|admis|possible)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class NormalizeConfig:
    note_max_len: int = 200
    failure_sentinel: str = FAILURE_SENTINEL


def _non_negative(v: Optional[float]) -> Optional[float]:
    if v is None or v < 0:
        return None
    return v


def infer_boundary_permission(note: Optional[str]) -> Optional[bool]:
    if not note:
        return None
    if _LIMIT_FORBIDDEN_RE.search(note):
        return False
    if _LIMIT_ALLOWED_RE.search(note):
        return True
    return None


def reconcile_rule_type(regle: Optional[RuleType], min_m: Optional[float]) -> Optional[RuleType]:
    """A fixed floor alongside plain H/2 means H/2-with-minimum."""
    if min_m is None:
        return regle
    if regle == RuleType.H_OVER_2:
        return RuleType.H_OVER_2_MIN
    if regle is None:
        return RuleType.FIXED
    return regle


def repair_setback(raw: Optional[RawSetbackRule], cfg: NormalizeConfig = NormalizeConfig()) -> SetbackRule:
    raw = raw or RawSetbackRule()
    note = raw.note

    regle = raw.regle
    derived = classify_setback_rule(note)
    if regle is None:
        regle = derived
    elif regle == RuleType.FIXED and derived in (RuleType.H_OVER_2, RuleType.H_OVER_2_MIN):
        # the note contradicts the tag; the justification text wins
        regle = derived

    min_m = _non_negative(raw.min_m)
    if min_m is None:
        min_m = extract_min_distance(note)
    if min_m is None and regle in (None, RuleType.FIXED):
        min_m = extract_linear_meters(note)

    return SetbackRule(
        regle=reconcile_rule_type(regle, min_m),
        min_m=min_m,
        note=clean_note(note, cfg.note_max_len),
    )


def repair_boundary_placement(raw: Optional[RawBoundaryPlacement], cfg: NormalizeConfig = NormalizeConfig()) -> BoundaryPlacement:
    raw = raw or RawBoundaryPlacement()
    autorisee = raw.autorisee
    if autorisee is None:
        autorisee = infer_boundary_permission(raw.note)
    return BoundaryPlacement(autorisee=autorisee, note=clean_note(raw.note, cfg.note_max_len))


def repair_parking(raw: Optional[RawParkingRule], cfg: NormalizeConfig = NormalizeConfig()) -> ParkingRule:
    raw = raw or RawParkingRule()
    note = raw.note

    per_dwelling = _non_negative(raw.places_par_logement)
    if per_dwelling is None:
        per_dwelling = extract_places_per_dwelling(note)

    per_space = _non_negative(raw.surface_par_place_m2)
    if per_space is None:
        per_space = extract_area_per_space(note)

    per_100 = _non_negative(raw.places_par_100m2)
    if per_100 is None:
        per_100 = extract_places_per_100m2(note)

    return ParkingRule(
        places_par_logement=per_dwelling,
        surface_par_place_m2=per_space,
        places_par_100m2=per_100,
        note=clean_note(note, cfg.note_max_len),
    )


def repair_height(raw: Optional[RawHeightRule], cfg: NormalizeConfig = NormalizeConfig()) -> HeightRule:
    raw = raw or RawHeightRule()
    h = _non_negative(raw.hauteur_max_m)
    if h is None:
        h = extract_height_max(raw.note)
    return HeightRule(hauteur_max_m=h, note=clean_note(raw.note, cfg.note_max_len))


def repair_footprint(raw: Optional[RawFootprintRule], cfg: NormalizeConfig = NormalizeConfig()) -> FootprintRule:
    raw = raw or RawFootprintRule()
    ratio = normalize_ratio(raw.emprise_sol_max)
    if ratio is None:
        ratio = extract_footprint_ratio(raw.note)
    return FootprintRule(emprise_sol_max=ratio, note=clean_note(raw.note, cfg.note_max_len))


def _clean_articles(articles: List[str]) -> List[str]:
    out: List[str] = []
    seen = set()
    for a in articles:
        label = _WS_RE.sub(" ", a).strip()
        if label and label not in seen:
            seen.add(label)
            out.append(label)
    return out


def _coerce_raw(raw: Any) -> RawZoneRuleset:
    if isinstance(raw, RawZoneRuleset):
        return raw
    if isinstance(raw, dict):
        try:
            return RawZoneRuleset.model_validate(raw)
        except ValidationError:
            return RawZoneRuleset()
    return RawZoneRuleset()


def repair_zone_ruleset(raw: Any, cfg: NormalizeConfig = NormalizeConfig()) -> ZoneRuleset:
    """
    RawZoneRuleset -> ZoneRuleset.

    Each leaf group is repaired on its own: missing numbers are re-derived
    from that group's note, setback tags are reconciled with the distance.
    Total: anything it cannot resolve ends up None; every group is present.
    """
    r = _coerce_raw(raw)
    return ZoneRuleset(
        voirie=repair_setback(r.voirie, cfg),
        limites_separatives=repair_setback(r.limites_separatives, cfg),
        fond_parcelle=repair_setback(r.fond_parcelle, cfg),
        implantation_en_limite=repair_boundary_placement(r.implantation_en_limite, cfg),
        stationnement=repair_parking(r.stationnement, cfg),
        hauteur=repair_height(r.hauteur, cfg),
        emprise_sol=repair_footprint(r.emprise_sol, cfg),
        articles_source=_clean_articles(r.articles_source),
    )


def failed_ruleset(cfg: NormalizeConfig = NormalizeConfig()) -> ZoneRuleset:
    """All-null placeholder carrying the failure sentinel in every leaf note."""
    s = cfg.failure_sentinel
    return ZoneRuleset(
        voirie=SetbackRule(note=s),
        limites_separatives=SetbackRule(note=s),
        fond_parcelle=SetbackRule(note=s),
        implantation_en_limite=BoundaryPlacement(note=s),
        stationnement=ParkingRule(note=s),
        hauteur=HeightRule(note=s),
        emprise_sol=FootprintRule(note=s),
        articles_source=[],
    )


def is_failed_ruleset(ruleset: ZoneRuleset, cfg: NormalizeConfig = NormalizeConfig()) -> bool:
    # coarse: only the road-setback note is inspected
    return cfg.failure_sentinel in (ruleset.voirie.note or "")
