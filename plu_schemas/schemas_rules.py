# plu_schemas/schemas_rules.py
from __future__ import annotations

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RuleType(str, Enum):
    FIXED = "FIXED"
    H_OVER_2 = "H_OVER_2"
    H_OVER_2_MIN = "H_OVER_2_MIN"


SETBACK_GROUPS = ("voirie", "limites_separatives", "fond_parcelle")


# ----------------------------
# Canonical output (strict)
# ----------------------------

class SetbackRule(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    regle: Optional[RuleType] = None
    min_m: Optional[float] = Field(default=None, ge=0)
    note: Optional[str] = None


class BoundaryPlacement(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    autorisee: Optional[bool] = None
    note: Optional[str] = None


class ParkingRule(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    places_par_logement: Optional[float] = Field(default=None, ge=0)
    surface_par_place_m2: Optional[float] = Field(default=None, ge=0)
    places_par_100m2: Optional[float] = Field(default=None, ge=0)
    note: Optional[str] = None


class HeightRule(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    hauteur_max_m: Optional[float] = Field(default=None, ge=0)
    note: Optional[str] = None


class FootprintRule(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # Always a fraction; percentages are converted before construction.
    emprise_sol_max: Optional[float] = Field(default=None, ge=0, le=1)
    note: Optional[str] = None


class ZoneRuleset(BaseModel):
    """
    Canonical per-zone ruleset. Built once by the repair pass
    (plu_pipeline/normalize.py) and never mutated afterwards.
    """
    model_config = ConfigDict(extra="forbid", frozen=True)

    voirie: SetbackRule = Field(default_factory=SetbackRule)
    limites_separatives: SetbackRule = Field(default_factory=SetbackRule)
    fond_parcelle: SetbackRule = Field(default_factory=SetbackRule)
    implantation_en_limite: BoundaryPlacement = Field(default_factory=BoundaryPlacement)
    stationnement: ParkingRule = Field(default_factory=ParkingRule)
    hauteur: HeightRule = Field(default_factory=HeightRule)
    emprise_sol: FootprintRule = Field(default_factory=FootprintRule)
    articles_source: List[str] = Field(default_factory=list)

    def leaf_notes(self) -> List[Optional[str]]:
        return [
            self.voirie.note,
            self.limites_separatives.note,
            self.fond_parcelle.note,
            self.implantation_en_limite.note,
            self.stationnement.note,
            self.hauteur.note,
            self.emprise_sol.note,
        ]


# ----------------------------
# Untrusted input (lenient)
# ----------------------------
#
# What the extraction call returns. Field values are coerced at decode time
# so the repair pass never sees a wrong type: unparsable numbers and unknown
# tags become None, extra keys are ignored.

def _coerce_number(v: Any) -> Optional[float]:
    # local import: numeric.py depends on this module's RuleType
    from plu_pipeline.numeric import parse_decimal

    return parse_decimal(v)


def _coerce_note(v: Any) -> Optional[str]:
    if v is None:
        return None
    if isinstance(v, str):
        return v
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return str(v)
    return None


class _RawGroup(BaseModel):
    model_config = ConfigDict(extra="ignore")

    note: Optional[str] = None

    @field_validator("note", mode="before")
    @classmethod
    def _note(cls, v: Any) -> Optional[str]:
        return _coerce_note(v)


class RawSetbackRule(_RawGroup):
    regle: Optional[RuleType] = None
    min_m: Optional[float] = None

    @field_validator("regle", mode="before")
    @classmethod
    def _regle(cls, v: Any) -> Optional[str]:
        if not isinstance(v, str):
            return None
        key = v.strip().upper().replace("/", "_OVER_").replace(" ", "_")
        aliases = {
            "H_OVER_2": "H_OVER_2",
            "H_OVER_2_MIN": "H_OVER_2_MIN",
            "H2": "H_OVER_2",
            "H2_MIN": "H_OVER_2_MIN",
            "FIXED": "FIXED",
            "FIXE": "FIXED",
        }
        return aliases.get(key)

    @field_validator("min_m", mode="before")
    @classmethod
    def _min_m(cls, v: Any) -> Optional[float]:
        return _coerce_number(v)


class RawBoundaryPlacement(_RawGroup):
    autorisee: Optional[bool] = None

    @field_validator("autorisee", mode="before")
    @classmethod
    def _autorisee(cls, v: Any) -> Optional[bool]:
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            key = v.strip().lower()
            if key in {"true", "oui", "yes"}:
                return True
            if key in {"false", "non", "no"}:
                return False
        return None


class RawParkingRule(_RawGroup):
    places_par_logement: Optional[float] = None
    surface_par_place_m2: Optional[float] = None
    places_par_100m2: Optional[float] = None

    @field_validator("places_par_logement", "surface_par_place_m2", "places_par_100m2", mode="before")
    @classmethod
    def _numbers(cls, v: Any) -> Optional[float]:
        return _coerce_number(v)


class RawHeightRule(_RawGroup):
    hauteur_max_m: Optional[float] = None

    @field_validator("hauteur_max_m", mode="before")
    @classmethod
    def _number(cls, v: Any) -> Optional[float]:
        return _coerce_number(v)


class RawFootprintRule(_RawGroup):
    emprise_sol_max: Optional[float] = None

    @field_validator("emprise_sol_max", mode="before")
    @classmethod
    def _number(cls, v: Any) -> Optional[float]:
        if isinstance(v, str):
            v = v.replace("%", "")
        return _coerce_number(v)


class RawZoneRuleset(BaseModel):
    model_config = ConfigDict(extra="ignore")

    voirie: Optional[RawSetbackRule] = None
    limites_separatives: Optional[RawSetbackRule] = None
    fond_parcelle: Optional[RawSetbackRule] = None
    implantation_en_limite: Optional[RawBoundaryPlacement] = None
    stationnement: Optional[RawParkingRule] = None
    hauteur: Optional[RawHeightRule] = None
    emprise_sol: Optional[RawFootprintRule] = None
    articles_source: List[str] = Field(default_factory=list)

    @field_validator(
        "voirie",
        "limites_separatives",
        "fond_parcelle",
        "implantation_en_limite",
        "stationnement",
        "hauteur",
        "emprise_sol",
        mode="before",
    )
    @classmethod
    def _group(cls, v: Any) -> Any:
        # a group that is not an object is treated as absent
        return v if isinstance(v, (dict, BaseModel)) else None

    @field_validator("articles_source", mode="before")
    @classmethod
    def _articles(cls, v: Any) -> List[str]:
        if isinstance(v, str):
            v = [v]
        if not isinstance(v, list):
            return []
        out: List[str] = []
        for item in v:
            if isinstance(item, (str, int)) and not isinstance(item, bool):
                out.append(str(item))
        return out
