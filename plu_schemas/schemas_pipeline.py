# plu_schemas/schemas_pipeline.py
from __future__ import annotations

from enum import Enum
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .schemas_rules import ZoneRuleset


class ZoneCandidate(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    zone_code: str = Field(..., min_length=1)
    zone_libelle: Optional[str] = None

    @field_validator("zone_libelle", mode="before")
    @classmethod
    def _libelle(cls, v: Any) -> Optional[str]:
        if not isinstance(v, str) or not v.strip():
            return None
        return v.strip()


class DiscoveryResponse(BaseModel):
    """Shape expected back from the discovery extraction call."""
    model_config = ConfigDict(extra="ignore")

    plu_version_label: Optional[str] = None
    zones: List[ZoneCandidate] = Field(default_factory=list)

    @field_validator("plu_version_label", mode="before")
    @classmethod
    def _label(cls, v: Any) -> Optional[str]:
        if not isinstance(v, str) or not v.strip():
            return None
        return v.strip()[:100]

    @field_validator("zones", mode="before")
    @classmethod
    def _zones(cls, v: Any) -> List[Any]:
        if not isinstance(v, list):
            return []
        # drop entries that cannot possibly be zones instead of failing the whole response
        return [z for z in v if isinstance(z, dict) and isinstance(z.get("zone_code"), str) and z["zone_code"].strip()]


class PipelineRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # INSEE code of the commune in practice
    document_identifier: Optional[str] = None
    document_nom: Optional[str] = None

    source_text: Optional[str] = None
    source_url: Optional[str] = None

    target_zone_code: Optional[str] = None


class ZoneStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"


class ZoneRulesetEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    zone_code: str
    zone_libelle: Optional[str] = None
    status: ZoneStatus = ZoneStatus.OK
    ruleset: ZoneRuleset


class RunMeta(BaseModel):
    model_config = ConfigDict(extra="forbid")

    used_discovery: Optional[Literal["regex", "llm"]] = None
    zones_discovered: int = 0
    zones_processed: int = 0
    zones_failed: int = 0
    zones_truncated: bool = False

    target_zone_mode: bool = False
    target_zone_code: Optional[str] = None
    target_zone_in_discovery: Optional[bool] = None

    text_length: int = 0


class PipelineResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool
    status: Literal["OK", "NO_ZONES_FOUND", "FAILED"] = "OK"
    # set only for fatal conditions (MISSING_PARAMS, FETCH_ERROR, ...)
    error: Optional[str] = None

    commune_insee: Optional[str] = None
    commune_nom: Optional[str] = None
    plu_version_label: Optional[str] = None
    source_document: Optional[str] = None

    zones_rulesets: List[ZoneRulesetEntry] = Field(default_factory=list)

    warnings: List[str] = Field(default_factory=list)
    meta: RunMeta = Field(default_factory=RunMeta)
