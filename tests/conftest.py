from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

import pytest

from plu_pipeline.contracts import ZoneExcerptSet
from plu_schemas.schemas_pipeline import ZoneCandidate

DEFAULT_ZONE_RESPONSE: Dict[str, Any] = {
    "voirie": {"regle": "FIXED", "min_m": 5, "note": "recul de 5 m par rapport à l'alignement"},
    "limites_separatives": {"regle": None, "min_m": None, "note": "au moins égale à H/2 avec un minimum de 3 m"},
    "fond_parcelle": None,
    "implantation_en_limite": {"autorisee": None, "note": "Les constructions peuvent s'implanter en limite séparative"},
    "stationnement": {"note": "2 places par logement"},
    "hauteur": {"hauteur_max_m": None, "note": "hauteur maximale : 12 m"},
    "emprise_sol": {"emprise_sol_max": 60, "note": None},
    "articles_source": ["Article 6", "Article 7", "Article 10"],
}

ZONE_PARAGRAPH = (
    "Caractère de la zone : secteur urbain mixte. Les constructions respectent un recul "
    "de 5 m par rapport aux voies et une hauteur maximale de 12 m au faîtage.\n"
    "Les clôtures sur rue sont constituées d'un mur bahut surmonté d'une grille ou d'une haie vive.\n"
)


class FakeExtractor:
    """Scripted ZoneExtractor: records calls, fails on demand."""

    def __init__(
        self,
        zone_responses: Optional[Dict[str, Any]] = None,
        fail_zones: Iterable[str] = (),
        discovery_response: Any = None,
        discovery_error: Optional[Exception] = None,
    ) -> None:
        self.zone_responses = zone_responses or {}
        self.fail_zones = set(fail_zones)
        self.discovery_response = discovery_response
        self.discovery_error = discovery_error
        self.zone_calls: List[Tuple[str, ZoneExcerptSet]] = []
        self.discovery_calls: List[str] = []

    def discover_zones(self, document_excerpt: str) -> Any:
        self.discovery_calls.append(document_excerpt)
        if self.discovery_error is not None:
            raise self.discovery_error
        if self.discovery_response is None:
            return {"plu_version_label": None, "zones": []}
        return self.discovery_response

    def extract_zone(self, candidate: ZoneCandidate, excerpts: ZoneExcerptSet) -> Any:
        self.zone_calls.append((candidate.zone_code, excerpts))
        if candidate.zone_code in self.fail_zones:
            raise RuntimeError(f"simulated failure for {candidate.zone_code}")
        return self.zone_responses.get(candidate.zone_code, DEFAULT_ZONE_RESPONSE)


def build_zone_document(codes: Iterable[str], header: str = "REGLEMENT ECRIT\n\n") -> str:
    parts = [header]
    for code in codes:
        parts.append(f"ZONE {code}\n")
        parts.append(ZONE_PARAGRAPH)
        parts.append("\n")
    return "".join(parts)


@pytest.fixture
def fake_extractor():
    return FakeExtractor


@pytest.fixture
def zone_document():
    return build_zone_document


@pytest.fixture
def default_zone_response():
    return dict(DEFAULT_ZONE_RESPONSE)
