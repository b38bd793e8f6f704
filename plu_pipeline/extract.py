# plu_pipeline/extract.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

from pydantic import ValidationError
from tenacity import Retrying, stop_after_attempt, wait_fixed

from plu_schemas.schemas_pipeline import DiscoveryResponse, ZoneCandidate
from plu_schemas.schemas_rules import RawZoneRuleset

from .contracts import ARTICLE_NUMBERS, FALLBACK_SLOT, ZoneExcerptSet, article_slot

if TYPE_CHECKING:
    from .llm import LocalLLM

logger = logging.getLogger(__name__)


class ExtractionError(Exception):
    pass


@dataclass(frozen=True)
class ExtractionConfig:
    # incremental decoding: generate step_tokens at a time until JSON parses
    step_tokens: int = 256
    hard_cap_tokens: int = 1800
    discovery_hard_cap_tokens: int = 768
    # 1 = a single failed call is terminal for that zone
    max_attempts: int = 1
    wait_seconds: float = 1.0
    # per excerpt slot, keeps the prompt inside a small model's context
    max_excerpt_chars: int = 3000


_ARTICLE_TITLES = {
    6: "Implantation par rapport aux voies et emprises publiques",
    7: "Implantation par rapport aux limites séparatives",
    9: "Emprise au sol",
    10: "Hauteur maximale des constructions",
    12: "Stationnement",
}

ZONE_RULESET_SHAPE: Dict[str, Any] = {
    "voirie": {"regle": "FIXED|H_OVER_2|H_OVER_2_MIN|null", "min_m": "number|null", "note": "string|null"},
    "limites_separatives": {"regle": "FIXED|H_OVER_2|H_OVER_2_MIN|null", "min_m": "number|null", "note": "string|null"},
    "fond_parcelle": {"regle": "FIXED|H_OVER_2|H_OVER_2_MIN|null", "min_m": "number|null", "note": "string|null"},
    "implantation_en_limite": {"autorisee": "true|false|null", "note": "string|null"},
    "stationnement": {
        "places_par_logement": "number|null",
        "surface_par_place_m2": "number|null",
        "places_par_100m2": "number|null",
        "note": "string|null",
    },
    "hauteur": {"hauteur_max_m": "number|null", "note": "string|null"},
    "emprise_sol": {"emprise_sol_max": "number|null (0.6 = 60%)", "note": "string|null"},
    "articles_source": ["Article 6", "Article 7"],
}

DISCOVERY_SHAPE: Dict[str, Any] = {
    "plu_version_label": "string|null",
    "zones": [{"zone_code": "UA", "zone_libelle": "Zone urbaine centrale"}],
}


# ----------------------------
# Prompts
# ----------------------------

def build_discovery_prompt(document_excerpt: str, max_zones: int = 15) -> str:
    return (
        "Tu es un moteur d'extraction de règles d'urbanisme (PLU) qui répond UNIQUEMENT en JSON.\n"
        "Un seul objet JSON. Pas de texte, pas de markdown.\n"
        "Le premier caractère doit être '{' et le dernier '}'.\n\n"
        "Tâche :\n"
        "- Liste les zones du PLU présentes dans le TEXTE (UA, UB, 1AU, 2AU, A, N, ...).\n"
        "- \"zone_code\" doit être simple, sans le mot 'zone'.\n"
        "- \"zone_libelle\" : intitulé de la zone s'il est écrit, sinon null.\n"
        "- \"plu_version_label\" : par exemple \"PLU Ascain 2020\" si déductible, sinon null.\n"
        f"- Au plus {max_zones} zones.\n\n"
        "Forme attendue :\n"
        f"{json.dumps(DISCOVERY_SHAPE, ensure_ascii=False)}\n\n"
        "TEXTE (extraits début / milieu / fin) :\n"
        f"{document_excerpt}\n\n"
        "JSON :\n"
    )


def build_zone_prompt(candidate: ZoneCandidate, excerpts: ZoneExcerptSet, max_excerpt_chars: int = 3000) -> str:
    blocks = []
    for n in ARTICLE_NUMBERS:
        txt = excerpts.get(article_slot(n))[:max_excerpt_chars]
        blocks.append(f"### Article {n} ({_ARTICLE_TITLES[n]})\n{txt or '(non trouvé)'}")
    fallback = excerpts.get(FALLBACK_SLOT)[:max_excerpt_chars]
    blocks.append(f"### Contexte général de la zone\n{fallback or '(non trouvé)'}")

    libelle = candidate.zone_libelle or "inconnu"
    return (
        "Tu es un moteur d'extraction de règles d'urbanisme (PLU) qui répond UNIQUEMENT en JSON.\n"
        "Un seul objet JSON. Pas de texte, pas de markdown.\n"
        "Le premier caractère doit être '{' et le dernier '}'.\n\n"
        "Règles :\n"
        "- N'invente rien : si une valeur n'est pas écrite dans le TEXTE, mets null.\n"
        "- Distances en mètres. Ne confonds pas m (distance) et m² (surface).\n"
        "- \"regle\" : FIXED (distance fixe), H_OVER_2 (moitié de la hauteur), "
        "H_OVER_2_MIN (moitié de la hauteur avec un minimum en mètres).\n"
        "- \"emprise_sol_max\" en décimal (0.6 = 60%).\n"
        "- \"note\" : courte citation ou reformulation fidèle du TEXTE justifiant la valeur.\n\n"
        f"Zone : {candidate.zone_code} (libellé : {libelle})\n\n"
        "Forme attendue :\n"
        f"{json.dumps(ZONE_RULESET_SHAPE, ensure_ascii=False)}\n\n"
        "TEXTE :\n"
        + "\n\n".join(blocks)
        + "\n\nJSON :\n"
    )


# ----------------------------
# JSON recovery
# ----------------------------

def recover_truncated_json(text: str) -> str | None:
    """
    Recover a truncated top-level JSON object by cutting back to the last point
    where a complete value was closed at depth 1 and closing what is still open.

    Only handles output that starts with '{'.
    """
    s = (text or "").strip()
    if not s.startswith("{"):
        return None

    in_str = False
    esc = False
    stack: list[str] = []
    last_safe_end = None
    closers_at_safe: list[str] = []

    for i, ch in enumerate(s):
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue

        if ch == '"':
            in_str = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]":
            if not stack:
                break
            stack.pop()
            # just closed a nested value; the document is cut-able here
            if stack:
                last_safe_end = i
                closers_at_safe = list(reversed(stack))

    if last_safe_end is None:
        return None

    cut = s[: last_safe_end + 1].rstrip()
    if cut.endswith(","):
        cut = cut[:-1].rstrip()
    return cut + "".join(closers_at_safe)


def parse_json_strict(text: str) -> Dict[str, Any]:
    text = (text or "").strip()
    if not text:
        raise ExtractionError("Empty model output")

    # 1) direct parse
    try:
        obj = json.loads(text)
        if isinstance(obj, dict):
            return obj
        raise ExtractionError(f"Model output is not a JSON object: {type(obj).__name__}")
    except json.JSONDecodeError:
        pass

    # 2) try first {...} span
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        candidate = text[start: end + 1].strip()
        try:
            obj = json.loads(candidate)
            if isinstance(obj, dict):
                return obj
        except json.JSONDecodeError:
            pass

    # 3) truncated output
    recovered = recover_truncated_json(text[start:] if start != -1 else text)
    if recovered is not None:
        try:
            obj = json.loads(recovered)
            if isinstance(obj, dict):
                obj.setdefault("_recovered", True)
                return obj
        except json.JSONDecodeError:
            pass

    raise ExtractionError(f"Invalid JSON output (unrecoverable). Output was:\n{text[:2000]}")


def _as_object(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, (str, bytes)):
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        return parse_json_strict(raw)
    raise ExtractionError(f"Unsupported model output type: {type(raw).__name__}")


# ----------------------------
# Strict decoding of untrusted output
# ----------------------------

def decode_discovery_response(raw: Any) -> DiscoveryResponse:
    obj = _as_object(raw)
    obj.pop("_recovered", None)
    try:
        return DiscoveryResponse.model_validate(obj)
    except ValidationError as e:
        raise ExtractionError(f"Discovery response failed validation: {e}") from e


def decode_zone_ruleset(raw: Any) -> RawZoneRuleset:
    obj = _as_object(raw)
    obj.pop("_recovered", None)
    # some models wrap the record: {"ruleset": {...}}
    if "ruleset" in obj and isinstance(obj["ruleset"], dict):
        obj = obj["ruleset"]
    try:
        return RawZoneRuleset.model_validate(obj)
    except ValidationError as e:
        raise ExtractionError(f"Zone ruleset failed validation: {e}") from e


# ----------------------------
# Local LM implementation of ZoneExtractor
# ----------------------------

class LocalLLMExtractor:
    """
    ZoneExtractor backed by a local instruction-tuned causal LM.

    Responses are forced to start with '{' (prevents document-continuation
    behaviour) and generated step_tokens at a time until they parse.
    """

    def __init__(self, llm: "LocalLLM", cfg: ExtractionConfig = ExtractionConfig()) -> None:
        self.llm = llm
        self.cfg = cfg

    def _generate_json(self, prompt: str, hard_cap_tokens: int) -> Dict[str, Any]:
        from .llm import GenerationConfig

        accumulated = "{"
        generated = 0

        while generated < hard_cap_tokens:
            raw = self.llm.generate_text(
                prompt,
                GenerationConfig(max_new_tokens=self.cfg.step_tokens),
                response_prefix=accumulated,
            )
            accumulated += raw
            generated += self.cfg.step_tokens
            if not raw:
                break
            try:
                obj = json.loads(accumulated)
                if isinstance(obj, dict):
                    return obj
            except json.JSONDecodeError:
                continue

        # includes truncation recovery
        return parse_json_strict(accumulated)

    def _call(self, prompt: str, hard_cap_tokens: int) -> Dict[str, Any]:
        retrying = Retrying(
            stop=stop_after_attempt(max(1, self.cfg.max_attempts)),
            wait=wait_fixed(self.cfg.wait_seconds),
            reraise=True,
        )
        return retrying(self._generate_json, prompt, hard_cap_tokens)

    def discover_zones(self, document_excerpt: str) -> Dict[str, Any]:
        prompt = build_discovery_prompt(document_excerpt)
        return self._call(prompt, self.cfg.discovery_hard_cap_tokens)

    def extract_zone(self, candidate: ZoneCandidate, excerpts: ZoneExcerptSet) -> Dict[str, Any]:
        prompt = build_zone_prompt(candidate, excerpts, self.cfg.max_excerpt_chars)
        logger.debug("Zone %s prompt: %d chars", candidate.zone_code, len(prompt))
        return self._call(prompt, self.cfg.hard_cap_tokens)
