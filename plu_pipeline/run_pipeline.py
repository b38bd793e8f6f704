# plu_pipeline/run_pipeline.py
from __future__ import annotations

import argparse
import logging
import os
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Sequence, Tuple

from pydantic import ValidationError

from plu_schemas.schemas_pipeline import (
    PipelineRequest,
    PipelineResult,
    RunMeta,
    ZoneCandidate,
    ZoneRulesetEntry,
    ZoneStatus,
)

from .contracts import DiscoveryResult, PipelineError, ZoneExtractor
from .discovery import DiscoveryConfig, discover_zones, normalize_zone_code
from .excerpts import ExcerptConfig, build_zone_excerpts
from .extract import decode_zone_ruleset
from .ingest import is_text_usable, normalize_document_text
from .metadata import extract_plu_version_label
from .normalize import NormalizeConfig, failed_ruleset, is_failed_ruleset, repair_zone_ruleset
from .source_to_text import SourceConfig, decode_document, fetch_document

logger = logging.getLogger(__name__)

Fetcher = Callable[[str, SourceConfig], bytes]
Decoder = Callable[[bytes], str]


@dataclass(frozen=True)
class PipelineConfig:
    max_target_zones: int = 12
    min_text_chars: int = 200
    # > 1 runs zone extraction on a thread pool; output order is unchanged
    zone_concurrency: int = 1
    source: SourceConfig = field(default_factory=SourceConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    excerpt: ExcerptConfig = field(default_factory=ExcerptConfig)
    normalize: NormalizeConfig = field(default_factory=NormalizeConfig)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PipelineConfig":
        env = os.environ if environ is None else environ
        default = cls()
        return cls(
            max_target_zones=int(env.get("PLU_MAX_ZONES", default.max_target_zones)),
            min_text_chars=int(env.get("PLU_MIN_TEXT_CHARS", default.min_text_chars)),
            zone_concurrency=int(env.get("PLU_ZONE_CONCURRENCY", default.zone_concurrency)),
            source=SourceConfig(
                fetch_timeout_s=float(env.get("PLU_FETCH_TIMEOUT_S", default.source.fetch_timeout_s)),
            ),
        )


@dataclass(frozen=True)
class TargetSelection:
    targets: Sequence[ZoneCandidate]
    warnings: Sequence[str] = ()
    truncated: bool = False
    target_zone_mode: bool = False
    target_zone_code: Optional[str] = None
    target_zone_in_discovery: Optional[bool] = None


@dataclass(frozen=True)
class ZoneOutcome:
    entry: ZoneRulesetEntry
    warnings: Tuple[str, ...] = ()


# ----------------------------
# Stages
# ----------------------------

def load_source_text(
    request: PipelineRequest,
    cfg: PipelineConfig,
    fetcher: Fetcher = fetch_document,
    decoder: Decoder = decode_document,
) -> str:
    if request.source_text:
        return request.source_text
    if not request.source_url:
        raise PipelineError("MISSING_PARAMS", "source_text or source_url is required")
    return decoder(fetcher(request.source_url, cfg.source))


def select_targets(
    discovery: DiscoveryResult,
    target_zone_code: Optional[str],
    cfg: PipelineConfig,
) -> TargetSelection:
    """
    standard mode: every discovered zone, capped at max_target_zones
    single-target mode: the requested zone, whether discovered or not
    """
    target = normalize_zone_code(target_zone_code)
    if target:
        for z in discovery.zones:
            if z.zone_code == target:
                return TargetSelection(
                    targets=[z],
                    target_zone_mode=True,
                    target_zone_code=target,
                    target_zone_in_discovery=True,
                )
        return TargetSelection(
            targets=[ZoneCandidate(zone_code=target)],
            warnings=[f"TARGET_ZONE_NOT_IN_DISCOVERY: {target}"],
            target_zone_mode=True,
            target_zone_code=target,
            target_zone_in_discovery=False,
        )

    zones = list(discovery.zones)
    if len(zones) > cfg.max_target_zones:
        return TargetSelection(
            targets=zones[: cfg.max_target_zones],
            warnings=[f"ZONES_TRUNCATED: {len(zones)} -> {cfg.max_target_zones}"],
            truncated=True,
        )
    return TargetSelection(targets=zones)


def process_zone(
    text: str,
    candidate: ZoneCandidate,
    known_codes: Sequence[str],
    extractor: ZoneExtractor,
    cfg: PipelineConfig,
) -> ZoneOutcome:
    """
    BUILD_EXCERPTS -> EXTERNAL_EXTRACT -> NORMALIZE for one zone.
    Any failure is contained here and becomes a placeholder ruleset.
    """
    code = candidate.zone_code
    logger.info("Zone %s: extracting", code)
    try:
        excerpts = build_zone_excerpts(text, code, known_codes, cfg.excerpt)
        if excerpts.is_empty:
            logger.info("Zone %s: no excerpt located in the document", code)
        raw = decode_zone_ruleset(extractor.extract_zone(candidate, excerpts))
    except Exception as e:
        logger.warning("Zone %s: extraction failed (%s: %s)", code, type(e).__name__, e)
        return ZoneOutcome(
            entry=ZoneRulesetEntry(
                zone_code=code,
                zone_libelle=candidate.zone_libelle,
                status=ZoneStatus.FAILED,
                ruleset=failed_ruleset(cfg.normalize),
            ),
            warnings=(f"ZONE_{code}_LLM_FAILED",),
        )

    return ZoneOutcome(
        entry=ZoneRulesetEntry(
            zone_code=code,
            zone_libelle=candidate.zone_libelle,
            status=ZoneStatus.OK,
            ruleset=repair_zone_ruleset(raw, cfg.normalize),
        )
    )


def _run_zone_tasks(
    text: str,
    targets: Sequence[ZoneCandidate],
    known_codes: Sequence[str],
    extractor: ZoneExtractor,
    cfg: PipelineConfig,
) -> List[ZoneOutcome]:
    def task(candidate: ZoneCandidate) -> ZoneOutcome:
        return process_zone(text, candidate, known_codes, extractor, cfg)

    if cfg.zone_concurrency <= 1 or len(targets) <= 1:
        return [task(t) for t in targets]

    # map() yields in submission order
    with ThreadPoolExecutor(max_workers=min(cfg.zone_concurrency, len(targets))) as pool:
        return list(pool.map(task, targets))


def _failed_result(request: PipelineRequest, code: str, warnings: List[str]) -> PipelineResult:
    return PipelineResult(
        success=False,
        status="FAILED",
        error=code,
        commune_insee=request.document_identifier,
        commune_nom=request.document_nom,
        source_document=request.source_url or ("inline" if request.source_text else None),
        warnings=warnings,
    )


def run_pipeline(
    request: PipelineRequest,
    extractor: ZoneExtractor,
    cfg: PipelineConfig = PipelineConfig(),
    fetcher: Fetcher = fetch_document,
    decoder: Decoder = decode_document,
) -> PipelineResult:
    """
    DISCOVER -> SELECT_TARGETS -> (per zone: BUILD_EXCERPTS -> EXTERNAL_EXTRACT -> NORMALIZE) -> AGGREGATE

    Only fatal conditions (missing params, fetch/decode failure, unusable text)
    produce status FAILED; everything else is absorbed into warnings and nulls.
    """
    warnings: List[str] = []
    logger.info(
        "Request: %s (%s) source=%s target=%s",
        request.document_identifier,
        request.document_nom or "?",
        request.source_url or "inline",
        request.target_zone_code,
    )

    try:
        if not request.document_identifier or not (request.source_text or request.source_url):
            raise PipelineError("MISSING_PARAMS", "document_identifier and a source are required")

        text = normalize_document_text(load_source_text(request, cfg, fetcher, decoder))
        if not is_text_usable(text, cfg.min_text_chars):
            raise PipelineError("TEXT_TOO_SHORT", f"{len(text)} characters after normalization")

        # DISCOVER
        discovery = discover_zones(text, extractor, cfg.discovery)
        warnings.extend(discovery.warnings)
        version_label = extract_plu_version_label(text) or discovery.plu_version_label

        # SELECT_TARGETS
        selection = select_targets(discovery, request.target_zone_code, cfg)
        warnings.extend(selection.warnings)

        meta = RunMeta(
            used_discovery=discovery.used_discovery,
            zones_discovered=len(discovery.zones),
            zones_truncated=selection.truncated,
            target_zone_mode=selection.target_zone_mode,
            target_zone_code=selection.target_zone_code,
            target_zone_in_discovery=selection.target_zone_in_discovery,
            text_length=len(text),
        )
        base = dict(
            commune_insee=request.document_identifier,
            commune_nom=request.document_nom,
            plu_version_label=version_label,
            source_document=request.source_url or "inline",
        )

        if not selection.targets:
            warnings.append("NO_ZONES_FOUND")
            logger.warning("No zones found in %s", request.document_identifier)
            return PipelineResult(success=False, status="NO_ZONES_FOUND", warnings=warnings, meta=meta, **base)

        known_codes = discovery.zone_codes + [t.zone_code for t in selection.targets]
        outcomes = _run_zone_tasks(text, selection.targets, known_codes, extractor, cfg)

        # AGGREGATE
        entries = [o.entry for o in outcomes]
        for o in outcomes:
            warnings.extend(o.warnings)
        failed = sum(1 for e in entries if e.status == ZoneStatus.FAILED)
        success = any(not is_failed_ruleset(e.ruleset, cfg.normalize) for e in entries)

        meta = meta.model_copy(update={"zones_processed": len(entries), "zones_failed": failed})
        logger.info("Done: %d zone(s), %d failed, success=%s", len(entries), failed, success)
        return PipelineResult(
            success=success,
            status="OK",
            zones_rulesets=entries,
            warnings=warnings,
            meta=meta,
            **base,
        )

    except PipelineError as e:
        logger.error("Run failed: %s", e)
        return _failed_result(request, e.code, warnings)
    except Exception:
        logger.exception("Unexpected error while processing %s", request.document_identifier)
        return _failed_result(request, "INTERNAL_ERROR", warnings)


# ----------------------------
# CLI
# ----------------------------

def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def _input_path(path_str: str) -> Path:
    path = Path(path_str)
    if not path.is_file():
        raise PipelineError("MISSING_PARAMS", f"input file not found: {path}")
    return path


def _build_request(args: argparse.Namespace) -> PipelineRequest:
    if args.request:
        path = _input_path(args.request)
        try:
            return PipelineRequest.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as e:
            raise PipelineError("MISSING_PARAMS", f"invalid request in {path}: {e}") from e

    source_text = None
    if args.pdf or args.text:
        path = _input_path(args.pdf or args.text)
        source_text = decode_document(path.read_bytes())

    return PipelineRequest(
        document_identifier=args.insee,
        document_nom=args.nom,
        source_text=source_text,
        source_url=args.url,
        target_zone_code=args.zone,
    )


def write_result(path_str: str, result: PipelineResult) -> Path:
    path = Path(path_str)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(result.model_dump_json(indent=2) + "\n", encoding="utf-8")
    return path


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Extract per-zone planning rules from a PLU document.")
    src = parser.add_mutually_exclusive_group(required=True)
    src.add_argument("--url", type=str, default=None, help="URL of the PLU document (PDF or HTML)")
    src.add_argument("--pdf", type=str, default=None, help="Path to a local PLU PDF")
    src.add_argument("--text", type=str, default=None, help="Path to a local plain-text PLU")
    src.add_argument("--request", type=str, default=None, help="Path to a JSON PipelineRequest")
    parser.add_argument("--insee", type=str, default=None, help="Commune INSEE code (document identifier)")
    parser.add_argument("--nom", type=str, default=None, help="Commune name")
    parser.add_argument("--zone", type=str, default=None, help="Only extract this zone code")
    parser.add_argument(
        "--model",
        type=str,
        default=os.environ.get("PLU_MODEL_ID"),
        help="Local model id or path (defaults to $PLU_MODEL_ID)",
    )
    parser.add_argument("--out", type=str, default="outputs/plu_rules.json", help="Output JSON path")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    configure_logging(logging.DEBUG if args.verbose else logging.INFO)

    try:
        request = _build_request(args)
    except PipelineError as e:
        print(f"❌ {e}")
        return 1

    # Import locally so torch/transformers load only when actually running
    from .extract import LocalLLMExtractor
    from .llm import DEFAULT_MODEL_ID, LocalLLM

    extractor = LocalLLMExtractor(LocalLLM(args.model or DEFAULT_MODEL_ID))
    result = run_pipeline(request, extractor, PipelineConfig.from_env())

    write_result(args.out, result)
    print(f"✅ Wrote {args.out} ({len(result.zones_rulesets)} zone(s), success={result.success})")
    for w in result.warnings:
        print(f" - {w}")
    return 0 if result.status != "FAILED" else 1


if __name__ == "__main__":
    raise SystemExit(main())
