import json
from unittest.mock import MagicMock

import pytest

from plu_pipeline.contracts import FALLBACK_SLOT, DiscoveryResult
from plu_pipeline.normalize import FAILURE_SENTINEL
from plu_pipeline.run_pipeline import PipelineConfig, main, run_pipeline, select_targets
from plu_pipeline.source_to_text import DocumentSourceError
from plu_schemas.schemas_pipeline import PipelineRequest, ZoneCandidate, ZoneStatus
from plu_schemas.schemas_rules import RuleType

NO_CODES_TEXT = (
    "Le présent règlement s'applique à l'ensemble du territoire communal. "
    "Il fixe les règles d'implantation, de hauteur et de stationnement des constructions. "
) * 4


def _request(text, **kwargs):
    return PipelineRequest(document_identifier="64065", document_nom="Ascain", source_text=text, **kwargs)


def test_two_zones_end_to_end(fake_extractor, zone_document):
    extractor = fake_extractor()
    result = run_pipeline(_request(zone_document(["UA", "UB"])), extractor)

    assert result.success is True
    assert result.status == "OK"
    assert result.error is None
    assert [e.zone_code for e in result.zones_rulesets] == ["UA", "UB"]
    assert result.commune_insee == "64065"
    assert result.commune_nom == "Ascain"
    assert result.source_document == "inline"
    assert result.meta.used_discovery == "regex"
    assert result.meta.zones_processed == 2
    assert result.warnings == []

    # no article headings in the document: only the fallback window is filled
    for _, excerpts in extractor.zone_calls:
        assert excerpts.get(FALLBACK_SLOT)
        assert excerpts.found_articles() == []


def test_rulesets_are_repaired(fake_extractor, zone_document):
    result = run_pipeline(_request(zone_document(["UA"])), fake_extractor())
    rs = result.zones_rulesets[0].ruleset
    assert rs.voirie.regle == RuleType.FIXED
    assert rs.voirie.min_m == 5.0
    assert rs.limites_separatives.regle == RuleType.H_OVER_2_MIN
    assert rs.limites_separatives.min_m == 3.0
    assert rs.implantation_en_limite.autorisee is True
    assert rs.stationnement.places_par_logement == 2.0
    assert rs.hauteur.hauteur_max_m == 12.0
    assert rs.emprise_sol.emprise_sol_max == pytest.approx(0.6)


def test_one_failing_zone_does_not_affect_the_others(fake_extractor, zone_document):
    extractor = fake_extractor(fail_zones={"UB"})
    result = run_pipeline(_request(zone_document(["UA", "UB", "UC"])), extractor)

    assert result.success is True
    assert [e.zone_code for e in result.zones_rulesets] == ["UA", "UB", "UC"]
    ua, ub, uc = result.zones_rulesets
    assert ua.status == ZoneStatus.OK
    assert uc.status == ZoneStatus.OK
    assert ub.status == ZoneStatus.FAILED
    assert all(note == FAILURE_SENTINEL for note in ub.ruleset.leaf_notes())
    assert ua.ruleset.voirie.min_m == 5.0
    assert "ZONE_UB_LLM_FAILED" in result.warnings
    assert result.meta.zones_failed == 1


def test_malformed_zone_output_is_a_zone_failure(fake_extractor, zone_document):
    extractor = fake_extractor(zone_responses={"UA": "pas du json"})
    result = run_pipeline(_request(zone_document(["UA", "UB"])), extractor)
    assert result.zones_rulesets[0].status == ZoneStatus.FAILED
    assert result.zones_rulesets[1].status == ZoneStatus.OK
    assert "ZONE_UA_LLM_FAILED" in result.warnings


def test_all_zones_failing_means_no_success(fake_extractor, zone_document):
    result = run_pipeline(_request(zone_document(["UA", "UB"])), fake_extractor(fail_zones={"UA", "UB"}))
    assert result.status == "OK"
    assert result.success is False
    assert len(result.zones_rulesets) == 2


def test_target_zone_not_discovered(fake_extractor, zone_document):
    extractor = fake_extractor()
    result = run_pipeline(_request(zone_document(["UA", "UB"]), target_zone_code="ug"), extractor)

    assert "TARGET_ZONE_NOT_IN_DISCOVERY: UG" in result.warnings
    assert [e.zone_code for e in result.zones_rulesets] == ["UG"]
    assert result.meta.target_zone_mode is True
    assert result.meta.target_zone_in_discovery is False
    assert len(extractor.zone_calls) == 1
    code, excerpts = extractor.zone_calls[0]
    assert code == "UG"
    assert excerpts.is_empty


def test_target_zone_discovered(fake_extractor, zone_document):
    extractor = fake_extractor()
    result = run_pipeline(_request(zone_document(["UA", "UB"]), target_zone_code="zone ub"), extractor)
    assert [e.zone_code for e in result.zones_rulesets] == ["UB"]
    assert result.meta.target_zone_in_discovery is True
    assert not any(w.startswith("TARGET_ZONE_NOT_IN_DISCOVERY") for w in result.warnings)


def test_no_zones_found(fake_extractor):
    extractor = fake_extractor()
    result = run_pipeline(_request(NO_CODES_TEXT), extractor)
    assert result.status == "NO_ZONES_FOUND"
    assert result.success is False
    assert result.zones_rulesets == []
    assert "NO_ZONES_FOUND" in result.warnings
    assert result.meta.used_discovery == "llm"
    assert extractor.zone_calls == []


def test_llm_discovery_feeds_version_label(fake_extractor):
    extractor = fake_extractor(discovery_response={"plu_version_label": "PLU Test 2020", "zones": [{"zone_code": "UA"}]})
    result = run_pipeline(_request(NO_CODES_TEXT), extractor)
    assert result.plu_version_label == "PLU Test 2020"
    assert [e.zone_code for e in result.zones_rulesets] == ["UA"]


def test_version_label_from_document(fake_extractor, zone_document):
    text = zone_document(["UA"], header="Règlement du PLU Ascain 2020\n\n")
    result = run_pipeline(_request(text), fake_extractor())
    assert result.plu_version_label == "PLU Ascain 2020"


def test_zones_are_truncated(fake_extractor, zone_document):
    codes = [f"U{chr(65 + i)}" for i in range(14)]
    result = run_pipeline(_request(zone_document(codes)), fake_extractor())
    assert len(result.zones_rulesets) == 12
    assert "ZONES_TRUNCATED: 14 -> 12" in result.warnings
    assert result.meta.zones_truncated is True
    assert result.meta.zones_discovered == 14


def test_concurrent_zones_keep_discovery_order(fake_extractor, zone_document):
    codes = ["UA", "UB", "UC", "UD"]
    result = run_pipeline(
        _request(zone_document(codes)),
        fake_extractor(fail_zones={"UC"}),
        PipelineConfig(zone_concurrency=4),
    )
    assert [e.zone_code for e in result.zones_rulesets] == codes
    assert result.zones_rulesets[2].status == ZoneStatus.FAILED


# ---- fatal conditions ----

def test_missing_identifier(fake_extractor, zone_document):
    result = run_pipeline(PipelineRequest(source_text=zone_document(["UA"])), fake_extractor())
    assert result.status == "FAILED"
    assert result.error == "MISSING_PARAMS"
    assert result.success is False


def test_missing_source(fake_extractor):
    result = run_pipeline(PipelineRequest(document_identifier="64065"), fake_extractor())
    assert result.error == "MISSING_PARAMS"


def test_text_too_short(fake_extractor):
    result = run_pipeline(_request("ZONE UA\ntrop court"), fake_extractor())
    assert result.status == "FAILED"
    assert result.error == "TEXT_TOO_SHORT"
    assert result.commune_insee == "64065"


def test_min_text_chars_is_configurable(fake_extractor):
    result = run_pipeline(_request("ZONE UA\ncourt"), fake_extractor(), PipelineConfig(min_text_chars=5))
    assert result.status == "OK"


def test_fetch_error(fake_extractor):
    def fetcher(url, cfg):
        raise DocumentSourceError("FETCH_ERROR", "HTTP 500")

    request = PipelineRequest(document_identifier="64065", source_url="https://example.org/plu.pdf")
    result = run_pipeline(request, fake_extractor(), fetcher=fetcher)
    assert result.status == "FAILED"
    assert result.error == "FETCH_ERROR"
    assert result.source_document == "https://example.org/plu.pdf"


def test_fetched_document_is_decoded(fake_extractor, zone_document):
    body = zone_document(["UA", "UB"]).encode("utf-8")
    request = PipelineRequest(document_identifier="64065", source_url="https://example.org/plu.txt")
    result = run_pipeline(request, fake_extractor(), fetcher=lambda url, cfg: body)
    assert result.status == "OK"
    assert result.source_document == "https://example.org/plu.txt"
    assert [e.zone_code for e in result.zones_rulesets] == ["UA", "UB"]


def test_unexpected_error_is_internal(fake_extractor):
    def decoder(data):
        raise ValueError("boom")

    request = PipelineRequest(document_identifier="64065", source_url="https://example.org/plu.pdf")
    result = run_pipeline(request, fake_extractor(), fetcher=lambda url, cfg: b"x", decoder=decoder)
    assert result.error == "INTERNAL_ERROR"


# ---- target selection / config ----

def test_select_targets_standard_mode():
    discovery = DiscoveryResult(zones=[ZoneCandidate(zone_code="UA")], used_discovery="regex")
    selection = select_targets(discovery, None, PipelineConfig())
    assert [t.zone_code for t in selection.targets] == ["UA"]
    assert selection.target_zone_mode is False
    assert selection.warnings == ()


def test_config_from_env():
    cfg = PipelineConfig.from_env(
        {"PLU_MAX_ZONES": "5", "PLU_MIN_TEXT_CHARS": "50", "PLU_ZONE_CONCURRENCY": "3", "PLU_FETCH_TIMEOUT_S": "12.5"}
    )
    assert cfg.max_target_zones == 5
    assert cfg.min_text_chars == 50
    assert cfg.zone_concurrency == 3
    assert cfg.source.fetch_timeout_s == 12.5
    assert PipelineConfig.from_env({}) == PipelineConfig()


# ---- CLI ----

def test_cli_writes_result(tmp_path, monkeypatch, zone_document, fake_extractor):
    pytest.importorskip("torch")
    pytest.importorskip("transformers")
    from plu_pipeline import extract, llm

    text_path = tmp_path / "plu.txt"
    text_path.write_text(zone_document(["UA", "UB"]), encoding="utf-8")
    out_path = tmp_path / "out" / "result.json"

    monkeypatch.setattr(llm, "LocalLLM", MagicMock())
    monkeypatch.setattr(extract, "LocalLLMExtractor", lambda model: fake_extractor())

    code = main(["--text", str(text_path), "--insee", "64065", "--nom", "Ascain", "--out", str(out_path)])
    assert code == 0
    data = json.loads(out_path.read_text(encoding="utf-8"))
    assert data["status"] == "OK"
    assert [z["zone_code"] for z in data["zones_rulesets"]] == ["UA", "UB"]


def test_cli_reads_json_request(tmp_path, monkeypatch, zone_document, fake_extractor):
    pytest.importorskip("torch")
    pytest.importorskip("transformers")
    from plu_pipeline import extract, llm

    request_path = tmp_path / "request.json"
    request_path.write_text(
        json.dumps({"document_identifier": "64065", "source_text": zone_document(["UA", "UB"]), "target_zone_code": "ub"}),
        encoding="utf-8",
    )
    out_path = tmp_path / "result.json"

    monkeypatch.setattr(llm, "LocalLLM", MagicMock())
    monkeypatch.setattr(extract, "LocalLLMExtractor", lambda model: fake_extractor())

    assert main(["--request", str(request_path), "--out", str(out_path)]) == 0
    raw = out_path.read_text(encoding="utf-8")
    assert raw.endswith("}\n")
    data = json.loads(raw)
    assert data["commune_insee"] == "64065"
    assert [z["zone_code"] for z in data["zones_rulesets"]] == ["UB"]


@pytest.mark.parametrize("content", [None, "{pas du json", '{"source_txt": "faute de frappe"}'])
def test_cli_rejects_unusable_request(tmp_path, content):
    request_path = tmp_path / "request.json"
    if content is not None:
        request_path.write_text(content, encoding="utf-8")
    out_path = tmp_path / "result.json"

    assert main(["--request", str(request_path), "--out", str(out_path)]) == 1
    assert not out_path.exists()
