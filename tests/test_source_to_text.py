from unittest.mock import MagicMock, patch

import pytest
import requests

from plu_pipeline.source_to_text import (
    DocumentSourceError,
    SourceConfig,
    decode_document,
    fetch_document,
)


def _response(ok=True, status_code=200, content=b"data"):
    resp = MagicMock()
    resp.ok = ok
    resp.status_code = status_code
    resp.content = content
    return resp


@patch("plu_pipeline.source_to_text.requests.get")
def test_fetch_document_returns_bytes(mock_get):
    mock_get.return_value = _response(content=b"%PDF-1.4 ...")
    assert fetch_document("https://example.org/plu.pdf", SourceConfig(fetch_timeout_s=5)) == b"%PDF-1.4 ..."
    assert mock_get.call_args.kwargs["timeout"] == 5


@patch("plu_pipeline.source_to_text.requests.get")
def test_fetch_document_http_error(mock_get):
    mock_get.return_value = _response(ok=False, status_code=404)
    with pytest.raises(DocumentSourceError) as exc:
        fetch_document("https://example.org/missing.pdf")
    assert exc.value.code == "FETCH_ERROR"


@patch("plu_pipeline.source_to_text.requests.get")
def test_fetch_document_timeout(mock_get):
    mock_get.side_effect = requests.Timeout("too slow")
    with pytest.raises(DocumentSourceError) as exc:
        fetch_document("https://example.org/slow.pdf")
    assert exc.value.code == "FETCH_ERROR"
    assert mock_get.call_count == 1


def test_decode_plain_text():
    assert decode_document("Règlement de la zone UA".encode("utf-8")) == "Règlement de la zone UA"


def test_decode_html_drops_scripts():
    html = b"<html><body><p>Zone UA</p><script>var x = 1;</script><p>Article 6</p></body></html>"
    text = decode_document(html)
    assert "Zone UA" in text
    assert "Article 6" in text
    assert "var x" not in text


@pytest.mark.parametrize("data", [b"", b"\xff\xfe\x00bad"])
def test_decode_errors(data):
    with pytest.raises(DocumentSourceError) as exc:
        decode_document(data)
    assert exc.value.code == "DECODE_ERROR"


def _pdf_page(text):
    page = MagicMock()
    page.extract_text.return_value = text
    return page


@patch("plu_pipeline.source_to_text.pdfplumber.open")
def test_decode_pdf_with_pdfplumber(mock_open):
    mock_open.return_value.__enter__.return_value.pages = [_pdf_page("Page 1"), _pdf_page(""), _pdf_page("Page 2")]
    assert decode_document(b"%PDF-1.4 fake") == "Page 1\n\nPage 2"


@patch("plu_pipeline.source_to_text.PdfReader")
@patch("plu_pipeline.source_to_text.pdfplumber.open")
def test_decode_pdf_falls_back_to_pypdf(mock_open, mock_reader):
    mock_open.return_value.__enter__.return_value.pages = [_pdf_page(None)]
    mock_reader.return_value.pages = [_pdf_page("Texte pypdf")]
    assert decode_document(b"%PDF-1.4 fake") == "Texte pypdf"


@patch("plu_pipeline.source_to_text.pdfplumber.open")
def test_decode_pdf_parse_failure(mock_open):
    mock_open.side_effect = ValueError("broken xref")
    with pytest.raises(DocumentSourceError) as exc:
        decode_document(b"%PDF-1.4 broken")
    assert exc.value.code == "DECODE_ERROR"
