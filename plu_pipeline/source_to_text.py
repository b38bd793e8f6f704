# plu_pipeline/source_to_text.py
from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import List

import pdfplumber
import requests
from bs4 import BeautifulSoup
from pypdf import PdfReader

from .contracts import PipelineError

logger = logging.getLogger(__name__)


class DocumentSourceError(PipelineError):
    pass


@dataclass(frozen=True)
class SourceConfig:
    fetch_timeout_s: float = 60.0
    user_agent: str = "plu-rules-extractor/0.1"


# ----------------------------
# Fetch
# ----------------------------

def fetch_document(url: str, cfg: SourceConfig = SourceConfig()) -> bytes:
    """Single GET bounded by a fixed timeout. No retries."""
    try:
        resp = requests.get(url, timeout=cfg.fetch_timeout_s, headers={"User-Agent": cfg.user_agent})
    except requests.RequestException as e:
        raise DocumentSourceError("FETCH_ERROR", f"{type(e).__name__} while downloading {url}") from e

    if not resp.ok:
        raise DocumentSourceError("FETCH_ERROR", f"HTTP {resp.status_code} while downloading {url}")
    logger.info("Fetched %s (%d bytes)", url, len(resp.content))
    return resp.content


# ----------------------------
# Decode
# ----------------------------

def _looks_like_pdf(data: bytes) -> bool:
    return data[:1024].lstrip().startswith(b"%PDF")


def _looks_like_html(data: bytes) -> bool:
    head = data[:2048].lstrip().lower()
    return head.startswith(b"<!doctype html") or head.startswith(b"<html") or b"<body" in head


def _pdf_pages_pdfplumber(data: bytes) -> List[str]:
    pages: List[str] = []
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        for page in pdf.pages:
            txt = page.extract_text() or ""
            if txt.strip():
                pages.append(txt)
    return pages


def _pdf_pages_pypdf(data: bytes) -> List[str]:
    reader = PdfReader(io.BytesIO(data))
    pages: List[str] = []
    for page in reader.pages:
        txt = page.extract_text() or ""
        if txt.strip():
            pages.append(txt)
    return pages


def decode_pdf(data: bytes) -> str:
    """
    No OCR: a scanned (image-only) PDF decodes to "".
    pypdf is only tried when pdfplumber yields no text.
    """
    try:
        pages = _pdf_pages_pdfplumber(data)
        if not pages:
            pages = _pdf_pages_pypdf(data)
    except Exception as e:
        raise DocumentSourceError("DECODE_ERROR", f"PDF could not be parsed: {e}") from e
    return "\n\n".join(pages)


def decode_html(data: bytes) -> str:
    soup = BeautifulSoup(data, "lxml")
    for tag in soup(["script", "style", "noscript", "nav", "footer", "header"]):
        tag.decompose()
    return soup.get_text("\n", strip=True)


def decode_document(data: bytes) -> str:
    if not data:
        raise DocumentSourceError("DECODE_ERROR", "empty document")
    if _looks_like_pdf(data):
        return decode_pdf(data)
    if _looks_like_html(data):
        return decode_html(data)
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DocumentSourceError("DECODE_ERROR", "document is neither PDF, HTML nor UTF-8 text") from e
