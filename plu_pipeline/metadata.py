# plu_pipeline/metadata.py
from __future__ import annotations

import re
from typing import Optional

_PLAN = r"(?:PLU|Plan\s+Local\s+d['’]\s?Urbanisme)"
_PROPER = r"[A-ZÀ-Ý][\w'’\-]+"

_VERSION_PATTERNS = [
    # "PLU Ascain 2020", "Plan Local d'Urbanisme de Saint-Jean-de-Luz 2019"
    re.compile(_PLAN + r"\s+(?:de\s+|d['’])?" + _PROPER + r"(?:[ \-]" + _PROPER + r"){0,3}\s+(?:\(\s*)?\d{4}\b"),
    # "approuvé le 12 mars 2019", "approuvé par délibération du 3 juin 2018"
    re.compile(r"approuv[ée]e?\s+(?:le\s+|par\s+[^\n]{0,60}?\s+du\s+)?\d{1,2}(?:er)?\s+\w+\s+\d{4}", re.IGNORECASE),
    # "PLU 2020"
    re.compile(_PLAN + r"\s+\d{4}\b"),
    # "révision n°3 ... 2021"
    re.compile(r"r[ée]vision\s+(?:n°|no\.?|numéro)\s*\d+[^\n]{0,40}?\d{4}", re.IGNORECASE),
]


def extract_plu_version_label(text: str, max_len: int = 100) -> Optional[str]:
    """Best-effort plan version label; first matching pattern wins."""
    if not text:
        return None
    for pat in _VERSION_PATTERNS:
        m = pat.search(text)
        if m:
            label = " ".join(m.group(0).split())
            return label[:max_len]
    return None
