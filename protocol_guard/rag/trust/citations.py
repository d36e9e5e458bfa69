"""
Protocol citation extraction.

Recognizes "TP 1210", "TP-1210", "Protocol 1242-P" (any four digits) and
bare 1000-1399 codes that are not dose amounts ("1000 mg"). Medical Control
Guideline references ("MCG 1309") are not protocol citations.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

CODE_UNITS = r"(?:mg|mcg|g|gm|ml|meq|units?|kg|lbs?|%|mmhg|j|joules?|bpm)\b"

MCG_REFERENCE = re.compile(r"\bmcg\s*#?\s*\d{4}(?:\.\d+)?", re.IGNORECASE)
PREFIXED_CODE = re.compile(r"\b(?:tp|protocol)[\s\-#:]*(\d{4}(?:-p)?)\b", re.IGNORECASE)
BARE_CODE = re.compile(
    r"(?<![\d.\-])\b(1[0-3]\d{2}(?:-p)?)\b(?!\s*" + CODE_UNITS + r")", re.IGNORECASE
)
NAMED_CITATION = re.compile(
    r"\b(?:tp|protocol)[\s\-#:]*(\d{4}(?:-p)?)\s*\(([^()\n]{3,80})\)", re.IGNORECASE
)

_NAME_NOISE = {"and", "or", "the", "of", "with", "without", "for", "suspected", "non", "active"}


def extract_protocol_codes(text: str) -> List[str]:
    """Protocol codes referenced in text, upper-cased, de-duplicated, in order."""
    if not text:
        return []
    cleaned = MCG_REFERENCE.sub(" ", text)
    found = [(m.start(1), m.group(1).upper()) for m in PREFIXED_CODE.finditer(cleaned)]
    prefixed = {start for start, _ in found}
    for m in BARE_CODE.finditer(cleaned):
        if m.start(1) not in prefixed:
            found.append((m.start(1), m.group(1).upper()))

    codes: List[str] = []
    for _, code in sorted(found):
        if code not in codes:
            codes.append(code)
    return codes


def _name_words(name: str) -> set:
    return {w for w in re.findall(r"[a-z]+", name.lower()) if len(w) > 2 and w not in _NAME_NOISE}


@dataclass(frozen=True)
class NamedCitation:
    code: str
    cited_name: str


class CitationExtractor:
    """Finds protocol citations in generated or assembled text."""

    def extract(self, text: str) -> List[str]:
        return extract_protocol_codes(text)

    def named(self, text: str) -> List[NamedCitation]:
        """Citations written with a name, e.g. "TP 1211 (Cardiac Chest Pain)"."""
        return [
            NamedCitation(m.group(1).upper(), m.group(2).strip())
            for m in NAMED_CITATION.finditer(MCG_REFERENCE.sub(" ", text or ""))
        ]

    def mismatched_names(self, text: str, names: Dict[str, str]) -> List[NamedCitation]:
        """Named citations whose name shares no significant word with the protocol's name."""
        mismatched = []
        for citation in self.named(text):
            expected: Optional[str] = names.get(citation.code)
            if not expected:
                continue
            if not (_name_words(citation.cited_name) & _name_words(expected)):
                mismatched.append(citation)
        return mismatched
