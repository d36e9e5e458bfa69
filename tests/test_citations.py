"""
Tests for protocol citation extraction.
"""

import pytest

from protocol_guard.rag.trust.citations import CitationExtractor, extract_protocol_codes


@pytest.mark.parametrize("text,codes", [
    ("Per TP 1211, give aspirin 324 mg PO.", ["1211"]),
    ("See TP-1210 and Protocol 1242-P.", ["1210", "1242-P"]),
    ("tp#1237 applies", ["1237"]),
    ("Refer to 1237 for details.", ["1237"]),
    ("Give 1000 mg acetaminophen.", []),
    ("Follow MCG 1309 for dosing.", []),
    ("Per TP 9999 give oxygen.", ["9999"]),
    ("TP 1210 first, then 1210 again and TP 1242.", ["1210", "1242"]),
    ("", []),
])
def test_extract_protocol_codes(text, codes):
    assert extract_protocol_codes(text) == codes


def test_named_citations():
    extractor = CitationExtractor()
    [citation] = extractor.named("Per TP 1211 (Cardiac Chest Pain), give aspirin.")
    assert citation.code == "1211"
    assert citation.cited_name == "Cardiac Chest Pain"


def test_mismatched_names():
    extractor = CitationExtractor()
    names = {"1211": "Cardiac Chest Pain", "1242": "Crush Injury / Syndrome"}
    text = "Use TP 1211 (Chest Pain - Cardiac) and TP 1242 (Stroke / CVA)."

    mismatched = extractor.mismatched_names(text, names)

    assert [c.code for c in mismatched] == ["1242"]


def test_unknown_named_code_not_flagged_as_mismatch():
    extractor = CitationExtractor()
    assert extractor.mismatched_names("TP 9999 (Imaginary Protocol)", {}) == []
