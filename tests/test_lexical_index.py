"""
Tests for the BM25 lexical index.
"""

from protocol_guard.rag.models import ProtocolChunk
from protocol_guard.rag.retrieval.lexical_index import LexicalIndex, tokenize


def _chunk(code, seq, text, title=""):
    return ProtocolChunk(protocol_code=code, sequence=seq, text=text, title=title)


def test_tokenize_drops_stop_words_and_folds_plurals():
    assert tokenize("What is the dose for seizures?") == ["dose", "seizure"]


def test_tokenize_keeps_pediatric_code_whole():
    assert "1242-p" in tokenize("See TP 1242-P")
    assert "1242" not in tokenize("See TP 1242-P")


def test_scores_normalized_to_top_hit():
    index = LexicalIndex().build([
        _chunk("1211", 0, "chest pain chest pain aspirin"),
        _chunk("1237", 0, "wheezing and shortness of breath"),
        _chunk("1205", 0, "abdominal pain with vomiting"),
    ])
    results = index.search("chest pain")
    assert results[0][0].protocol_code == "1211"
    assert results[0][1] == 1.0
    assert all(0.0 < score <= 1.0 for _, score in results)
    assert "1237" not in [c.protocol_code for c, _ in results]


def test_admit_predicate_filters():
    index = LexicalIndex().build([
        _chunk("1242", 0, "crush injury sodium bicarbonate"),
        _chunk("1242-P", 0, "pediatric crush injury sodium bicarbonate"),
    ])
    results = index.search("crush injury", admit=lambda c: not c.protocol_code.endswith("-P"))
    assert [c.protocol_code for c, _ in results] == ["1242"]


def test_empty_query_and_empty_index():
    assert LexicalIndex().search("chest pain") == []
    index = LexicalIndex().build([_chunk("1211", 0, "chest pain")])
    assert index.search("the a of") == []
    assert len(index) == 1


def test_tie_order_is_stable():
    chunks = [_chunk("1300", i, "identical text about stridor") for i in range(3)]
    index = LexicalIndex().build(reversed(chunks))
    assert [c.sequence for c, _ in index.search("stridor")] == [0, 1, 2]
