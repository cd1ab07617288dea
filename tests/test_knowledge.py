from __future__ import annotations

from datetime import timedelta

import pytest
import requests

from conftest import NOW, doc
from thrag.clients.knowledge import (
    Document,
    HttpKnowledgeRetriever,
    LocalKnowledgeBase,
    RetrievalFilters,
    all_citations,
    extract_citations,
    overall_confidence,
)
from thrag.errors import RetrievalError


class FakeResponse:
    def __init__(self, body) -> None:
        self.body = body

    def raise_for_status(self) -> None:
        pass

    def json(self):
        return self.body


class FakeHttp:
    def __init__(self, response=None, exc: Exception | None = None) -> None:
        self.response = response
        self.exc = exc
        self.payloads = []

    def post(self, url, json=None, timeout=None):
        self.payloads.append(json)
        if self.exc is not None:
            raise self.exc
        return self.response


def test_ranking_by_term_overlap(knowledge):
    docs = knowledge.retrieve("APT29 T1059 ransomware", RetrievalFilters())
    assert [d.id for d in docs] == ["kb-apt", "kb-low"]
    assert docs[0].score == pytest.approx(2 / 3)
    assert docs[1].score == pytest.approx(1 / 3)


def test_filters(knowledge):
    assert [d.id for d in knowledge.retrieve("ransomware", RetrievalFilters(min_confidence=0.5))] == []
    assert [d.id for d in knowledge.retrieve("t1059 malicious", RetrievalFilters(tags=("ioc",)))] == ["kb-ioc"]
    old = RetrievalFilters(date_range=(NOW - timedelta(days=60), NOW - timedelta(days=30)))
    assert knowledge.retrieve("APT29", old) == []
    assert knowledge.retrieve("APT29", RetrievalFilters(sources=("other",))) == []
    assert knowledge.retrieve("", RetrievalFilters()) == []


def test_max_results(knowledge):
    kb = LocalKnowledgeBase([doc(f"d{i}", "beacon traffic") for i in range(8)])
    assert len(kb.retrieve("beacon", RetrievalFilters(), max_results=3)) == 3
    assert len(knowledge) == 3


def test_citations():
    text = "See https://example.com/r1 on T1003.001 and CVE-2024-3094."
    assert extract_citations(text) == ["https://example.com/r1", "MITRE ATT&CK: T1003.001", "CVE-2024-3094"]
    d = doc("d1", text, title="Backdoor")
    assert all_citations([d, d]) == ["feed: Backdoor"] + extract_citations(text)


def test_overall_confidence_weights_by_score():
    a = Document("a", "", "s", 0.9, (), NOW, score=3.0)
    b = Document("b", "", "s", 0.5, (), NOW, score=1.0)
    assert overall_confidence([a, b]) == pytest.approx(0.8)
    assert overall_confidence([]) == 0.0
    unscored = [Document("a", "", "s", 0.9, (), NOW), Document("b", "", "s", 0.5, (), NOW)]
    assert overall_confidence(unscored) == pytest.approx(0.7)


def test_document_from_metadata_shape():
    d = Document.from_dict(
        {
            "content": "Emotet loader T1105",
            "metadata": {"source_id": "m1", "source": "cti", "confidence": 0.75, "tags": "malware, loader"},
        }
    )
    assert d.id == "m1"
    assert d.tags == ("malware", "loader")
    assert d.citations == ("MITRE ATT&CK: T1105",)


def test_from_ndjson(tmp_path):
    path = tmp_path / "kb.ndjson"
    path.write_text('{"id": "k1", "content": "lateral movement via smb", "confidence": 0.9}\n\n', encoding="utf-8")
    kb = LocalKnowledgeBase.from_ndjson(path)
    assert [d.id for d in kb.retrieve("smb", RetrievalFilters())] == ["k1"]


def test_http_retriever_applies_filters_locally():
    body = {
        "results": [
            {"id": "r1", "content": "x", "confidence": 0.9, "score": 0.5},
            {"id": "r2", "content": "y", "confidence": 0.3, "score": 0.9},
            {"id": "r3", "content": "z", "confidence": 0.8, "score": 0.7},
        ]
    }
    http = FakeHttp(FakeResponse(body))
    retriever = HttpKnowledgeRetriever("http://kb/", session=http)
    docs = retriever.retrieve("query", RetrievalFilters(min_confidence=0.6), max_results=5)
    assert [d.id for d in docs] == ["r3", "r1"]
    assert http.payloads[0] == {"query": "query", "filters": {"min_confidence": 0.6}, "max_results": 5}


def test_http_retriever_wraps_errors():
    retriever = HttpKnowledgeRetriever("http://kb", session=FakeHttp(exc=requests.ConnectionError("refused")))
    with pytest.raises(RetrievalError):
        retriever.retrieve("query", RetrievalFilters())
