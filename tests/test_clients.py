from __future__ import annotations

import json
import logging

import pytest
import requests

from conftest import raw_event
from thrag import ingest_file
from thrag.clients.capability import HttpCapabilityExecutor, UnconfiguredExecutor
from thrag.clients.channel import LoggingChannel, NdjsonChannel
from thrag.clients.knowledge import HttpKnowledgeRetriever, RetrievalFilters
from thrag.clients.reputation import HttpReputationService, IpReputation, StaticReputationService
from thrag.errors import (
    AnomalyScoringError,
    CapabilityTimeout,
    CapabilityUnavailable,
    ReputationLookupError,
    RetrievalError,
)
from thrag.io.ndjson import read_ndjson
from thrag.scoring.behavior import BehaviorProfile, HttpAnomalyScorer, UserContext
from thrag.scoring.threat import NetworkContext, ScoringInput, ThreatScoringEngine


class FakeResponse:
    def __init__(self, body=None, text: str = "", content_type: str = "application/json", status: int = 200) -> None:
        self.body = body
        self.text = text
        self.headers = {"content-type": content_type}
        self.status = status

    def raise_for_status(self) -> None:
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status}")

    def json(self):
        if self.body is None:
            raise ValueError("no json")
        return self.body


class FakeHttp:
    def __init__(self, response=None, exc: Exception | None = None) -> None:
        self.response = response
        self.exc = exc
        self.requests = []

    def _answer(self, method, url, **kw):
        self.requests.append((method, url, kw.get("json")))
        if self.exc is not None:
            raise self.exc
        return self.response

    def post(self, url, json=None, timeout=None):
        return self._answer("POST", url, json=json)

    def get(self, url, timeout=None):
        return self._answer("GET", url)


def test_executor_reads_json_output():
    http = FakeHttp(FakeResponse({"output": "plan ready"}))
    ex = HttpCapabilityExecutor("http://agents/", session=http)
    assert ex.invoke("incident_commander", "sess_1", "plan it") == "plan ready"
    assert http.requests[0] == (
        "POST",
        "http://agents/capabilities/incident_commander/invoke",
        {"session_id": "sess_1", "input_text": "plan it"},
    )


def test_executor_plain_text():
    ex = HttpCapabilityExecutor("http://agents", session=FakeHttp(FakeResponse(text="OK", content_type="text/plain")))
    assert ex.invoke("threat_hunter", "s", "ping") == "OK"


def test_executor_errors():
    slow = HttpCapabilityExecutor("http://agents", timeout=1, session=FakeHttp(exc=requests.Timeout("slow")))
    with pytest.raises(CapabilityTimeout):
        slow.invoke("threat_hunter", "s", "x")
    down = HttpCapabilityExecutor("http://agents", session=FakeHttp(exc=requests.ConnectionError("refused")))
    with pytest.raises(CapabilityUnavailable):
        down.invoke("threat_hunter", "s", "x")
    with pytest.raises(CapabilityUnavailable):
        UnconfiguredExecutor().invoke("threat_hunter", "s", "x")


def test_static_reputation_most_specific_network_wins():
    rep = StaticReputationService(
        {
            "10.0.0.0/8": "suspicious",
            "10.1.0.0/16": {"reputation": "malicious", "country": "KP"},
            "10.1.2.3": "clean",
        }
    )
    assert rep.lookup_ip_reputation("10.9.9.9").category == "suspicious"
    assert rep.lookup_ip_reputation("10.1.9.9").country == "KP"
    assert rep.lookup_ip_reputation("10.1.2.3").category == "clean"
    assert rep.lookup_ip_reputation("192.0.2.1").category == "clean"
    with pytest.raises(ReputationLookupError):
        rep.lookup_ip_reputation("nope")


def test_reputation_category_is_normalized():
    assert IpReputation.from_dict("1.2.3.4", {"category": "Weird"}).category == "unknown"
    assert IpReputation.from_dict("1.2.3.4", {"reputation": "MALICIOUS"}).is_malicious


def test_http_reputation_and_profile():
    http = FakeHttp(FakeResponse({"reputation": "suspicious", "threatTypes": ["scanner"]}))
    svc = HttpReputationService("http://rep", session=http)
    rep = svc.lookup_ip_reputation("198.51.100.4")
    assert rep.is_suspicious
    assert rep.threat_types == ("scanner",)
    assert http.requests[0][1] == "http://rep/ip/198.51.100.4"

    http.response = FakeResponse({"riskScore": 0.4, "normal": {"loginTimes": [8, 9]}})
    profile = svc.lookup_user_profile("bob")
    assert profile.risk_score == pytest.approx(0.4)
    assert profile.normal.login_hours == (8, 9)

    http.response = FakeResponse(["not", "a", "dict"])
    with pytest.raises(ReputationLookupError):
        svc.lookup_ip_reputation("198.51.100.4")


def test_ndjson_channel_appends(tmp_path):
    path = tmp_path / "out" / "events.ndjson"
    ch = NdjsonChannel(path)
    ch.publish("security-event-processed", {"n": 1})
    ch.publish("security-event-processed", {"n": 2})
    rows = list(read_ndjson(path))
    assert [r["payload"]["n"] for r in rows] == [1, 2]
    assert rows[0]["topic"] == "security-event-processed"


def test_logging_channel(caplog):
    with caplog.at_level(logging.INFO, logger="thrag.clients.channel"):
        LoggingChannel().publish("t", {"b": 1, "a": 2})
    assert "publish topic=t keys=['a', 'b']" in caplog.text


def test_ingest_posts_batches(tmp_path, monkeypatch, capsys):
    path = tmp_path / "events.ndjson"
    path.write_text("\n".join(json.dumps(raw_event(id=f"e{i}")) for i in range(5)) + "\n", encoding="utf-8")
    sent = []

    def fake_post(url, json=None, timeout=None):
        sent.append((url, len(json["events"])))
        return FakeResponse({"processed": len(json["events"]), "failed": 0, "results": [{"alerts": [{}]}]})

    monkeypatch.setattr(ingest_file.requests, "post", fake_post)
    assert ingest_file.main(["--api", "http://api", "--events", str(path), "--batch", "2"]) == 0
    assert sent == [("http://api/events/batch", 2)] * 2 + [("http://api/events/batch", 1)]
    assert "events.ndjson: processed=5 failed=0 alerts=3" in capsys.readouterr().out


def test_ingest_missing_path(tmp_path, capsys):
    assert ingest_file.main(["--events", str(tmp_path / "missing.ndjson")]) == 1
    assert "Missing:" in capsys.readouterr().out


@pytest.mark.parametrize("body", [{"anomaly_score": None}, {"anomalyScore": "high"}, {"predictions": [{"anomaly_score": [1]}]}])
def test_anomaly_scorer_rejects_malformed_scores(body):
    scorer = HttpAnomalyScorer("http://model/score", session=FakeHttp(FakeResponse(body)))
    with pytest.raises(AnomalyScoringError):
        scorer.score([0.1, 0.2, 0.3, 0.4, 0.5])


@pytest.mark.parametrize("body", [{"results": [{"id": "r1", "confidence": "high"}]}, {"results": 7}])
def test_retriever_rejects_malformed_rows(body):
    retriever = HttpKnowledgeRetriever("http://kb", session=FakeHttp(FakeResponse(body)))
    with pytest.raises(RetrievalError):
        retriever.retrieve("query", RetrievalFilters())


def test_reputation_rejects_malformed_fields():
    http = FakeHttp(FakeResponse({"reputation": "malicious", "threat_types": 5}))
    svc = HttpReputationService("http://rep", session=http)
    with pytest.raises(ReputationLookupError):
        svc.lookup_ip_reputation("203.0.113.9")
    http.response = FakeResponse({"riskScore": "very"})
    with pytest.raises(ReputationLookupError):
        svc.lookup_user_profile("bob")


def test_malformed_collaborators_score_neutral():
    engine = ThreatScoringEngine(
        knowledge=HttpKnowledgeRetriever("http://kb", session=FakeHttp(FakeResponse({"results": [{"confidence": "high"}]}))),
        reputation=HttpReputationService("http://rep", session=FakeHttp(FakeResponse({"threat_types": 5}))),
        anomaly=HttpAnomalyScorer("http://model", session=FakeHttp(FakeResponse({"anomaly_score": None}))),
    )
    normal = BehaviorProfile(login_hours=(9,), access_patterns=("/srv",))
    inp = ScoringInput(
        event_id="e1",
        event_type="heartbeat",
        source="edr",
        severity="LOW",
        indicators=("ip:203.0.113.9",),
        techniques=("T1071",),
        user_context=UserContext(user_id="bob", normal=normal, current=normal),
        network_context=NetworkContext(source_ip="203.0.113.9"),
    )
    score = engine.score(inp)
    assert score.components.behavioral == 0.0
    assert score.components.threat_intel == 0.0
    assert score.components.network == 0.0
