from __future__ import annotations

import json

from fakes import state_object

from hassrelay.codec import entity_from_payload, snapshot_from_entity
from hassrelay.models.entity import UpstreamEntity


def test_snapshot_keeps_only_relayed_fields() -> None:
    snapshot = snapshot_from_entity(state_object("light.kitchen", "on", brightness=200))

    assert snapshot.model_dump() == {
        "entity_id": "light.kitchen",
        "state": "on",
        "last_changed": "2026-01-01T00:00:00+00:00",
        "last_updated": "2026-01-01T00:00:00+00:00",
        "attributes": {"brightness": 200},
    }
    assert "context" not in json.loads(snapshot.message)


def test_missing_fields_map_to_empty_values() -> None:
    snapshot = snapshot_from_entity({"entity_id": "sensor.x"})

    assert snapshot.state == ""
    assert snapshot.last_changed is None
    assert snapshot.last_updated is None
    assert snapshot.attributes == {}


def test_codec_is_total_for_odd_payloads() -> None:
    snapshot = snapshot_from_entity({"entity_id": "sensor.x", "state": 21.5, "attributes": ["not", "a", "map"]})
    assert snapshot.state == "21.5"
    assert snapshot.attributes == {}

    empty = snapshot_from_entity({})
    assert empty.entity_id == ""
    assert empty.state == ""


def test_explicit_nulls_use_defaults() -> None:
    snapshot = snapshot_from_entity({"entity_id": "sensor.x", "state": None, "attributes": None, "last_changed": ""})
    assert snapshot.state == ""
    assert snapshot.attributes == {}
    assert snapshot.last_changed is None


def test_attributes_are_copied() -> None:
    payload = state_object("climate.living", "heat", preset={"mode": "eco"})
    snapshot = snapshot_from_entity(payload)

    payload["attributes"]["preset"]["mode"] = "boost"
    assert snapshot.attributes == {"preset": {"mode": "eco"}}


def test_codec_is_deterministic() -> None:
    payload = state_object("switch.fan", "off")
    assert snapshot_from_entity(payload) == snapshot_from_entity(UpstreamEntity.model_validate(payload))


def test_message_is_compact_json_in_field_order() -> None:
    snapshot = snapshot_from_entity(state_object("switch.fan", "off"))

    assert list(json.loads(snapshot.message)) == ["entity_id", "state", "last_changed", "last_updated", "attributes"]
    assert snapshot.message is snapshot.message


def test_entity_from_payload_rejects_non_mappings() -> None:
    assert entity_from_payload(None) is None
    assert entity_from_payload(["light.kitchen"]) is None
    assert entity_from_payload("on") is None
