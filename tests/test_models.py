"""Tests for the Home Assistant payload models."""

from __future__ import annotations

import pytest
from fakes import state_object
from pydantic import ValidationError

from hassrelay.models.entity import StateChangedData, UpstreamEntity
from hassrelay.models.snapshot import Snapshot


class TestUpstreamEntity:
    def test_raw_payload_is_stashed(self) -> None:
        payload = state_object("light.kitchen", "on")
        entity = UpstreamEntity.model_validate(payload)

        assert entity.raw == payload
        assert entity.context == {"id": "01HX", "parent_id": None, "user_id": None}

    def test_unknown_keys_are_ignored(self) -> None:
        entity = UpstreamEntity.model_validate({"entity_id": "sun.sun", "state": "above_horizon", "origin": "LOCAL"})
        assert not hasattr(entity, "origin")

    def test_non_mapping_context_becomes_none(self) -> None:
        entity = UpstreamEntity.model_validate({"entity_id": "sun.sun", "context": "abc"})
        assert entity.context is None


class TestStateChangedData:
    def test_new_state_is_parsed(self) -> None:
        data = StateChangedData.model_validate(
            {
                "entity_id": "light.kitchen",
                "old_state": state_object("light.kitchen", "off"),
                "new_state": state_object("light.kitchen", "on"),
            }
        )
        assert data.old_state is not None and data.old_state.state == "off"
        assert data.new_state is not None and data.new_state.state == "on"

    def test_removed_entity_has_no_new_state(self) -> None:
        data = StateChangedData.model_validate(
            {"entity_id": "light.kitchen", "old_state": state_object("light.kitchen", "off"), "new_state": None}
        )
        assert data.new_state is None

    def test_garbage_new_state_is_treated_as_missing(self) -> None:
        data = StateChangedData.model_validate({"entity_id": "light.kitchen", "new_state": 42})
        assert data.new_state is None


class TestSnapshot:
    def test_snapshot_is_frozen(self) -> None:
        snapshot = Snapshot(entity_id="light.kitchen", state="on")
        with pytest.raises(ValidationError):
            snapshot.state = "off"  # type: ignore[misc]

    def test_snapshot_rejects_extra_fields(self) -> None:
        with pytest.raises(ValidationError):
            Snapshot(entity_id="light.kitchen", state="on", context={})  # type: ignore[call-arg]

    def test_cached_message_does_not_affect_equality(self) -> None:
        first = Snapshot(entity_id="light.kitchen", state="on")
        second = Snapshot(entity_id="light.kitchen", state="on")
        _ = first.message

        assert first == second
