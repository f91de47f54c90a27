"""Home Assistant entity payloads.

Home Assistant sends state objects both in the ``get_states`` result and
inside ``state_changed`` events. Parsing is lenient on purpose: a missing or
oddly typed field falls back to its default so that one bad entity never
breaks the bulk fetch or the event stream.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator


def _coerce_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _coerce_timestamp(value: Any) -> str | None:
    """Keep timestamps as the ISO-8601 text Home Assistant sent."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return _coerce_str(value)


def _coerce_mapping(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _coerce_optional_mapping(value: Any) -> dict[str, Any] | None:
    if isinstance(value, dict):
        return value
    return None


HassString = Annotated[str, BeforeValidator(_coerce_str)]
HassTimestamp = Annotated[str | None, BeforeValidator(_coerce_timestamp)]
HassMapping = Annotated[dict[str, Any], BeforeValidator(_coerce_mapping)]


class UpstreamEntity(BaseModel):
    """A Home Assistant state object.

    ``context`` and any other keys Home Assistant adds are kept out of the
    relayed snapshot; the full payload stays available in ``raw``.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    entity_id: HassString = ""
    state: HassString = ""
    last_changed: HassTimestamp = None
    last_updated: HassTimestamp = None
    attributes: HassMapping = Field(default_factory=dict)
    context: Annotated[dict[str, Any] | None, BeforeValidator(_coerce_optional_mapping)] = None

    raw: dict[str, Any] = Field(default_factory=dict)
    """Original state object as received."""

    @model_validator(mode="before")
    @classmethod
    def _stash_raw(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        cleaned = {key: value for key, value in values.items() if value is not None}
        if "raw" not in values:
            cleaned["raw"] = dict(values)
        return cleaned


def _entity_or_none(value: Any) -> Any:
    # Home Assistant sends ``new_state: null`` when an entity is removed.
    if isinstance(value, (dict, UpstreamEntity)):
        return value
    return None


class StateChangedData(BaseModel):
    """``data`` block of a ``state_changed`` event."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    entity_id: HassString = ""
    old_state: Annotated[UpstreamEntity | None, BeforeValidator(_entity_or_none)] = None
    new_state: Annotated[UpstreamEntity | None, BeforeValidator(_entity_or_none)] = None
