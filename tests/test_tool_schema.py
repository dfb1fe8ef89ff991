"""Tests for parameter contract adaptation."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from switchboard.ai.tools import ActionContractError, adapt_contract

CONTRACT = {
    "type": "object",
    "properties": {
        "title": {"type": "string", "description": "Event title"},
        "duration": {"type": "integer"},
        "priority": {"type": "string", "enum": ["low", "high"]},
        "score": {"type": "number"},
        "private": {"type": "boolean"},
        "attendees": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {"email": {"type": "string"}, "optional": {"type": "boolean"}},
                "required": ["email"],
            },
        },
        "labels": {"type": "object"},
        "payload": {"description": "Anything goes"},
    },
    "required": ["title", "ghost", "", 7],
}


class TestAdaptContract:
    def test_same_contract_yields_byte_identical_schema(self) -> None:
        first = adapt_contract(CONTRACT, name="createEvent")
        second = adapt_contract(json.loads(json.dumps(CONTRACT)), name="createEvent")

        assert first.schema_json == second.schema_json
        assert first == second

    def test_required_names_missing_from_properties_are_ignored(self) -> None:
        schema = adapt_contract(CONTRACT)

        assert schema.parameters["required"] == ["title"]
        assert schema.validate({"title": "Sync"}) == {"title": "Sync"}

    def test_descriptions_and_types_are_kept(self) -> None:
        properties = adapt_contract(CONTRACT).parameters["properties"]

        assert properties["title"] == {"type": "string", "description": "Event title"}
        assert properties["priority"] == {"type": "string", "enum": ["low", "high"]}
        assert properties["attendees"]["items"]["required"] == ["email"]
        assert properties["labels"] == {"type": "object"}
        assert properties["payload"] == {"description": "Anything goes"}

    def test_missing_required_field_fails_validation(self) -> None:
        schema = adapt_contract(CONTRACT)
        with pytest.raises(ValidationError):
            schema.validate({"duration": 30})

    def test_type_and_enum_are_enforced(self) -> None:
        schema = adapt_contract(CONTRACT)
        with pytest.raises(ValidationError):
            schema.validate({"title": "Sync", "priority": "urgent"})
        with pytest.raises(ValidationError):
            schema.validate({"title": "Sync", "attendees": [{"optional": True}]})

    def test_unknown_types_accept_any_value(self) -> None:
        schema = adapt_contract(CONTRACT)
        validated = schema.validate({"title": "Sync", "payload": {"nested": [1, 2]}, "labels": {"a": 1}})

        assert validated["payload"] == {"nested": [1, 2]}
        assert validated["labels"] == {"a": 1}

    def test_type_unions_accept_any_value(self) -> None:
        schema = adapt_contract(
            {
                "type": "object",
                "properties": {
                    "note": {"type": ["string", "null"], "description": "Optional note"},
                    "level": {"type": ["string", "integer"], "enum": ["low", 2]},
                },
            }
        )

        assert schema.parameters["properties"]["note"] == {"description": "Optional note"}
        assert schema.parameters["properties"]["level"] == {"enum": ["low", 2]}
        assert schema.validate({"note": "bring slides", "level": 2}) == {"note": "bring slides", "level": 2}

    def test_property_names_never_collide_with_field_names(self) -> None:
        schema = adapt_contract(
            {"type": "object", "properties": {"a": {"type": "string"}, "p0": {"type": "integer"}}}
        )

        assert schema.validate({"p0": 5}) == {"p0": 5}
        assert schema.validate({"a": "x"}) == {"a": "x"}

    def test_nested_objects_round_trip_by_original_names(self) -> None:
        schema = adapt_contract(CONTRACT)
        validated = schema.validate({"title": "Sync", "attendees": [{"email": "a@example.com"}]})

        assert validated["attendees"] == [{"email": "a@example.com"}]

    def test_empty_contract_accepts_no_arguments(self) -> None:
        schema = adapt_contract(None)

        assert schema.parameters == {"type": "object", "properties": {}}
        assert schema.validate({}) == {}

    def test_strict_mode_rejects_undeclared_required_names(self) -> None:
        with pytest.raises(ActionContractError) as info:
            adapt_contract({"type": "object", "properties": {}, "required": ["ghost"]}, strict=True)
        assert info.value.details["missing"] == ["ghost"]

    def test_strict_mode_rejects_invalid_json_schema(self) -> None:
        with pytest.raises(ActionContractError):
            adapt_contract({"type": "object", "properties": {"a": {"type": 12}}}, strict=True)
