"""Parameter contract adaptation.

Turns an action's JSON-schema-like parameter contract into a validation model
plus a normalized JSON schema for the model API. The conversion is pure: the
same contract always yields the same ``schema_json``.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from .errors import ActionContractError

__all__ = ["StrictSchema", "adapt_contract", "format_validation_error"]

_PRIMITIVES: Mapping[str, type] = {
    "string": str,
    "number": float,
    "integer": int,
    "boolean": bool,
}
_MODEL_NAME_SAFE = re.compile(r"[^0-9A-Za-z_]")
_MODEL_CONFIG = ConfigDict(extra="ignore")


@dataclass(slots=True, frozen=True)
class StrictSchema:
    """Validation model and canonical JSON schema for one contract.

    Two instances compare equal when their canonical schemas match.
    """

    model: type[BaseModel] = field(compare=False, repr=False)
    schema_json: str

    @property
    def parameters(self) -> dict[str, Any]:
        return json.loads(self.schema_json)

    def validate(self, arguments: Mapping[str, Any] | None) -> dict[str, Any]:
        """Validate ``arguments`` and return them without unset optional fields.

        Raises:
            pydantic.ValidationError: arguments do not satisfy the contract.
        """

        instance = self.model.model_validate(dict(arguments or {}))
        return instance.model_dump(by_alias=True, exclude_none=True)


def adapt_contract(
    contract: Mapping[str, Any] | None,
    *,
    name: str = "ActionArguments",
    strict: bool = False,
) -> StrictSchema:
    """Adapt ``contract`` into a :class:`StrictSchema`.

    Args:
        contract: Object schema with ``properties`` and ``required``.
        name: Model name, used for nested model names as well.
        strict: Reject malformed contracts instead of tolerating them.

    Raises:
        ActionContractError: ``strict`` is set and the contract is malformed.
    """

    contract = contract or {}
    if strict:
        _check_contract(contract, name)
    normalized, model = _adapt_object(contract, _model_name(name))
    return StrictSchema(
        model=model,
        schema_json=json.dumps(normalized, sort_keys=True, separators=(",", ":"), ensure_ascii=False),
    )


def format_validation_error(exc: ValidationError) -> str:
    """Render pydantic errors as ``field: message`` pairs."""

    parts: List[str] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "arguments"
        parts.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts)


def _check_contract(contract: Mapping[str, Any], name: str) -> None:
    try:
        Draft7Validator.check_schema(dict(contract))
    except SchemaError as exc:
        raise ActionContractError(message=f"Invalid parameter contract for {name}: {exc.message}", action_name=name) from exc
    properties = contract.get("properties") or {}
    missing = [item for item in contract.get("required") or () if item not in properties]
    if missing:
        raise ActionContractError(
            message=f"Required parameters not declared in properties for {name}: {', '.join(map(str, missing))}",
            details={"missing": missing},
            action_name=name,
        )


def _model_name(name: str) -> str:
    cleaned = _MODEL_NAME_SAFE.sub("_", name) or "ActionArguments"
    return cleaned if not cleaned[0].isdigit() else f"_{cleaned}"


def _adapt_object(contract: Mapping[str, Any], model_name: str) -> Tuple[Dict[str, Any], type[BaseModel]]:
    raw_properties = contract.get("properties")
    properties: Mapping[str, Any] = raw_properties if isinstance(raw_properties, Mapping) else {}
    required = [
        item
        for item in contract.get("required") or ()
        if isinstance(item, str) and item and item in properties
    ]

    normalized_properties: Dict[str, Any] = {}
    fields: Dict[str, Any] = {}
    for index, (prop_name, prop_schema) in enumerate(sorted(properties.items())):
        prop_schema = prop_schema if isinstance(prop_schema, Mapping) else {}
        normalized, annotation = _adapt_property(prop_schema, f"{model_name}_{_model_name(prop_name)}")
        normalized_properties[prop_name] = normalized
        description = prop_schema.get("description")
        description = description if isinstance(description, str) else None
        if prop_name in required:
            fields[f"p{index}"] = (annotation, Field(..., alias=prop_name, description=description))
        else:
            fields[f"p{index}"] = (Optional[annotation], Field(None, alias=prop_name, description=description))

    normalized_object: Dict[str, Any] = {"type": "object", "properties": normalized_properties}
    if required:
        normalized_object["required"] = sorted(required)
    description = contract.get("description")
    if isinstance(description, str) and description:
        normalized_object["description"] = description
    model = create_model(model_name, __config__=_MODEL_CONFIG, **fields)
    return normalized_object, model


def _adapt_property(schema: Mapping[str, Any], model_name: str) -> Tuple[Dict[str, Any], Any]:
    normalized: Dict[str, Any] = {}
    description = schema.get("description")
    if isinstance(description, str) and description:
        normalized["description"] = description

    enum_values = schema.get("enum")
    declared = schema.get("type")
    if not isinstance(declared, str):
        # type unions and malformed types accept any value
        declared = None
    if isinstance(enum_values, list) and enum_values:
        if declared in _PRIMITIVES:
            normalized["type"] = declared
        normalized["enum"] = list(enum_values)
        try:
            return normalized, Literal[tuple(enum_values)]
        except TypeError:
            return normalized, Any

    if declared in _PRIMITIVES:
        normalized["type"] = declared
        return normalized, _PRIMITIVES[declared]

    if declared == "array":
        normalized["type"] = "array"
        items = schema.get("items")
        if isinstance(items, Mapping) and items:
            item_schema, item_annotation = _adapt_property(items, f"{model_name}_item")
            normalized["items"] = item_schema
            return normalized, List[item_annotation]
        return normalized, List[Any]

    if declared == "object":
        if isinstance(schema.get("properties"), Mapping) and schema["properties"]:
            nested, nested_model = _adapt_object(schema, model_name)
            nested.update(normalized)
            return nested, nested_model
        normalized["type"] = "object"
        return normalized, Dict[str, Any]

    return normalized, Any
