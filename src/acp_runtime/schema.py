"""Schema validation collaborator.

An agent declares its input and output schemas as either:
- a pydantic model class (payloads are validated into model instances)
- a JSON-Schema dict (payloads are checked with jsonschema, returned as-is)
- None (anything goes)

The server calls the validator before invoking a handler and again on the
handler's output. Any object implementing ``SchemaValidator`` can replace
the default.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol, runtime_checkable

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from pydantic import BaseModel, TypeAdapter, ValidationError

from .errors import SchemaValidationError

logger = logging.getLogger(__name__)

SchemaRef = type[BaseModel] | dict[str, Any] | None

_jsonable = TypeAdapter(Any)


def is_model_schema(schema: Any) -> bool:
    return isinstance(schema, type) and issubclass(schema, BaseModel)


def check_schema(schema: SchemaRef) -> None:
    """Reject schema references the validator cannot use.

    Raises:
        SchemaValidationError: If the schema is malformed
    """
    if schema is None or is_model_schema(schema):
        return
    if not isinstance(schema, dict):
        raise SchemaValidationError(f"Unsupported schema reference: {schema!r}")
    try:
        Draft202012Validator.check_schema(schema)
    except SchemaError as e:
        raise SchemaValidationError(f"Invalid JSON schema: {e.message}") from e


def schema_to_json(schema: SchemaRef) -> dict[str, Any] | None:
    """Render a schema reference as a JSON-Schema dict for the wire."""
    if schema is None:
        return None
    if is_model_schema(schema):
        return schema.model_json_schema()  # type: ignore[union-attr]
    return dict(schema)  # type: ignore[arg-type]


def to_jsonable(value: Any) -> Any:
    """Convert handler output (models, dataclasses, ...) to JSON-ready data."""
    return _jsonable.dump_python(value, mode="json")


@runtime_checkable
class SchemaValidator(Protocol):
    """Protocol for schema validation backends."""

    def validate(self, schema: SchemaRef, payload: Any) -> Any:
        """Validate ``payload`` against ``schema``.

        Returns:
            The validated (possibly typed) value

        Raises:
            SchemaValidationError: If the payload does not conform
        """
        ...


class DefaultSchemaValidator:
    """pydantic for model classes, jsonschema for JSON-Schema dicts."""

    def __init__(self) -> None:
        self._validators: dict[str, Draft202012Validator] = {}

    def _validator_for(self, schema: dict[str, Any]) -> Draft202012Validator:
        key = json.dumps(schema, sort_keys=True, default=str)
        validator = self._validators.get(key)
        if validator is None:
            validator = Draft202012Validator(schema)
            self._validators[key] = validator
        return validator

    def validate(self, schema: SchemaRef, payload: Any) -> Any:
        if schema is None:
            return payload

        if is_model_schema(schema):
            try:
                return schema.model_validate(payload)  # type: ignore[union-attr]
            except ValidationError as e:
                errors = [
                    f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
                    for err in e.errors()
                ]
                raise SchemaValidationError("Payload does not match schema", errors=errors) from e

        if isinstance(schema, dict):
            if isinstance(payload, BaseModel):
                payload = payload.model_dump(mode="json")
            validator = self._validator_for(schema)
            errors = [
                f"{'.'.join(str(p) for p in err.absolute_path) or '<root>'}: {err.message}"
                for err in sorted(validator.iter_errors(payload), key=lambda e: [str(p) for p in e.absolute_path])
            ]
            if errors:
                raise SchemaValidationError("Payload does not match schema", errors=errors)
            return payload

        raise SchemaValidationError(f"Unsupported schema reference: {schema!r}")
