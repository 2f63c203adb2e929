"""Validation of decoded JSON values against a JSON Schema (draft 2020-12).

Validation reports a single failure as a ``SchemaValidationError`` whose
``path`` is JSONPath-style and rooted at ``$``. When several keywords fail,
the shallowest one is reported; at equal depth ``type`` wins over
``required`` and ``required`` over ``enum``; array items fail in index order.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from jsonschema.exceptions import ValidationError as JSONSchemaValidationError

from flowkernel.errors import SchemaValidationError

_KEYWORD_RANK = {"type": 0, "required": 1, "enum": 2, "const": 2}


def _fail(path: str, keyword: str, message: str) -> SchemaValidationError:
    return SchemaValidationError(
        f"validation failed at {path}: {message}", path=path, keyword=keyword
    )


def _first_error(validator: Draft202012Validator, data: Any) -> Optional[JSONSchemaValidationError]:
    ranked = [
        ((len(error.absolute_path), _KEYWORD_RANK.get(str(error.validator), 3), seq), error)
        for seq, error in enumerate(validator.iter_errors(data))
    ]
    if not ranked:
        return None
    return min(ranked, key=lambda pair: pair[0])[1]


class Validator:
    """Checks data against a schema mapping; stateless and reusable."""

    def validate(self, schema: Optional[Mapping[str, Any]], data: Any) -> None:
        if not schema:
            return
        try:
            Draft202012Validator.check_schema(schema)
        except SchemaError as exc:
            raise _fail("$", "schema", f"invalid schema: {exc.message}") from exc

        error = _first_error(Draft202012Validator(schema), data)
        if error is None:
            return
        raise _fail(error.json_path, str(error.validator), error.message)

    def is_valid(self, schema: Optional[Mapping[str, Any]], data: Any) -> bool:
        try:
            self.validate(schema, data)
        except SchemaValidationError:
            return False
        return True


_default_validator = Validator()


def validate(schema: Optional[Mapping[str, Any]], data: Any) -> None:
    """Validate ``data`` with a shared validator instance."""
    _default_validator.validate(schema, data)
