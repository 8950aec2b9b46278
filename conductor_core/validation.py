"""Shallow parameter validation.

Checks required-property presence and the four primitive types (string,
number, boolean, array). Nested schemas are not descended into.
"""

from typing import Any

TYPE_CHECKS = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "array": lambda v: isinstance(v, list),
}


def validate_parameters(schema: dict[str, Any] | None, params: dict[str, Any] | None) -> list[str]:
    """Return validation errors for `params` against an object schema.

    An empty list means the parameters are valid.
    """
    if not schema:
        return []
    if not isinstance(schema, dict):
        return ["Parameter schema must be a JSON object"]
    if params is None:
        params = {}
    if not isinstance(params, dict):
        return ["Parameters must be a JSON object"]

    errors = []
    for name in schema.get("required") or []:
        if name not in params:
            errors.append(f"Missing required parameter: {name}")

    properties = schema.get("properties") or {}
    for name, value in params.items():
        expected = (properties.get(name) or {}).get("type")
        check = TYPE_CHECKS.get(expected)
        if check is not None and not check(value):
            errors.append(f"Parameter '{name}' should be a{'n' if expected == 'array' else ''} {expected}")

    return errors


def sample_from_schema(schema: dict[str, Any] | None) -> dict[str, Any]:
    """Build a smoke-test input from property types and defaults."""
    placeholders = {
        "string": "sample-string",
        "number": 42,
        "integer": 42,
        "boolean": True,
        "array": [],
        "object": {},
    }
    sample = {}
    for name, prop in ((schema or {}).get("properties") or {}).items():
        prop = prop or {}
        sample[name] = prop["default"] if "default" in prop else placeholders.get(prop.get("type"))
    return sample
