"""Input validation utilities."""
import re
from typing import Any, Dict, List

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

VALID_TOOL_NAME = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_.\-]*$")


def validate_tool_name(name: str) -> bool:
    """Validate a tool name: identifier characters plus '.' and '-'."""
    return bool(isinstance(name, str) and VALID_TOOL_NAME.match(name))


def check_input_schema(schema: Dict[str, Any]) -> None:
    """Raise ValueError if a tool's declared input schema is not usable."""
    if not isinstance(schema, dict):
        raise ValueError("Input schema must be an object")
    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as e:
        raise ValueError(f"Invalid input schema: {e.message}") from e


def validate_arguments(schema: Dict[str, Any], arguments: Any) -> List[Dict[str, Any]]:
    """Validate tool arguments against a JSON-Schema-like input schema.

    Covers required fields, declared types, enums and nested items/properties.

    Returns:
        List of error details; empty when the arguments are valid.
    """
    validator = Draft7Validator(schema)
    errors = []
    for error in sorted(validator.iter_errors(arguments), key=lambda e: list(e.absolute_path)):
        field = ".".join(str(p) for p in error.absolute_path) or "root"
        if error.validator == "required":
            message = error.message.replace(" is a required property", "")
            message = f"Required field {message} is missing"
        elif error.validator == "type":
            message = f"Field '{field}' must be of type '{error.validator_value}'"
        elif error.validator == "enum":
            message = f"Field '{field}' must be one of {error.validator_value}"
        else:
            message = error.message
        errors.append({"field": field, "message": message})
    return errors
