"""
Schema Validation - SopsSecret document validation.

Validates SopsSecret bodies against the OpenAPI v3 schema published in the
CustomResourceDefinition, so malformed documents are rejected before the
reconciler or the CLI acts on them.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator, ValidationError

logger = logging.getLogger(__name__)

_STRING_MAP = {"type": "object", "additionalProperties": {"type": "string"}}

SOPS_SECRET_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["metadata"],
    "properties": {
        "apiVersion": {"type": "string"},
        "kind": {"type": "string"},
        "metadata": {
            "type": "object",
            "required": ["name"],
            "properties": {
                "name": {"type": "string", "minLength": 1},
                "namespace": {"type": "string"},
                "finalizers": {"type": "array", "items": {"type": "string"}},
            },
        },
        "spec": {
            "type": ["object", "null"],
            "properties": {
                "template": {
                    "type": ["object", "null"],
                    "properties": {
                        "name": {"type": "string"},
                        "namespaces": {
                            "type": ["array", "null"],
                            "items": {"type": "string", "minLength": 1},
                        },
                        "labels": {"oneOf": [_STRING_MAP, {"type": "null"}]},
                        "annotations": {"oneOf": [_STRING_MAP, {"type": "null"}]},
                    },
                },
                "ignoredKeys": {
                    "type": ["array", "null"],
                    "items": {"type": "string"},
                },
                "skipFinalizers": {"type": "boolean"},
            },
        },
        "type": {"type": "string"},
        "data": {"type": "string"},
    },
}


def validate_spec_against_schema(
    spec: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a document against an OpenAPI v3 schema.

    Args:
        spec: The document to validate
        schema: The OpenAPI v3 JSON Schema to validate against

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        validator = Draft7Validator(schema)
        errors = sorted(validator.iter_errors(spec), key=lambda e: list(e.absolute_path))

        if not errors:
            return True, None

        error_messages = []
        for error in errors:
            path = ".".join(str(p) for p in error.absolute_path) or "(root)"
            error_messages.append(f"{path}: {error.message}")

        return False, "; ".join(error_messages)

    except ValidationError as e:
        return False, f"Validation error: {str(e)}"


def validate_source(body: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """Validate a SopsSecret body. Returns (is_valid, error_message)."""
    if not isinstance(body, dict):
        return False, "(root): document must be a mapping"
    return validate_spec_against_schema(body, SOPS_SECRET_SCHEMA)


def is_sops_secret(document: Any) -> bool:
    """Return True if a parsed YAML document is a well-formed SopsSecret."""
    if not isinstance(document, dict) or document.get("kind") != "SopsSecret":
        return False
    is_valid, error = validate_source(document)
    if not is_valid:
        logger.warning(f"Skipping malformed SopsSecret document: {error}")
    return is_valid
