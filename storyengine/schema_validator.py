"""
storyengine/schema_validator.py -- Structural validation of JSON documents.

Pure functions over ``jsonschema`` (Draft 2020-12).  Every error is
collected, not just the first one, and each carries a path into the value
plus a human-readable message so callers can render a flat diagnostics list.

Usage::

    from storyengine.schema_validator import load_schema, validate, format_errors

    report = validate(load_schema("episode_generate"), output)
    if not report.valid:
        raise OutputSchemaError("...", format_errors(report.errors))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

import jsonschema

from storyengine.utils import clean_schema_for_validation, safe_read_json

logger = logging.getLogger(__name__)

SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"

# Names of the bundled schemas (file stem without ``.schema.json``).
STORY_PROFILE = "story_profile"
STORY_CREATE_OUTPUT = "story_create_output"
EPISODE_GENERATE = "episode_generate"
EPISODE_FINALIZE = "episode_finalize"


@dataclass(frozen=True)
class ErrorDetail:
    """One schema violation."""
    path: str
    message: str
    validator: str = ""

    def __str__(self) -> str:
        return f"{self.path} {self.message}"


@dataclass
class ValidationReport:
    valid: bool
    errors: list[ErrorDetail] = field(default_factory=list)

    def messages(self) -> list[str]:
        return format_errors(self.errors)


@lru_cache(maxsize=None)
def _load_cleaned(name: str) -> dict:
    raw = safe_read_json(SCHEMAS_DIR / f"{name}.schema.json")
    if not isinstance(raw, dict):
        raise FileNotFoundError(f"Bundled schema '{name}' is missing or unreadable")
    return clean_schema_for_validation(raw)


def load_schema(name: str) -> dict:
    """Return a bundled schema by name, cleaned for validation.

    The result is a fresh copy; the cached original is never handed out.
    """
    return clean_schema_for_validation(_load_cleaned(name))


def validate(schema: dict, value) -> ValidationReport:
    """Validate *value* against *schema* and collect every error.

    Parameters
    ----------
    schema : dict
        A JSON Schema (custom ``x-`` keywords and ``$id`` are ignored).
    value
        Any JSON-like value.

    Returns
    -------
    ValidationReport
        ``valid`` is ``True`` exactly when ``errors`` is empty.
    """
    validator = jsonschema.Draft202012Validator(clean_schema_for_validation(schema))
    raw_errors = sorted(
        validator.iter_errors(value),
        key=lambda e: (list(map(str, e.absolute_path)), e.validator),
    )
    errors = [_to_detail(err) for err in raw_errors]
    return ValidationReport(valid=not errors, errors=errors)


def format_errors(errors: list[ErrorDetail]) -> list[str]:
    """Render errors as ``"<path> <message>"`` strings."""
    return [str(err) for err in errors]


def _to_detail(error: jsonschema.ValidationError) -> ErrorDetail:
    path = "".join(f"/{part}" for part in error.absolute_path) or "(root)"
    return ErrorDetail(
        path=path,
        message=_humanize_message(error),
        validator=str(error.validator),
    )


def _humanize_message(error: jsonschema.ValidationError) -> str:
    """Make the common jsonschema messages read like sentences."""
    if error.validator == "required":
        return f"is missing a required field: {error.message}"
    if error.validator == "type":
        return f"has the wrong type: {error.message}"
    if error.validator in ("enum", "const"):
        return f"has an invalid value: {error.message}"
    if error.validator in ("minItems", "maxItems"):
        return f"has the wrong number of items: {error.message}"
    if error.validator == "additionalProperties":
        return f"has unexpected fields: {error.message}"
    return error.message
