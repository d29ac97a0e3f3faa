"""
Shared utility functions for the storythread engine.

Consolidates the small helpers that the schema validator, the canon
lifecycle, the snapshot merger and the store all need: tolerant JSON
reading, schema cleaning for ``jsonschema``, copy-on-write cloning of JSON
documents and ordered-set list operations.
"""

import copy
import json
import logging

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# JSON I/O
# ---------------------------------------------------------------------------

def safe_read_json(path, default=None):
    """Read a JSON file, returning *default* if the file is missing or corrupt.

    Parameters
    ----------
    path : str or pathlib.Path
        Absolute path to the JSON file.
    default
        Value returned when the file cannot be read (default ``None``).

    Returns
    -------
    object
        Parsed JSON content, or *default* on failure.
    """
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except (FileNotFoundError, json.JSONDecodeError, OSError):
        logger.warning("Could not read JSON file %s", path)
        return default


def dumps_compact(data) -> str:
    """Serialise *data* the way it is embedded in prompts and DB columns."""
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def clone_document(document):
    """Return a deep copy of a JSON-like document (copy-on-write helper)."""
    return copy.deepcopy(document)


# ---------------------------------------------------------------------------
# Ordered-set list operations
# ---------------------------------------------------------------------------

def append_unique(items: list, value) -> bool:
    """Append *value* to *items* unless already present.

    Returns ``True`` when the list changed.
    """
    if value in items:
        return False
    items.append(value)
    return True


def remove_first(items: list, value) -> bool:
    """Remove the first occurrence of *value*; no-op when absent."""
    try:
        items.remove(value)
    except ValueError:
        return False
    return True


def replace_first_or_append(items: list, value) -> None:
    """Replace the first occurrence of *value* in place, else append it."""
    try:
        index = items.index(value)
    except ValueError:
        items.append(value)
        return
    items[index] = value


# ---------------------------------------------------------------------------
# Schema cleaning (strips custom extensions for jsonschema validation)
# ---------------------------------------------------------------------------

_SCHEMA_SKIP_KEYS = {"$id", "$schema"}


def clean_schema_for_validation(schema):
    """Return a copy of *schema* stripped of ids and custom ``x-`` keywords.

    ``$id`` values in the bundled schemas are bare names, which would make
    ``jsonschema`` resolve local ``#/$defs`` references against a bogus base
    URI.  The same cleaned copy is what gets sent to the provider as a tool
    input schema.

    Parameters
    ----------
    schema : dict
        The raw JSON Schema.

    Returns
    -------
    dict
        A cleaned copy safe for ``jsonschema`` and the provider.
    """
    clean = {}
    for key, value in schema.items():
        if key in _SCHEMA_SKIP_KEYS or key.startswith("x-"):
            continue
        clean[key] = _clean_schema_deep(value)
    return clean


def _clean_schema_deep(obj):
    """Recursively remove custom extension keywords from nested schema objects."""
    if isinstance(obj, dict):
        return {
            key: _clean_schema_deep(value)
            for key, value in obj.items()
            if not key.startswith("x-")
        }
    if isinstance(obj, list):
        return [_clean_schema_deep(item) for item in obj]
    return obj
