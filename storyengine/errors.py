"""
storyengine/errors.py -- Error taxonomy shared by the engine and the app layer.

Every error carries a machine-readable ``kind``, a human-readable message and
a flat ``details`` list so the request boundary can always return structured
detail, never free text alone.

    StoryEngineError
        InputValidationError       malformed request / profile fails schema
        ProviderError              transport, HTTP, refusal, unparsable payload
            ConfigurationError     missing credentials (fatal, never retried)
        OutputSchemaError          generated value does not match its schema
        ContentRejectedError       safety/continuity issues after all repairs
        PersistenceError           store failure (sqlite errors are wrapped)
            SessionConflictError   optimistic session token mismatch
            EpisodeAlreadyFinalizedError
"""

from __future__ import annotations


class StoryEngineError(Exception):
    """Base class for all errors surfaced to callers."""

    kind = "internal_error"
    status_code = 500

    def __init__(self, message: str, details: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.details = list(details or [])

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "message": self.message,
            "details": list(self.details),
        }


class InputValidationError(StoryEngineError):
    kind = "input_validation_error"
    status_code = 400


class ProviderError(StoryEngineError):
    kind = "provider_error"


class ConfigurationError(ProviderError):
    kind = "configuration_error"


class OutputSchemaError(StoryEngineError):
    kind = "output_schema_error"


class ContentRejectedError(StoryEngineError):
    """Safety or continuity issues remained after the last repair attempt."""

    kind = "safety_or_continuity_violation"


class PersistenceError(StoryEngineError):
    kind = "persistence_error"


class SessionConflictError(PersistenceError):
    kind = "session_conflict"
    status_code = 409


class EpisodeAlreadyFinalizedError(PersistenceError):
    kind = "episode_already_finalized"
    status_code = 409
