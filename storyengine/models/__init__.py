"""
storyengine/models/ -- Pydantic v2 models for storythread documents.

Submodules:
    profile     Versioned story profile (locked + flexible canon, flow state).
    episode     Episode, Choice, StateSnapshot and ContinuityNote.
"""

from storyengine.models.episode import Choice, ContinuityNote, Episode, StateSnapshot
from storyengine.models.profile import (
    CURRENT_SCHEMA_VERSION,
    FlexibleCanonItem,
    StoryProfile,
    migrate_profile,
    parse_profile,
)

__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "Choice",
    "ContinuityNote",
    "Episode",
    "FlexibleCanonItem",
    "StateSnapshot",
    "StoryProfile",
    "migrate_profile",
    "parse_profile",
]
