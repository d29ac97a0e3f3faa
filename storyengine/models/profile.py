"""
storyengine/models/profile.py -- Typed, versioned story profile documents.

Profiles are persisted as JSON documents, but every read goes through
``parse_profile`` so canon access is checked by pydantic.  Documents carry a
``schema_version`` tag; ``PROFILE_MODELS`` maps each tag this code
understands to its model, and ``migrate_profile`` upgrades older documents
before validation.

Known versions:
    0   legacy, untagged.  A finalize may have written ``dynamic_state.time``
        instead of ``current_time``.
    1   current.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from storyengine.utils import clone_document

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 1

ContentRating = Literal["PG", "PG-13", "ADULT"]
CanonStatus = Literal["tentative", "confirmed", "locked"]


class FlexibleCanonItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    value: str
    status: CanonStatus = "tentative"
    evidence: list[str] = Field(default_factory=list)


class FlexibleCanon(BaseModel):
    model_config = ConfigDict(extra="allow")

    supporting_roles: list[FlexibleCanonItem] = Field(default_factory=list)
    core_conflict: FlexibleCanonItem
    locations_seed: list[FlexibleCanonItem] = Field(default_factory=list)
    key_items_or_secrets: list[FlexibleCanonItem] = Field(default_factory=list)


class MainCharacter(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    identity: str = ""
    traits: list[str] = Field(default_factory=list)
    motivation: str = ""
    fear: str = ""


class LockedCanon(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    world_rules: list[str] = Field(default_factory=list)
    main_characters: list[MainCharacter] = Field(default_factory=list)
    narrative_style: dict[str, Any] = Field(default_factory=dict)
    theme_tone: str = ""
    hard_forbidden_topics: list[str] = Field(default_factory=list)


class Canon(BaseModel):
    model_config = ConfigDict(extra="allow")

    locked: LockedCanon
    flexible: FlexibleCanon


class DynamicState(BaseModel):
    model_config = ConfigDict(extra="allow")

    current_time: str = ""
    current_location_id: str = ""
    characters_present: list[str] = Field(default_factory=list)
    inventory: list[str] = Field(default_factory=list)
    open_threads: list[str] = Field(default_factory=list)
    segment_goal: str = ""


class Flow(BaseModel):
    model_config = ConfigDict(extra="allow")

    dynamic_state: DynamicState = Field(default_factory=DynamicState)


class StoryProfileV1(BaseModel):
    model_config = ConfigDict(extra="allow")

    schema_version: Literal[1] = 1
    version: int = Field(ge=1)
    language: str
    genre: str
    content_rating: ContentRating
    canon: Canon
    flow: Flow = Field(default_factory=Flow)

    @property
    def hard_forbidden_topics(self) -> list[str]:
        return list(self.canon.locked.hard_forbidden_topics)

    @property
    def segment_goal(self) -> str:
        return self.flow.dynamic_state.segment_goal


StoryProfile = StoryProfileV1

# schema_version -> model; the tag selects the model after migration.
PROFILE_MODELS: dict[int, type[BaseModel]] = {
    1: StoryProfileV1,
}


# ------------------------------------------------------------------
# Migrations
# ------------------------------------------------------------------

def _migrate_v0_to_v1(document: dict) -> dict:
    dynamic = (document.get("flow") or {}).get("dynamic_state")
    if isinstance(dynamic, dict) and "time" in dynamic:
        legacy_time = dynamic.pop("time")
        dynamic.setdefault("current_time", legacy_time)
    document["schema_version"] = 1
    return document


_MIGRATIONS = {
    0: _migrate_v0_to_v1,
}


def migrate_profile(document: dict) -> dict:
    """Return a copy of *document* upgraded to ``CURRENT_SCHEMA_VERSION``."""
    migrated = clone_document(document)
    version = migrated.get("schema_version", 0)
    if not isinstance(version, int) or isinstance(version, bool):
        raise ValueError(f"Invalid profile schema_version: {version!r}")
    while version < CURRENT_SCHEMA_VERSION:
        step = _MIGRATIONS.get(version)
        if step is None:
            raise ValueError(f"No migration from profile schema version {version}")
        migrated = step(migrated)
        logger.debug("Migrated story profile schema v%d -> v%d", version, migrated["schema_version"])
        version = migrated["schema_version"]
    return migrated


def parse_profile(document: dict) -> StoryProfile:
    """Migrate *document* and validate it into a typed profile.

    Raises ``ValueError`` (pydantic's ``ValidationError`` included) when the
    document cannot be migrated or does not fit its model.
    """
    migrated = migrate_profile(document)
    model = PROFILE_MODELS.get(migrated["schema_version"])
    if model is None:
        raise ValueError(
            f"Unsupported profile schema_version {migrated['schema_version']}"
        )
    return model.model_validate(migrated)
