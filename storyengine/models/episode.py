"""
storyengine/models/episode.py -- Episode, choice, snapshot and ledger models.
"""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Choice(BaseModel):
    """One of the two branches offered at the end of an episode."""

    model_config = ConfigDict(extra="ignore")

    choice_id: Literal["A", "B"]
    text: str
    intent: str = ""
    risk_level: Literal["low", "medium", "high"] = "low"
    # Free text; never resolved against other episodes.
    leads_to: str = ""


class StateSnapshot(BaseModel):
    """Narrative world state after an episode."""

    model_config = ConfigDict(extra="ignore")

    time: str = ""
    location_id: str = ""
    characters_present: list[str] = Field(default_factory=list)
    inventory: list[str] = Field(default_factory=list)
    open_threads: list[str] = Field(default_factory=list)


class Episode(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    story_id: Optional[str] = None
    episode_number: int = Field(ge=1)
    title: str
    text: str
    choices: list[Choice]
    recap: Optional[dict[str, Any]] = None
    state_snapshot: dict[str, Any] = Field(default_factory=dict)

    @field_validator("choices")
    @classmethod
    def _exactly_two_choices(cls, value: list[Choice]) -> list[Choice]:
        if sorted(choice.choice_id for choice in value) != ["A", "B"]:
            raise ValueError("an episode must offer exactly two choices, A and B")
        return value

    @property
    def is_finalized(self) -> bool:
        return self.recap is not None


class ContinuityNote(BaseModel):
    """A fact ledger entry; keys are unique among a story's active notes."""

    model_config = ConfigDict(extra="ignore")

    key: str
    value: str
    status: Literal["active", "resolved"] = "active"
    introduced_in_episode: int = 1
