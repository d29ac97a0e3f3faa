"""
Shared pytest fixtures for the storythread test suite.

Provides:
    - sample_profile: a valid version-1 story profile (PG-13 fantasy)
    - store: an in-memory StoryStore
    - fake_generator: a queue-backed stand-in for the generation client
    - orchestrator: EpisodeOrchestrator wired to the two above
    - creation_output / episode_output / finalize_output: valid model outputs
"""

import copy
import sys
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Ensure the packages are importable regardless of where pytest is invoked
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).resolve().parent.parent

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from storyapp.config import Settings  # noqa: E402
from storyapp.services.orchestrator import EpisodeOrchestrator  # noqa: E402
from storyapp.services.story_seed import build_story_profile  # noqa: E402
from storyengine.story_store import StoryStore  # noqa: E402


class FakeGenerator:
    """Returns queued outputs in order and records every call.

    A queued exception instance is raised instead of returned.
    """

    def __init__(self, outputs=None):
        self.outputs = list(outputs or [])
        self.calls = []

    def queue(self, *outputs):
        self.outputs.extend(outputs)

    def generate(self, model, system_instruction, user_instruction, schema,
                 temperature=0.2, max_output_tokens=1200):
        self.calls.append({
            "model": model,
            "system": system_instruction,
            "user": user_instruction,
            "schema": schema,
            "temperature": temperature,
            "max_output_tokens": max_output_tokens,
        })
        if not self.outputs:
            raise AssertionError("FakeGenerator has no queued output")
        item = self.outputs.pop(0)
        if isinstance(item, BaseException):
            raise item
        return copy.deepcopy(item)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def sample_profile():
    """Return a valid PG-13 fantasy profile at version 1."""
    return build_story_profile("fantasy", "PG-13", "en")


@pytest.fixture
def store():
    s = StoryStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def fake_generator():
    return FakeGenerator()


@pytest.fixture
def settings():
    return Settings(api_key="test-key", model="test-model", db_path=":memory:")


@pytest.fixture
def orchestrator(fake_generator, store, settings):
    return EpisodeOrchestrator(fake_generator, store, settings)


@pytest.fixture
def creation_output():
    """Return a valid story-creation output."""
    return {
        "title": "The Moonlit Relic",
        "logline": "A traveler chases a thief through a harbor that never sleeps.",
        "episode_title": "Lanterns on the Water",
        "episode_text": "Aylin stepped off the ferry as the harbor bells rang midnight.",
        "choices": [
            {
                "choice_id": "A",
                "text": "Follow the hooded figure",
                "intent": "pursue",
                "risk_level": "medium",
                "leads_to": "The Shadow Bazaar",
            },
            {
                "choice_id": "B",
                "text": "Ask the harbormaster",
                "intent": "investigate",
                "risk_level": "low",
                "leads_to": "The harbor office",
            },
        ],
    }


@pytest.fixture
def episode_output():
    """Return a clean, valid episode-generation output."""
    return {
        "episode_id": "story-2",
        "segment": {
            "title": "The Bazaar at Dawn",
            "text": "Aylin slipped between the stalls, the map warm in her pocket.",
            "word_count": 12,
        },
        "choices": [
            {
                "choice_id": "A",
                "text": "Bargain with the spice merchant",
                "intent": "negotiate",
                "risk_level": "low",
                "leads_to": "A new ally",
            },
            {
                "choice_id": "B",
                "text": "Climb to the rooftops",
                "intent": "escape",
                "risk_level": "high",
                "leads_to": "A chase",
            },
        ],
        "state_update": {
            "time": "Dawn",
            "location_id": "shadow_bazaar",
            "characters_present": ["Aylin"],
            "inventory_delta": [
                {"op": "add", "owner_id": "Aylin", "item": "brass key"},
            ],
            "open_threads_delta": {
                "add": ["Who is the spice merchant?"],
                "resolve": [],
            },
        },
        "ledger_updates": [],
        "continuity_checks": [
            {"rule": "world_rule_1", "result": "pass", "note": "No resurrections."},
        ],
        "assumptions": [],
    }


@pytest.fixture
def finalize_output():
    """Return a valid finalizer output."""
    return {
        "summary_bullets": ["Aylin reached the bazaar.", "She found a brass key."],
        "open_threads": ["Who stole the relic?", "Who is the spice merchant?"],
        "state_snapshot": {
            "time": "Dawn",
            "location_id": "shadow_bazaar",
            "characters_present": ["Aylin"],
            "inventory": ["field notebook", "brass key"],
        },
        "new_persistent_facts": [
            {"key": "brass_key_origin", "value": "The key was forged in Old Harbor."},
        ],
        "flexible_canon_hits": [
            {"category": "supporting_roles", "value": "mentor", "evidence": "the old sailor guides her"},
        ],
    }
