"""
storyapp/services/story_seed.py -- Initial story profile for a new story.

Every story starts from the same canon scaffold, personalised by genre,
rating and language.  Flexible canon starts fully ``tentative`` with empty
evidence; the finalize flow promotes it as episodes corroborate it.
"""

from __future__ import annotations

from storyengine.models.profile import CURRENT_SCHEMA_VERSION

WORLD_RULES = [
    "Death is permanent; resurrection is impossible.",
    "Time travel is impossible.",
]

HARD_FORBIDDEN_TOPICS = ["hate", "sexual violence", "self-harm"]


def _tentative(value: str) -> dict:
    return {"value": value, "status": "tentative", "evidence": []}


def main_character_name(genre: str) -> str:
    return "Kerem" if "noir" in (genre or "").lower() else "Aylin"


def build_story_profile(genre: str, content_rating: str, app_lang: str) -> dict:
    """Return the version-1 profile document for a new story."""
    hero = main_character_name(genre)
    return {
        "schema_version": CURRENT_SCHEMA_VERSION,
        "version": 1,
        "language": app_lang,
        "genre": genre,
        "content_rating": content_rating,
        "canon": {
            "locked": {
                "world_rules": list(WORLD_RULES),
                "main_characters": [
                    {
                        "name": hero,
                        "identity": "A resourceful traveler surviving through wit and courage.",
                        "traits": ["brave", "curious", "stubborn"],
                        "motivation": "Protect loved ones.",
                        "fear": "Losing control.",
                    },
                ],
                "narrative_style": {
                    "pov": "third",
                    "tense": "past",
                    "reading_level": "young_adult",
                    "tone_keywords": ["immersive", "emotional"],
                },
                "theme_tone": f"{genre} adventure",
                "hard_forbidden_topics": list(HARD_FORBIDDEN_TOPICS),
            },
            "flexible": {
                "supporting_roles": [_tentative("mentor"), _tentative("rival")],
                "core_conflict": _tentative("Find a lost relic"),
                "locations_seed": [_tentative("Old Harbor"), _tentative("Shadow Bazaar")],
                "key_items_or_secrets": [_tentative("A map that glows in moonlight")],
            },
        },
        "flow": {
            "dynamic_state": {
                "current_time": "Night",
                "current_location_id": "old_harbor",
                "characters_present": [hero],
                "inventory": ["field notebook"],
                "open_threads": ["Who stole the relic?"],
                "segment_goal": "Find the first clue",
                "cliffhanger_seed": "A hidden sigil appears on the map",
            },
        },
    }
