"""
storyengine/continuity_notes.py -- Fact-ledger helpers.

Continuity notes are keyed facts a story must keep honouring.  Among a
story's *active* notes a key appears at most once: a new fact whose key is
already active is dropped, whatever its value.  Resolved notes do not block
a key from being reintroduced.
"""

from __future__ import annotations

from typing import Iterable

ACTIVE = "active"
RESOLVED = "resolved"


def world_rule_notes(world_rules: Iterable[str], episode_number: int = 1) -> list[dict]:
    """Seed notes for a new story, one per locked world rule."""
    return [
        {
            "key": f"world_rule_{index}",
            "value": rule,
            "status": ACTIVE,
            "introduced_in_episode": episode_number,
        }
        for index, rule in enumerate(world_rules, start=1)
    ]


def active_notes(notes: Iterable[dict]) -> list[dict]:
    return [n for n in notes if n.get("status", ACTIVE) == ACTIVE]


def active_keys(notes: Iterable[dict]) -> set[str]:
    return {n["key"] for n in active_notes(notes) if n.get("key")}


def filter_new_facts(existing_notes: Iterable[dict], facts: Iterable[dict]) -> list[dict]:
    """Return the facts whose key is not already active.

    Within *facts* the first occurrence of a key wins.
    """
    seen = active_keys(existing_notes)
    fresh: list[dict] = []
    for fact in facts:
        key = fact.get("key")
        if not key or key in seen:
            continue
        seen.add(key)
        fresh.append(fact)
    return fresh


def notes_for_prompt(notes: Iterable[dict]) -> list[dict]:
    """Compact view of notes for embedding in a generation prompt."""
    return [
        {"key": n.get("key", ""), "value": n.get("value", ""), "status": n.get("status", ACTIVE)}
        for n in notes
    ]
