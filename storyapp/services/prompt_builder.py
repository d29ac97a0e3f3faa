"""
storyapp/services/prompt_builder.py -- Prompt construction for every flow.

Builds the system and user instructions for story creation, episode
generation, episode repair and episode finalization.  Episode prompts are
laid out as labelled sections so the model can find locked canon, the
fact ledger and the reader's choice without guessing.  Prompt templates
are versioned for reproducibility.
"""

from __future__ import annotations

import logging

from storyengine.continuity_notes import notes_for_prompt
from storyengine.utils import dumps_compact

logger = logging.getLogger(__name__)

PROMPT_VERSION = "1.0"

DEFAULT_SEGMENT_GOAL = "Advance the plot"

REPAIR_INSTRUCTION = (
    "Repair the episode to remove the issues while keeping continuity and tone."
)

CREATION_SYSTEM_PROMPT = (
    "You are the Story Creator. Reply only through the provided tool with JSON "
    "that matches its schema. Write immersive interactive fiction; the opening "
    "episode must run to at least 400 words."
)

EPISODE_SYSTEM_PROMPT = (
    "You are the Episode Generator. Reply only through the provided tool with "
    "JSON that matches its schema. Treat story_profile.canon.locked as immutable "
    "truth and the continuity notes as constraints. Continue from the reader's "
    "choice, keep the tone and content rating, and end with exactly two choices "
    "(A and B). Flag any continuity risk as a 'warn' continuity check."
)

FINALIZE_SYSTEM_PROMPT = (
    "You are the Episode Finalizer. Reply only through the provided tool with "
    "JSON that matches its schema. Summarize the episode as concrete bullets, "
    "list the open threads, report the resulting state snapshot, record new "
    "persistent facts and any flexible canon elements this episode reinforced. "
    "Write in the story profile's language."
)

_RATING_GUIDANCE: dict[str, str] = {
    "PG": "Family-friendly only. No violence, explicit themes or dark content.",
    "PG-13": "Mild tension and conflict are fine. No graphic violence or explicit themes.",
    "ADULT": "Mature themes are allowed; hate speech, sexual violence and self-harm are not.",
}

_LANGUAGE_GUIDANCE: dict[str, str] = {
    "tr": (
        "IMPORTANT: Write ALL content in Turkish (Türkçe): title, logline, "
        "episode text and choices."
    ),
}
_DEFAULT_LANGUAGE_GUIDANCE = "Write all content in English."


def rating_guidance(content_rating: str) -> str:
    return _RATING_GUIDANCE.get(content_rating, "")


def language_guidance(app_lang: str) -> str:
    return _LANGUAGE_GUIDANCE.get((app_lang or "").lower(), _DEFAULT_LANGUAGE_GUIDANCE)


# ------------------------------------------------------------------
# Creation
# ------------------------------------------------------------------

def build_creation_prompt(profile: dict, genre: str, content_rating: str, app_lang: str) -> str:
    """Build the user instruction for a story's title, logline and episode 1."""
    locked = (profile.get("canon") or {}).get("locked") or {}
    hero = (locked.get("main_characters") or [{}])[0]

    lines = [
        "Create the opening of an interactive fiction story.",
        "",
        f"GENRE: {genre}",
        f"CONTENT RATING: {content_rating} - {rating_guidance(content_rating)}",
        language_guidance(app_lang),
        "",
        "STORY CANON (locked truths):",
        f"- World rules: {dumps_compact(locked.get('world_rules') or [])}",
        f"- Main character: {hero.get('name', '')} - {hero.get('identity', '')}",
        f"- Character traits: {dumps_compact(hero.get('traits') or [])}",
        f"- Motivation: {hero.get('motivation', '')}",
        f"- Fear: {hero.get('fear', '')}",
        f"- Narrative style: {dumps_compact(locked.get('narrative_style') or {})}",
        f"- Theme/Tone: {locked.get('theme_tone', '')}",
        "",
        "TASK:",
        f"1. An evocative TITLE (not just \"{genre} Story\").",
        "2. A LOGLINE of one or two sentences that hooks the reader.",
        "3. EPISODE 1: a title and 400-600 words of narrative that opens on a hook,",
        "   builds tension toward a decision and ends with exactly two meaningfully",
        "   different choices, A and B.",
    ]
    return "\n".join(lines)


# ------------------------------------------------------------------
# Episode generation
# ------------------------------------------------------------------

def resolve_segment_goal(requested: str | None, profile: dict) -> str:
    """Request goal, else the profile's dynamic_state goal, else the default."""
    if requested:
        return requested
    dynamic = (profile.get("flow") or {}).get("dynamic_state") or {}
    return dynamic.get("segment_goal") or DEFAULT_SEGMENT_GOAL


def build_episode_prompt(
    story_profile: dict,
    continuity_notes: list[dict] | None,
    recent_recaps: dict | None,
    retrieved_context: dict | None,
    user_choice: dict,
    segment_goal: str,
    length_target: dict | None,
    episode_id: str,
) -> str:
    """Lay out the episode context as labelled sections, one per line pair."""
    canon = story_profile.get("canon") or {}
    recaps = recent_recaps or {}
    sections = [
        ("STORY_PROFILE (LOCKED CANON)", dumps_compact(canon.get("locked") or {})),
        ("STORY_PROFILE (FLEXIBLE CANON)", dumps_compact(canon.get("flexible") or {})),
        ("CONTINUITY_NOTES", dumps_compact(notes_for_prompt(continuity_notes or []))),
        ("LAST_EPISODE_RECAP", dumps_compact(recaps.get("last_episode") or {})),
        ("RECENT_SUMMARIES", dumps_compact(recaps.get("last_3_episodes_summaries") or [])),
        ("RETRIEVED_SNIPPETS", dumps_compact((retrieved_context or {}).get("snippets") or [])),
        ("USER_CHOICE", dumps_compact(user_choice)),
        ("SEGMENT_GOAL", segment_goal),
        ("LENGTH_TARGET", dumps_compact(length_target or {})),
        ("EPISODE_ID", episode_id),
    ]
    return "\n".join(f"{label}\n{body}" for label, body in sections)


def build_repair_prompt(
    issues: list[str],
    previous_output: dict | None,
    story_profile: dict,
    continuity_notes: list[dict] | None,
    user_choice: dict,
    segment_goal: str,
) -> str:
    """Build the follow-up instruction that asks the model to fix a draft."""
    return dumps_compact({
        "issue_summary": list(issues),
        "previous_output": previous_output,
        "story_profile": story_profile,
        "continuity_notes": notes_for_prompt(continuity_notes or []),
        "user_choice": user_choice,
        "segment_goal": segment_goal,
        "instruction": REPAIR_INSTRUCTION,
    })


def build_creation_repair_prompt(issues: list[str], previous_output: dict | None, base_prompt: str) -> str:
    return dumps_compact({
        "issue_summary": list(issues),
        "previous_output": previous_output,
        "original_request": base_prompt,
        "instruction": REPAIR_INSTRUCTION,
    })


# ------------------------------------------------------------------
# Finalization
# ------------------------------------------------------------------

def build_finalize_prompt(
    story_profile: dict,
    continuity_notes: list[dict] | None,
    episode_text: str,
    episode_number: int,
) -> str:
    return dumps_compact({
        "story_profile": story_profile,
        "continuity_notes": notes_for_prompt(continuity_notes or []),
        "episode_text": episode_text,
        "episode_number": episode_number,
    })
