"""
storyapp/services/orchestrator.py -- End-to-end story flows.

Composes the engine into the three operations the request boundary
exposes:

    create_story        seed profile -> creation generation -> story, profile v1,
                        world-rule notes, episode 1 and session
    generate_episode    episode prompt -> bounded repair loop -> merged snapshot
                        -> episode row + session advance
    finalize_episode    finalizer generation -> canon hits + dynamic state
                        -> profile N+1, episode recap, new continuity notes

The generator and the store are passed in, never looked up globally.  Each
flow validates its input before any generation and writes all of its rows
inside one store transaction, so a failure leaves nothing half-persisted.
The caller's profile must carry the story's stored locked canon and rating;
finalize also requires it to be the latest stored version, so profiles
advance one version at a time.  Sessions carry an optimistic version token:
the token read when a flow starts must still be current when the flow
writes, otherwise the flow fails with ``SessionConflictError``.
"""

from __future__ import annotations

import logging
from typing import Any

from storyapp.config import CREATION_PARAMS, EPISODE_PARAMS, FINALIZE_PARAMS, Settings
from storyapp.services import prompt_builder
from storyapp.services.retry_manager import AttemptRecord, RetryManager
from storyapp.services.story_seed import build_story_profile
from storyapp.services.validation_pipeline import ValidationPipeline
from storyengine.canon_lifecycle import CanonHit, apply_canon_hits, summarize_canon
from storyengine.continuity_notes import ACTIVE, world_rule_notes
from storyengine.errors import (
    EpisodeAlreadyFinalizedError,
    InputValidationError,
    OutputSchemaError,
    SessionConflictError,
    StoryEngineError,
)
from storyengine.models.profile import migrate_profile, parse_profile
from storyengine.safety_policy import RATINGS, SafetyPolicy
from storyengine.schema_validator import (
    EPISODE_FINALIZE,
    EPISODE_GENERATE,
    STORY_CREATE_OUTPUT,
    STORY_PROFILE,
    load_schema,
    validate,
)
from storyengine.snapshot_merger import apply_snapshot_to_dynamic_state, merge

logger = logging.getLogger(__name__)


def _require(payload: dict, fields: tuple[str, ...]) -> None:
    missing = [name for name in fields if payload.get(name) in (None, "", [], {})]
    if missing:
        raise InputValidationError(
            f"Missing required fields: {', '.join(missing)}",
            [f"{name} is required" for name in missing],
        )


def _require_episode_number(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InputValidationError(
            "episode_number must be a positive integer",
            [f"episode_number={value!r}"],
        )
    return value


def load_profile(document: Any) -> dict:
    """Migrate and check a caller-supplied profile document.

    Returns the migrated document; raises ``InputValidationError`` when it
    cannot be migrated or fails the profile schema or model.
    """
    if not isinstance(document, dict):
        raise InputValidationError("story_profile must be a JSON object")
    try:
        migrated = migrate_profile(document)
    except ValueError as exc:
        raise InputValidationError("story_profile could not be migrated", [str(exc)]) from exc

    report = validate(load_schema(STORY_PROFILE), migrated)
    if not report.valid:
        raise InputValidationError("story_profile schema validation failed", report.messages())
    try:
        parse_profile(migrated)
    except ValueError as exc:
        raise InputValidationError("story_profile is not a valid profile", [str(exc)]) from exc
    return migrated


class EpisodeOrchestrator:
    """Runs the story flows against an injected generator and store.

    Parameters
    ----------
    generator : StructuredGenerationClient
        Anything with ``generate(model, system, user, schema, temperature,
        max_output_tokens)``.
    store : StoryStore
        Persistent store.
    settings : Settings | None
        Model name and flow switches; defaults to ``Settings()``.
    """

    def __init__(self, generator, store, settings: Settings | None = None):
        self._generator = generator
        self._store = store
        self._settings = settings or Settings()
        self.last_attempts: list[AttemptRecord] = []

    def _generate(self, system: str, user: str, schema: dict, params: tuple[float, int]):
        temperature, max_tokens = params
        return self._generator.generate(
            self._settings.model, system, user, schema, temperature, max_tokens,
        )

    # ------------------------------------------------------------------
    # Story creation
    # ------------------------------------------------------------------

    def create_story(
        self,
        genre: str,
        content_rating: str,
        app_lang: str,
        user_id: str,
        is_anonymous: bool = True,
    ) -> dict:
        """Create a story with its first episode.

        Returns ``{story, story_profile, continuity_notes, episode_1, session}``.
        """
        _require(
            {"genre": genre, "content_rating": content_rating, "app_lang": app_lang, "user_id": user_id},
            ("genre", "content_rating", "app_lang", "user_id"),
        )
        if content_rating not in RATINGS:
            raise InputValidationError(
                f"Unknown content_rating '{content_rating}'",
                [f"content_rating must be one of {', '.join(RATINGS)}"],
            )

        profile = build_story_profile(genre, content_rating, app_lang)
        report = validate(load_schema(STORY_PROFILE), profile)
        if not report.valid:
            raise StoryEngineError("Seed story profile failed schema validation", report.messages())

        with self._store.transaction():
            self._store.upsert_user(user_id, app_lang, is_anonymous)
            self._store.insert_story_book_input(user_id, [genre], content_rating, app_lang)

        output = self._generate_creation(profile, genre, content_rating, app_lang)
        logger.info("Story created: '%s' (%d chars in episode 1)", output["title"], len(output["episode_text"]))

        dynamic_state = profile["flow"]["dynamic_state"]
        with self._store.transaction():
            story = self._store.insert_story(
                title=output["title"],
                logline=output["logline"],
                genre=genre,
                content_rating=content_rating,
            )
            profile_row = self._store.insert_profile(story["id"], 1, profile)
            notes = self._store.insert_continuity_notes(
                story["id"], world_rule_notes(profile["canon"]["locked"]["world_rules"]), 1,
            )
            episode = self._store.insert_episode(
                story_id=story["id"],
                episode_number=1,
                title=output["episode_title"],
                text=output["episode_text"],
                choices=output["choices"],
                state_snapshot=merge(dynamic_state, {}).model_dump(),
            )
            session = self._store.insert_session(user_id, story["id"], 1)

        return {
            "story": story,
            "story_profile": profile_row,
            "continuity_notes": notes,
            "episode_1": episode,
            "session": session,
        }

    def _generate_creation(self, profile: dict, genre: str, content_rating: str, app_lang: str) -> dict:
        schema = load_schema(STORY_CREATE_OUTPUT)
        prompt = prompt_builder.build_creation_prompt(profile, genre, content_rating, app_lang)

        def generate(user_instruction: str):
            return self._generate(
                prompt_builder.CREATION_SYSTEM_PROMPT, user_instruction, schema, CREATION_PARAMS,
            )

        if self._settings.repair_initial_episode:
            manager = RetryManager(
                generate,
                ValidationPipeline(STORY_CREATE_OUTPUT, SafetyPolicy.from_profile(profile), check_continuity=False),
                lambda issues, previous: prompt_builder.build_creation_repair_prompt(issues, previous, prompt),
            )
            try:
                return manager.run(prompt)
            finally:
                self.last_attempts = manager.history

        output = generate(prompt)
        result = ValidationPipeline(STORY_CREATE_OUTPUT).validate(output)
        if not result.schema_valid:
            raise OutputSchemaError("Story creation output failed schema validation", result.schema_errors)
        return output

    # ------------------------------------------------------------------
    # Episode generation
    # ------------------------------------------------------------------

    def generate_episode(self, request: dict) -> dict:
        """Generate, check and persist the next episode.

        Returns ``{episode, output}`` plus ``session`` when a session was
        advanced.
        """
        _require(request, ("story_id", "episode_number", "user_choice", "story_profile"))
        story_id = str(request["story_id"])
        episode_number = _require_episode_number(request["episode_number"])
        user_choice = request["user_choice"]
        if not isinstance(user_choice, dict) or user_choice.get("choice_id") not in ("A", "B"):
            raise InputValidationError("user_choice must carry choice_id 'A' or 'B'")
        profile = load_profile(request["story_profile"])

        if self._store.get_story(story_id) is None:
            raise InputValidationError(f"Unknown story '{story_id}'")
        stored = self._stored_profile(story_id, profile)["profile"]
        session_id = request.get("session_id")
        expected_version = self._session_token(session_id, story_id, request.get("session_version"))

        notes = self._notes_for(story_id, request.get("continuity_notes"))
        segment_goal = prompt_builder.resolve_segment_goal(request.get("segment_goal"), profile)
        episode_id = f"{story_id}-{episode_number}"
        prompt = prompt_builder.build_episode_prompt(
            story_profile=profile,
            continuity_notes=notes,
            recent_recaps=request.get("recent_recaps"),
            retrieved_context=request.get("retrieved_context"),
            user_choice=user_choice,
            segment_goal=segment_goal,
            length_target=request.get("length_target"),
            episode_id=episode_id,
        )

        schema = load_schema(EPISODE_GENERATE)
        manager = RetryManager(
            lambda user_instruction: self._generate(
                prompt_builder.EPISODE_SYSTEM_PROMPT, user_instruction, schema, EPISODE_PARAMS,
            ),
            ValidationPipeline(EPISODE_GENERATE, SafetyPolicy.from_profile(stored)),
            lambda issues, previous: prompt_builder.build_repair_prompt(
                issues, previous, profile, notes, user_choice, segment_goal,
            ),
        )
        try:
            output = manager.run(prompt)
        finally:
            self.last_attempts = manager.history

        snapshot = merge(profile["flow"]["dynamic_state"], output.get("state_update"))
        with self._store.transaction():
            episode = self._store.insert_episode(
                story_id=story_id,
                episode_number=episode_number,
                title=output["segment"]["title"],
                text=output["segment"]["text"],
                choices=output["choices"],
                state_snapshot=snapshot.model_dump(),
            )
            session = None
            if session_id:
                session = self._store.advance_session(session_id, episode_number, expected_version)

        logger.info("Episode %d of story %s persisted", episode_number, story_id)
        result = {"episode": episode, "output": output}
        if session is not None:
            result["session"] = session
        return result

    def _session_token(self, session_id: str | None, story_id: str, supplied: Any) -> int | None:
        """Version token the session must still carry when the flow writes."""
        if not session_id:
            return None
        session = self._store.get_session(session_id)
        if session is None:
            raise InputValidationError(f"Unknown session '{session_id}'")
        if session["story_id"] != story_id:
            raise InputValidationError(f"Session '{session_id}' does not belong to story '{story_id}'")
        if supplied is None:
            return session["version"]
        if isinstance(supplied, bool) or not isinstance(supplied, int):
            raise InputValidationError("session_version must be an integer")
        return supplied

    def _notes_for(self, story_id: str, supplied: Any) -> list[dict]:
        """Caller-supplied continuity notes, else the story's active notes."""
        if supplied is None:
            return self._store.list_continuity_notes(story_id, status=ACTIVE)
        if not isinstance(supplied, list):
            raise InputValidationError("continuity_notes must be a list")
        return supplied

    def _stored_profile(self, story_id: str, profile: dict) -> dict:
        """Latest stored profile row; the supplied locked canon and rating must match it."""
        row = self._store.get_profile(story_id)
        if row is None:
            raise InputValidationError(f"Story '{story_id}' has no stored profile")
        stored = row["profile"]
        mismatched = [
            name
            for name, supplied, current in (
                ("canon.locked", (profile.get("canon") or {}).get("locked"), stored["canon"]["locked"]),
                ("content_rating", profile.get("content_rating"), stored.get("content_rating")),
            )
            if supplied != current
        ]
        if mismatched:
            raise InputValidationError(
                "story_profile does not match the story's locked canon",
                [f"{name} cannot change after story creation" for name in mismatched],
            )
        return row

    # ------------------------------------------------------------------
    # Episode finalization
    # ------------------------------------------------------------------

    def finalize_episode(self, request: dict) -> dict:
        """Recap an episode and append the next profile version.

        Returns ``{recap, story_profile}`` where ``story_profile`` is the new
        profile row.
        """
        _require(request, ("story_id", "episode_id", "episode_number", "episode_text", "story_profile"))
        story_id = str(request["story_id"])
        episode_id = str(request["episode_id"])
        episode_number = _require_episode_number(request["episode_number"])
        profile = load_profile(request["story_profile"])

        episode = self._store.get_episode(episode_id)
        if episode is None or episode["story_id"] != story_id:
            raise InputValidationError(f"Unknown episode '{episode_id}' for story '{story_id}'")
        if episode["recap"] is not None:
            raise EpisodeAlreadyFinalizedError(f"Episode {episode_id} has already been finalized")
        latest = self._stored_profile(story_id, profile)
        if profile["version"] != latest["version"]:
            raise SessionConflictError(
                f"story_profile version {profile['version']} is not the latest stored version",
                [f"latest stored version is {latest['version']}"],
            )

        notes = self._notes_for(story_id, request.get("continuity_notes"))
        output = self._generate(
            prompt_builder.FINALIZE_SYSTEM_PROMPT,
            prompt_builder.build_finalize_prompt(profile, notes, request["episode_text"], episode_number),
            load_schema(EPISODE_FINALIZE),
            FINALIZE_PARAMS,
        )
        result = ValidationPipeline(EPISODE_FINALIZE).validate(output)
        if not result.schema_valid:
            raise OutputSchemaError("Finalizer output failed schema validation", result.schema_errors)

        updated = apply_canon_hits(
            profile,
            [CanonHit.from_dict(hit) for hit in output["flexible_canon_hits"]],
            episode_number,
        )
        flow = updated.setdefault("flow", {})
        flow["dynamic_state"] = apply_snapshot_to_dynamic_state(
            flow.get("dynamic_state") or {}, output["state_snapshot"], output["open_threads"],
        )
        next_version = latest["version"] + 1
        updated["version"] = next_version
        logger.debug("Canon after episode %d: %s", episode_number, summarize_canon(updated["canon"]["flexible"]))

        recap = {
            "summary_bullets": output["summary_bullets"],
            "open_threads": output["open_threads"],
        }
        snapshot = dict(output["state_snapshot"], open_threads=list(output["open_threads"]))
        with self._store.transaction():
            profile_row = self._store.insert_profile(story_id, next_version, updated)
            self._store.finalize_episode(episode_id, recap, snapshot)
            self._store.insert_continuity_notes(
                story_id,
                [{"key": f["key"], "value": f["value"]} for f in output["new_persistent_facts"]],
                episode_number,
            )

        logger.info("Episode %s finalized; story %s profile is now v%d", episode_id, story_id, next_version)
        return {"recap": output, "story_profile": profile_row}
