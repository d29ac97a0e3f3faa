"""
storyengine/story_store.py -- SQLite persistence for stories and episodes.

Holds the tables every orchestrator flow reads and writes:

    users                 one row per app user (upserted)
    story_book_inputs     onboarding records, append-only
    stories               title, logline, genre, rating, status
    story_profiles        one row per (story, version), append-only
    episodes              text, choices, recap, state snapshot
    continuity_notes      fact ledger; unique active key per story
    sessions              reader position plus an optimistic version token

Multi-row writes go through ``transaction()`` so one episode transition is
persisted all-or-nothing.  Every ``sqlite3.Error`` leaves this module as a
``PersistenceError``.

Usage::

    from storyengine.story_store import StoryStore

    store = StoryStore(":memory:")
    with store.transaction():
        story = store.insert_story(title="...", logline="...", genre="noir",
                                   content_rating="PG-13")
        store.insert_profile(story["id"], 1, profile)
    store.close()
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from pydantic import ValidationError

from storyengine.continuity_notes import ACTIVE, RESOLVED, filter_new_facts
from storyengine.errors import (
    EpisodeAlreadyFinalizedError,
    PersistenceError,
    SessionConflictError,
)
from storyengine.models.episode import ContinuityNote, Episode
from storyengine.utils import dumps_compact

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    is_anonymous INTEGER NOT NULL DEFAULT 1,
    app_lang TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS story_book_inputs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    genres JSON NOT NULL,
    content_rating TEXT NOT NULL,
    language TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS stories (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    logline TEXT NOT NULL,
    genre TEXT NOT NULL,
    content_rating TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    created_at TEXT NOT NULL
);

-- Append-only: a finalize inserts version N+1, never rewrites N.
CREATE TABLE IF NOT EXISTS story_profiles (
    id TEXT PRIMARY KEY,
    story_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    profile JSON NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (story_id, version)
);

CREATE TABLE IF NOT EXISTS episodes (
    id TEXT PRIMARY KEY,
    story_id TEXT NOT NULL,
    episode_number INTEGER NOT NULL,
    title TEXT NOT NULL,
    text TEXT NOT NULL,
    choices JSON NOT NULL,
    recap JSON,
    state_snapshot JSON,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS continuity_notes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    story_id TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    introduced_in_episode INTEGER NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    story_id TEXT NOT NULL,
    current_episode_number INTEGER NOT NULL,
    version INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_profiles_story ON story_profiles(story_id, version);
CREATE INDEX IF NOT EXISTS idx_episodes_story ON episodes(story_id, episode_number);
CREATE INDEX IF NOT EXISTS idx_notes_story ON continuity_notes(story_id, status);
CREATE UNIQUE INDEX IF NOT EXISTS idx_notes_active_key
    ON continuity_notes(story_id, key) WHERE status = 'active';
"""

_JSON_COLUMNS = ("genres", "profile", "choices", "recap", "state_snapshot")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now_iso() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


def _to_json(value: Any) -> str | None:
    return None if value is None else dumps_compact(value)


# ---------------------------------------------------------------------------
# StoryStore
# ---------------------------------------------------------------------------

class StoryStore:
    """SQLite-backed persistent store.

    Parameters
    ----------
    db_path : str
        Path to the database file, or ``":memory:"``.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            parent = os.path.dirname(os.path.abspath(self.db_path))
            os.makedirs(parent, exist_ok=True)

        self._lock = threading.RLock()
        self._depth = 0
        try:
            # Autocommit mode: transactions are opened explicitly below.
            self._conn = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None,
            )
            self._conn.row_factory = sqlite3.Row
            if self.db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA_SQL)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not open story store at {self.db_path}", [str(exc)]) from exc

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[StoryStore]:
        """Run the enclosed writes as one atomic unit.

        Nested calls join the outermost transaction.  Any exception rolls
        the whole unit back and is re-raised (``sqlite3.Error`` as
        ``PersistenceError``).
        """
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._raw_execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if outermost:
                    logger.warning("Rolling back story store transaction")
                    self._conn.rollback()
                raise
            else:
                self._depth -= 1
                if outermost:
                    self._raw_execute("COMMIT")

    def _raw_execute(self, sql: str, params: tuple | list = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise PersistenceError("Story store operation failed", [str(exc)]) from exc

    def _execute(self, sql: str, params: tuple | list = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._raw_execute(sql, params)

    def _fetch_one(self, sql: str, params: tuple | list = ()) -> dict | None:
        row = self._execute(sql, params).fetchone()
        return self._row_to_dict(row) if row is not None else None

    def _fetch_all(self, sql: str, params: tuple | list = ()) -> list[dict]:
        return [self._row_to_dict(r) for r in self._execute(sql, params).fetchall()]

    # ------------------------------------------------------------------
    # Users and onboarding
    # ------------------------------------------------------------------

    def upsert_user(self, user_id: str, app_lang: str, is_anonymous: bool = True) -> dict:
        with self.transaction():
            self._execute(
                "INSERT INTO users (id, is_anonymous, app_lang, created_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET "
                "is_anonymous = excluded.is_anonymous, app_lang = excluded.app_lang",
                (user_id, int(bool(is_anonymous)), app_lang, _now_iso()),
            )
            return self._fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))

    def insert_story_book_input(
        self, user_id: str, genres: list[str], content_rating: str, language: str,
    ) -> dict:
        with self.transaction():
            cursor = self._execute(
                "INSERT INTO story_book_inputs (user_id, genres, content_rating, language, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (user_id, _to_json(genres), content_rating, language, _now_iso()),
            )
            return self._fetch_one(
                "SELECT * FROM story_book_inputs WHERE id = ?", (cursor.lastrowid,),
            )

    # ------------------------------------------------------------------
    # Stories and profiles
    # ------------------------------------------------------------------

    def insert_story(
        self, title: str, logline: str, genre: str, content_rating: str, status: str = "active",
    ) -> dict:
        story_id = _new_id()
        with self.transaction():
            self._execute(
                "INSERT INTO stories (id, title, logline, genre, content_rating, status, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (story_id, title, logline, genre, content_rating, status, _now_iso()),
            )
            return self.get_story(story_id)

    def get_story(self, story_id: str) -> dict | None:
        return self._fetch_one("SELECT * FROM stories WHERE id = ?", (story_id,))

    def latest_profile_version(self, story_id: str) -> int:
        row = self._execute(
            "SELECT MAX(version) AS v FROM story_profiles WHERE story_id = ?", (story_id,),
        ).fetchone()
        return int(row["v"]) if row and row["v"] is not None else 0

    def insert_profile(self, story_id: str, version: int, profile: dict) -> dict:
        """Append a profile version.

        The version must be greater than every stored version of the story;
        stored versions are never rewritten.
        """
        with self.transaction():
            latest = self.latest_profile_version(story_id)
            if version <= latest:
                raise SessionConflictError(
                    f"Profile version {version} is not newer than stored version {latest}",
                    [f"story_id={story_id}", f"latest_version={latest}"],
                )
            row_id = _new_id()
            self._execute(
                "INSERT INTO story_profiles (id, story_id, version, profile, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (row_id, story_id, version, _to_json(profile), _now_iso()),
            )
            return self._fetch_one("SELECT * FROM story_profiles WHERE id = ?", (row_id,))

    def get_profile(self, story_id: str, version: int | None = None) -> dict | None:
        """Return a profile row (latest version when *version* is None)."""
        if version is None:
            return self._fetch_one(
                "SELECT * FROM story_profiles WHERE story_id = ? ORDER BY version DESC LIMIT 1",
                (story_id,),
            )
        return self._fetch_one(
            "SELECT * FROM story_profiles WHERE story_id = ? AND version = ?",
            (story_id, version),
        )

    def list_profile_versions(self, story_id: str) -> list[int]:
        rows = self._execute(
            "SELECT version FROM story_profiles WHERE story_id = ? ORDER BY version",
            (story_id,),
        ).fetchall()
        return [r["version"] for r in rows]

    # ------------------------------------------------------------------
    # Episodes
    # ------------------------------------------------------------------

    def insert_episode(
        self,
        story_id: str,
        episode_number: int,
        title: str,
        text: str,
        choices: list[dict],
        state_snapshot: dict,
        recap: dict | None = None,
    ) -> dict:
        """Insert an episode row; it must offer exactly the two choices A and B."""
        try:
            Episode(
                story_id=story_id, episode_number=episode_number, title=title, text=text,
                choices=choices, recap=recap, state_snapshot=state_snapshot,
            )
        except ValidationError as exc:
            raise PersistenceError("Episode row failed validation", [str(exc)]) from exc
        episode_id = _new_id()
        with self.transaction():
            self._execute(
                "INSERT INTO episodes (id, story_id, episode_number, title, text, choices, "
                "recap, state_snapshot, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    episode_id, story_id, episode_number, title, text,
                    _to_json(choices), _to_json(recap), _to_json(state_snapshot), _now_iso(),
                ),
            )
            return self.get_episode(episode_id)

    def get_episode(self, episode_id: str) -> dict | None:
        return self._fetch_one("SELECT * FROM episodes WHERE id = ?", (episode_id,))

    def get_episode_by_number(self, story_id: str, episode_number: int) -> dict | None:
        return self._fetch_one(
            "SELECT * FROM episodes WHERE story_id = ? AND episode_number = ? "
            "ORDER BY created_at DESC LIMIT 1",
            (story_id, episode_number),
        )

    def list_episodes(self, story_id: str) -> list[dict]:
        return self._fetch_all(
            "SELECT * FROM episodes WHERE story_id = ? ORDER BY episode_number, created_at",
            (story_id,),
        )

    def finalize_episode(self, episode_id: str, recap: dict, state_snapshot: dict) -> dict:
        """Set recap and state snapshot; allowed exactly once per episode."""
        with self.transaction():
            cursor = self._execute(
                "UPDATE episodes SET recap = ?, state_snapshot = ? "
                "WHERE id = ? AND recap IS NULL",
                (_to_json(recap), _to_json(state_snapshot), episode_id),
            )
            if cursor.rowcount == 0:
                if self.get_episode(episode_id) is None:
                    raise PersistenceError(f"Episode {episode_id} does not exist")
                raise EpisodeAlreadyFinalizedError(
                    f"Episode {episode_id} has already been finalized",
                )
            return self.get_episode(episode_id)

    # ------------------------------------------------------------------
    # Continuity notes
    # ------------------------------------------------------------------

    def list_continuity_notes(self, story_id: str, status: str | None = None) -> list[dict]:
        if status is None:
            return self._fetch_all(
                "SELECT * FROM continuity_notes WHERE story_id = ? ORDER BY id", (story_id,),
            )
        return self._fetch_all(
            "SELECT * FROM continuity_notes WHERE story_id = ? AND status = ? ORDER BY id",
            (story_id, status),
        )

    def insert_continuity_notes(
        self, story_id: str, notes: list[dict], episode_number: int,
    ) -> list[dict]:
        """Insert notes whose key is not already active; returns inserted rows.

        A note may carry its own ``introduced_in_episode``; otherwise
        *episode_number* is used.
        """
        inserted: list[dict] = []
        with self.transaction():
            existing = self.list_continuity_notes(story_id, status=ACTIVE)
            for fact in filter_new_facts(existing, notes):
                try:
                    note = ContinuityNote(
                        key=fact["key"],
                        value=str(fact.get("value", "")),
                        introduced_in_episode=fact.get("introduced_in_episode", episode_number),
                    )
                except ValidationError as exc:
                    raise PersistenceError("Continuity note failed validation", [str(exc)]) from exc
                cursor = self._execute(
                    "INSERT INTO continuity_notes "
                    "(story_id, key, value, status, introduced_in_episode, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        story_id, note.key, note.value, ACTIVE,
                        note.introduced_in_episode, _now_iso(),
                    ),
                )
                inserted.append(self._fetch_one(
                    "SELECT * FROM continuity_notes WHERE id = ?", (cursor.lastrowid,),
                ))
        return inserted

    def resolve_continuity_note(self, story_id: str, key: str) -> bool:
        with self.transaction():
            cursor = self._execute(
                "UPDATE continuity_notes SET status = ? "
                "WHERE story_id = ? AND key = ? AND status = ?",
                (RESOLVED, story_id, key, ACTIVE),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def insert_session(self, user_id: str, story_id: str, current_episode_number: int = 1) -> dict:
        session_id = _new_id()
        with self.transaction():
            self._execute(
                "INSERT INTO sessions (id, user_id, story_id, current_episode_number, version, updated_at) "
                "VALUES (?, ?, ?, ?, 1, ?)",
                (session_id, user_id, story_id, current_episode_number, _now_iso()),
            )
            return self.get_session(session_id)

    def get_session(self, session_id: str) -> dict | None:
        return self._fetch_one("SELECT * FROM sessions WHERE id = ?", (session_id,))

    def advance_session(
        self, session_id: str, episode_number: int, expected_version: int | None = None,
    ) -> dict:
        """Move a session to *episode_number*, bumping its version token.

        When *expected_version* is given it must match the stored token;
        otherwise another transition won the race and
        ``SessionConflictError`` is raised.
        """
        with self.transaction():
            current = self.get_session(session_id)
            if current is None:
                raise PersistenceError(f"Session {session_id} does not exist")
            version = current["version"] if expected_version is None else expected_version
            cursor = self._execute(
                "UPDATE sessions SET current_episode_number = ?, version = version + 1, "
                "updated_at = ? WHERE id = ? AND version = ?",
                (episode_number, _now_iso(), session_id, version),
            )
            if cursor.rowcount == 0:
                raise SessionConflictError(
                    f"Session {session_id} was modified concurrently",
                    [f"expected_version={version}", f"stored_version={current['version']}"],
                )
            return self.get_session(session_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> dict:
        """Convert a sqlite3.Row to a plain dict, decoding JSON columns."""
        data = dict(row)
        for column in _JSON_COLUMNS:
            if column in data and isinstance(data[column], str):
                data[column] = json.loads(data[column])
        if "is_anonymous" in data:
            data["is_anonymous"] = bool(data["is_anonymous"])
        return data
