"""
storyengine/snapshot_merger.py -- Apply an episode's state delta to a snapshot.

Inventory and open threads are ordered lists with set semantics: the first
insertion fixes an entry's position, duplicates are never added, and
remove/update act on the first match only.  Deltas are applied in list
order.
"""

from __future__ import annotations

import logging

from storyengine.models.episode import StateSnapshot
from storyengine.utils import append_unique, remove_first, replace_first_or_append

logger = logging.getLogger(__name__)


def _base_field(base: dict, name: str, legacy: str):
    """Read a snapshot field, falling back to the dynamic_state spelling."""
    if base.get(name) is not None:
        return base[name]
    return base.get(legacy)


def apply_inventory_delta(inventory: list[str], deltas: list[dict]) -> list[str]:
    result = list(inventory)
    for delta in deltas or []:
        if not isinstance(delta, dict) or not delta.get("item"):
            continue
        item = str(delta["item"])
        op = delta.get("op")
        if op == "add":
            append_unique(result, item)
        elif op == "remove":
            remove_first(result, item)
        elif op == "update":
            replace_first_or_append(result, item)
        else:
            logger.warning("Skipping inventory delta with unknown op %r", op)
    return result


def apply_threads_delta(threads: list[str], delta: dict | None) -> list[str]:
    result = list(threads)
    delta = delta or {}
    for thread in delta.get("add") or []:
        if thread:
            append_unique(result, thread)
    for thread in delta.get("resolve") or []:
        remove_first(result, thread)
    return result


def merge(base_state: dict | None, update: dict | None) -> StateSnapshot:
    """Produce the next snapshot from *base_state* and an episode *update*.

    Parameters
    ----------
    base_state : dict
        Either a previous snapshot (``time``, ``location_id``) or a profile's
        ``flow.dynamic_state`` (``current_time``, ``current_location_id``).
    update : dict
        The episode's ``state_update``: optional ``time``, ``location_id``,
        ``characters_present`` overrides plus ``inventory_delta`` and
        ``open_threads_delta``.

    Returns
    -------
    StateSnapshot
    """
    base = base_state or {}
    update = update or {}

    time = update.get("time")
    if time is None:
        time = _base_field(base, "time", "current_time") or ""
    location_id = update.get("location_id")
    if location_id is None:
        location_id = _base_field(base, "location_id", "current_location_id") or ""
    characters = update.get("characters_present")
    if characters is None:
        characters = base.get("characters_present") or []

    return StateSnapshot(
        time=time,
        location_id=location_id,
        characters_present=list(characters),
        inventory=apply_inventory_delta(base.get("inventory") or [], update.get("inventory_delta")),
        open_threads=apply_threads_delta(base.get("open_threads") or [], update.get("open_threads_delta")),
    )


def apply_snapshot_to_dynamic_state(
    dynamic_state: dict,
    snapshot: dict,
    open_threads: list[str],
) -> dict:
    """Return a new dynamic_state carrying a finalizer's snapshot.

    Narrative-direction keys (``segment_goal``, ``cliffhanger_seed``) are
    kept; ``current_time`` keeps its old value when the snapshot has none.
    """
    updated = dict(dynamic_state)
    if snapshot.get("time") is not None:
        updated["current_time"] = snapshot["time"]
    updated["current_location_id"] = snapshot.get("location_id", updated.get("current_location_id", ""))
    updated["characters_present"] = list(snapshot.get("characters_present") or [])
    updated["inventory"] = list(snapshot.get("inventory") or [])
    updated["open_threads"] = list(open_threads or [])
    return updated
