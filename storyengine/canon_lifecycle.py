"""
storyengine/canon_lifecycle.py -- Evidence-gated evolution of flexible canon.

Flexible canon facts (supporting roles, the core conflict, seed locations,
key items or secrets) start ``tentative`` and advance as episodes
corroborate them:

    tentative --(2 distinct evidence)--> confirmed --(3 distinct)--> locked

Status never moves backwards.  The one exception is ``core_conflict``: while
it is not locked, a hit with a different value replaces it and restarts the
lifecycle at ``tentative`` with empty evidence.  A locked core conflict only
accepts hits whose value matches it.

The input profile is never mutated; ``apply_canon_hits`` returns a new copy.

Usage::

    from storyengine.canon_lifecycle import CanonHit, apply_canon_hits

    hits = [CanonHit("supporting_roles", "mentor", "guides the hero")]
    updated = apply_canon_hits(profile, hits, episode_number=4)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from storyengine.utils import append_unique, clone_document

logger = logging.getLogger(__name__)

TENTATIVE = "tentative"
CONFIRMED = "confirmed"
LOCKED = "locked"

STATUS_ORDER = (TENTATIVE, CONFIRMED, LOCKED)

CONFIRM_THRESHOLD = 2
LOCK_THRESHOLD = 3

CORE_CONFLICT = "core_conflict"
LIST_CATEGORIES = ("supporting_roles", "locations_seed", "key_items_or_secrets")
CATEGORIES = (CORE_CONFLICT,) + LIST_CATEGORIES


@dataclass(frozen=True)
class CanonHit:
    """A flexible canon element reinforced by one episode."""
    category: str
    value: str
    evidence: str

    @classmethod
    def from_dict(cls, data: dict) -> CanonHit:
        return cls(
            category=str(data.get("category", "")),
            value=str(data.get("value", "")),
            evidence=str(data.get("evidence", "")),
        )


def format_evidence(episode_number: int, evidence: str) -> str:
    """Tag an evidence string with the episode it came from."""
    return f"episode:{episode_number} {evidence}"


def distinct_evidence_count(item: dict) -> int:
    return len(set(item.get("evidence") or []))


def touch_item(item: dict, evidence: str, episode_number: int) -> str:
    """Record evidence on *item* in place and promote it if warranted.

    Returns the item's status after the touch.
    """
    if not isinstance(item.get("evidence"), list):
        item["evidence"] = []
    append_unique(item["evidence"], format_evidence(episode_number, evidence))

    count = distinct_evidence_count(item)
    status = item.setdefault("status", TENTATIVE)
    if status == TENTATIVE and count >= CONFIRM_THRESHOLD:
        item["status"] = CONFIRMED
    elif status == CONFIRMED and count >= LOCK_THRESHOLD:
        item["status"] = LOCKED

    if item["status"] != status:
        logger.debug(
            "Canon item '%s' promoted %s -> %s (%d distinct evidence)",
            item.get("value"), status, item["status"], count,
        )
    return item["status"]


def _apply_core_conflict(flexible: dict, hit: CanonHit, episode_number: int) -> None:
    core = flexible.get(CORE_CONFLICT)
    if not isinstance(core, dict):
        core = {"value": hit.value, "status": TENTATIVE, "evidence": []}
        flexible[CORE_CONFLICT] = core

    if core.get("status") == LOCKED:
        if core.get("value") != hit.value:
            logger.info(
                "Ignoring core_conflict hit '%s': locked value is '%s'",
                hit.value, core.get("value"),
            )
            return
    elif core.get("value") != hit.value:
        core["value"] = hit.value
        core["status"] = TENTATIVE
        core["evidence"] = []

    touch_item(core, hit.evidence, episode_number)


def _apply_list_item(flexible: dict, hit: CanonHit, episode_number: int) -> None:
    items = flexible.get(hit.category)
    if not isinstance(items, list):
        items = []
        flexible[hit.category] = items

    item = next(
        (entry for entry in items if isinstance(entry, dict) and entry.get("value") == hit.value),
        None,
    )
    if item is None:
        item = {"value": hit.value, "status": TENTATIVE, "evidence": []}
        items.append(item)

    touch_item(item, hit.evidence, episode_number)


def apply_canon_hits(
    profile: dict,
    hits: Iterable[CanonHit | dict],
    episode_number: int,
) -> dict:
    """Apply a batch of canon hits to a copy of *profile*.

    Parameters
    ----------
    profile : dict
        A story profile document.  Not modified.
    hits : iterable of CanonHit or dict
        Hits in the order the finalizer reported them.
    episode_number : int
        Episode the evidence came from.

    Returns
    -------
    dict
        The updated profile copy.
    """
    updated = clone_document(profile)
    flexible = (updated.get("canon") or {}).get("flexible")
    if not isinstance(flexible, dict):
        return updated

    for raw in hits:
        hit = raw if isinstance(raw, CanonHit) else CanonHit.from_dict(raw)
        if hit.category == CORE_CONFLICT:
            _apply_core_conflict(flexible, hit, episode_number)
        elif hit.category in LIST_CATEGORIES:
            _apply_list_item(flexible, hit, episode_number)
        else:
            logger.warning("Ignoring canon hit with unknown category '%s'", hit.category)

    return updated


def summarize_canon(flexible: dict) -> dict[str, list[str]]:
    """Group flexible canon values by status, e.g. for prompts and logs."""
    summary: dict[str, list[str]] = {status: [] for status in STATUS_ORDER}

    def _add(category: str, item: Any) -> None:
        if isinstance(item, dict) and item.get("status") in summary:
            summary[item["status"]].append(f"{category}: {item.get('value', '')}")

    _add(CORE_CONFLICT, flexible.get(CORE_CONFLICT))
    for category in LIST_CATEGORIES:
        for item in flexible.get(category) or []:
            _add(category, item)
    return summary
