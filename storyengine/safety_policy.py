"""
storyengine/safety_policy.py -- Content-rating and hard-topic safety scan.

Two rule families are evaluated over the concatenated model-generated text:

    Hard-forbidden topics   apply at every rating.  Known topics use
                            contextual patterns (bare "hate" is allowed,
                            "hate speech" is not); any other configured
                            topic matches as a case-insensitive substring.
    Rating-tiered patterns  PG / PG-13 forbid explicit sexual content and
                            graphic gore; every tier forbids graphic
                            torture; ADULT additionally forbids instructive
                            self-harm phrasing.

``scan`` returns human-readable violation strings; an empty list means the
text passed.

Usage::

    from storyengine.safety_policy import SafetyPolicy, collect_output_text

    policy = SafetyPolicy("PG-13", ["hate", "self-harm"])
    violations = policy.scan(collect_output_text(episode_output))
"""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

RATINGS = ("PG", "PG-13", "ADULT")
RESTRICTED_RATINGS = ("PG", "PG-13")


def _compile(*patterns: str) -> tuple[re.Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


_SELF_HARM_TERMS = _compile(r"\bself[- ]?harm\b", r"\bsuicide\b")

_HARD_TOPIC_PATTERNS: dict[str, tuple[re.Pattern, ...]] = {
    "hate": _compile(r"\bhate speech\b", r"\bhate crime\b"),
    "sexual violence": _compile(
        r"\bsexual violence\b", r"\brape\b", r"\bsexual assault\b",
    ),
    "self-harm": _SELF_HARM_TERMS + _compile(r"\bkill myself\b"),
}

_EXPLICIT_SEX = _compile(
    r"\bexplicit sex\b",
    r"\berotic\b",
    r"\bnude\b",
    r"\bnudity\b",
    r"\bsexual content\b",
    r"\bsex\b",
)

_GRAPHIC_GORE = _compile(
    r"\bgore\b",
    r"\bentrails\b",
    r"\bdismember(?:ed|ment)?\b",
    r"\bdecapitat(?:ed|ion)\b",
    r"\bmutilat(?:ed|ion)\b",
)

_GRAPHIC_TORTURE = _compile(
    r"\bgraphic torture\b",
    r"\btorture\b",
    r"\bflay(?:ed|ing)?\b",
)

_INSTRUCTIVE = _compile(r"\bhow to\b", r"\binstructions\b")

EXPLICIT_SEX_VIOLATION = "Rating violation: explicit sexual content"
GORE_VIOLATION = "Rating violation: graphic violence/gore"
TORTURE_VIOLATION = "Rating violation: graphic torture"
SELF_HARM_INSTRUCTIONS_VIOLATION = "Rating violation: self-harm instructions"


def _any(patterns, text: str) -> bool:
    return any(p.search(text) for p in patterns)


def check_hard_topics(text: str, topics: list[str]) -> list[str]:
    """Return one violation per configured topic found in *text*."""
    violations: list[str] = []
    lower = text.lower()
    for topic in topics or []:
        normalized = str(topic).strip().lower()
        if not normalized:
            continue
        patterns = _HARD_TOPIC_PATTERNS.get(normalized)
        if patterns is not None:
            hit = _any(patterns, text)
        else:
            hit = normalized in lower
        if hit:
            violations.append(f"Hard forbidden topic: {topic}")
    return violations


def check_rating(text: str, content_rating: str) -> list[str]:
    """Return the rating-tier violations for *text*."""
    violations: list[str] = []
    if content_rating not in RATINGS:
        logger.warning("Unknown content rating %r; only hard topics are checked", content_rating)
        return violations

    if content_rating in RESTRICTED_RATINGS:
        if _any(_EXPLICIT_SEX, text):
            violations.append(EXPLICIT_SEX_VIOLATION)
        if _any(_GRAPHIC_GORE, text):
            violations.append(GORE_VIOLATION)

    # Torture is out of bounds at every tier.
    if _any(_GRAPHIC_TORTURE, text):
        violations.append(TORTURE_VIOLATION)

    if content_rating == "ADULT":
        if _any(_INSTRUCTIVE, text) and _any(_SELF_HARM_TERMS, text):
            violations.append(SELF_HARM_INSTRUCTIONS_VIOLATION)

    return violations


def scan(text: str, content_rating: str, hard_forbidden_topics: list[str]) -> list[str]:
    """Scan generated text; an empty result means the content passed."""
    text = text or ""
    return check_hard_topics(text, hard_forbidden_topics) + check_rating(text, content_rating)


def collect_output_text(output: dict) -> str:
    """Join every model-written free-text field of an output into one corpus.

    Handles both episode output (``segment`` + ``choices`` + ``assumptions``)
    and story-creation output (``title``, ``logline``, ``episode_title``,
    ``episode_text``, ``choices``).
    """
    parts: list[str] = []
    segment = output.get("segment") or {}
    parts.extend([segment.get("title", ""), segment.get("text", "")])
    for key in ("title", "logline", "episode_title", "episode_text"):
        parts.append(output.get(key, ""))
    for choice in output.get("choices") or []:
        if isinstance(choice, dict):
            parts.extend([
                choice.get("text", ""),
                choice.get("intent", ""),
                choice.get("leads_to", ""),
            ])
    parts.extend(output.get("assumptions") or [])
    return " ".join(p for p in parts if isinstance(p, str) and p)


class SafetyPolicy:
    """A story's safety settings, bound for repeated scans."""

    def __init__(self, content_rating: str, hard_forbidden_topics: list[str] | None = None):
        self.content_rating = content_rating
        self.hard_forbidden_topics = list(hard_forbidden_topics or [])

    @classmethod
    def from_profile(cls, profile: dict) -> SafetyPolicy:
        locked = (profile.get("canon") or {}).get("locked") or {}
        rating = (
            profile.get("content_rating")
            or (locked.get("narrative_style") or {}).get("content_rating")
            or ""
        )
        return cls(rating, locked.get("hard_forbidden_topics") or [])

    def scan(self, text: str) -> list[str]:
        return scan(text, self.content_rating, self.hard_forbidden_topics)

    def scan_output(self, output: dict) -> list[str]:
        return self.scan(collect_output_text(output))
