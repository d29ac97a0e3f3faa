"""
storyapp/services/retry_manager.py -- Bounded repair loop for generated drafts.

Each attempt walks a small state machine:

    DRAFTED -> VALIDATED -> CHECKED -> ACCEPTED
                                    -> REPAIRING -> (next attempt) DRAFTED
                                    -> REJECTED

  1. The draft is produced by the generate callable.
  2. Schema validation runs; a structural failure raises OutputSchemaError
     at once and is never repaired.
  3. Continuity warnings and safety violations are collected.
  4. No issues: the draft is accepted.  Otherwise, while attempts remain, a
     repair prompt carrying the issues and the previous draft is built and
     the loop continues.  After the last attempt the whole operation fails
     with ContentRejectedError listing every issue seen across attempts.

Attempts are strictly sequential: each repair prompt depends on the draft
before it.  Provider errors raised by the generate callable propagate
unchanged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable

from storyapp.services.validation_pipeline import ValidationPipeline
from storyengine.errors import ContentRejectedError, OutputSchemaError
from storyengine.utils import append_unique

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2


class AttemptState(Enum):
    DRAFTED = auto()
    VALIDATED = auto()
    CHECKED = auto()
    ACCEPTED = auto()
    REPAIRING = auto()
    REJECTED = auto()


@dataclass
class AttemptRecord:
    """What happened during one attempt."""
    number: int
    states: list[AttemptState] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)
    output: Any = None

    @property
    def final_state(self) -> AttemptState | None:
        return self.states[-1] if self.states else None


class RetryManager:
    """Drives generate -> validate -> repair for one draft.

    Usage::

        rm = RetryManager(
            generate=lambda prompt: client.generate(model, system, prompt, schema),
            pipeline=ValidationPipeline("episode_generate", policy),
            build_repair_prompt=lambda issues, draft: ...,
        )
        output = rm.run(first_prompt)

    Parameters
    ----------
    generate : callable
        ``generate(user_instruction) -> value``.
    pipeline : ValidationPipeline
        Validates each draft.
    build_repair_prompt : callable
        ``build_repair_prompt(issues, previous_output) -> user_instruction``.
    max_attempts : int
        Total attempts including the first (default ``MAX_ATTEMPTS``).
    """

    def __init__(
        self,
        generate: Callable[[str], Any],
        pipeline: ValidationPipeline,
        build_repair_prompt: Callable[[list[str], Any], str],
        max_attempts: int = MAX_ATTEMPTS,
    ):
        self._generate = generate
        self._pipeline = pipeline
        self._build_repair_prompt = build_repair_prompt
        self._max_attempts = max(1, max_attempts)
        self._history: list[AttemptRecord] = []

    @property
    def history(self) -> list[AttemptRecord]:
        return list(self._history)

    @property
    def state(self) -> AttemptState | None:
        """State the most recent attempt ended in."""
        return self._history[-1].final_state if self._history else None

    def run(self, prompt: str) -> Any:
        """Return the first accepted draft.

        Raises
        ------
        OutputSchemaError
            A draft did not match the output schema.
        ContentRejectedError
            Issues remained after the last attempt.
        """
        self._history = []
        all_issues: list[str] = []

        for number in range(1, self._max_attempts + 1):
            output = self._generate(prompt)
            record = AttemptRecord(number=number, states=[AttemptState.DRAFTED], output=output)
            self._history.append(record)

            result = self._pipeline.validate(output)
            if not result.schema_valid:
                logger.error("Draft %d/%d failed schema validation", number, self._max_attempts)
                raise OutputSchemaError(
                    "Generated output failed schema validation",
                    result.schema_errors,
                )
            record.states.append(AttemptState.VALIDATED)

            record.issues = result.content_issues
            record.states.append(AttemptState.CHECKED)

            if result.passed:
                record.states.append(AttemptState.ACCEPTED)
                if number > 1:
                    logger.info("Draft accepted after repair (attempt %d/%d)", number, self._max_attempts)
                return output

            for issue in record.issues:
                append_unique(all_issues, issue)

            if number < self._max_attempts:
                record.states.append(AttemptState.REPAIRING)
                logger.info(
                    "Draft had %d issue(s) (attempt %d/%d), repairing...",
                    len(record.issues), number, self._max_attempts,
                )
                prompt = self._build_repair_prompt(record.issues, output)
            else:
                record.states.append(AttemptState.REJECTED)

        logger.warning(
            "Draft rejected after %d attempts with %d issue(s)",
            self._max_attempts, len(all_issues),
        )
        raise ContentRejectedError(
            "Generated output failed safety or continuity checks",
            all_issues,
        )
