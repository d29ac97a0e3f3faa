"""
Tests for storyapp/services/retry_manager.py -- attempt state machine, repair
prompts, rejection with the union of issues.
"""

import copy
from unittest.mock import MagicMock

import pytest

from storyapp.services.retry_manager import MAX_ATTEMPTS, AttemptState, RetryManager
from storyapp.services.validation_pipeline import ValidationPipeline
from storyengine.errors import ContentRejectedError, OutputSchemaError, ProviderError
from storyengine.safety_policy import TORTURE_VIOLATION, SafetyPolicy
from storyengine.schema_validator import EPISODE_GENERATE


def _with_warning(output, note):
    draft = copy.deepcopy(output)
    draft["continuity_checks"].append({"rule": "r", "result": "warn", "note": note})
    return draft


def _manager(drafts, repair=None):
    generate = MagicMock(side_effect=list(drafts))
    repair = repair or MagicMock(return_value="REPAIR PROMPT")
    pipeline = ValidationPipeline(EPISODE_GENERATE, SafetyPolicy("PG-13", ["hate"]))
    return RetryManager(generate, pipeline, repair), generate, repair


class TestRetryManager:
    def test_max_attempts_is_two(self):
        assert MAX_ATTEMPTS == 2

    def test_clean_first_draft_is_accepted(self, episode_output):
        rm, generate, repair = _manager([episode_output])
        assert rm.run("PROMPT") == episode_output
        generate.assert_called_once_with("PROMPT")
        repair.assert_not_called()
        assert rm.state == AttemptState.ACCEPTED
        assert rm.history[0].states == [
            AttemptState.DRAFTED, AttemptState.VALIDATED, AttemptState.CHECKED, AttemptState.ACCEPTED,
        ]

    def test_repair_then_accept_uses_second_draft(self, episode_output):
        first = _with_warning(episode_output, "Contradicts world rule 1.")
        second = copy.deepcopy(episode_output)
        second["segment"]["title"] = "Repaired"
        rm, generate, repair = _manager([first, second])

        result = rm.run("PROMPT")

        assert result["segment"]["title"] == "Repaired"
        repair.assert_called_once_with(["Contradicts world rule 1."], first)
        assert generate.call_args_list[1].args == ("REPAIR PROMPT",)
        assert rm.history[0].final_state == AttemptState.REPAIRING
        assert rm.history[1].final_state == AttemptState.ACCEPTED

    def test_rejected_with_union_of_issues(self, episode_output):
        first = _with_warning(episode_output, "Contradicts world rule 1.")
        second = copy.deepcopy(episode_output)
        second["segment"]["text"] = "A scene of graphic torture."
        rm, _, _ = _manager([first, second])

        with pytest.raises(ContentRejectedError) as excinfo:
            rm.run("PROMPT")

        assert excinfo.value.details == ["Contradicts world rule 1.", TORTURE_VIOLATION]
        assert excinfo.value.kind == "safety_or_continuity_violation"
        assert rm.state == AttemptState.REJECTED
        assert len(rm.history) == 2

    def test_repeated_issue_listed_once(self, episode_output):
        draft = _with_warning(episode_output, "Same issue.")
        rm, _, _ = _manager([draft, draft])
        with pytest.raises(ContentRejectedError) as excinfo:
            rm.run("PROMPT")
        assert excinfo.value.details == ["Same issue."]

    def test_schema_failure_is_fatal_without_repair(self, episode_output):
        broken = copy.deepcopy(episode_output)
        del broken["segment"]
        rm, generate, repair = _manager([broken, episode_output])

        with pytest.raises(OutputSchemaError) as excinfo:
            rm.run("PROMPT")

        assert excinfo.value.details
        generate.assert_called_once()
        repair.assert_not_called()

    def test_schema_failure_on_repair_is_fatal(self, episode_output):
        first = _with_warning(episode_output, "x")
        broken = copy.deepcopy(episode_output)
        broken["choices"] = broken["choices"][:1]
        rm, _, _ = _manager([first, broken])
        with pytest.raises(OutputSchemaError):
            rm.run("PROMPT")

    def test_provider_errors_propagate(self):
        rm, generate, repair = _manager([ProviderError("down")])
        with pytest.raises(ProviderError):
            rm.run("PROMPT")
        repair.assert_not_called()
