"""
Tests for storyengine/safety_policy.py -- hard-forbidden topics, rating tiers
and output-text collection.
"""

import pytest

from storyengine.safety_policy import (
    EXPLICIT_SEX_VIOLATION,
    GORE_VIOLATION,
    SELF_HARM_INSTRUCTIONS_VIOLATION,
    TORTURE_VIOLATION,
    SafetyPolicy,
    check_hard_topics,
    collect_output_text,
    scan,
)

TOPICS = ["hate", "sexual violence", "self-harm"]


class TestHardTopics:
    def test_bare_hate_is_allowed(self):
        assert check_hard_topics("She would hate to lose the map.", ["hate"]) == []

    @pytest.mark.parametrize("text", ["a wave of hate speech", "it was a hate crime"])
    def test_contextual_hate_is_flagged(self, text):
        assert check_hard_topics(text, ["hate"]) == ["Hard forbidden topic: hate"]

    @pytest.mark.parametrize("text", ["sexual violence", "a rape", "sexual assault"])
    def test_sexual_violence_phrases(self, text):
        assert check_hard_topics(text, ["sexual violence"]) == ["Hard forbidden topic: sexual violence"]

    @pytest.mark.parametrize("text", ["self-harm", "self harm", "selfharm", "suicide", "I will kill myself"])
    def test_self_harm_phrases(self, text):
        assert check_hard_topics(text, ["self-harm"]) == ["Hard forbidden topic: self-harm"]

    def test_other_topics_match_as_substring(self):
        assert check_hard_topics("The NECROMANCY ritual began.", ["necromancy"]) == [
            "Hard forbidden topic: necromancy",
        ]

    def test_hard_topics_apply_at_every_rating(self):
        for rating in ("PG", "PG-13", "ADULT"):
            assert "Hard forbidden topic: hate" in scan("hate speech", rating, TOPICS)


class TestRatingTiers:
    def test_pg_nude_beach_is_flagged(self):
        violations = scan("They walked along a nude beach scene.", "PG", TOPICS)
        assert EXPLICIT_SEX_VIOLATION in violations

    def test_pg13_gore_is_flagged(self):
        violations = scan("The beast was dismembered.", "PG-13", TOPICS)
        assert GORE_VIOLATION in violations

    def test_adult_allows_explicit_and_gore(self):
        assert scan("An erotic scene; gore everywhere.", "ADULT", TOPICS) == []

    def test_adult_graphic_torture_is_flagged(self):
        assert TORTURE_VIOLATION in scan("A scene of graphic torture.", "ADULT", TOPICS)

    def test_pg13_graphic_torture_is_flagged(self):
        assert scan("A scene of graphic torture.", "PG-13", TOPICS)

    def test_flaying_is_flagged(self):
        assert TORTURE_VIOLATION in scan("The prisoner was flayed.", "ADULT", [])

    def test_adult_self_harm_instructions(self):
        violations = scan("Instructions on self-harm were written.", "ADULT", [])
        assert violations == [SELF_HARM_INSTRUCTIONS_VIOLATION]

    def test_adult_instructions_without_self_harm_terms_pass(self):
        assert scan("Instructions for the lock were etched in brass.", "ADULT", []) == []

    def test_clean_text_passes(self):
        assert scan("The lantern flickered over the quiet harbor.", "PG", TOPICS) == []

    def test_word_boundaries(self):
        # "sextant" and "Essex" must not read as "sex".
        assert scan("She checked the sextant bought in Essex.", "PG", []) == []

    def test_unknown_rating_only_checks_hard_topics(self):
        assert scan("nude gore", "R", []) == []
        assert scan("hate crime", "R", ["hate"]) == ["Hard forbidden topic: hate"]


class TestCollectOutputText:
    def test_episode_output_fields(self, episode_output):
        episode_output["assumptions"] = ["The bazaar opens at dawn."]
        text = collect_output_text(episode_output)
        assert "The Bazaar at Dawn" in text
        assert "Bargain with the spice merchant" in text
        assert "negotiate" in text
        assert "A chase" in text
        assert "The bazaar opens at dawn." in text

    def test_creation_output_fields(self, creation_output):
        text = collect_output_text(creation_output)
        assert "The Moonlit Relic" in text
        assert "Lanterns on the Water" in text
        assert "Follow the hooded figure" in text

    def test_violation_in_choice_is_found(self, episode_output):
        episode_output["choices"][1]["leads_to"] = "A nude swim"
        policy = SafetyPolicy("PG", TOPICS)
        assert EXPLICIT_SEX_VIOLATION in policy.scan_output(episode_output)


class TestSafetyPolicy:
    def test_from_profile(self, sample_profile):
        policy = SafetyPolicy.from_profile(sample_profile)
        assert policy.content_rating == "PG-13"
        assert policy.hard_forbidden_topics == TOPICS

    def test_from_profile_falls_back_to_narrative_style_rating(self, sample_profile):
        del sample_profile["content_rating"]
        sample_profile["canon"]["locked"]["narrative_style"]["content_rating"] = "PG"
        assert SafetyPolicy.from_profile(sample_profile).content_rating == "PG"
