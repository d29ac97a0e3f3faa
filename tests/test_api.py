"""
Tests for storyapp/api.py -- routes, status codes and the structured error
body, driven through FastAPI's TestClient.
"""

import copy

import pytest
from fastapi.testclient import TestClient

from storyapp.api import create_app
from storyengine.safety_policy import TORTURE_VIOLATION
from storyengine.story_store import StoryStore


@pytest.fixture
def generator(fake_generator):
    return fake_generator


@pytest.fixture
def client(settings, generator):
    store = StoryStore(":memory:")
    app = create_app(settings, generator=generator, store=store)
    with TestClient(app) as c:
        yield c
    store.close()


@pytest.fixture
def story(client, generator, creation_output):
    generator.queue(creation_output)
    response = client.post("/story-create", json={
        "genre": "fantasy",
        "content_rating": "PG-13",
        "app_lang": "en",
        "user_id": "user-1",
    })
    assert response.status_code == 201
    return response.json()


def _error_body_shape(body):
    assert set(body) == {"error", "message", "details"}
    assert isinstance(body["details"], list)


class TestRoutes:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_story_create(self, story, creation_output):
        assert story["story"]["title"] == creation_output["title"]
        assert story["story_profile"]["version"] == 1
        assert story["episode_1"]["episode_number"] == 1
        assert story["session"]["current_episode_number"] == 1

    def test_episode_generate(self, client, generator, story, episode_output):
        generator.queue(episode_output)
        response = client.post("/episode-generate", json={
            "story_id": story["story"]["id"],
            "episode_number": 2,
            "user_choice": {"choice_id": "A"},
            "story_profile": story["story_profile"]["profile"],
            "session_id": story["session"]["id"],
        })
        assert response.status_code == 201
        body = response.json()
        assert body["episode"]["episode_number"] == 2
        assert body["session"]["current_episode_number"] == 2

    def test_episode_finalize(self, client, generator, story, finalize_output):
        generator.queue(finalize_output)
        response = client.post("/episode-finalize", json={
            "story_id": story["story"]["id"],
            "episode_id": story["episode_1"]["id"],
            "episode_number": 1,
            "episode_text": story["episode_1"]["text"],
            "story_profile": story["story_profile"]["profile"],
        })
        assert response.status_code == 200
        assert response.json()["story_profile"]["version"] == 2


class TestErrors:
    def test_missing_field_is_400(self, client, generator):
        response = client.post("/story-create", json={"genre": "fantasy"})
        assert response.status_code == 400
        body = response.json()
        _error_body_shape(body)
        assert body["error"] == "input_validation_error"
        assert any("content_rating" in d for d in body["details"])
        assert generator.calls == []

    def test_profile_schema_violation_is_400(self, client, story):
        profile = copy.deepcopy(story["story_profile"]["profile"])
        del profile["canon"]
        response = client.post("/episode-generate", json={
            "story_id": story["story"]["id"],
            "episode_number": 2,
            "user_choice": {"choice_id": "A"},
            "story_profile": profile,
        })
        assert response.status_code == 400
        assert response.json()["error"] == "input_validation_error"

    def test_rejection_is_500_with_details(self, client, generator, story, episode_output):
        bad = copy.deepcopy(episode_output)
        bad["segment"]["text"] = "A scene of graphic torture."
        generator.queue(bad, bad)
        response = client.post("/episode-generate", json={
            "story_id": story["story"]["id"],
            "episode_number": 2,
            "user_choice": {"choice_id": "B"},
            "story_profile": story["story_profile"]["profile"],
        })
        assert response.status_code == 500
        body = response.json()
        _error_body_shape(body)
        assert body["error"] == "safety_or_continuity_violation"
        assert body["details"] == [TORTURE_VIOLATION]

    def test_output_schema_failure_is_500(self, client, generator, creation_output):
        del creation_output["choices"]
        generator.queue(creation_output)
        response = client.post("/story-create", json={
            "genre": "fantasy", "content_rating": "PG", "app_lang": "en", "user_id": "u",
        })
        assert response.status_code == 500
        assert response.json()["error"] == "output_schema_error"

    def test_double_finalize_is_409(self, client, generator, story, finalize_output):
        payload = {
            "story_id": story["story"]["id"],
            "episode_id": story["episode_1"]["id"],
            "episode_number": 1,
            "episode_text": story["episode_1"]["text"],
            "story_profile": story["story_profile"]["profile"],
        }
        generator.queue(finalize_output)
        assert client.post("/episode-finalize", json=payload).status_code == 200

        response = client.post("/episode-finalize", json=payload)
        assert response.status_code == 409
        assert response.json()["error"] == "episode_already_finalized"
