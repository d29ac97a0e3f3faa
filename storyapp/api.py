"""
storyapp/api.py -- HTTP request boundary.

Three synchronous operations plus a health probe:

    POST /story-create       201 {story, story_profile, continuity_notes, episode_1, session}
    POST /episode-generate   201 {episode, output[, session]}
    POST /episode-finalize   200 {recap, story_profile}
    GET  /health             200 {"status": "ok"}

Every failure is answered with ``{"error": kind, "message": str, "details": [str]}``.
Request-shape errors FastAPI detects itself are remapped to the same body
with status 400.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from storyapp.config import Settings
from storyapp.services.generation_client import StructuredGenerationClient
from storyapp.services.orchestrator import EpisodeOrchestrator
from storyengine.errors import InputValidationError, StoryEngineError
from storyengine.story_store import StoryStore

logger = logging.getLogger(__name__)

router = APIRouter()


# ------------------------------------------------------------------
# Request models
# ------------------------------------------------------------------

class StoryCreateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    genre: str
    content_rating: str
    app_lang: str
    user_id: str
    is_anonymous: bool = True


class EpisodeGenerateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    story_id: str
    episode_number: int
    user_choice: dict[str, Any]
    story_profile: dict[str, Any]
    continuity_notes: Optional[list[dict[str, Any]]] = None
    recent_recaps: Optional[dict[str, Any]] = None
    retrieved_context: Optional[dict[str, Any]] = None
    segment_goal: Optional[str] = None
    length_target: Optional[dict[str, Any]] = None
    session_id: Optional[str] = None
    session_version: Optional[int] = None


class EpisodeFinalizeRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    story_id: str
    episode_id: str
    episode_number: int
    episode_text: str
    story_profile: dict[str, Any]
    continuity_notes: Optional[list[dict[str, Any]]] = None


# ------------------------------------------------------------------
# Routes
# ------------------------------------------------------------------

def _orchestrator(request: Request) -> EpisodeOrchestrator:
    return request.app.state.orchestrator


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.post("/story-create", status_code=201)
def story_create(body: StoryCreateRequest, request: Request) -> dict:
    return _orchestrator(request).create_story(
        genre=body.genre,
        content_rating=body.content_rating,
        app_lang=body.app_lang,
        user_id=body.user_id,
        is_anonymous=body.is_anonymous,
    )


@router.post("/episode-generate", status_code=201)
def episode_generate(body: EpisodeGenerateRequest, request: Request) -> dict:
    return _orchestrator(request).generate_episode(body.model_dump(exclude_none=True))


@router.post("/episode-finalize")
def episode_finalize(body: EpisodeFinalizeRequest, request: Request) -> dict:
    return _orchestrator(request).finalize_episode(body.model_dump(exclude_none=True))


# ------------------------------------------------------------------
# Error mapping
# ------------------------------------------------------------------

async def story_error_handler(request: Request, exc: StoryEngineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s %s", request.method, request.url.path, exc.kind, exc.details)
    else:
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        f"{'/'.join(str(part) for part in err.get('loc', ()))} {err.get('msg', '')}".strip()
        for err in exc.errors()
    ]
    error = InputValidationError("Invalid request body", details)
    logger.warning("%s %s rejected: %s", request.method, request.url.path, details)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def create_app(settings: Settings | None = None, generator=None, store=None) -> FastAPI:
    """Build the FastAPI app with its collaborators on ``app.state``.

    Parameters
    ----------
    settings : Settings | None
        Defaults to ``Settings.from_env()``.
    generator : optional
        Generation client; built from *settings* when omitted.
    store : StoryStore | None
        Store; opened at ``settings.db_path`` when omitted.
    """
    settings = settings or Settings.from_env()
    if generator is None:
        generator = StructuredGenerationClient(
            api_key=settings.api_key,
            default_model=settings.model,
            timeout=settings.timeout,
        )
    if store is None:
        store = StoryStore(settings.db_path)

    app = FastAPI(title="storythread", description="Narrative continuity and structured generation engine")
    app.state.settings = settings
    app.state.store = store
    app.state.orchestrator = EpisodeOrchestrator(generator, store, settings)

    app.add_exception_handler(StoryEngineError, story_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    return app
