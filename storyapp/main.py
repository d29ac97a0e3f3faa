"""
storyapp/main.py -- Process entry point.

Configures logging from the settings, builds the FastAPI app and serves it
with uvicorn.

Usage::

    python -m storyapp.main --port 8000
    # or, under an ASGI server of your choice
    uvicorn storyapp.main:build_app --factory
"""

from __future__ import annotations

import argparse
import logging

import uvicorn

from storyapp.api import create_app
from storyapp.config import Settings


def _setup_logging(level: str = "INFO") -> None:
    """Configure root logging for the service."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def build_app():
    """Factory used by ``uvicorn --factory``."""
    settings = Settings.from_env()
    _setup_logging(settings.log_level)
    return create_app(settings)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run the storythread HTTP service.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    _setup_logging(settings.log_level)
    logger = logging.getLogger("storyapp")
    logger.info("Starting storythread (model=%s, db=%s)", settings.model, settings.db_path)

    uvicorn.run(create_app(settings), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
