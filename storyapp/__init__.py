"""
storythread app -- generation-facing layer and HTTP boundary.

Package layout:
    services/   Generation client, prompts, validation, repair loop, orchestrator
    config      Environment-driven settings
    api         FastAPI routes and error mapping
    main        Process entry point (logging setup, uvicorn)
"""
