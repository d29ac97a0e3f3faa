"""Application services: generation, prompting, validation and orchestration."""
