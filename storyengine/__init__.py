"""
storythread engine -- deterministic core of the narrative continuity engine.

Package layout:
    schemas/            Bundled JSON Schemas (profile, creation, episode, finalize)
    models/             Pydantic v2 models and profile schema migrations
    schema_validator    jsonschema validation with flat, path-tagged errors
    canon_lifecycle     Evidence-gated promotion of flexible canon
    snapshot_merger     Inventory / thread / location state merging
    safety_policy       Content-rating and hard-topic scan
    continuity_notes    Fact-ledger dedup helpers
    story_store         SQLite persistence with transactional writes
    errors              Error taxonomy shared with the app layer
"""
