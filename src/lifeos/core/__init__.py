"""Process-level plumbing shared by the engine's jobs: logging, metrics, ticking."""
