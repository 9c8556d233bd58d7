"""LifeOS background engine: reminder scanning and Google Calendar reconciliation."""

__version__ = "0.1.0"
