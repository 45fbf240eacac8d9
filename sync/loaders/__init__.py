"""Normalized store with idempotent upserts."""

__all__ = ["NormalizedStore", "UpsertOutcome"]
