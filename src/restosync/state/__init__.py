"""State/store layer.

This package is the single source of truth for how refetched records,
push events and local overrides are merged into a deterministic
per-entity view.
"""
