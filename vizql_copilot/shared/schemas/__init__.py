"""Session-level models."""
