"""Triage phase."""
