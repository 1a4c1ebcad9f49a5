"""Datasource field catalog cache."""

from vizql_copilot.metadata.cache import MetadataCache, normalize_fields

__all__ = ["MetadataCache", "normalize_fields"]
