"""Query validation and execution."""
