"""Analysis planning and query compilation."""
