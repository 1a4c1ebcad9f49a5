"""Field selection phase."""

from vizql_copilot.selection.selector import FieldSelector, SelectionResult

__all__ = ["FieldSelector", "SelectionResult"]
