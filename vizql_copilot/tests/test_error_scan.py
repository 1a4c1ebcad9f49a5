"""
Tests for embedded-error detection in connector payloads.
"""

import json

from vizql_copilot.execution.error_scan import MAX_DEPTH, find_embedded_error


class TestFindEmbeddedError:
    """Tests for find_embedded_error."""

    def test_row_payload_is_clean(self):
        """A text item holding row JSON is not an error."""
        payload = [{"type": "text", "text": json.dumps({"data": [{"Sales": 10}]})}]
        assert find_embedded_error(payload) is None

    def test_row_values_never_inspected(self):
        """Row cells mentioning errors are data, not failures."""
        payload = {"data": [{"message": "error rate up", "text": "failed deliveries"}]}
        assert find_embedded_error(payload) is None

    def test_error_text_item(self):
        """A text item with an error keyword is reported verbatim."""
        payload = [{"type": "text", "text": "Error: unknown field 'Revenue'"}]
        assert find_embedded_error(payload) == "Error: unknown field 'Revenue'"

    def test_is_error_flag_with_text(self):
        """isError returns the nested text."""
        payload = {"isError": True, "content": [{"type": "text", "text": "query failed: bad filter"}]}
        assert find_embedded_error(payload) == "query failed: bad filter"

    def test_is_error_flag_without_keyword(self):
        """isError counts even when the text has no keyword."""
        payload = {"isError": True, "content": [{"type": "text", "text": "boom"}]}
        assert find_embedded_error(payload) == "boom"

    def test_structured_error_object(self):
        """A non-empty structured 'errors' value counts regardless of wording."""
        payload = {"errors": [{"code": "X-17"}]}
        assert "X-17" in find_embedded_error(payload)

    def test_json_string_parsed(self):
        """JSON inside a text value is walked as structure."""
        inner = json.dumps({"error": {"message": "Invalid query: field not found"}})
        payload = [{"type": "text", "text": inner}]
        assert find_embedded_error(payload) == "Invalid query: field not found"

    def test_plain_string(self):
        """Bare strings are scanned as text content."""
        assert find_embedded_error("Permission denied") == "Permission denied"
        assert find_embedded_error("all good") is None

    def test_depth_limit(self):
        """Errors nested deeper than MAX_DEPTH are ignored."""
        deep = {"message": "fatal error"}
        for _ in range(MAX_DEPTH + 5):
            deep = {"detail": deep}
        assert find_embedded_error(deep) is None

        shallow = {"detail": {"detail": {"message": "fatal error"}}}
        assert find_embedded_error(shallow) == "fatal error"

    def test_empty_error_value_ignored(self):
        """Empty error containers are not errors."""
        assert find_embedded_error({"errors": [], "data": []}) is None
