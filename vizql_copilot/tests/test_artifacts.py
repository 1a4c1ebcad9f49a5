"""
Tests for artifact persistence and row counting.
"""

from datetime import datetime, timezone

from vizql_copilot.shared.artifacts import ArtifactStore, count_rows, make_request_id


class TestArtifactStore:
    """Tests for ArtifactStore."""

    def test_save_and_load(self, tmp_path):
        """Saved results are readable by their relative path."""
        store = ArtifactStore(root=tmp_path)

        artifact = store.save({"data": [{"Region": "West"}, {"Region": "East"}]})

        assert artifact.rel_path == f"logs/vdsapi_json/{artifact.request_id}.json"
        assert store.load(artifact.rel_path) == {"data": [{"Region": "West"}, {"Region": "East"}]}
        assert store.count_rows(artifact.rel_path) == 2

    def test_ids_unique(self, tmp_path):
        """Back-to-back saves never overwrite each other."""
        store = ArtifactStore(root=tmp_path)
        paths = {store.save({"data": []}).rel_path for _ in range(5)}
        assert len(paths) == 5

    def test_missing_artifact(self, tmp_path):
        """Missing artifacts load as None and empty text."""
        store = ArtifactStore(root=tmp_path)
        assert store.load("logs/vdsapi_json/nope.json") is None
        assert store.load_text("logs/vdsapi_json/nope.json") == ""
        assert store.count_rows("logs/vdsapi_json/nope.json") == 0


class TestHelpers:
    """Tests for count_rows and make_request_id."""

    def test_count_rows_shapes(self):
        """Rows are counted for the known result shapes."""
        assert count_rows([1, 2, 3]) == 3
        assert count_rows({"rows": [1]}) == 1
        assert count_rows({"results": [1, 2]}) == 2
        assert count_rows({"value": 1}) == 0
        assert count_rows(None) == 0

    def test_request_id_time_ordered(self):
        """Ids start with the UTC timestamp."""
        now = datetime(2025, 9, 14, 10, 15, 30, 123456, tzinfo=timezone.utc)
        assert make_request_id(now).startswith("20250914_101530123456_")
