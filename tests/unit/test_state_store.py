"""Unit tests for the lifecycle state store."""
import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from sidecar.state_store import (
    CONTAINER_ID, PROFILER_PID, SIGNALS_PATH, LifecycleStateStore, StateStoreError
)


class TestLifecycleStateStore:
    """Tests for LifecycleStateStore."""

    def test_missing_key(self, tmp_path):
        store = LifecycleStateStore(str(tmp_path / "state.json"))
        assert store.get(CONTAINER_ID) == ''

    def test_values_survive_new_instance(self, tmp_path):
        """Setup and teardown are different processes: only the file is shared."""
        path = str(tmp_path / "state.json")
        LifecycleStateStore(path).save(CONTAINER_ID, "c0ffee")
        LifecycleStateStore(path).save(PROFILER_PID, 4321)

        store = LifecycleStateStore(path)
        assert store.get(CONTAINER_ID) == "c0ffee"
        assert store.get(PROFILER_PID) == "4321"

    def test_overwrite(self, tmp_path):
        store = LifecycleStateStore(str(tmp_path / "state.json"))
        store.save(SIGNALS_PATH, "/a")
        store.save(SIGNALS_PATH, "/b")
        assert store.all() == {SIGNALS_PATH: "/b"}

    def test_no_temp_files_left(self, tmp_path):
        store = LifecycleStateStore(str(tmp_path / "state.json"))
        store.save(CONTAINER_ID, "x")
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_clear(self, tmp_path):
        store = LifecycleStateStore(str(tmp_path / "state.json"))
        store.save(CONTAINER_ID, "x")
        store.clear()
        store.clear()
        assert store.get(CONTAINER_ID) == ''

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        with pytest.raises(StateStoreError, match="Cannot read state file"):
            LifecycleStateStore(str(path)).get(CONTAINER_ID)

    def test_non_object_file(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("[1, 2]")
        with pytest.raises(StateStoreError):
            LifecycleStateStore(str(path)).all()
