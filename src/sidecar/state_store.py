"""
Lifecycle state store.

Setup and teardown are separate program executions, so every identity
teardown needs (container id, agent pids, temp paths) is written here by
setup and read back by teardown. Values are opaque strings.

The store is a JSON object in a job-scoped file (under RUNNER_TEMP by
default). Writes replace the file atomically.
"""
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict

logger = logging.getLogger(__name__)

CONTAINER_ID = 'container_id'
SIGNALS_PATH = 'signals_path'
QUERY_ENGINE_PATH = 'query_engine_path'
PROFILER_PID = 'profiler_pid'
PROFILER_CONFIG = 'profiler_config'
HOST_COLLECTOR_PID = 'host_collector_pid'
HOST_COLLECTOR_CONFIG = 'host_collector_config'

DEFAULT_STATE_FILE = 'otel-job-sidecar-state.json'


class StateStoreError(Exception):
    """State file is unreadable or unwritable."""
    pass


class LifecycleStateStore:
    """
    Durable string key/value map scoped to one job run.

    Callers must check presence before acting: a key may be missing if
    setup failed part way or never ran.
    """

    def __init__(self, path: str):
        """
        Args:
            path: State file path
        """
        self.path = Path(path)

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StateStoreError(f"Cannot read state file {self.path}: {e}")

        if not isinstance(data, dict):
            raise StateStoreError(f"State file {self.path} does not contain an object")

        return {str(k): str(v) for k, v in data.items()}

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix='.state-', dir=self.path.parent)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StateStoreError(f"Cannot write state file {self.path}: {e}")

    def save(self, key: str, value) -> None:
        """Persist one value (stored as a string)."""
        data = self._load()
        data[key] = str(value)
        self._write(data)
        logger.debug(f"Saved state {key}")

    def get(self, key: str) -> str:
        """Return the stored value, or '' when absent."""
        return self._load().get(key, '')

    def all(self) -> Dict[str, str]:
        return self._load()

    def clear(self) -> None:
        """Remove the state file."""
        try:
            self.path.unlink()
            logger.debug(f"Cleared state file {self.path}")
        except FileNotFoundError:
            pass
