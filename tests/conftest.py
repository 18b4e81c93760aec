"""
Pytest fixtures for otel-job-sidecar tests.

Provides a fake runner environment, a recording command runner and, for
integration tests, a local MinIO server on a random port.
"""
import os
import sys
import time
import socket
import shutil
import tempfile
import subprocess
from pathlib import Path
from contextlib import closing

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from sidecar.commands import CommandResult


def find_free_port() -> int:
    """Find a free TCP port."""
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(('127.0.0.1', 0))
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        return s.getsockname()[1]


def wait_for_port(port: int, timeout: float = 10.0) -> bool:
    """Wait for a port to become available."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
                s.connect(('127.0.0.1', port))
                return True
        except ConnectionRefusedError:
            time.sleep(0.1)
    return False


class RecordingRunner:
    """
    Command runner double: records argv, answers from a response table.

    Responses are matched on the leading argv elements, e.g.
    ``{('docker', 'run'): CommandResult(0, 'abc\\n', '')}``.
    """

    def __init__(self, responses=None):
        self.calls = []
        self.responses = responses or {}

    def __call__(self, argv, timeout=None):
        self.calls.append(list(argv))
        for prefix, result in self.responses.items():
            if tuple(argv[:len(prefix)]) == tuple(prefix):
                return result(argv) if callable(result) else result
        return CommandResult(exit_code=0, stdout='', stderr='')


@pytest.fixture
def recording_runner():
    return RecordingRunner()


@pytest.fixture
def runner_factory():
    """RecordingRunner class, for tests that need canned responses."""
    return RecordingRunner


@pytest.fixture
def actions_env(tmp_path):
    """
    Minimal GitHub Actions runner environment backed by tmp_path.

    Returns:
        dict usable as ActionsHost(environ=...)
    """
    runner_temp = tmp_path / "runner-temp"
    runner_temp.mkdir()
    files = tmp_path / "files"
    files.mkdir()
    for name in ("output", "env", "summary"):
        (files / name).touch()

    return {
        'RUNNER_TEMP': str(runner_temp),
        'RUNNER_TOOL_CACHE': str(tmp_path / "tool-cache"),
        'GITHUB_OUTPUT': str(files / "output"),
        'GITHUB_ENV': str(files / "env"),
        'GITHUB_STEP_SUMMARY': str(files / "summary"),
        'GITHUB_SERVER_URL': 'https://github.com',
        'GITHUB_REPOSITORY': 'octo/widgets',
        'GITHUB_RUN_ID': '4242',
        'GITHUB_WORKFLOW': 'CI',
        'GITHUB_SHA': 'abc123',
    }


@pytest.fixture(scope="session")
def minio_server():
    """
    Start a MinIO server for testing.

    Yields:
        dict with 'endpoint', 'access_key', 'secret_key' keys
    """
    # Find minio binary
    minio_bin = Path(__file__).parent.parent / "bin" / "minio"
    if not minio_bin.exists():
        pytest.skip("MinIO binary not found. Run: curl -sSL https://dl.min.io/server/minio/release/linux-amd64/minio -o bin/minio && chmod +x bin/minio")

    port = find_free_port()
    console_port = find_free_port()

    data_dir = tempfile.mkdtemp(prefix="minio_test_")

    access_key = "testadmin"
    secret_key = "testadmin123"

    env = os.environ.copy()
    env['MINIO_ROOT_USER'] = access_key
    env['MINIO_ROOT_PASSWORD'] = secret_key

    proc = subprocess.Popen(
        [
            str(minio_bin), 'server', data_dir,
            '--address', f'127.0.0.1:{port}',
            '--console-address', f'127.0.0.1:{console_port}',
        ],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=env
    )

    if not wait_for_port(port, timeout=10.0):
        proc.kill()
        shutil.rmtree(data_dir, ignore_errors=True)
        pytest.skip("Could not start MinIO server")

    yield {
        'endpoint': f'127.0.0.1:{port}',
        'access_key': access_key,
        'secret_key': secret_key,
        'secure': False,
    }

    proc.terminate()
    try:
        proc.wait(timeout=2)
    except subprocess.TimeoutExpired:
        proc.kill()
    shutil.rmtree(data_dir, ignore_errors=True)


@pytest.fixture
def temp_work_dir():
    """Create a temporary work directory for tests."""
    work_dir = tempfile.mkdtemp(prefix="sidecar_test_")
    yield work_dir
    shutil.rmtree(work_dir, ignore_errors=True)


@pytest.fixture
def sample_config_yaml() -> str:
    """Sample sidecar config file."""
    return """
sidecar:
  save_profiles: true
  grpc_port: 14317
  server_image: example/parquet-server:1.0

  artifacts:
    bucket: ci-telemetry

  logging:
    level: DEBUG
"""
