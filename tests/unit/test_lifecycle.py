"""
Unit tests for the setup and teardown phases.

Setup and teardown run as separate processes in CI, so each test builds a
fresh Sidecar (and state store instance) per phase; only the state file is
shared between them.
"""
import os
import pytest
import signal
import stat
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from sidecar.ci_host import ActionsHost
from sidecar.commands import CommandResult
from sidecar.lifecycle import Sidecar, load_config
from sidecar.models import ConfigError, SidecarConfig, UploadedArtifact
from sidecar.state_store import (
    CONTAINER_ID, HOST_COLLECTOR_CONFIG, HOST_COLLECTOR_PID, PROFILER_CONFIG,
    PROFILER_PID, QUERY_ENGINE_PATH, SIGNALS_PATH, LifecycleStateStore
)
from sidecar.supervisor import LaunchFailed, ProcessSupervisor
from sidecar.tool_cache import DownloadFailed


class FakeAcquirer:
    """Returns fixed paths instead of downloading tools."""

    def __init__(self, root: Path, fail_on=None):
        self.root = root
        self.fail_on = fail_on
        self.requests = []

    def setup(self, tool, requested, cache_enabled):
        self.requests.append((tool.tool_id, requested, cache_enabled))
        if tool.tool_id == self.fail_on:
            raise DownloadFailed(f"Failed to download {tool.tool_id}")
        path = self.root / tool.tool_id / tool.executable
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("")
        return path


class RecordingStore:
    def __init__(self):
        self.uploads = []

    def upload(self, name, archive_path):
        self.uploads.append(name)
        return UploadedArtifact(name=name, artifact_id=name, size_bytes=1, url=f"https://store/{name}")


class Harness:
    """Runner, spawner and killpg doubles sharing one event log."""

    def __init__(self, runner_factory, responses=None):
        self.events = []
        self.runner = runner_factory(responses or {
            ('docker', 'run'): CommandResult(0, "c0ffee\n", ""),
        })
        self.next_pid = 100

    def run(self, argv, timeout=None):
        self.events.append(list(argv))
        return self.runner(argv, timeout)

    def spawn(self, argv):
        self.events.append(['spawn', *argv])
        self.next_pid += 100
        return self.next_pid

    def killpg(self, pid, sig):
        self.events.append(['killpg', str(pid), str(int(sig))])

    def supervisor(self, config_dir: Path) -> ProcessSupervisor:
        return ProcessSupervisor(config_dir, runner=self.run, spawner=self.spawn, killpg=self.killpg)


@pytest.fixture(autouse=True)
def linux_runner(monkeypatch):
    monkeypatch.setattr(ActionsHost, 'is_linux', property(lambda self: True))


@pytest.fixture
def state_file(tmp_path):
    return str(tmp_path / "state.json")


def read_file_command(path: str) -> dict:
    values = {}
    lines = Path(path).read_text().splitlines()
    i = 0
    while i < len(lines):
        name, delimiter = lines[i].split('<<', 1)
        end = lines.index(delimiter, i + 1)
        values[name] = '\n'.join(lines[i + 1:end])
        i = end + 1
    return values


class TestLoadConfig:
    """Tests for configuration loading."""

    def test_defaults(self):
        config = load_config(ActionsHost({}))
        assert config == SidecarConfig()

    def test_inputs(self):
        host = ActionsHost({
            'INPUT_SAVE-PROFILES': 'true',
            'INPUT_GRPC-PORT': '14317',
            'INPUT_TRACES-ARTIFACT': 't',
            'INPUT_SUMMARY-QUERIES': 'queries/*.sql\n!queries/slow.sql',
            'INPUT_ARTIFACT-ENDPOINT': 'minio:9000',
            'INPUT_ARTIFACT-SECURE': 'false',
        })

        config = load_config(host)

        assert config.save_profiles is True
        assert config.grpc_port == 14317
        assert config.traces_artifact == 't'
        assert config.summary_queries == 'queries/*.sql\n!queries/slow.sql'
        assert config.artifacts.endpoint == 'minio:9000'
        assert config.artifacts.secure is False

    def test_inputs_override_file(self, tmp_path, sample_config_yaml):
        config_path = tmp_path / "sidecar.yaml"
        config_path.write_text(sample_config_yaml)
        host = ActionsHost({'INPUT_GRPC-PORT': '24317', 'INPUT_ARTIFACT-BUCKET': 'other'})

        config = load_config(host, str(config_path))

        assert config.save_profiles is True
        assert config.server_image == "example/parquet-server:1.0"
        assert config.grpc_port == 24317
        assert config.artifacts.bucket == "other"
        assert config.logging.level == "DEBUG"

    def test_non_integer_port(self):
        with pytest.raises(ConfigError, match="grpc-port"):
            load_config(ActionsHost({'INPUT_GRPC-PORT': 'grpc'}))

    def test_port_out_of_range(self):
        with pytest.raises(ConfigError, match="http-port"):
            load_config(ActionsHost({'INPUT_HTTP-PORT': '70000'}))

    def test_bad_boolean(self):
        with pytest.raises(ConfigError, match="save-logs"):
            load_config(ActionsHost({'INPUT_SAVE-LOGS': 'yes'}))

    def test_empty_image_in_file(self, tmp_path):
        config_path = tmp_path / "sidecar.yaml"
        config_path.write_text("sidecar:\n  server_image: ''\n")
        with pytest.raises(ConfigError, match="server-image cannot be empty"):
            load_config(ActionsHost({}), str(config_path))

    def test_unreadable_file(self, tmp_path):
        config_path = tmp_path / "sidecar.yaml"
        config_path.write_text("sidecar: [unclosed\n")
        with pytest.raises(ConfigError, match="Failed to read config file"):
            load_config(ActionsHost({}), str(config_path))

    def test_wrong_root(self, tmp_path):
        config_path = tmp_path / "sidecar.yaml"
        config_path.write_text("sidecar: 3\n")
        with pytest.raises(ConfigError, match="'sidecar' mapping"):
            load_config(ActionsHost({}), str(config_path))


class TestSetup:
    """Tests for the setup phase."""

    def test_full_setup(self, actions_env, tmp_path, state_file, runner_factory):
        harness = Harness(runner_factory)
        acquirer = FakeAcquirer(tmp_path / "tools")
        config = SidecarConfig(
            instrument_java=True,
            save_profiles=True,
            collect_host_metrics=True,
            save_traces=False,
            summary_queries="queries/*.sql",
            grpc_port=14317,
            state_file=state_file,
        )
        host = ActionsHost(actions_env)

        Sidecar(host, config, supervisor=harness.supervisor(tmp_path / "configs"), acquirer=acquirer).setup()

        store = LifecycleStateStore(state_file)
        signals_path = store.get(SIGNALS_PATH)
        assert store.get(CONTAINER_ID) == "c0ffee"
        assert stat.S_IMODE(os.stat(signals_path).st_mode) == 0o777
        assert store.get(QUERY_ENGINE_PATH).endswith("duckdb_cli/duckdb")
        assert store.get(PROFILER_PID) == "200"
        assert store.get(HOST_COLLECTOR_PID) == "300"
        assert Path(store.get(PROFILER_CONFIG)).is_file()
        assert Path(store.get(HOST_COLLECTOR_CONFIG)).is_file()

        outputs = read_file_command(actions_env['GITHUB_OUTPUT'])
        assert outputs['java-agent'].endswith("opentelemetry-javaagent.jar")
        assert outputs['signals-path'] == signals_path

        exported = read_file_command(actions_env['GITHUB_ENV'])
        assert exported['OTEL_EXPORTER_OTLP_PROTOCOL'] == 'grpc'
        assert exported['OTEL_EXPORTER_OTLP_ENDPOINT'] == 'http://localhost:14317'
        assert exported['OTEL_LOGS_EXPORTER'] == 'otlp'
        assert exported['OTEL_METRICS_EXPORTER'] == 'otlp'
        assert exported['OTEL_TRACES_EXPORTER'] == 'none'
        assert 'cicd.pipeline.run.id=4242' in exported['OTEL_RESOURCE_ATTRIBUTES']
        assert actions_env['OTEL_TRACES_EXPORTER'] == 'none'

        docker_run = harness.events[0]
        assert docker_run[:3] == ['docker', 'run', '-d']
        assert '14317:4317' in docker_run
        assert harness.events[1][:3] == ['spawn', 'sudo', str(tmp_path / "tools" / "otelcol-ebpf-profiler" / "otelcol-ebpf-profiler")]
        assert harness.events[2][1].endswith("otelcol")

        assert [r[0] for r in acquirer.requests] == [
            'opentelemetry-java-agent', 'duckdb_cli', 'otelcol-ebpf-profiler', 'otelcol'
        ]

    def test_minimal_setup(self, actions_env, tmp_path, state_file, runner_factory):
        harness = Harness(runner_factory)
        acquirer = FakeAcquirer(tmp_path / "tools")
        config = SidecarConfig(state_file=state_file)

        Sidecar(ActionsHost(actions_env), config, supervisor=harness.supervisor(tmp_path), acquirer=acquirer).setup()

        store = LifecycleStateStore(state_file)
        assert set(store.all()) == {SIGNALS_PATH, CONTAINER_ID}
        assert acquirer.requests == []
        assert 'java-agent' not in read_file_command(actions_env['GITHUB_OUTPUT'])

    def test_container_launch_failure(self, actions_env, tmp_path, state_file, runner_factory):
        harness = Harness(runner_factory, {('docker', 'run'): CommandResult(125, "", "no such image")})
        config = SidecarConfig(state_file=state_file)
        sidecar = Sidecar(ActionsHost(actions_env), config, supervisor=harness.supervisor(tmp_path), acquirer=FakeAcquirer(tmp_path))

        with pytest.raises(LaunchFailed):
            sidecar.setup()

        store = LifecycleStateStore(state_file)
        assert store.get(CONTAINER_ID) == ''
        assert Path(store.get(SIGNALS_PATH)).is_dir()

    def test_non_linux_runner(self, actions_env, monkeypatch, runner_factory, tmp_path):
        monkeypatch.setattr(ActionsHost, 'is_linux', property(lambda self: False))
        harness = Harness(runner_factory)
        sidecar = Sidecar(ActionsHost(actions_env), SidecarConfig(state_file=str(tmp_path / "s.json")),
                          supervisor=harness.supervisor(tmp_path), acquirer=FakeAcquirer(tmp_path))

        with pytest.raises(ConfigError, match="only runs on linux"):
            sidecar.setup()
        assert harness.events == []


class TestTeardown:
    """Tests for the teardown phase."""

    def run_setup(self, actions_env, tmp_path, config, runner_factory):
        harness = Harness(runner_factory)
        Sidecar(ActionsHost(actions_env), config, supervisor=harness.supervisor(tmp_path / "configs"),
                acquirer=FakeAcquirer(tmp_path / "tools")).setup()
        return LifecycleStateStore(config.state_file).all()

    def test_full_teardown(self, actions_env, tmp_path, state_file, runner_factory):
        config = SidecarConfig(
            save_profiles=True,
            collect_host_metrics=True,
            traces_artifact="t",
            summary_queries="queries/*.sql",
            state_file=state_file,
        )
        state = self.run_setup(actions_env, tmp_path, config, runner_factory)

        signals = Path(state[SIGNALS_PATH])
        (signals / "traces-1-1.parquet").write_bytes(b"PAR1")
        (signals / "logs-1-1.parquet").write_bytes(b"")

        workspace = tmp_path / "workspace"
        (workspace / "queries").mkdir(parents=True)
        (workspace / "queries" / "bad.sql").write_text("select nonsense;")
        (workspace / "queries" / "spans.sql").write_text("select count(*) as spans from telemetry_traces();")
        actions_env['GITHUB_WORKSPACE'] = str(workspace)

        harness = Harness(runner_factory, {
            ('docker', 'container', 'logs'): CommandResult(0, "server stopped\n", ""),
        })

        def query_runner(argv, timeout=None):
            if argv[-1].endswith("bad.sql"):
                return CommandResult(1, "", "Binder Error")
            return CommandResult(0, '[{"spans": 7}]', "")

        store = RecordingStore()
        Sidecar(
            ActionsHost(actions_env), config,
            supervisor=harness.supervisor(tmp_path / "configs"),
            artifact_store=store,
            query_runner=query_runner
        ).teardown()

        assert harness.events[0] == ['sudo', 'kill', '-KILL', '--', f"-{state[PROFILER_PID]}"]
        assert harness.events[1] == ['killpg', state[HOST_COLLECTOR_PID], str(int(signal.SIGKILL))]
        assert harness.events[2] == ['docker', 'stop', '-t', '10', 'c0ffee']

        assert store.uploads == ["t"]

        summary = Path(actions_env['GITHUB_STEP_SUMMARY']).read_text()
        assert "<tr><td>Logs</td><td>None</td></tr>" in summary
        assert '<tr><td>Traces</td><td><a href="https://store/t">t</a></td></tr>' in summary
        assert "<h2>Telemetry summaries</h2>" in summary
        assert "queries/bad.sql" in summary
        assert "<td>7</td>" in summary

        assert not signals.exists()
        assert not Path(state[PROFILER_CONFIG]).exists()
        assert not Path(state[HOST_COLLECTOR_CONFIG]).exists()
        assert not Path(state_file).exists()

    def test_teardown_after_failed_launch(self, actions_env, tmp_path, state_file, runner_factory):
        config = SidecarConfig(state_file=state_file)
        failing = Harness(runner_factory, {('docker', 'run'): CommandResult(1, "", "")})
        with pytest.raises(LaunchFailed):
            Sidecar(ActionsHost(actions_env), config, supervisor=failing.supervisor(tmp_path),
                    acquirer=FakeAcquirer(tmp_path)).setup()
        signals = Path(LifecycleStateStore(state_file).get(SIGNALS_PATH))

        harness = Harness(runner_factory)
        store = RecordingStore()
        Sidecar(ActionsHost(actions_env), config, supervisor=harness.supervisor(tmp_path),
                artifact_store=store).teardown()

        assert harness.events == []
        assert store.uploads == []
        assert Path(actions_env['GITHUB_STEP_SUMMARY']).read_text() == ""
        assert not signals.exists()

    def test_agents_stopped_without_container(self, actions_env, tmp_path, state_file, runner_factory):
        store = LifecycleStateStore(state_file)
        store.save(HOST_COLLECTOR_PID, 555)

        harness = Harness(runner_factory)
        Sidecar(ActionsHost(actions_env), SidecarConfig(state_file=state_file),
                supervisor=harness.supervisor(tmp_path), artifact_store=RecordingStore()).teardown()

        assert harness.events == [['killpg', '555', str(int(signal.SIGKILL))]]

    def test_upload_failure_still_cleans_up(self, actions_env, tmp_path, state_file, runner_factory):
        config = SidecarConfig(state_file=state_file)
        state = self.run_setup(actions_env, tmp_path, config, runner_factory)
        signals = Path(state[SIGNALS_PATH])
        (signals / "logs-1-1.parquet").write_bytes(b"PAR1")

        class FailingStore:
            def upload(self, name, archive_path):
                raise OSError("disk full")

        with pytest.raises(OSError):
            Sidecar(ActionsHost(actions_env), config, supervisor=Harness(runner_factory).supervisor(tmp_path),
                    artifact_store=FailingStore()).teardown()

        assert not signals.exists()
        assert not Path(state_file).exists()

    def test_missing_query_engine(self, actions_env, tmp_path, state_file, runner_factory):
        config = SidecarConfig(state_file=state_file, summary_queries="*.sql")
        state = self.run_setup(actions_env, tmp_path, config, runner_factory)
        LifecycleStateStore(state_file).save(QUERY_ENGINE_PATH, "")

        Sidecar(ActionsHost(actions_env), config, supervisor=Harness(runner_factory).supervisor(tmp_path),
                artifact_store=RecordingStore()).teardown()

        assert "Telemetry summaries" not in Path(actions_env['GITHUB_STEP_SUMMARY']).read_text()
        assert not Path(state[SIGNALS_PATH]).exists()

    def test_corrupt_state_file_is_removed(self, actions_env, tmp_path, state_file, runner_factory):
        Path(state_file).write_text("{not json")

        harness = Harness(runner_factory)
        store = RecordingStore()
        Sidecar(ActionsHost(actions_env), SidecarConfig(state_file=state_file),
                supervisor=harness.supervisor(tmp_path), artifact_store=store).teardown()

        assert harness.events == []
        assert store.uploads == []
        assert not Path(state_file).exists()

    def test_local_artifacts_kept_in_workspace(self, actions_env, tmp_path, state_file, runner_factory):
        config = SidecarConfig(state_file=state_file)
        state = self.run_setup(actions_env, tmp_path, config, runner_factory)
        (Path(state[SIGNALS_PATH]) / "traces-1-1.parquet").write_bytes(b"PAR1")
        workspace = tmp_path / "workspace"
        workspace.mkdir()
        actions_env['GITHUB_WORKSPACE'] = str(workspace)

        Sidecar(ActionsHost(actions_env), config,
                supervisor=Harness(runner_factory).supervisor(tmp_path)).teardown()

        assert (workspace / "telemetry-artifacts" / "traces.tar.gz").is_file()
        summary = Path(actions_env['GITHUB_STEP_SUMMARY']).read_text()
        assert (workspace / "telemetry-artifacts" / "traces.tar.gz").resolve().as_uri() in summary
