"""
Setup and teardown phases of the telemetry sidecar.

Setup launches the sidecar container, fetches the requested agents, exports
the OpenTelemetry environment for later job steps and records every launched
identity in the lifecycle state store. Teardown reads the store back, stops
everything in order, uploads the collected signals, writes the job summary
and runs the configured summary queries.
"""
import logging
import os
from pathlib import Path
from typing import Callable, List, Optional

import yaml
from pydantic import ValidationError

from sidecar.agent_configs import host_metrics_config, profiler_config, render
from sidecar.artifact_store import create_artifact_store
from sidecar.artifacts import ArtifactStore, classify, publish, scan_signal_files
from sidecar.ci_host import ActionsHost
from sidecar.commands import CommandResult, run_command
from sidecar.environment import (
    build_resource_attributes,
    exporter_environment,
    format_resource_attributes,
)
from sidecar.logging_utils import correlation_context, log_duration, log_with_fields
from sidecar.models import ConfigError, SidecarConfig, SidecarConfigFile
from sidecar.query_layer import find_query_files, run_summary_query
from sidecar.report import (
    SummaryReport,
    add_collected_telemetry,
    add_query_results,
    add_summaries_heading,
)
from sidecar.state_store import (
    CONTAINER_ID,
    DEFAULT_STATE_FILE,
    HOST_COLLECTOR_CONFIG,
    HOST_COLLECTOR_PID,
    PROFILER_CONFIG,
    PROFILER_PID,
    QUERY_ENGINE_PATH,
    SIGNALS_PATH,
    LifecycleStateStore,
    StateStoreError,
)
from sidecar.supervisor import ProcessSupervisor
from sidecar.tool_acquisition import (
    HOST_COLLECTOR,
    JAVA_AGENT,
    PROFILER,
    QUERY_ENGINE,
    ToolAcquirer,
)
from sidecar.tool_cache import ToolCache, create_temp_dir
from sidecar.version_resolver import VersionResolver

logger = logging.getLogger(__name__)

# action input -> SidecarConfig field
BOOLEAN_INPUTS = {
    'cache-agents': 'cache_agents',
    'instrument-java': 'instrument_java',
    'save-logs': 'save_logs',
    'save-metrics': 'save_metrics',
    'save-traces': 'save_traces',
    'save-profiles': 'save_profiles',
    'collect-host-metrics': 'collect_host_metrics',
}

VALUE_INPUTS = {
    'grpc-port': 'grpc_port',
    'http-port': 'http_port',
    'server-image': 'server_image',
    'stop-timeout': 'stop_timeout',
    'logs-artifact': 'logs_artifact',
    'metrics-artifact': 'metrics_artifact',
    'traces-artifact': 'traces_artifact',
    'profiles-artifact': 'profiles_artifact',
    'summary-queries': 'summary_queries',
    'github-token': 'github_token',
    'java-agent-version': 'java_agent_version',
    'host-collector-version': 'host_collector_version',
    'profiler-version': 'profiler_version',
    'state-file': 'state_file',
}

# action input -> ArtifactStoreConfig field
ARTIFACT_STORE_INPUTS = {
    'artifact-endpoint': 'endpoint',
    'artifact-access-key': 'access_key',
    'artifact-secret-key': 'secret_key',
    'artifact-bucket': 'bucket',
    'artifact-prefix': 'prefix',
    'artifacts-dir': 'local_dir',
}

ARTIFACT_STORE_BOOLEAN_INPUTS = {
    'artifact-secure': 'secure',
}

_FIELD_INPUTS = {
    **{field: name for name, field in {**BOOLEAN_INPUTS, **VALUE_INPUTS}.items()},
    **{
        f"artifacts.{field}": name
        for name, field in {**ARTIFACT_STORE_INPUTS, **ARTIFACT_STORE_BOOLEAN_INPUTS}.items()
    },
}


def _validation_message(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        field = '.'.join(str(part) for part in item['loc'] if part != 'sidecar')
        problems.append(f"{_FIELD_INPUTS.get(field, field)}: {item['msg']}")
    return "Invalid configuration: " + "; ".join(problems)


def load_config(host: ActionsHost, config_path: Optional[str] = None) -> SidecarConfig:
    """
    Build the sidecar configuration.

    Values come from the optional YAML file (root key ``sidecar``), then
    supplied action inputs override them.

    Raises:
        ConfigError: Unreadable file, malformed boolean or failed validation
    """
    data = {}

    if config_path:
        logger.info(f"Loading configuration from {config_path}")
        try:
            with open(config_path, 'r') as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read config file {config_path}: {e}")

        if not isinstance(raw, dict) or not isinstance(raw.get('sidecar') or {}, dict):
            raise ConfigError(f"Config file {config_path} must contain a 'sidecar' mapping")
        data = dict(raw.get('sidecar') or {})

    artifacts = dict(data.get('artifacts') or {})

    for name, field in VALUE_INPUTS.items():
        if host.has_input(name):
            data[field] = host.get_input(name)

    for name, field in BOOLEAN_INPUTS.items():
        if host.has_input(name):
            data[field] = host.get_boolean_input(name)

    for name, field in ARTIFACT_STORE_INPUTS.items():
        if host.has_input(name):
            artifacts[field] = host.get_input(name)

    for name, field in ARTIFACT_STORE_BOOLEAN_INPUTS.items():
        if host.has_input(name):
            artifacts[field] = host.get_boolean_input(name)

    data['artifacts'] = artifacts

    try:
        return SidecarConfigFile(sidecar=data).sidecar
    except ValidationError as e:
        raise ConfigError(_validation_message(e))


class Sidecar:
    """
    Runs one phase of the sidecar lifecycle.

    Args:
        host: CI host (inputs, outputs, environment, job summary)
        config: Validated configuration
        store: Lifecycle state store (default: job-scoped file under RUNNER_TEMP)
        supervisor: Process supervisor
        acquirer: Tool acquirer (built on first use when not given)
        artifact_store: Artifact store (built from config when not given)
        query_runner: Command primitive for the query engine
    """

    def __init__(
        self,
        host: ActionsHost,
        config: SidecarConfig,
        store: Optional[LifecycleStateStore] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        acquirer: Optional[ToolAcquirer] = None,
        artifact_store: Optional[ArtifactStore] = None,
        query_runner: Callable[[List[str]], CommandResult] = run_command
    ):
        self.host = host
        self.config = config
        self.store = store or LifecycleStateStore(
            config.state_file or str(host.runner_temp / DEFAULT_STATE_FILE)
        )
        self.supervisor = supervisor or ProcessSupervisor(config_dir=host.runner_temp)
        self.acquirer = acquirer
        self.artifact_store = artifact_store
        self.query_runner = query_runner
        self._resolver: Optional[VersionResolver] = None

    @property
    def run_id(self) -> Optional[str]:
        return self.host.env('GITHUB_RUN_ID') or None

    def _get_acquirer(self) -> ToolAcquirer:
        if self.acquirer is None:
            self._resolver = VersionResolver(
                token=self.config.github_token,
                api_url=self.host.env('GITHUB_API_URL')
            )
            self.acquirer = ToolAcquirer(
                cache=ToolCache(self.host.tool_cache_dir, self.host.arch),
                install_root=self.host.runner_temp / 'otel-tools',
                scratch_root=self.host.runner_temp,
                platform=self.host.platform,
                arch=self.host.arch,
                resolver=self._resolver
            )
        return self.acquirer

    def _default_artifacts_dir(self) -> Path:
        # RUNNER_TEMP is wiped at the end of the job
        workspace = self.host.env('GITHUB_WORKSPACE')
        root = Path(workspace) if workspace else self.host.runner_temp
        return root / 'telemetry-artifacts'

    def _get_artifact_store(self) -> ArtifactStore:
        if self.artifact_store is None:
            self.artifact_store = create_artifact_store(
                self.config.artifacts,
                default_dir=self._default_artifacts_dir(),
                run_id=self.host.env('GITHUB_RUN_ID')
            )
        return self.artifact_store

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def setup(self) -> None:
        """
        Launch the sidecar and agents and export the OpenTelemetry environment.

        Every identity is saved as soon as it exists, so teardown can stop
        whatever was started even if a later setup step fails.
        """
        with correlation_context(phase='setup', run_id=self.run_id), \
                log_duration('setup', logger):
            if not self.host.is_linux:
                raise ConfigError("This action only runs on linux runners")

            try:
                self._setup()
            finally:
                if self._resolver is not None:
                    self._resolver.close()

    def _setup(self) -> None:
        config = self.config
        acquirer = self._get_acquirer()

        resource_attributes = format_resource_attributes(
            build_resource_attributes(self.host.environ)
        )

        signals_path = self._create_signals_dir()
        self.store.save(SIGNALS_PATH, signals_path)

        container = self.supervisor.launch_sidecar(
            signals_path,
            resource_attributes,
            grpc_port=config.grpc_port,
            http_port=config.http_port,
            image=config.server_image
        )
        self.store.save(CONTAINER_ID, container.identity)

        if config.instrument_java:
            java_agent = acquirer.setup(JAVA_AGENT, config.java_agent_version, config.cache_agents)
            self.host.set_output('java-agent', str(java_agent))

        if config.summary_queries:
            engine = acquirer.setup(QUERY_ENGINE, '', config.cache_agents)
            self.store.save(QUERY_ENGINE_PATH, str(engine))

        for name, value in exporter_environment(config, resource_attributes).items():
            self.host.export_variable(name, value)

        if config.save_profiles:
            profiler = acquirer.setup(PROFILER, config.profiler_version, config.cache_agents)
            logger.debug(f"Launching profiler {profiler}")
            agent = self.supervisor.launch_profiler(
                str(profiler), render(profiler_config(config.grpc_port))
            )
            self.store.save(PROFILER_PID, agent.identity)
            self.store.save(PROFILER_CONFIG, agent.config_path)

        if config.collect_host_metrics:
            collector = acquirer.setup(
                HOST_COLLECTOR, config.host_collector_version, config.cache_agents
            )
            logger.debug(f"Launching host collector {collector}")
            agent = self.supervisor.launch_host_collector(
                str(collector), render(host_metrics_config(config.grpc_port))
            )
            self.store.save(HOST_COLLECTOR_PID, agent.identity)
            self.store.save(HOST_COLLECTOR_CONFIG, agent.config_path)

        self.host.set_output('signals-path', signals_path)

        log_with_fields(
            logger, logging.INFO, "Telemetry sidecar ready",
            signals_path=signals_path,
            profiler=config.save_profiles,
            host_metrics=config.collect_host_metrics
        )

    def _create_signals_dir(self) -> str:
        # The container user must be able to write here
        path = create_temp_dir(self.host.runner_temp, prefix='otel-signals-')
        os.chmod(path, 0o777)
        logger.debug(f"Created signals directory {path}")
        return str(path)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def teardown(self) -> None:
        """
        Stop everything setup recorded, then publish and summarize the signals.

        Temp files and the state store are removed regardless of outcome.
        An unreadable state file leaves nothing to stop; it is only removed.
        """
        with correlation_context(phase='teardown', run_id=self.run_id), \
                log_duration('teardown', logger):
            try:
                self.store.all()
            except StateStoreError as e:
                logger.error(f"Skipping teardown: {e}")
                self.store.clear()
                return

            try:
                self.supervisor.stop_all(self.store, timeout=self.config.stop_timeout)

                if self.store.get(CONTAINER_ID):
                    self.report_telemetry()
                else:
                    logger.info("No server container was launched, nothing to report")
            finally:
                self.cleanup()

    def report_telemetry(self) -> None:
        """Upload signal buckets and write the job summary."""
        signals_path = self.store.get(SIGNALS_PATH)

        if signals_path and Path(signals_path).is_dir():
            files = scan_signal_files(signals_path)
        else:
            logger.warning(f"Signals directory {signals_path!r} not found, nothing to upload")
            files = []

        rows = publish(
            classify(files),
            self.config,
            self._get_artifact_store(),
            scratch_root=self.host.runner_temp
        )

        report = SummaryReport()
        add_collected_telemetry(report, rows, self.host)

        if self.config.summary_queries:
            self.run_summary_queries(report, signals_path)

        report.write(self.host)

    def run_summary_queries(self, report: SummaryReport, signals_path: str) -> int:
        """
        Run every configured query file and add its results to the report.

        Returns:
            Number of query files run
        """
        engine = self.store.get(QUERY_ENGINE_PATH)
        if not engine:
            logger.warning("Query engine was not set up, skipping summary queries")
            return 0

        query_files = find_query_files(
            self.config.summary_queries,
            root=self.host.env('GITHUB_WORKSPACE') or None
        )
        if not query_files:
            logger.warning("No summary query files matched")
            return 0

        add_summaries_heading(report)

        for query_file in query_files:
            logger.debug(f"Running summary query {query_file}")
            rows = run_summary_query(
                engine,
                query_file,
                signals_path,
                scratch_dir=str(self.host.runner_temp),
                runner=self.query_runner
            )
            add_query_results(report, query_file, rows, self.host)

        return len(query_files)

    def cleanup(self) -> None:
        """Delete temp files, then forget the recorded state."""
        self.supervisor.cleanup([
            self.store.get(SIGNALS_PATH),
            self.store.get(PROFILER_CONFIG),
            self.store.get(HOST_COLLECTOR_CONFIG),
        ])
        self.store.clear()
