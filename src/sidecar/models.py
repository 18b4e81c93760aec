"""
Data models for the telemetry sidecar.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Pattern

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ConfigError(Exception):
    """Invalid or missing configuration input."""
    pass


class SignalKind(Enum):
    """Telemetry signal categories, each with its own parquet schema."""
    LOGS = "logs"
    METRICS = "metrics"
    TRACES = "traces"
    PROFILES = "profiles"

    @property
    def title(self) -> str:
        """Display name used in the job summary."""
        return self.value.capitalize()

    @property
    def pattern(self) -> Pattern[str]:
        """Filename convention written by the sidecar for this signal."""
        return SIGNAL_FILE_PATTERNS[self]


# Profiles files carry an optional dash-delimited label before the counters
SIGNAL_FILE_PATTERNS: Dict[SignalKind, Pattern[str]] = {
    SignalKind.LOGS: re.compile(r'^logs-[0-9]+-[0-9]+\.parquet'),
    SignalKind.METRICS: re.compile(r'^metrics-[0-9]+-[0-9]+\.parquet'),
    SignalKind.TRACES: re.compile(r'^traces-[0-9]+-[0-9]+\.parquet'),
    SignalKind.PROFILES: re.compile(r'^profiles-[-a-z]*-[0-9]+-[0-9]+\.parquet'),
}


class ProcessKind(Enum):
    """Kinds of externally spawned processes tracked across phases."""
    CONTAINER = "container"
    PROFILER_AGENT = "profiler"
    HOST_COLLECTOR_AGENT = "host_collector"


class ProcessState(Enum):
    """Lifecycle states of a managed process."""
    NOT_STARTED = "not_started"
    LAUNCHING = "launching"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ORPHANED = "orphaned"


_TRANSITIONS = {
    ProcessState.NOT_STARTED: {ProcessState.LAUNCHING},
    ProcessState.LAUNCHING: {ProcessState.RUNNING, ProcessState.STOPPED},
    ProcessState.RUNNING: {ProcessState.STOPPING, ProcessState.ORPHANED},
    ProcessState.STOPPING: {ProcessState.STOPPED},
    ProcessState.STOPPED: set(),
    ProcessState.ORPHANED: set(),
}


@dataclass
class ManagedProcess:
    """
    A container or OS process whose identity is tracked for ordered termination.

    Only ``identity`` and ``config_path`` survive into the teardown phase,
    and only through the lifecycle state store.
    """
    kind: ProcessKind
    identity: str = ""
    config_path: Optional[str] = None
    state: ProcessState = ProcessState.NOT_STARTED

    def transition(self, new_state: ProcessState) -> None:
        """
        Move to a new lifecycle state.

        Raises:
            ValueError: If the transition is not allowed
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise ValueError(
                f"Invalid {self.kind.value} transition: "
                f"{self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    @property
    def pid(self) -> int:
        """OS process id (agents only)."""
        return int(self.identity)


class ToolSpec(BaseModel):
    """A tool version resolved once per run."""
    model_config = ConfigDict(frozen=True)

    name: str
    requested_version: str = ""
    resolved_version: str
    caching_enabled: bool = True


@dataclass
class SignalFile:
    """A file found in the shared signals directory."""
    name: str
    parent: str
    size_bytes: int

    @property
    def path(self) -> str:
        return f"{self.parent}/{self.name}"


class UploadedArtifact(BaseModel):
    """Result of handing one signal bucket to the artifact store."""
    name: str
    artifact_id: str
    size_bytes: int
    url: str


class ReportRow(BaseModel):
    """One Signal -> Artifact row in the job summary."""
    signal: SignalKind
    artifact: Optional[UploadedArtifact] = None


class SidecarConfig(BaseModel):
    """Sidecar configuration (action inputs layered over an optional file)."""

    class ArtifactStoreConfig(BaseModel):
        endpoint: str = Field(
            default="",
            description="MinIO/S3 endpoint (host:port); empty stores archives locally"
        )
        access_key: str = ""
        secret_key: str = Field(default="", repr=False)
        bucket: str = "telemetry"
        prefix: str = Field(
            default="",
            description="Object name prefix, defaults to the CI run id"
        )
        secure: bool = True
        local_dir: Optional[str] = Field(
            default=None,
            description="Directory for locally stored artifacts"
        )
        url_expiry_seconds: int = Field(default=7 * 24 * 3600, ge=1, le=7 * 24 * 3600)

    class LoggingConfig(BaseModel):
        level: str = Field(
            default="INFO",
            description="Global log level: DEBUG, INFO, WARNING, ERROR"
        )
        file: Optional[str] = Field(
            default=None,
            description="Optional log file path (in addition to stdout)"
        )
        json_format: bool = Field(
            default=False,
            description="Output logs in JSON format for machine parsing"
        )
        module_levels: Dict[str, str] = Field(
            default_factory=dict,
            description="Per-module log levels, e.g. {'supervisor': 'DEBUG'}"
        )

    cache_agents: bool = True
    instrument_java: bool = False
    save_logs: bool = True
    save_metrics: bool = True
    save_traces: bool = True
    save_profiles: bool = False
    collect_host_metrics: bool = False

    grpc_port: int = Field(default=4317, ge=1, le=65535)
    http_port: int = Field(default=4318, ge=1, le=65535)
    server_image: str = "mishmashio/opentelemetry-parquet-server"
    stop_timeout: int = Field(default=10, ge=0, description="Seconds docker waits before killing the sidecar")

    logs_artifact: str = "logs"
    metrics_artifact: str = "metrics"
    traces_artifact: str = "traces"
    profiles_artifact: str = "profiles"

    summary_queries: str = ""
    github_token: str = Field(default="", repr=False)

    java_agent_version: str = ""
    host_collector_version: str = ""
    profiler_version: str = ""

    state_file: Optional[str] = None

    artifacts: ArtifactStoreConfig = Field(default_factory=ArtifactStoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator('server_image')
    @classmethod
    def validate_server_image(cls, v: str) -> str:
        """Image reference must not be empty."""
        if not v.strip():
            raise ValueError("server-image cannot be empty")
        return v.strip()

    def save_flag(self, kind: SignalKind) -> bool:
        """Whether signals of this kind should be saved."""
        return getattr(self, f"save_{kind.value}")

    def artifact_name(self, kind: SignalKind) -> str:
        """Configured upload artifact name for this kind (may be empty)."""
        return getattr(self, f"{kind.value}_artifact")


class SidecarConfigFile(BaseModel):
    """Root structure of the optional sidecar config file."""
    sidecar: SidecarConfig = Field(default_factory=SidecarConfig)
