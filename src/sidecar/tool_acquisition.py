"""
Tool acquisition: turn a (tool, version) pair into a local executable path.

On a cache hit no network access happens. On a miss the release artifact is
downloaded, expanded into a scratch directory if it is an archive, and the
executable is either registered in the tool cache or installed into a
run-scoped tools directory. Scratch files are removed on every exit path.
"""
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from sidecar.archive_handler import ExtractFailed, extract_tar, extract_zip
from sidecar.models import ToolSpec
from sidecar.tool_cache import (
    DownloadFailed,
    ToolCache,
    create_temp_dir,
    download_tool,
    quietly_remove,
)
from sidecar.version_resolver import VersionResolver

logger = logging.getLogger(__name__)

OTEL_OWNER = 'open-telemetry'
COLLECTOR_RELEASES_REPO = 'opentelemetry-collector-releases'
COLLECTOR_RELEASES_URL = (
    'https://github.com/open-telemetry/opentelemetry-collector-releases/releases/download'
)


@dataclass(frozen=True)
class ToolDefinition:
    """Static description of an acquirable tool."""
    tool_id: str
    url_template: str
    payload: str  # 'file', 'zip' or 'tar'
    executable: str
    safe_default: str
    repo: Optional[str] = None
    owner: str = OTEL_OWNER
    make_executable: bool = True

    def url(self, version: str, platform: str, arch: str) -> str:
        return self.url_template.format(version=version, platform=platform, arch=arch)


JAVA_AGENT = ToolDefinition(
    tool_id='opentelemetry-java-agent',
    url_template=(
        'https://github.com/open-telemetry/opentelemetry-java-instrumentation'
        '/releases/download/v{version}/opentelemetry-javaagent.jar'
    ),
    payload='file',
    executable='opentelemetry-javaagent.jar',
    safe_default='2.24.0',
    repo='opentelemetry-java-instrumentation',
    make_executable=False,
)

HOST_COLLECTOR = ToolDefinition(
    tool_id='otelcol',
    url_template=COLLECTOR_RELEASES_URL + '/v{version}/otelcol_{version}_{platform}_{arch}.tar.gz',
    payload='tar',
    executable='otelcol',
    safe_default='0.144.0',
    repo=COLLECTOR_RELEASES_REPO,
)

PROFILER = ToolDefinition(
    tool_id='otelcol-ebpf-profiler',
    url_template=(
        COLLECTOR_RELEASES_URL
        + '/v{version}/otelcol-ebpf-profiler_{version}_{platform}_{arch}.tar.gz'
    ),
    payload='tar',
    executable='otelcol-ebpf-profiler',
    safe_default='0.144.0',
    repo=COLLECTOR_RELEASES_REPO,
)

# Pinned: the macro library is written against this engine's SQL dialect
QUERY_ENGINE = ToolDefinition(
    tool_id='duckdb_cli',
    url_template='https://install.duckdb.org/v{version}/duckdb_cli-{platform}-{arch}.zip',
    payload='zip',
    executable='duckdb',
    safe_default='1.4.4',
)


class ToolAcquirer:
    """
    Resolves and fetches tools.

    Args:
        cache: Tool cache
        install_root: Run-scoped directory for tools when caching is disabled
        scratch_root: Parent directory for download/extraction scratch space
        platform: Platform segment of download URLs (e.g. 'linux')
        arch: Architecture segment of download URLs (e.g. 'amd64')
        resolver: Version resolver
        downloader: Callable(url, dest_dir) -> Path
    """

    def __init__(
        self,
        cache: ToolCache,
        install_root: Path,
        scratch_root: Path,
        platform: str,
        arch: str,
        resolver: VersionResolver,
        downloader: Callable[[str, Path], Path] = download_tool
    ):
        self.cache = cache
        self.install_root = Path(install_root)
        self.scratch_root = Path(scratch_root)
        self.platform = platform
        self.arch = arch
        self.resolver = resolver
        self.downloader = downloader

    def resolve(self, tool: ToolDefinition, requested: str, cache_enabled: bool) -> ToolSpec:
        """Resolve the version to acquire for a tool."""
        if tool.repo:
            version = self.resolver.resolve(tool.owner, tool.repo, requested, tool.safe_default)
        else:
            version = tool.safe_default

        return ToolSpec(
            name=tool.tool_id,
            requested_version=requested,
            resolved_version=version,
            caching_enabled=cache_enabled
        )

    def setup(self, tool: ToolDefinition, requested: str, cache_enabled: bool) -> Path:
        """Resolve a version and acquire the tool."""
        spec = self.resolve(tool, requested, cache_enabled)
        return self.acquire(tool, spec.resolved_version, spec.caching_enabled)

    def acquire(self, tool: ToolDefinition, version: str, cache_enabled: bool) -> Path:
        """
        Return a local path to the tool's executable.

        Raises:
            DownloadFailed: If the fetch fails or returns no path
            ExtractFailed: If archive expansion fails
        """
        if cache_enabled:
            cached = self.cache.find(tool.tool_id, version)
            if cached:
                path = cached / tool.executable
                logger.debug(f"Using cached {tool.tool_id} {path}, version {version}")
                return path

        logger.info(f"Downloading {tool.tool_id} {version}")

        scratch = create_temp_dir(self.scratch_root, prefix=f"{tool.tool_id}-")
        try:
            download_path = self.downloader(
                tool.url(version, self.platform, self.arch),
                scratch / 'download'
            )
            if not download_path:
                raise DownloadFailed(f"Failed to download {tool.tool_id} {version}")

            source = self._locate_executable(tool, Path(download_path), scratch)

            if cache_enabled:
                tool_dir = self.cache.cache_file(source, tool.executable, tool.tool_id, version)
            else:
                tool_dir = self._install(source, tool, version)

            path = tool_dir / tool.executable
            if tool.make_executable:
                os.chmod(path, 0o755)

            logger.info(f"Acquired {tool.tool_id} {version} at {path}")
            return path
        finally:
            quietly_remove(scratch)

    def _locate_executable(self, tool: ToolDefinition, download_path: Path, scratch: Path) -> Path:
        if tool.payload == 'file':
            return download_path

        extract_dir = scratch / 'extract'
        if tool.payload == 'zip':
            extract_zip(str(download_path), str(extract_dir))
        elif tool.payload == 'tar':
            extract_tar(str(download_path), str(extract_dir))
        else:
            raise ExtractFailed(f"Unsupported payload type for {tool.tool_id}: {tool.payload}")

        source = extract_dir / tool.executable
        if not source.is_file():
            raise ExtractFailed(
                f"Archive for {tool.tool_id} does not contain {tool.executable}"
            )
        return source

    def _install(self, source: Path, tool: ToolDefinition, version: str) -> Path:
        tool_dir = self.install_root / tool.tool_id / version
        tool_dir.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, tool_dir / tool.executable)
        return tool_dir
