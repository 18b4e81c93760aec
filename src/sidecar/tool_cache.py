"""
Download-and-cache helper for release artifacts.

The cache uses the runner tool cache layout:

    <root>/<tool>/<version>/<arch>/...
    <root>/<tool>/<version>/<arch>.complete

A version directory without its ``.complete`` marker is a miss.
"""
import logging
import os
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class DownloadFailed(Exception):
    """Release artifact could not be fetched."""
    pass


class ToolCache:
    """
    Content-addressed store of downloaded tools keyed by (tool, version).

    Args:
        root: Tool cache root directory
        arch: Architecture segment of the cache key
    """

    def __init__(self, root: Path, arch: str):
        self.root = Path(root)
        self.arch = arch

    def _tool_dir(self, tool: str, version: str) -> Path:
        return self.root / tool / version / self.arch

    def find(self, tool: str, version: str) -> Optional[Path]:
        """
        Look up a cached tool.

        Returns:
            Cache directory on hit, None on miss
        """
        if not tool or not version:
            return None

        tool_dir = self._tool_dir(tool, version)
        marker = tool_dir.parent / f"{self.arch}.complete"
        if tool_dir.is_dir() and marker.exists():
            logger.debug(f"Found tool in cache {tool} {version} {self.arch}")
            return tool_dir

        logger.debug(f"Tool not found in cache: {tool} {version} {self.arch}")
        return None

    def cache_file(self, source: Path, target_name: str, tool: str, version: str) -> Path:
        """
        Register a single file into the cache.

        Args:
            source: File to copy into the cache
            target_name: File name inside the cache directory
            tool: Tool id
            version: Tool version

        Returns:
            Cache directory holding the file
        """
        tool_dir = self._tool_dir(tool, version)
        marker = tool_dir.parent / f"{self.arch}.complete"

        if marker.exists():
            marker.unlink()
        if tool_dir.exists():
            shutil.rmtree(tool_dir)
        tool_dir.mkdir(parents=True)

        logger.debug(f"Caching tool {tool} {version} {self.arch}")
        shutil.copy2(source, tool_dir / target_name)
        marker.write_text('')

        return tool_dir


def download_tool(url: str, dest_dir: Path, client: Optional[httpx.Client] = None) -> Path:
    """
    Download a URL into a new file under dest_dir.

    Args:
        url: Release artifact URL
        dest_dir: Directory for the downloaded file
        client: Optional httpx client (used by tests)

    Returns:
        Path of the downloaded file

    Raises:
        DownloadFailed: On HTTP or transport errors
    """
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / uuid.uuid4().hex

    own_client = client is None
    http = client or httpx.Client(timeout=httpx.Timeout(30.0, read=300.0))

    logger.debug(f"Downloading {url} to {dest}")
    try:
        with http.stream('GET', url, follow_redirects=True) as response:
            response.raise_for_status()
            with open(dest, 'wb') as f:
                for chunk in response.iter_bytes():
                    f.write(chunk)
    except (httpx.HTTPError, OSError) as e:
        if dest.exists():
            dest.unlink()
        raise DownloadFailed(f"Failed to download {url}: {e}")
    finally:
        if own_client:
            http.close()

    logger.debug(f"Downloaded {url} ({dest.stat().st_size} bytes)")
    return dest


def create_temp_dir(parent: Path, prefix: str = 'sidecar-') -> Path:
    """Create a fresh private scratch directory."""
    parent = Path(parent)
    parent.mkdir(parents=True, exist_ok=True)
    return Path(tempfile.mkdtemp(prefix=prefix, dir=parent))


def quietly_remove(path) -> None:
    """Remove a file or directory tree, logging (not raising) failures."""
    if not path:
        return
    target = Path(path)
    try:
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        elif target.exists() or target.is_symlink():
            os.unlink(target)
    except OSError as e:
        logger.debug(f"Got exception while removing {path}, message is: {e}")
