"""
Signal file classification and upload.

The sidecar writes one parquet file per flushed batch, named
``<kind>-<digits>-<digits>.parquet`` (profiles may carry a label before the
counters). Zero-byte files are not evidence that a signal was emitted and
are ignored.
"""
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Protocol

from sidecar.archive_handler import ArchiveError, create_archive
from sidecar.artifact_store import UploadFailed
from sidecar.models import (
    ReportRow,
    SidecarConfig,
    SignalFile,
    SignalKind,
    UploadedArtifact,
)
from sidecar.tool_cache import quietly_remove

logger = logging.getLogger(__name__)


class ArtifactStore(Protocol):
    def upload(self, name: str, archive_path: str) -> UploadedArtifact: ...


def scan_signal_files(directory: str) -> List[SignalFile]:
    """
    List regular files in the signals directory.

    Args:
        directory: Shared output directory of the sidecar

    Returns:
        SignalFile per regular file (sorted by name)
    """
    files = []
    with os.scandir(directory) as entries:
        for entry in entries:
            if entry.is_file(follow_symlinks=False):
                files.append(SignalFile(
                    name=entry.name,
                    parent=str(directory),
                    size_bytes=entry.stat(follow_symlinks=False).st_size
                ))

    files.sort(key=lambda f: f.name)
    logger.debug(f"Found {len(files)} files in {directory}")
    return files


def select_files(files: List[SignalFile], kind: SignalKind) -> List[SignalFile]:
    """Non-empty files matching a signal kind's naming convention."""
    return [f for f in files if f.size_bytes > 0 and kind.pattern.match(f.name)]


def classify(files: List[SignalFile]) -> Dict[SignalKind, List[SignalFile]]:
    """
    Bucket files by signal kind.

    Returns:
        Mapping with an entry (possibly empty) for every signal kind
    """
    buckets = {kind: select_files(files, kind) for kind in SignalKind}

    for kind, selected in buckets.items():
        logger.debug(f"Classified {len(selected)} {kind.value} files")

    return buckets


def should_upload(kind: SignalKind, files: List[SignalFile], config: SidecarConfig) -> bool:
    """Upload iff saving is enabled, an artifact name is set and files exist."""
    return bool(files) and config.save_flag(kind) and bool(config.artifact_name(kind))


def upload_bucket(
    name: str,
    files: List[SignalFile],
    store: ArtifactStore,
    scratch_root: Path
) -> UploadedArtifact:
    """
    Pack a bucket into a tar.gz archive and hand it to the store.

    Raises:
        UploadFailed: Archive creation or upload failed
    """
    scratch = Path(tempfile.mkdtemp(prefix='artifact-', dir=scratch_root))
    try:
        archive_path = scratch / f"{name}.tar.gz"
        try:
            create_archive([f.path for f in files], str(archive_path))
        except ArchiveError as e:
            raise UploadFailed(f"Failed to archive {name}: {e}")

        return store.upload(name, str(archive_path))
    finally:
        quietly_remove(scratch)


def publish(
    buckets: Dict[SignalKind, List[SignalFile]],
    config: SidecarConfig,
    store: ArtifactStore,
    scratch_root: Path
) -> List[ReportRow]:
    """
    Upload qualifying buckets and build one report row per signal kind.

    Upload failures propagate: a partial artifact set is treated as a
    teardown failure.

    Returns:
        Rows in Logs, Metrics, Traces, Profiles order
    """
    rows = []

    for kind in SignalKind:
        files = buckets.get(kind, [])

        if should_upload(kind, files, config):
            artifact = upload_bucket(config.artifact_name(kind), files, store, scratch_root)
            logger.debug(
                f"Uploaded {kind.value} artifact {artifact.artifact_id} "
                f"with size {artifact.size_bytes}"
            )
            rows.append(ReportRow(signal=kind, artifact=artifact))
        else:
            logger.debug(
                f"Not uploading telemetry {kind.value} artifact: "
                f"{kind.value} not saved or upload disabled"
            )
            rows.append(ReportRow(signal=kind))

    return rows
