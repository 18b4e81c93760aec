"""
Archive handling for the telemetry sidecar.

- Downloaded tools arrive as tar.gz or zip archives and are extracted into
  scratch directories
- Signal buckets are packed into tar.gz archives before upload
- Archives contain directory contents, not the directory itself
- SYMLINKS ARE BLOCKED for security

Security: strict member validation on extraction:
- Blocks symlinks to prevent directory escape attacks
- Validates paths to prevent traversal attacks (CVE-2007-4559)
- Extracts members individually
"""
import logging
import stat
import tarfile
import zipfile
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)


class ArchiveError(Exception):
    """Error during archive operations."""
    pass


class ExtractFailed(ArchiveError):
    """Archive could not be expanded."""
    pass


def _check_member_path(name: str, dest_dir: Path) -> None:
    # SECURITY: Block absolute paths
    if name.startswith('/') or name.startswith('\\'):
        raise ExtractFailed(
            f"Archive contains absolute path: {name} "
            f"(only relative paths allowed)"
        )

    # SECURITY: Check for path traversal
    member_path = (dest_dir / name).resolve()
    try:
        member_path.relative_to(dest_dir)
    except ValueError:
        raise ExtractFailed(
            f"Archive contains unsafe path: {name} "
            f"(attempts to escape destination directory)"
        )


def safe_extract_member(
    tar: tarfile.TarFile,
    member: tarfile.TarInfo,
    dest_dir: Path
) -> None:
    """
    Securely extract a single tar member with validation.

    Args:
        tar: Open TarFile object
        member: Member to extract
        dest_dir: Destination directory (must be resolved)

    Raises:
        ExtractFailed: If member is unsafe (symlink, path traversal, etc.)
    """
    # SECURITY: Block symlinks to prevent directory escape attacks
    if member.issym() or member.islnk():
        raise ExtractFailed(
            f"Archive contains symlink: {member.name} "
            f"(symlinks are not allowed for security)"
        )

    _check_member_path(member.name, dest_dir)

    # Extract without ownership/permissions; callers chmod what they run
    tar.extract(member, dest_dir, set_attrs=False)


def safe_extract_zip_member(
    archive: zipfile.ZipFile,
    member: zipfile.ZipInfo,
    dest_dir: Path
) -> None:
    """
    Securely extract a single zip member with validation.

    Raises:
        ExtractFailed: If member is unsafe
    """
    mode = member.external_attr >> 16
    if stat.S_ISLNK(mode):
        raise ExtractFailed(
            f"Archive contains symlink: {member.filename} "
            f"(symlinks are not allowed for security)"
        )

    _check_member_path(member.filename, dest_dir)

    archive.extract(member, dest_dir)


def extract_tar(archive_path: str, dest_path: str) -> Path:
    """
    Extract a tar.gz archive into a directory.

    Args:
        archive_path: Path to tar.gz archive file
        dest_path: Destination directory

    Returns:
        Resolved destination directory

    Raises:
        ExtractFailed: If extraction fails or archive contains unsafe paths
    """
    if not Path(archive_path).exists():
        raise ExtractFailed(f"Archive does not exist: {archive_path}")

    dest_dir = Path(dest_path).resolve()
    dest_dir.mkdir(parents=True, exist_ok=True)

    logger.debug(f"Extracting tar.gz archive to directory: {dest_path}")

    try:
        with tarfile.open(archive_path, 'r:*') as tar:
            for member in tar.getmembers():
                safe_extract_member(tar, member, dest_dir)

        logger.debug(f"Extracted archive: {archive_path} -> {dest_path}")
        return dest_dir

    except ExtractFailed:
        raise
    except tarfile.TarError as e:
        raise ExtractFailed(f"Failed to extract tar archive: {e}")
    except Exception as e:
        raise ExtractFailed(f"Failed to extract archive: {e}")


def extract_zip(archive_path: str, dest_path: str) -> Path:
    """
    Extract a zip archive into a directory.

    Args:
        archive_path: Path to zip archive file
        dest_path: Destination directory

    Returns:
        Resolved destination directory

    Raises:
        ExtractFailed: If extraction fails or archive contains unsafe paths
    """
    if not Path(archive_path).exists():
        raise ExtractFailed(f"Archive does not exist: {archive_path}")

    dest_dir = Path(dest_path).resolve()
    dest_dir.mkdir(parents=True, exist_ok=True)

    logger.debug(f"Extracting zip archive to directory: {dest_path}")

    try:
        with zipfile.ZipFile(archive_path) as archive:
            for member in archive.infolist():
                safe_extract_zip_member(archive, member, dest_dir)

        logger.debug(f"Extracted archive: {archive_path} -> {dest_path}")
        return dest_dir

    except ExtractFailed:
        raise
    except zipfile.BadZipFile as e:
        raise ExtractFailed(f"Failed to extract zip archive: {e}")
    except Exception as e:
        raise ExtractFailed(f"Failed to extract archive: {e}")


def create_archive(files: Iterable[str], archive_path: str) -> int:
    """
    Create a tar.gz archive holding the given files (flat, by file name).

    Args:
        files: Paths of the files to archive
        archive_path: Destination path for archive (should end in .tar.gz)

    Returns:
        Size of the archive in bytes

    Raises:
        ArchiveError: If archive creation fails
    """
    archive_dir = Path(archive_path).parent
    archive_dir.mkdir(parents=True, exist_ok=True)

    logger.debug(f"Creating tar.gz archive: {archive_path}")

    try:
        with tarfile.open(archive_path, 'w:gz') as tar:
            for file_path in files:
                source = Path(file_path)
                if not source.is_file():
                    raise ArchiveError(f"Source file does not exist: {file_path}")
                tar.add(source, arcname=source.name)

        size = Path(archive_path).stat().st_size
        logger.info(f"Created archive: {archive_path} ({size} bytes)")
        return size

    except ArchiveError:
        raise
    except tarfile.TarError as e:
        raise ArchiveError(f"Failed to create tar archive: {e}")
    except Exception as e:
        raise ArchiveError(f"Failed to create archive: {e}")
