"""
Artifact stores for uploaded signal archives.

- MinioArtifactStore: MinIO / S3 bucket, pre-signed download links
- LocalArtifactStore: directory on the runner, file:// links
"""
import logging
import shutil
from datetime import timedelta
from pathlib import Path
from typing import Optional

from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import MaxRetryError

from sidecar.models import SidecarConfig, UploadedArtifact

logger = logging.getLogger(__name__)


class UploadFailed(Exception):
    """Error while storing an artifact."""
    pass


class MinioArtifactStore:
    """
    Stores artifacts as objects under ``<prefix>/<name>.tar.gz``.

    Args:
        config: Artifact store configuration
        prefix: Object name prefix (typically the CI run id)
    """

    def __init__(self, config: SidecarConfig.ArtifactStoreConfig, prefix: str = ""):
        self.config = config
        self.bucket = config.bucket
        self.prefix = (config.prefix or prefix).strip('/')
        self.client: Optional[Minio] = None
        self._connect()

    def _connect(self) -> None:
        """Create the MinIO client."""
        try:
            self.client = Minio(
                self.config.endpoint,
                access_key=self.config.access_key or None,
                secret_key=self.config.secret_key or None,
                secure=self.config.secure
            )
            logger.debug(f"Using artifact store endpoint: {self.config.endpoint}")

        except Exception as e:
            raise UploadFailed(f"Failed to connect to artifact store: {e}")

    def ensure_bucket(self) -> None:
        """
        Ensure bucket exists, create if needed.

        Raises:
            UploadFailed: If bucket creation fails
        """
        try:
            if not self.client.bucket_exists(bucket_name=self.bucket):
                self.client.make_bucket(bucket_name=self.bucket)
                logger.info(f"Created bucket: {self.bucket}")
            else:
                logger.debug(f"Bucket exists: {self.bucket}")

        except (S3Error, MaxRetryError) as e:
            raise UploadFailed(f"Failed to ensure bucket '{self.bucket}': {e}")

    def object_name(self, name: str) -> str:
        base = f"{name}.tar.gz"
        return f"{self.prefix}/{base}" if self.prefix else base

    def upload(self, name: str, archive_path: str) -> UploadedArtifact:
        """
        Upload an archive and return a download link for it.

        Raises:
            UploadFailed: If upload or link generation fails
        """
        local_file = Path(archive_path)
        if not local_file.exists():
            raise UploadFailed(f"Local file does not exist: {archive_path}")

        object_name = self.object_name(name)
        file_size = local_file.stat().st_size

        try:
            self.ensure_bucket()

            logger.debug(
                f"Uploading {archive_path} -> s3://{self.bucket}/{object_name} "
                f"({file_size} bytes)"
            )

            result = self.client.fput_object(
                bucket_name=self.bucket,
                object_name=object_name,
                file_path=str(local_file),
                content_type="application/gzip"
            )

            url = self.client.presigned_get_object(
                bucket_name=self.bucket,
                object_name=object_name,
                expires=timedelta(seconds=self.config.url_expiry_seconds)
            )

        except (S3Error, MaxRetryError) as e:
            raise UploadFailed(f"Failed to upload {name} artifact: {e}")

        logger.info(f"Uploaded: s3://{self.bucket}/{object_name}")

        return UploadedArtifact(
            name=name,
            artifact_id=getattr(result, 'version_id', None) or object_name,
            size_bytes=file_size,
            url=url
        )


class LocalArtifactStore:
    """
    Keeps artifacts in a directory on the runner.

    Args:
        directory: Destination directory
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def upload(self, name: str, archive_path: str) -> UploadedArtifact:
        """
        Copy an archive into the artifacts directory.

        Raises:
            UploadFailed: If the copy fails
        """
        dest = self.directory / f"{name}.tar.gz"
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(archive_path, dest)
        except OSError as e:
            raise UploadFailed(f"Failed to store {name} artifact in {self.directory}: {e}")

        size = dest.stat().st_size
        logger.info(f"Stored artifact {name} at {dest} ({size} bytes)")

        return UploadedArtifact(
            name=name,
            artifact_id=dest.name,
            size_bytes=size,
            url=dest.resolve().as_uri()
        )


def create_artifact_store(config: SidecarConfig.ArtifactStoreConfig, default_dir: Path, run_id: str = ""):
    """Pick the store matching the configuration."""
    if config.endpoint:
        return MinioArtifactStore(config, prefix=run_id)
    return LocalArtifactStore(Path(config.local_dir) if config.local_dir else default_dir)
