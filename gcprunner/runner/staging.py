"""
Cloud Storage staging for remote task runs.

Input files are uploaded under the run's staging prefix before the job is
submitted, output files are downloaded back once it succeeded, and the whole
prefix is deleted when the run ends.
"""

from contextlib import contextmanager
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, Iterator, List, Optional

from google.api_core import exceptions as api_exceptions
from google.cloud import storage

from gcprunner.core.errors import StagingError
from gcprunner.core.logger import setup_logger

logger = setup_logger(__name__, include_location=True)

_TRANSFER_ERRORS = (api_exceptions.GoogleAPICallError, OSError)


def blob_key(prefix: str, relative_path: str) -> str:
    """Join a bucket-relative prefix and a relative file path into an object name."""
    relative = PurePosixPath(Path(relative_path).as_posix().lstrip("/"))
    prefix = prefix.strip("/")
    return f"{prefix}/{relative}" if prefix else str(relative)


def dir_key(prefix: str) -> str:
    """Object name of the directory marker for a prefix (always ends with '/')."""
    return prefix.strip("/") + "/"


class StagingGateway:
    """
    Uploads, downloads and deletes the objects of one run.

    Each operation opens its own storage client from client_factory and closes
    it afterwards, unless a client was given at construction time, in which
    case that client is reused and left open. Listings are never cached.
    """

    def __init__(self, client_factory: Optional[Callable[[], storage.Client]] = None,
                 client: Optional[storage.Client] = None):
        if client_factory is None and client is None:
            raise ValueError("StagingGateway requires a client or a client factory")
        self._client_factory = client_factory
        self._client = client

    @contextmanager
    def _session(self) -> Iterator[storage.Client]:
        if self._client is not None:
            yield self._client
            return
        client = self._client_factory()
        try:
            yield client
        finally:
            close = getattr(client, "close", None)
            if close is not None:
                close()

    def upload_inputs(
        self,
        files: Iterable[str],
        bucket: str,
        working_prefix: str,
        local_root: Path,
        output_prefix: Optional[str] = None,
        create_output_marker: bool = False,
    ) -> List[str]:
        """
        Upload local files (relative to local_root) to bucket/working_prefix/<path>.

        Returns the uploaded object names. The first failed transfer raises
        StagingError; objects already uploaded are left in place.
        """
        uploaded = []
        with self._session() as client:
            bucket_obj = client.bucket(bucket)

            if create_output_marker and output_prefix is not None:
                marker = dir_key(output_prefix)
                try:
                    bucket_obj.blob(marker).upload_from_string(b"")
                except _TRANSFER_ERRORS as e:
                    raise StagingError(f"Failed to create output directory marker: {e}", bucket, marker) from e
                logger.debug(f"Created output directory marker gs://{bucket}/{marker}")

            for relative_path in files:
                key = blob_key(working_prefix, relative_path)
                local_path = Path(local_root) / relative_path
                try:
                    bucket_obj.blob(key).upload_from_filename(str(local_path))
                except _TRANSFER_ERRORS as e:
                    raise StagingError(f"Failed to upload '{local_path}': {e}", bucket, key) from e
                logger.debug(f"Uploaded {local_path} -> gs://{bucket}/{key}")
                uploaded.append(key)

        logger.info(f"Uploaded {len(uploaded)} input file(s) to gs://{bucket}/{working_prefix.strip('/')}")
        return uploaded

    def create_marker(self, bucket: str, prefix: str) -> str:
        """Create the zero-byte directory marker object for prefix."""
        key = dir_key(prefix)
        with self._session() as client:
            try:
                client.bucket(bucket).blob(key).upload_from_string(b"")
            except _TRANSFER_ERRORS as e:
                raise StagingError(f"Failed to create directory marker: {e}", bucket, key) from e
        return key

    def download_outputs(
        self,
        files: Iterable[str],
        bucket: str,
        working_prefix: str,
        local_root: Path,
        output_prefix: Optional[str] = None,
        output_dir_enabled: bool = False,
        local_output_root: Optional[Path] = None,
    ) -> List[Path]:
        """
        Download named output files into local_root and, when the output
        directory is enabled, every object under output_prefix into
        local_output_root.

        Returns the local paths written. The first failed transfer raises
        StagingError; files already downloaded are kept.
        """
        downloaded = []
        with self._session() as client:
            bucket_obj = client.bucket(bucket)

            for relative_path in files:
                key = blob_key(working_prefix, relative_path)
                target = Path(local_root) / relative_path
                self._download(bucket_obj, bucket, key, target)
                downloaded.append(target)

            if output_dir_enabled and output_prefix is not None:
                if local_output_root is None:
                    raise StagingError("No local output directory to download into", bucket, dir_key(output_prefix))
                prefix = dir_key(output_prefix)
                try:
                    blobs = list(client.list_blobs(bucket, prefix=prefix))
                except _TRANSFER_ERRORS as e:
                    raise StagingError(f"Failed to list output directory: {e}", bucket, prefix) from e

                for blob in blobs:
                    if blob.name.endswith("/"):
                        continue
                    target = Path(local_output_root) / blob.name[len(prefix):]
                    self._download(bucket_obj, bucket, blob.name, target)
                    downloaded.append(target)

        logger.info(f"Downloaded {len(downloaded)} output file(s) from gs://{bucket}/{working_prefix.strip('/')}")
        return downloaded

    @staticmethod
    def _download(bucket_obj, bucket: str, key: str, target: Path) -> None:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            bucket_obj.blob(key).download_to_filename(str(target))
        except _TRANSFER_ERRORS as e:
            raise StagingError(f"Failed to download to '{target}': {e}", bucket, key) from e
        logger.debug(f"Downloaded gs://{bucket}/{key} -> {target}")

    def delete_prefix(self, bucket: str, working_prefix: str) -> int:
        """
        Delete every object under working_prefix, then its directory marker.

        Missing objects are ignored, so deleting an already-deleted prefix is a
        no-op. Returns the number of objects actually deleted.
        """
        prefix = dir_key(working_prefix)
        deleted = 0
        with self._session() as client:
            bucket_obj = client.bucket(bucket)
            try:
                names = [blob.name for blob in client.list_blobs(bucket, prefix=prefix)]
            except _TRANSFER_ERRORS as e:
                raise StagingError(f"Failed to list staging prefix: {e}", bucket, prefix) from e

            for name in names:
                if self._delete(bucket_obj, bucket, name):
                    deleted += 1
            if prefix not in names and self._delete(bucket_obj, bucket, prefix):
                deleted += 1

        logger.info(f"Deleted {deleted} object(s) under gs://{bucket}/{prefix}")
        return deleted

    @staticmethod
    def _delete(bucket_obj, bucket: str, key: str) -> bool:
        try:
            bucket_obj.delete_blob(key)
        except api_exceptions.NotFound:
            return False
        except api_exceptions.GoogleAPICallError as e:
            raise StagingError(f"Failed to delete object: {e}", bucket, key) from e
        return True
