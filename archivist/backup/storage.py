"""
Storage handlers (destinations) for finished archives.

Supports:
- DirectoryDestination: Store in a local directory
- S3Destination: Upload to S3 or an S3 compatible service
- SSHDestination: Upload over SFTP

Each handler implements deliver(local_path, name) and returns the location
of the stored file. deliver() only returns once the file is complete at its
final name; otherwise it raises DeliveryError.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Optional

import boto3
import paramiko
from botocore.exceptions import ClientError, BotoCoreError
from paramiko import SSHClient, AutoAddPolicy

from archivist.models import Destination


logger = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 1024 * 1024


class DeliveryError(Exception):
    """Raised when storing an archive at a destination fails."""

    def __init__(self, destination_id: str, message: str):
        self.destination_id = destination_id
        super().__init__(f"[{destination_id}] {message}")


class DirectoryDestination:
    """
    Handler for storing archives in a local directory.

    The file is written to a hidden temp name in the target directory and
    renamed once complete, so readers never see a partial archive.
    """

    kind = 'directory'

    def __init__(self, destination: Destination, **options):
        self.destination = destination
        self.base_path = Path(destination.path).expanduser()

    def deliver(self, local_path: str, name: str, cancellation_check: Optional[Callable] = None) -> str:
        """
        Copy an archive into the directory.

        Returns:
            Full path of the stored file

        Raises:
            DeliveryError: If storage fails
        """
        destination_id = self.destination.id
        if not os.path.isfile(local_path):
            raise DeliveryError(destination_id, f"Source file not found: {local_path}")

        dest_path = self.base_path / name
        temp_path = None

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)

            fd, temp_path = tempfile.mkstemp(dir=str(self.base_path), prefix=f".{name}.", suffix='.part')
            with os.fdopen(fd, 'wb') as target, open(local_path, 'rb') as source:
                while True:
                    if cancellation_check:
                        cancellation_check()
                    chunk = source.read(COPY_CHUNK_SIZE)
                    if not chunk:
                        break
                    target.write(chunk)
                target.flush()
                os.fsync(target.fileno())

            shutil.copymode(local_path, temp_path)
            os.replace(temp_path, dest_path)
            temp_path = None

            return str(dest_path)

        except PermissionError as e:
            raise DeliveryError(destination_id, f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise DeliveryError(destination_id, f"Failed to store locally: {e}")
        finally:
            if temp_path and os.path.exists(temp_path):
                os.remove(temp_path)


class S3Destination:
    """
    Handler for uploading archives to S3.

    The object key is the destination prefix followed by the archive name.
    """

    kind = 's3'

    def __init__(self, destination: Destination, multipart_threshold: int = 100 * 1024 * 1024,
                 chunk_size: int = 10 * 1024 * 1024, **options):
        """
        Args:
            destination: S3 destination (bucket, region, optional keys)
            multipart_threshold: Files larger than this use multipart upload
            chunk_size: Multipart part size
        """
        self.destination = destination
        self.bucket_name = destination.bucket
        self.region = destination.region
        self.multipart_threshold = multipart_threshold
        self.chunk_size = chunk_size

        client_kwargs = {'region_name': destination.region}
        # Fall back to boto3's credential chain when no keys are configured
        if destination.access_key and destination.secret_key:
            client_kwargs['aws_access_key_id'] = destination.access_key
            client_kwargs['aws_secret_access_key'] = destination.secret_key
        if destination.endpoint_url:
            client_kwargs['endpoint_url'] = destination.endpoint_url

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise DeliveryError(destination.id, f"Failed to initialize S3 client: {e}")

    def object_key(self, name: str) -> str:
        prefix = self.destination.prefix
        if prefix and not prefix.endswith('/'):
            prefix = f"{prefix}/"
        return f"{prefix}{name}"

    def deliver(self, local_path: str, name: str, cancellation_check: Optional[Callable] = None) -> str:
        """
        Upload archive to S3 and confirm the stored object.

        Args:
            local_path: Path to local archive file
            name: Archive file name
            cancellation_check: Optional function called between parts

        Returns:
            s3://bucket/key location of the uploaded object

        Raises:
            DeliveryError: If upload or confirmation fails
        """
        destination_id = self.destination.id
        if not os.path.exists(local_path):
            raise DeliveryError(destination_id, f"Local file not found: {local_path}")

        s3_key = self.object_key(name)

        try:
            file_size = os.path.getsize(local_path)

            if file_size > self.multipart_threshold:
                self._multipart_upload(local_path, s3_key, cancellation_check)
            else:
                if cancellation_check:
                    cancellation_check()
                self._simple_upload(local_path, s3_key)

            self._confirm_upload(s3_key, file_size)
            return f"s3://{self.bucket_name}/{s3_key}"

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise DeliveryError(destination_id, f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise DeliveryError(destination_id, f"S3 upload failed: {e}")
        except OSError as e:
            raise DeliveryError(destination_id, f"Failed to read {local_path}: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f,
                ServerSideEncryption='AES256'
            )

    def _multipart_upload(self, local_path: str, s3_key: str, cancellation_check: Optional[Callable] = None):
        """
        Upload large file using multipart upload with cancellation support.

        The upload is aborted if anything fails, including cancellation.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key,
            ServerSideEncryption='AES256'
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    if cancellation_check:
                        cancellation_check()

                    data = f.read(self.chunk_size)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except BaseException:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def _confirm_upload(self, s3_key: str, expected_size: int):
        head = self.s3_client.head_object(Bucket=self.bucket_name, Key=s3_key)
        stored_size = head.get('ContentLength')
        if stored_size != expected_size:
            raise DeliveryError(
                self.destination.id,
                f"Stored object {s3_key} has {stored_size} bytes, expected {expected_size}"
            )


class SSHDestination:
    """
    Handler for uploading archives to a remote directory over SFTP.

    The file is uploaded under a temp name and renamed once its size has
    been confirmed.
    """

    kind = 'ssh'

    def __init__(self, destination: Destination, **options):
        self.destination = destination
        self.remote_dir = destination.path.rstrip('/') or '.'

    def _connect(self) -> SSHClient:
        destination = self.destination
        connect_kwargs = {
            'hostname': destination.server,
            'port': destination.port,
            'username': destination.username,
            'timeout': 30
        }

        if destination.password:
            connect_kwargs['password'] = destination.password
        elif destination.private_key:
            key_path = Path(destination.private_key).expanduser()
            if not key_path.exists():
                raise DeliveryError(destination.id, f"Private key not found: {destination.private_key}")
            connect_kwargs['key_filename'] = str(key_path)

        client = SSHClient()
        client.set_missing_host_key_policy(AutoAddPolicy())
        try:
            client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as e:
            client.close()
            raise DeliveryError(destination.id, f"SSH authentication failed: {e}")
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise DeliveryError(destination.id, f"Failed to connect to {destination.server}: {e}")
        return client

    def deliver(self, local_path: str, name: str, cancellation_check: Optional[Callable] = None) -> str:
        """
        Upload an archive over SFTP.

        Returns:
            server:path location of the stored file

        Raises:
            DeliveryError: If connection or upload fails
        """
        destination_id = self.destination.id
        if not os.path.isfile(local_path):
            raise DeliveryError(destination_id, f"Source file not found: {local_path}")

        remote_path = f"{self.remote_dir}/{name}"
        temp_path = f"{self.remote_dir}/.{name}.part"

        if cancellation_check:
            cancellation_check()

        client = self._connect()
        try:
            sftp = client.open_sftp()
            try:
                # put() with confirm=True checks the remote size
                sftp.put(local_path, temp_path, confirm=True)
                sftp.posix_rename(temp_path, remote_path)
            except (IOError, paramiko.SSHException) as e:
                try:
                    sftp.remove(temp_path)
                except (IOError, paramiko.SSHException) as remove_error:
                    logger.warning(f"Failed to remove partial upload {temp_path}: {remove_error}")
                raise DeliveryError(destination_id, f"SFTP upload to {remote_path} failed: {e}")
            finally:
                sftp.close()
        except paramiko.SSHException as e:
            raise DeliveryError(destination_id, f"Failed to open SFTP session: {e}")
        finally:
            client.close()

        return f"{self.destination.server}:{remote_path}"


DESTINATION_KINDS = {
    'directory': DirectoryDestination,
    's3': S3Destination,
    'ssh': SSHDestination,
}


def register_destination_kind(kind: str, handler_class):
    """Register a destination handler class for a kind string."""
    DESTINATION_KINDS[kind] = handler_class


def create_destination(destination: Destination, **options):
    """
    Factory function to create the handler for a destination.

    Args:
        destination: Destination from the configuration
        **options: Handler tuning (e.g. multipart_threshold for s3)

    Raises:
        DeliveryError: If the kind has no registered handler
    """
    handler_class = DESTINATION_KINDS.get(destination.kind)
    if handler_class is None:
        raise DeliveryError(destination.id, f"Invalid destination kind: {destination.kind}")
    return handler_class(destination, **options)
