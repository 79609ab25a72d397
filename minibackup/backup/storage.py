"""
Storage handler for backup artifacts.

S3Storage is bound to one bucket/region/endpoint/path-style combination and
authenticates through a named profile of a shared credentials file.
"""

import os
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

import boto3
import botocore.session
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import StorageError
from ..models import StorageTarget, Tier
from ..utils.credentials import default_credentials_file, write_credentials_profile


logger = logging.getLogger(__name__)

MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB
CONTENT_TYPE = 'application/octet-stream'


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class S3Storage:
    """
    Client over one S3-compatible bucket.

    Object keys are chosen by the caller; this class never derives them.
    """

    def __init__(
        self,
        bucket_name: str,
        region: str = 'us-east-1',
        endpoint: Optional[str] = None,
        profile_name: Optional[str] = None,
        path_style: bool = False,
        credentials_file: Optional[str] = None
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: Bucket every operation targets
            region: Bucket region
            endpoint: Custom endpoint URL (None for AWS)
            profile_name: Shared-credentials profile to authenticate with
            path_style: Force path-style addressing (required by some providers)
            credentials_file: Shared credentials file holding the profile
        """
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint = endpoint or None
        self.profile_name = profile_name

        try:
            core_session = botocore.session.get_session()
            core_session.set_config_variable(
                'credentials_file', credentials_file or default_credentials_file()
            )
            session = boto3.Session(
                botocore_session=core_session,
                profile_name=profile_name,
                region_name=region
            )
            self.s3_client = session.client(
                's3',
                endpoint_url=self.endpoint,
                config=BotoConfig(s3={'addressing_style': 'path' if path_style else 'auto'})
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    @classmethod
    def for_target(
        cls,
        target: StorageTarget,
        credentials_file: Optional[str] = None,
        profile_prefix: str = ''
    ) -> 'S3Storage':
        """
        Materialize the target's credentials profile, then build a client for it.

        Raises:
            StorageError: If the profile cannot be written or the client fails
        """
        profile_name = target.profile_name(profile_prefix)
        try:
            write_credentials_profile(
                profile_name, target.access_key, target.secret_key, credentials_file
            )
        except OSError as e:
            raise StorageError(f"Failed to write credentials profile {profile_name}: {e}")

        storage = cls(
            bucket_name=target.bucket,
            region=target.region,
            endpoint=target.endpoint,
            profile_name=profile_name,
            path_style=target.path_style,
            credentials_file=credentials_file
        )
        logger.info(f"S3 storage initialized for target {target.name} (bucket: {target.bucket})")
        return storage

    def upload(self, local_path: str, s3_key: str, tier: Tier = Tier.STANDARD) -> str:
        """
        Upload a file with the storage class of ``tier``.

        Returns:
            S3 key of uploaded file

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        extra_args = {
            'ContentType': CONTENT_TYPE,
            'StorageClass': tier.storage_class
        }

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key, extra_args)
            else:
                self._simple_upload(local_path, s3_key, file_size, extra_args)

        except ClientError as e:
            raise StorageError(f"S3 upload failed ({_error_code(e)}): {e}")
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"Failed to upload {local_path} to S3: {e}")

        logger.info(f"Uploaded {local_path} to s3://{self.bucket_name}/{s3_key} ({tier.storage_class})")
        return s3_key

    def _simple_upload(self, local_path: str, s3_key: str, file_size: int, extra_args: Dict[str, str]):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f,
                ContentLength=file_size,
                **extra_args
            )

    def _multipart_upload(self, local_path: str, s3_key: str, extra_args: Dict[str, str]):
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key,
            **extra_args
        )
        upload_id = response['UploadId']
        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1
                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )
        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload of {s3_key}: {abort_error}")
            raise

    def download(self, s3_key: str, local_path: str) -> str:
        """
        Download an object, creating parent directories as needed.

        Raises:
            StorageError: If the download fails
        """
        try:
            parent = os.path.dirname(local_path)
            if parent:
                os.makedirs(parent, exist_ok=True)

            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=s3_key)
            with open(local_path, 'wb') as f:
                for chunk in response['Body'].iter_chunks(MULTIPART_CHUNK_SIZE):
                    f.write(chunk)

        except ClientError as e:
            raise StorageError(f"S3 download of {s3_key} failed ({_error_code(e)}): {e}")
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"Failed to download {s3_key}: {e}")

        logger.info(f"Downloaded s3://{self.bucket_name}/{s3_key} to {local_path}")
        return local_path

    def get_object_bytes(self, s3_key: str) -> bytes:
        """Read a whole object into memory."""
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=s3_key)
            return response['Body'].read()
        except ClientError as e:
            raise StorageError(f"S3 read of {s3_key} failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to read {s3_key}: {e}")

    def delete(self, s3_key: str):
        """
        Delete an object from S3.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=s3_key)
        except ClientError as e:
            raise StorageError(f"S3 delete failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def list_objects(self, prefix: str = '', details: bool = False) -> List[Union[str, Dict[str, Any]]]:
        """
        List objects under a prefix.

        Only the first page returned by the backend is read.

        Args:
            prefix: Key prefix to filter by
            details: Return dicts with 'Key', 'LastModified' and 'Size' instead of keys

        Raises:
            StorageError: If listing fails
        """
        params = {'Bucket': self.bucket_name}
        if prefix:
            params['Prefix'] = prefix

        try:
            response = self.s3_client.list_objects_v2(**params)
        except ClientError as e:
            raise StorageError(f"S3 list failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

        if response.get('IsTruncated'):
            logger.warning(
                f"Listing of s3://{self.bucket_name}/{prefix} is truncated; "
                f"only the first {response.get('KeyCount', 0)} objects are considered"
            )

        contents = response.get('Contents', [])
        if not details:
            return [obj['Key'] for obj in contents]

        return [
            {
                'Key': obj['Key'],
                'LastModified': obj['LastModified'],
                'Size': obj['Size']
            }
            for obj in contents
        ]

    def get_storage_class(self, s3_key: str) -> str:
        """
        Read the actual storage class of an object.

        S3 omits the header for STANDARD objects.
        """
        try:
            response = self.s3_client.head_object(Bucket=self.bucket_name, Key=s3_key)
        except ClientError as e:
            raise StorageError(f"S3 head of {s3_key} failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to read metadata of {s3_key}: {e}")
        return response.get('StorageClass') or 'STANDARD'

    def bucket_exists(self, bucket_name: Optional[str] = None) -> bool:
        """
        Check whether a bucket exists (default: the bound bucket).

        Raises:
            StorageError: On any error other than "not found"
        """
        bucket_name = bucket_name or self.bucket_name
        try:
            self.s3_client.head_bucket(Bucket=bucket_name)
            return True
        except ClientError as e:
            if _error_code(e) in ('404', 'NoSuchBucket', 'NotFound'):
                return False
            raise StorageError(f"S3 bucket check failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to check bucket {bucket_name}: {e}")

    def create_bucket(self, bucket_name: Optional[str] = None):
        """
        Create a bucket (default: the bound bucket) in this client's region.

        Raises:
            StorageError: If creation fails
        """
        bucket_name = bucket_name or self.bucket_name
        params = {'Bucket': bucket_name}
        if self.region and self.region != 'us-east-1':
            params['CreateBucketConfiguration'] = {'LocationConstraint': self.region}

        try:
            self.s3_client.create_bucket(**params)
        except ClientError as e:
            raise StorageError(f"S3 bucket creation failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to create bucket {bucket_name}: {e}")

        logger.info(f"Bucket {bucket_name} created")

    def generate_presigned_url(self, s3_key: str, expiration: Union[int, timedelta] = 3600) -> str:
        """
        Generate a presigned GET URL for an object.

        Args:
            s3_key: Object key
            expiration: Validity in seconds or as a timedelta
        """
        if isinstance(expiration, timedelta):
            expiration = int(expiration.total_seconds())

        try:
            return self.s3_client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket_name, 'Key': s3_key},
                ExpiresIn=expiration
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to generate presigned URL for {s3_key}: {e}")

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _error_code(e)
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")


def join_key(prefix: str, filename: str) -> str:
    """Join a remote prefix and a filename with exactly one '/'."""
    prefix = (prefix or '').strip('/')
    return f"{prefix}/{filename}" if prefix else filename


def prefix_for_listing(prefix: str) -> str:
    """Listing prefix for a remote prefix: ends with '/' so sibling prefixes never match."""
    prefix = (prefix or '').strip('/')
    return f"{prefix}/" if prefix else ''
