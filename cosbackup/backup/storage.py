"""
Object storage client for backup archives.

S3Storage talks to any S3-compatible service (AWS S3, Tencent COS, MinIO)
through boto3 and exposes the three operations the pipeline needs:
put_object, list_objects_page and delete_object.
"""

from typing import BinaryIO, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError

from cosbackup.models import RemoteObject, StorageConfig


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


def _client_config() -> BotoConfig:
    return BotoConfig(
        connect_timeout=10,
        read_timeout=60,
        tcp_keepalive=True,
        max_pool_connections=10,
        # One HTTP request per call; Uploader owns the retry budget
        retries={'total_max_attempts': 1, 'mode': 'standard'},
        # S3-compatible services reject the newer default checksum trailers
        request_checksum_calculation='when_required',
        response_checksum_validation='when_required'
    )


class S3Storage:
    """
    Handler for S3-compatible object storage.

    Archives are stored as single objects under the configured prefix:
    {prefix}backup-YYYYMMDD-HHMMSS.{ext}
    """

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        bucket_name: str,
        region: str = 'us-east-1',
        endpoint_url: Optional[str] = None
    ):
        """
        Initialize storage handler.

        Args:
            access_key: Access key ID
            secret_key: Secret access key
            bucket_name: Bucket name
            region: Region (default: us-east-1)
            endpoint_url: Service endpoint for non-AWS providers, e.g.
                https://cos.ap-shanghai.myqcloud.com
        """
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = endpoint_url

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url,
                config=_client_config()
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    @classmethod
    def from_config(cls, storage: StorageConfig) -> 'S3Storage':
        return cls(
            access_key=storage.access_key,
            secret_key=storage.secret_key,
            bucket_name=storage.bucket,
            region=storage.region,
            endpoint_url=storage.endpoint_url
        )

    def put_object(self, key: str, stream: BinaryIO, size: int):
        """
        Upload a stream as a single object.

        Args:
            key: Object key
            stream: Readable binary stream positioned at the start
            size: Exact number of bytes the stream yields

        Raises:
            StorageError: If the upload fails
        """
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=stream,
                ContentLength=size
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except Exception as e:
            raise StorageError(f"Failed to upload to S3: {e}")

    def delete_object(self, key: str):
        """
        Delete an object.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=key
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except Exception as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def list_objects_page(
        self,
        prefix: str,
        marker: Optional[str] = None,
        page_size: int = 1000
    ) -> Tuple[List[RemoteObject], Optional[str], bool]:
        """
        List one page of objects under a prefix.

        Uses marker-based pagination (ListObjects v1), which every
        S3-compatible service implements.

        Args:
            prefix: Key prefix to filter by
            marker: Key to start after (None for the first page)
            page_size: Maximum number of keys to return

        Returns:
            Tuple of (entries, next_marker, has_more)

        Raises:
            StorageError: If listing fails
        """
        params = {
            'Bucket': self.bucket_name,
            'Prefix': prefix,
            'MaxKeys': page_size
        }
        if marker:
            params['Marker'] = marker

        try:
            response = self.s3_client.list_objects(**params)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except Exception as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

        entries = [
            RemoteObject(
                key=obj['Key'],
                size=obj.get('Size', 0),
                last_modified=obj.get('LastModified')
            )
            for obj in response.get('Contents', [])
        ]

        has_more = bool(response.get('IsTruncated'))
        # NextMarker is only returned when a delimiter is used
        next_marker = response.get('NextMarker') or (entries[-1].key if entries else None)

        return entries, next_marker, has_more

    def test_connection(self) -> bool:
        """
        Test connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except Exception as e:
            raise StorageError(f"Failed to connect to S3: {e}")
