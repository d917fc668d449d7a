# caseflow/services/storage_gateway.py

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from typing import List, Optional

from caseflow.core.config import settings
from caseflow.core.logger import logger
from caseflow.utils.exceptions import StorageError
from caseflow.utils.helpers import utcnow


class StorageGateway:
    """
    Service layer for S3 operations.

    Layout (always namespaced by owner then case):
        {owner}/{case}/{file}                          originals
        {owner}/{case}/csv/{original|corrected}/{name}  CSV artifacts
        {owner}/zips/{case}_{timestamp}.zip             input archives

    Writes are upserts. Failures surface as StorageError with the S3 message
    unchanged; nothing is retried here.
    """

    def __init__(self):
        self.s3_client = boto3.client(
            's3',
            region_name=settings.AWS_REGION,
            endpoint_url=settings.S3_ENDPOINT_URL or None,
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None
        )
        self.bucket = settings.S3_BUCKET_NAME

    # ── Paths ────────────────────────────────────────────────────────────────

    @staticmethod
    def case_prefix(owner_id: str, case_id: str) -> str:
        return f"{owner_id}/{case_id}/"

    @staticmethod
    def original_path(owner_id: str, case_id: str, file_name: str) -> str:
        return f"{owner_id}/{case_id}/{file_name}"

    @staticmethod
    def csv_path(owner_id: str, case_id: str, csv_name: str, corrected: bool = False) -> str:
        folder = "corrected" if corrected else "original"
        if not csv_name.lower().endswith(".csv"):
            csv_name = f"{csv_name}.csv"
        return f"{owner_id}/{case_id}/csv/{folder}/{csv_name}"

    @staticmethod
    def input_archive_path(owner_id: str, case_id: str) -> str:
        timestamp_ms = int(utcnow().timestamp() * 1000)
        return f"{owner_id}/zips/{case_id}_{timestamp_ms}.zip"

    @staticmethod
    def input_archive_prefix(owner_id: str, case_id: str) -> str:
        return f"{owner_id}/zips/{case_id}_"

    # ── Operations ───────────────────────────────────────────────────────────

    def put(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """
        Upload bytes to ``path`` (overwrites).
        """
        try:
            self.s3_client.put_object(
                Bucket=self.bucket,
                Key=path,
                Body=data,
                ContentType=content_type
            )
            logger.info(f"Stored object: {path} ({len(data)} bytes)")
            return path

        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to store object {path}: {str(e)}")
            raise StorageError("put", path, str(e)) from e

    def get(self, path: str) -> bytes:
        """
        Download an object's full body.
        """
        try:
            response = self.s3_client.get_object(Bucket=self.bucket, Key=path)
            return response['Body'].read()

        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to read object {path}: {str(e)}")
            raise StorageError("get", path, str(e)) from e

    def signed_url(self, path: str, ttl_seconds: int) -> str:
        """
        Generate pre-signed URL for GET operation (download).
        """
        try:
            url = self.s3_client.generate_presigned_url(
                'get_object',
                Params={
                    'Bucket': self.bucket,
                    'Key': path
                },
                ExpiresIn=ttl_seconds
            )
            logger.info(f"Generated download URL for: {path} (ttl={ttl_seconds}s)")
            return url

        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to generate download URL: {str(e)}")
            raise StorageError("signed_url", path, str(e)) from e

    def list(self, prefix: str) -> List[str]:
        """
        List object keys under ``prefix``.
        """
        keys: List[str] = []
        token: Optional[str] = None
        try:
            while True:
                params = {'Bucket': self.bucket, 'Prefix': prefix}
                if token:
                    params['ContinuationToken'] = token
                response = self.s3_client.list_objects_v2(**params)
                keys.extend(item['Key'] for item in response.get('Contents', []))
                if not response.get('IsTruncated'):
                    break
                token = response.get('NextContinuationToken')
            return keys

        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to list objects under {prefix}: {str(e)}")
            raise StorageError("list", prefix, str(e)) from e

    def delete_prefix(self, prefix: str) -> int:
        """
        Delete every object under ``prefix``. Returns the number of keys removed.
        """
        if not prefix or prefix == "/":
            raise StorageError("delete_prefix", prefix, "refusing to delete an empty prefix")

        keys = self.list(prefix)
        try:
            for start in range(0, len(keys), 1000):
                chunk = keys[start:start + 1000]
                self.s3_client.delete_objects(
                    Bucket=self.bucket,
                    Delete={'Objects': [{'Key': key} for key in chunk], 'Quiet': True}
                )
            if keys:
                logger.info(f"Deleted {len(keys)} objects under: {prefix}")
            return len(keys)

        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to delete objects under {prefix}: {str(e)}")
            raise StorageError("delete_prefix", prefix, str(e)) from e


# Singleton instance
storage_gateway = StorageGateway()
