from typing import Optional

import boto3
import requests

from ..config import settings
from ..exceptions import StorageError
from ..logger import logger


def make_s3_client():
    return boto3.client(
        "s3",
        aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
        aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
        region_name=settings.AWS_REGION_NAME,
        endpoint_url=settings.AWS_ENDPOINT_URL,
    )


def public_url(bucket: str, key: str) -> str:
    return f"{settings.STORAGE_PUBLIC_BASE_URL.rstrip('/')}/{bucket}/{key.lstrip('/')}"


class BlobStorage:
    def __init__(self, s3=None, session: Optional[requests.Session] = None):
        self.s3 = s3 or make_s3_client()
        self.session = session or requests.Session()

    def put(self, bucket: str, key: str, body: bytes, content_type: str) -> str:
        try:
            self.s3.put_object(Bucket=bucket, Key=key, Body=body, ContentType=content_type)
        except Exception as e:
            logger.error(f"Failed to upload object to storage: {bucket}/{key}, error: {e}")
            raise StorageError(f"Failed to upload {key}: {e}")
        logger.info(f"Uploaded object to storage: {bucket}/{key}", extra={"bytes": len(body)})
        return public_url(bucket, key)

    def get(self, url: str) -> bytes:
        """Download a file by URL (used to re-host provider outputs)."""
        try:
            response = self.session.get(url, timeout=settings.STORAGE_DOWNLOAD_TIMEOUT)
        except requests.RequestException as e:
            raise StorageError(f"Failed to download {url}: {e}")
        if response.status_code != 200:
            raise StorageError(f"Failed to download {url}: HTTP {response.status_code}")
        if not response.content:
            raise StorageError(f"Downloaded file is empty: {url}")
        return response.content
