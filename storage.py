import io
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError


class StorageError(Exception):
    pass


class S3Downloader:
    """
    Downloads objects from S3 into memory.

    Region and credentials come from the usual AWS environment variables
    (AWS_REGION, AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY) or profiles.
    """

    def __init__(self, timeout: Optional[float] = None, client=None):
        if client is None:
            config = Config(connect_timeout=timeout, read_timeout=timeout) if timeout else None
            client = boto3.client("s3", config=config)
        self.client = client

    def download(self, bucket: str, key: str) -> bytes:
        buffer = io.BytesIO()
        try:
            self.client.download_fileobj(bucket, key, buffer)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"s3://{bucket}/{key}: {e}") from e
        return buffer.getvalue()
