"""
S3 Utilities — Client Init • Document Text Retrieval
====================================================

Purpose
-------
Reads archived document text from Amazon S3 for the ``getDocumentText`` tool:
- Initialize an S3 client with Signature V4
- Fetch an object's body as UTF-8 text

Configuration (from `historylab.database.config.config.settings`)
-----------------------------------------------------------------
- AWS_ACCESS_KEY : Access key ID (falls back to the default credential chain when unset)
- AWS_SECRET_KEY : Secret access key
- REGION         : AWS region
- BUCKET_NAME    : Bucket holding the document texts

Errors
------
A missing object is reported as ``{"error": "File not found"}``. Other client
errors propagate to the tool, which turns them into its own soft error.
"""

import asyncio
import logging
from typing import Union

import boto3
import botocore
from botocore.exceptions import ClientError

from historylab.database.config.config import settings

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = ("NoSuchKey", "404", "NotFound")


def get_client():
    """
    Initialize and return a low-level S3 client configured for Signature V4.

    Returns
    -------
    botocore.client.S3
        An S3 client ready for object operations.
    """
    return boto3.client(
        's3',
        aws_access_key_id=settings.AWS_ACCESS_KEY,
        aws_secret_access_key=settings.AWS_SECRET_KEY,
        region_name=settings.REGION,
        config=botocore.config.Config(signature_version="s3v4"),
    )


def read_text(key: str, s3_client, bucket: str) -> Union[str, dict]:
    """
    Read an object and decode it as UTF-8.

    Parameters
    ----------
    key : str
        Object key in the bucket.
    s3_client : botocore.client.S3
        Client returned by `get_client()`.
    bucket : str
        Bucket name.

    Returns
    -------
    str | dict
        The text, or ``{"error": "File not found"}`` when the key does not exist.
    """
    try:
        response = s3_client.get_object(Bucket=bucket, Key=key)
    except ClientError as e:
        if e.response.get("Error", {}).get("Code") in NOT_FOUND_CODES:
            logger.info("Document %s not found in bucket %s", key, bucket)
            return {"error": "File not found"}
        raise
    return response["Body"].read().decode("utf-8", errors="replace")


class S3ObjectStore:
    """
    Object retrieval collaborator backed by S3.

    Parameters
    ----------
    s3_client : botocore.client.S3, optional
        Defaults to `get_client()`.
    bucket : str, optional
        Defaults to ``settings.BUCKET_NAME``.
    """

    def __init__(self, s3_client=None, bucket: str = None):
        self.s3_client = s3_client or get_client()
        self.bucket = bucket or settings.BUCKET_NAME

    async def get_object_text(self, storage_key: str) -> Union[str, dict]:
        # boto3 is blocking, keep the event loop free
        return await asyncio.to_thread(read_text, storage_key, self.s3_client, self.bucket)
