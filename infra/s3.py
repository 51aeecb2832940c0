"""S3 uploads for finished exports."""

import mimetypes
import os
from typing import Optional

import boto3
from botocore.exceptions import ClientError
from loguru import logger

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def get_s3_client():
    # Credentials come from the usual AWS env vars / instance role
    return boto3.client("s3", region_name=os.getenv("AWS_REGION", "us-east-1"))


def get_bucket_name() -> str:
    return os.getenv("S3_BUCKET_NAME", "scrapenation-exports")


def content_type_for(key: str) -> Optional[str]:
    if key.lower().endswith(".xlsx"):
        return XLSX_CONTENT_TYPE
    content_type, _ = mimetypes.guess_type(key)
    return content_type


def upload_file(local_path: str, s3_key: str, bucket: Optional[str] = None) -> str:
    """Upload `local_path` to `s3_key` and return its s3:// URI.

    Raises botocore ClientError when the upload is rejected.
    """
    bucket = bucket or get_bucket_name()
    uri = f"s3://{bucket}/{s3_key}"

    extra_args = {}
    content_type = content_type_for(s3_key)
    if content_type:
        extra_args["ContentType"] = content_type

    try:
        get_s3_client().upload_file(local_path, bucket, s3_key, ExtraArgs=extra_args or None)
    except ClientError as e:
        logger.error(f"Upload of {local_path} to {uri} failed: {e}")
        raise

    logger.info(f"Uploaded {local_path} to {uri}")
    return uri
