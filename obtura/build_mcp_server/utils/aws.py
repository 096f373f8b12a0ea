"""
Object storage client functions.
"""

import logging
from typing import Any, Dict

import boto3
from botocore.config import Config

logger = logging.getLogger(__name__)


def get_storage_client(config: Dict[str, Any]):
    """
    Gets an S3 API client for the artifact store.

    STORAGE_ENDPOINT points the client at an S3-compatible server such as
    MinIO; without it the client talks to AWS S3.
    """
    endpoint = config.get("storage_endpoint")
    region = config.get("storage_region", "us-east-1")
    logger.info(f"Using object storage at {endpoint or 'AWS S3'} in region {region}")

    kwargs: Dict[str, Any] = {
        "region_name": region,
        "config": Config(s3={"addressing_style": "path"}, retries={"max_attempts": 3}),
    }
    if endpoint:
        kwargs["endpoint_url"] = endpoint
        kwargs["use_ssl"] = config.get("storage_use_ssl", True)
    if config.get("storage_access_key") and config.get("storage_secret_key"):
        kwargs["aws_access_key_id"] = config["storage_access_key"]
        kwargs["aws_secret_access_key"] = config["storage_secret_key"]

    return boto3.client("s3", **kwargs)
