"""Cloudflare R2 (S3-compatible) object storage for extracted metrics."""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

import boto3
from botocore.config import Config as BotoConfig

from src.config import Settings, get_settings

logger = logging.getLogger("garmin_extract.r2")

# Reusable client — created lazily
_client: "boto3.client" | None = None


def _get_client(settings: Settings | None = None) -> "boto3.client":
    global _client
    if _client is not None:
        return _client

    s = settings or get_settings()
    _client = boto3.client(
        "s3",
        endpoint_url=f"https://{s.r2_account_id}.r2.cloudflarestorage.com",
        aws_access_key_id=s.r2_access_key_id,
        aws_secret_access_key=s.r2_secret_access_key,
        config=BotoConfig(
            signature_version="s3v4",
            retries={"max_attempts": 3, "mode": "standard"},
        ),
        region_name="auto",
    )
    return _client


def compute_file_hash(data: bytes) -> str:
    """Return hex-encoded SHA-256 hash of file contents."""
    return hashlib.sha256(data).hexdigest()


def put_json(
    key: str,
    payload: Any,
    *,
    metadata: dict[str, str] | None = None,
    settings: Settings | None = None,
    client: Any = None,
) -> str:
    """Serialize ``payload`` and put it at ``key``, overwriting any existing object.

    Keys are deterministic per extraction unit, so a re-put is an upsert.

    Returns:
        SHA-256 of the stored bytes.
    """
    s = settings or get_settings()
    client = client or _get_client(s)

    body = json.dumps(payload, indent=2, sort_keys=True, default=str).encode("utf-8")
    file_hash = compute_file_hash(body)

    client.put_object(
        Bucket=s.r2_bucket_name,
        Key=key,
        Body=body,
        ContentType="application/json",
        Metadata={**(metadata or {}), "content_hash": file_hash},
    )
    logger.debug("Put %d bytes to R2 key=%s", len(body), key)
    return file_hash
