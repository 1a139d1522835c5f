"""
Read access to uploaded answer audio in the S3-compatible segment bucket.
"""

import logging
import os
import time

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from configs.config import get_config

logger = logging.getLogger(__name__)

cfg = get_config()

MIN_AUDIO_BYTES = 16

_client = None


class SegmentNotFoundError(Exception):
    """The storage reference does not point at a readable audio object."""


def _s3_client():
    global _client
    if _client is None:
        _client = boto3.client(
            "s3",
            endpoint_url=cfg.STORAGE_ENDPOINT_URL,
            region_name=cfg.STORAGE_REGION,
        )
    return _client


def filename_for(storage_ref: str) -> str:
    """Upload name for the ASR request; the extension tells the provider the codec."""
    name = os.path.basename(storage_ref or "") or "audio.webm"
    return name if "." in name else f"{name}.webm"


def read_segment(storage_ref: str, max_retries: int = None, sleep=time.sleep) -> bytes:
    """
    Download one segment fully into memory, retrying streaming failures.
    A missing object is not retried.
    """
    max_retries = max_retries or cfg.STORAGE_READ_RETRIES
    client = _s3_client()
    last_exc = None
    for attempt in range(1, max_retries + 1):
        try:
            obj = client.get_object(Bucket=cfg.STORAGE_BUCKET, Key=storage_ref)
            data = obj["Body"].read()
            if not data or len(data) < MIN_AUDIO_BYTES:
                raise IOError(f"Segment {storage_ref} is empty or truncated")
            return data
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                raise SegmentNotFoundError(f"Segment {storage_ref} not found") from exc
            last_exc = exc
        except (BotoCoreError, IOError) as exc:
            last_exc = exc
        logger.warning(
            "Segment read failed (attempt %d/%d) for %s: %s",
            attempt, max_retries, storage_ref, last_exc,
        )
        if attempt < max_retries:
            sleep(0.6 * attempt)
    raise last_exc
