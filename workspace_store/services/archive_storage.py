from __future__ import annotations

import gzip
import logging
from datetime import datetime
from typing import Optional

import boto3
from botocore.config import Config

from workspace_store.config import settings

logger = logging.getLogger(__name__)


class ArchiveStorage:
    """
    Write-only S3-compatible storage for gzipped workspace archives.

    Keys look like ``<prefix>/<workspace_id>/<epoch_ms>.json.gz``.
    """

    def __init__(
        self,
        *,
        bucket: Optional[str] = None,
        endpoint: Optional[str] = None,
        region: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        prefix: Optional[str] = None,
        client=None,
    ) -> None:
        self.bucket = bucket or settings.ARCHIVE_S3_BUCKET
        if not self.bucket:
            raise RuntimeError("ARCHIVE_S3_BUCKET is required for archive uploads")
        self.prefix = (prefix if prefix is not None else settings.ARCHIVE_S3_PREFIX or "").strip("/")

        if client is not None:
            self.client = client
            return
        # Without explicit keys boto3 falls back to its default credential chain.
        session = boto3.session.Session()
        self.client = session.client(
            "s3",
            endpoint_url=endpoint or settings.ARCHIVE_S3_ENDPOINT,
            aws_access_key_id=access_key or settings.ARCHIVE_S3_ACCESS_KEY,
            aws_secret_access_key=secret_key or settings.ARCHIVE_S3_SECRET_KEY,
            region_name=region or settings.ARCHIVE_S3_REGION or "us-east-1",
            config=Config(signature_version="s3v4"),
        )

    def build_key(self, *, workspace_id: str, archived_at: datetime) -> str:
        epoch_ms = int(archived_at.timestamp() * 1000)
        parts = [p for p in [self.prefix, workspace_id] if p]
        return "/".join(parts + [f"{epoch_ms}.json.gz"])

    def upload_archive(
        self,
        *,
        workspace_id: str,
        payload: bytes,
        archived_at: datetime,
        data_hash: Optional[str] = None,
    ) -> str:
        """Gzip and upload ``payload``; returns the ``s3://bucket/key`` location."""
        key = self.build_key(workspace_id=workspace_id, archived_at=archived_at)
        kwargs = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": gzip.compress(payload),
            "ContentType": "application/json",
            "ContentEncoding": "gzip",
        }
        if data_hash:
            kwargs["Metadata"] = {"sha256": data_hash}
        self.client.put_object(**kwargs)
        logger.info("Archive uploaded", extra={"workspace_id": workspace_id, "key": key})
        return f"s3://{self.bucket}/{key}"
