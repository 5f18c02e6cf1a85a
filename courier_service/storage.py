# storage.py
import logging
import os
from typing import Optional

import boto3

logger = logging.getLogger("courier-service.storage")

DOCUMENT_KINDS = ("cnh_front", "cnh_back", "proof_residence", "crlv", "bike_photo", "avatar")


class ObjectStorage:
    """S3 bucket when USE_AWS is on, a local directory otherwise."""

    def __init__(
        self,
        use_aws: bool = False,
        bucket: Optional[str] = None,
        local_dir: str = "./local_storage/courier-documents",
        public_base_url: Optional[str] = None,
        region: str = "us-east-1",
    ):
        self.use_aws = use_aws
        self.bucket = bucket
        self.local_dir = local_dir
        self.public_base_url = public_base_url
        self.region = region
        if use_aws:
            self.s3 = boto3.client("s3", region_name=region)
        else:
            self.s3 = None
            os.makedirs(local_dir, exist_ok=True)

    def upload(self, path: str, data: bytes, content_type: Optional[str] = None) -> bool:
        path = path.lstrip("/")
        if ".." in path.split("/"):
            raise ValueError(f"Invalid object path: {path}")
        if self.use_aws:
            extra = {"ContentType": content_type} if content_type else {}
            self.s3.put_object(Bucket=self.bucket, Key=path, Body=data, **extra)
        else:
            target = os.path.join(self.local_dir, path)
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, "wb") as f:
                f.write(data)
        logger.info(f"[Storage] Stored {path} ({len(data)} bytes)")
        return True

    def get_public_url(self, path: str) -> str:
        path = path.lstrip("/")
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{path}"
        if self.use_aws:
            return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{path}"
        return "file://" + os.path.abspath(os.path.join(self.local_dir, path))


def document_path(user_id: str, kind: str, filename: str) -> str:
    """<user_id>/<kind>.<ext>, one object per document kind."""
    if kind not in DOCUMENT_KINDS:
        raise ValueError(f"Unknown document kind: {kind}")
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else "bin"
    return f"{user_id}/{kind}.{ext}"
