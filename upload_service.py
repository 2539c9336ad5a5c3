import logging
import os
import uuid
from datetime import datetime, timezone
from typing import List, Tuple

from google.api_core import exceptions as gcs_exceptions
from google.cloud import storage

import config
from errors import NotFoundError, ServiceError

logger = logging.getLogger(__name__)

MAX_FILES = 10
ALLOWED_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp")
UPLOAD_PREFIX = "products"


class ImageUploadService:
    """Product images stored in a Google Cloud Storage bucket."""

    def __init__(self, bucket_name: str = None, credentials_file: str = None, client=None):
        self.bucket_name = bucket_name or config.GCS_BUCKET_NAME
        self.credentials_file = credentials_file if credentials_file is not None else config.GCS_CREDENTIALS_FILE
        self._client = client

    @property
    def client(self):
        if self._client is None:
            if self.credentials_file and os.path.exists(self.credentials_file):
                self._client = storage.Client.from_service_account_json(self.credentials_file)
            else:
                # Application default credentials
                self._client = storage.Client()
            logger.info("[GCS] Storage client initialized")
        return self._client

    def public_url(self, public_id: str) -> str:
        return f"https://storage.googleapis.com/{self.bucket_name}/{public_id}"

    def upload_images(self, files: List[Tuple[str, str, bytes]]) -> List[dict]:
        """Upload (filename, content_type, content) tuples; returns url/public_id per file."""
        if not files:
            raise ServiceError("No images provided")
        if len(files) > MAX_FILES:
            raise ServiceError(f"At most {MAX_FILES} images can be uploaded at once")
        if not self.bucket_name:
            raise ServiceError("Image storage is not configured", status_code=503)

        for filename, content_type, content in files:
            if content_type not in ALLOWED_TYPES:
                raise ServiceError(f"Unsupported file format: {filename}")
            if not content:
                raise ServiceError(f"Uploaded file is empty: {filename}")
            if len(content) > config.MAX_UPLOAD_BYTES:
                raise ServiceError(f"File too large: {filename}", status_code=413)

        bucket = self.client.bucket(self.bucket_name)
        results = []
        for filename, content_type, content in files:
            extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else "jpg"
            timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
            public_id = f"{UPLOAD_PREFIX}/{timestamp}_{uuid.uuid4().hex[:8]}.{extension}"

            blob = bucket.blob(public_id)
            blob.upload_from_string(content, content_type=content_type)
            logger.info(f"[GCS] Uploaded {filename} ({len(content) / 1024:.2f} KB) as {public_id}")
            results.append({"url": self.public_url(public_id), "public_id": public_id})
        return results

    def delete_image(self, public_id: str):
        if not public_id or ".." in public_id:
            raise ServiceError("Invalid image id")
        if not public_id.startswith(f"{UPLOAD_PREFIX}/"):
            public_id = f"{UPLOAD_PREFIX}/{public_id}"
        try:
            self.client.bucket(self.bucket_name).blob(public_id).delete()
        except gcs_exceptions.NotFound:
            raise NotFoundError("Image not found")
        logger.info(f"[GCS] Deleted {public_id}")
