"""Uploads downloaded place photos to the directory's HTTP image store."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from extraction_worker.core.errors import ErrorKind, StepError, kind_for_status_code

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30
ALLOWED_CONTENT_TYPES = {"image/jpeg": "jpg", "image/png": "png", "image/webp": "webp"}


class ImageStoreError(StepError):
    """Raised when an image cannot be downloaded or stored."""


def build_session() -> requests.Session:
    """Session retrying connection errors and 5xx responses on each request."""
    session = requests.Session()
    retries = Retry(
        total=3,
        backoff_factor=1,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=("PUT", "GET"),
    )
    session.mount("http://", HTTPAdapter(max_retries=retries))
    session.mount("https://", HTTPAdapter(max_retries=retries))
    return session


class ImageStore:
    def __init__(self, base_url: str, token: Optional[str] = None, session: Optional[requests.Session] = None) -> None:
        if not base_url:
            raise ImageStoreError(ErrorKind.FATAL, "IMAGE_STORE_URL is not configured")
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.session = session or build_session()

    def download(self, url: str) -> Dict[str, Any]:
        response = self.session.get(url, timeout=REQUEST_TIMEOUT)
        if response.status_code >= 400:
            raise ImageStoreError(kind_for_status_code(response.status_code), f"image download returned {response.status_code}")
        content_type = response.headers.get("Content-Type", "").split(";")[0].strip().lower()
        if content_type not in ALLOWED_CONTENT_TYPES:
            raise ImageStoreError(ErrorKind.INVALID_INPUT, f"unsupported image type {content_type or 'unknown'}")
        return {"content": response.content, "content_type": content_type}

    def upload(self, key: str, content: bytes, content_type: str) -> str:
        """PUT ``content`` under ``key`` and return its public URL."""
        extension = ALLOWED_CONTENT_TYPES.get(content_type, "jpg")
        path = f"{key}.{extension}"
        headers = {"Content-Type": content_type}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        response = self.session.put(f"{self.base_url}/{path}", data=content, headers=headers, timeout=REQUEST_TIMEOUT)
        if response.status_code >= 400:
            logger.error("Image upload failed for %s: status=%s", path, response.status_code)
            raise ImageStoreError(kind_for_status_code(response.status_code), f"image upload returned {response.status_code}")
        try:
            body = response.json()
        except ValueError:
            body = {}
        return body.get("url") or f"{self.base_url}/{path}"

    def copy(self, source_url: str, key: str) -> str:
        image = self.download(source_url)
        return self.upload(key, image["content"], image["content_type"])
