"""
Best-effort local staging of order item thumbnails.

Images embedded in an MHTML archive are written straight to disk; remote
thumbnails are downloaded. Every failure is logged and returns None so a
broken image never fails a preview.
"""

from pathlib import Path
from typing import Optional
import hashlib
import re
import structlog

import requests

from config.settings import settings
from parsers.mhtml_parser import EmbeddedImage

logger = structlog.get_logger(__name__)

# Constants
MIN_IMAGE_BYTES = 1024
IMAGE_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/avif": ".avif",
}
BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Referer": "https://www.aliexpress.com/",
}


class ImageStager:
    """
    Writes thumbnails under the configured storage directory.

    Returned paths are relative to the upload root
    (e.g. "imported-images/3f2a9c1e_resistor_kit.jpg").
    """

    def __init__(
        self,
        storage_path: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        http: Optional[requests.Session] = None,
    ):
        self.storage_dir = Path(storage_path or settings.image_storage_path)
        self.timeout = timeout_seconds or settings.image_download_timeout_seconds
        self.http = http or requests.Session()

    def stage(
        self,
        image_url: Optional[str],
        title: str,
        embedded: Optional[EmbeddedImage] = None,
    ) -> Optional[str]:
        """
        Stage one thumbnail.

        Args:
            image_url: Remote thumbnail URL
            title: Item title, used in the filename
            embedded: Archive copy of the image, preferred over downloading

        Returns:
            Relative local path, or None when staging failed
        """
        try:
            if embedded is not None:
                return self._write(embedded.filename, embedded.data)
            if not image_url:
                return None
            return self._download(image_url, title)
        except OSError as e:
            logger.warning(
                "image_staging_failed",
                url=image_url,
                error=str(e),
                error_type=type(e).__name__
            )
            return None

    def _download(self, image_url: str, title: str) -> Optional[str]:
        try:
            response = self.http.get(image_url, headers=BROWSER_HEADERS, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.warning("image_download_failed", url=image_url, error=str(e))
            return None

        content_type = response.headers.get("Content-Type", "").split(";")[0].strip().lower()
        body = response.content or b""

        if not content_type.startswith("image/"):
            logger.warning("image_download_rejected", url=image_url, reason="not_image", content_type=content_type)
            return None
        if body.lstrip()[:1] == b"<":
            logger.warning("image_download_rejected", url=image_url, reason="html_body")
            return None
        if len(body) < MIN_IMAGE_BYTES:
            logger.warning("image_download_rejected", url=image_url, reason="too_small", size=len(body))
            return None

        return self._write(_download_filename(image_url, title, content_type), body)

    def _write(self, filename: str, data: bytes) -> str:
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        target = self.storage_dir / filename
        if not target.exists():
            target.write_bytes(data)
        logger.debug("image_staged", filename=filename, size=len(data))
        return f"{self.storage_dir.name}/{filename}"


def _download_filename(image_url: str, title: str, content_type: str) -> str:
    digest = hashlib.md5(image_url.encode("utf-8")).hexdigest()[:8]
    safe_title = re.sub(r"[^A-Za-z0-9]+", "_", title).strip("_")[:50] or "item"
    suffix = Path(image_url.split("?")[0]).suffix.lower()
    if suffix not in IMAGE_EXTENSIONS.values():
        suffix = IMAGE_EXTENSIONS.get(content_type, ".jpg")
    return f"{safe_title}_{digest}{suffix}"
