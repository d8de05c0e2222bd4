"""
MHTML web-archive decoder.

Browsers save an order-history page as "Web Page, Single File" in MIME
multipart/related form: the HTML document plus every image it references,
each part keyed by its Content-Location.
"""

from dataclasses import dataclass, field
from email import message_from_bytes, policy
from typing import Optional, Union
from urllib.parse import urlparse
import hashlib
import mimetypes
import posixpath
import re
import structlog

from exceptions import DocumentFormatError

logger = structlog.get_logger(__name__)

# Only the head of the file is sniffed
SNIFF_BYTES = 64 * 1024
MAX_FILENAME_LENGTH = 100


@dataclass
class EmbeddedImage:
    """Image part carried inside the archive."""
    url: str
    data: bytes
    content_type: str
    filename: str


@dataclass
class MhtmlDocument:
    """Decoded archive: the page markup and its embedded images."""
    html: str
    images: dict[str, EmbeddedImage] = field(default_factory=dict)

    def image_for(self, url: Optional[str]) -> Optional[EmbeddedImage]:
        """Look up an embedded image, ignoring the URL scheme."""
        if not url:
            return None
        if url in self.images:
            return self.images[url]
        bare = _strip_scheme(url)
        for location, image in self.images.items():
            if _strip_scheme(location) == bare:
                return image
        return None


def is_mhtml(content: Union[str, bytes]) -> bool:
    """True when the content carries MIME multipart/related headers."""
    if isinstance(content, bytes):
        head = content[:SNIFF_BYTES].decode("latin-1")
    else:
        head = content[:SNIFF_BYTES]
    return (
        "MIME-Version:" in head
        and "multipart/related" in head.lower()
        and "boundary=" in head
    )


def decode_mhtml(content: Union[str, bytes]) -> MhtmlDocument:
    """
    Split an MHTML archive into HTML and embedded images.

    Args:
        content: Raw archive bytes (or text already read as a string)

    Returns:
        MhtmlDocument with the first text/html part and all image parts

    Raises:
        DocumentFormatError: If the archive has no HTML part
    """
    raw = content.encode("utf-8", errors="replace") if isinstance(content, str) else content
    message = message_from_bytes(raw, policy=policy.default)

    html: Optional[str] = None
    images: dict[str, EmbeddedImage] = {}

    for part in message.walk():
        if part.is_multipart():
            continue
        content_type = part.get_content_type()

        if content_type == "text/html" and html is None:
            payload = part.get_payload(decode=True) or b""
            html = _decode_text(payload, part.get_content_charset())

        elif content_type.startswith("image/"):
            location = part.get("Content-Location")
            data = part.get_payload(decode=True)
            if not location or not data:
                continue
            location = str(location).strip()
            images[location] = EmbeddedImage(
                url=location,
                data=data,
                content_type=content_type,
                filename=image_filename(location, content_type),
            )

    if html is None:
        logger.warning("mhtml_no_html_part", parts=len(images))
        raise DocumentFormatError(
            "MHTML archive does not contain an HTML document",
            details={"embedded_images": len(images)}
        )

    logger.info("mhtml_decoded", html_chars=len(html), embedded_images=len(images))
    return MhtmlDocument(html=html, images=images)


def image_filename(url: str, content_type: Optional[str] = None) -> str:
    """
    Filesystem-safe name for an image URL.

    A short URL hash keeps names from different hosts apart.
    """
    digest = hashlib.md5(url.encode("utf-8")).hexdigest()[:8]
    path = urlparse(url).path
    base = posixpath.basename(path)
    base = re.sub(r"[^A-Za-z0-9._-]", "_", base).strip("._")

    stem, ext = posixpath.splitext(base)
    if not ext:
        ext = (mimetypes.guess_extension(content_type) if content_type else None) or ".jpg"
    if not stem or len(stem) < 3:
        return f"img_{digest}{ext}"

    stem = stem[: MAX_FILENAME_LENGTH - len(ext) - 10]
    return f"{digest}_{stem}{ext}"


def _decode_text(payload: bytes, charset: Optional[str]) -> str:
    try:
        return payload.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _strip_scheme(url: str) -> str:
    return re.sub(r"^(?:https?:)?//", "", url.strip())
