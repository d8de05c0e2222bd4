"""
Unit tests for ImageStager.

Run: pytest tests/unit/test_image_staging_service.py -v
"""

from unittest.mock import MagicMock

import pytest
import requests

from parsers.mhtml_parser import EmbeddedImage
from services.image_staging_service import ImageStager

IMAGE_URL = "https://ae01.alicdn.com/kf/S123_800x800.jpg"
JPEG_BODY = b"\xff\xd8\xff\xe0" + b"\x10" * 4096


def _response(content_type: str = "image/jpeg", body: bytes = JPEG_BODY) -> MagicMock:
    response = MagicMock()
    response.headers = {"Content-Type": content_type}
    response.content = body
    response.raise_for_status.return_value = None
    return response


@pytest.fixture
def http() -> MagicMock:
    return MagicMock(spec=requests.Session)


class TestImageStagerDownload:
    """Tests for ImageStager.stage() with remote thumbnails."""

    def test_downloads_image(self, tmp_path, http):
        """Should write the image and return a path under the storage dir."""
        # Arrange
        http.get.return_value = _response()
        stager = ImageStager(storage_path=str(tmp_path / "imported-images"), http=http)

        # Act
        path = stager.stage(IMAGE_URL, "10K Ohm Resistor 1/4W")

        # Assert
        assert path.startswith("imported-images/10K_Ohm_Resistor_1_4W_")
        assert path.endswith(".jpg")
        written = tmp_path / path
        assert written.read_bytes() == JPEG_BODY

    @pytest.mark.parametrize("content_type, body", [
        ("text/html", JPEG_BODY),
        ("image/jpeg", b"<html>blocked</html>" + b" " * 2048),
        ("image/jpeg", b"\xff\xd8tiny"),
    ])
    def test_rejects_bad_responses(self, tmp_path, http, content_type, body):
        """Should return None for non-images, HTML bodies and tiny files."""
        http.get.return_value = _response(content_type, body)
        stager = ImageStager(storage_path=str(tmp_path), http=http)

        assert stager.stage(IMAGE_URL, "Item") is None
        assert list(tmp_path.iterdir()) == []

    def test_network_error(self, tmp_path, http):
        """Should return None when the download fails."""
        http.get.side_effect = requests.exceptions.ConnectionError("unreachable")
        stager = ImageStager(storage_path=str(tmp_path), http=http)

        assert stager.stage(IMAGE_URL, "Item") is None

    def test_no_url(self, tmp_path, http):
        """Should do nothing without a URL or archive copy."""
        stager = ImageStager(storage_path=str(tmp_path), http=http)

        assert stager.stage(None, "Item") is None
        http.get.assert_not_called()


class TestImageStagerEmbedded:
    """Tests for ImageStager.stage() with archive images."""

    def test_prefers_embedded_copy(self, tmp_path, http):
        """Should write the archived bytes without downloading."""
        embedded = EmbeddedImage(
            url=IMAGE_URL,
            data=JPEG_BODY,
            content_type="image/jpeg",
            filename="abcd1234_S123_800x800.jpg",
        )
        stager = ImageStager(storage_path=str(tmp_path / "imported-images"), http=http)

        path = stager.stage(IMAGE_URL, "Item", embedded)

        assert path == "imported-images/abcd1234_S123_800x800.jpg"
        assert (tmp_path / path).read_bytes() == JPEG_BODY
        http.get.assert_not_called()
