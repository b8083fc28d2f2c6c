"""
Test suite for attachment byte loading.
"""

import pytest

from wikirag.attachments import load_attachment
from wikirag.errors import AttachmentError, ValidationError
from wikirag.schemas import Attachment, ChatAttachment

PNG = b"\x89PNG\r\n\x1a\nfake"


@pytest.fixture
def cache_dir(tmp_path):
    cache = tmp_path / "cache"
    (cache / "images").mkdir(parents=True)
    (cache / "images" / "leaf.png").write_bytes(PNG)
    (tmp_path / "secret.env").write_text("LLM_API_KEY=sk-server-secret", encoding="utf-8")
    return cache


class TestCachePath:

    def test_relative_path_inside_cache(self, cache_dir) -> None:
        img = load_attachment(Attachment(mime_type="image/png", cache_path="images/leaf.png"), str(cache_dir))
        assert img.data == PNG

    def test_absolute_path_refused(self, cache_dir) -> None:
        secret = cache_dir.parent / "secret.env"
        with pytest.raises(AttachmentError):
            load_attachment(Attachment(mime_type="image/png", cache_path=str(secret)), str(cache_dir))

    def test_absolute_path_inside_cache_refused(self, cache_dir) -> None:
        inside = cache_dir / "images" / "leaf.png"
        with pytest.raises(AttachmentError):
            load_attachment(Attachment(mime_type="image/png", cache_path=str(inside)), str(cache_dir))

    def test_parent_traversal_refused(self, cache_dir) -> None:
        with pytest.raises(AttachmentError):
            load_attachment(Attachment(mime_type="image/png", cache_path="../secret.env"), str(cache_dir))

    def test_no_cache_dir_configured(self, cache_dir) -> None:
        with pytest.raises(AttachmentError):
            load_attachment(Attachment(mime_type="image/png", cache_path="images/leaf.png"), "")

    def test_inline_data_wins(self, cache_dir) -> None:
        img = load_attachment(Attachment(mime_type="image/png", data=b"inline", cache_path="images/leaf.png"),
                              str(cache_dir))
        assert img.data == b"inline"

    def test_non_image_rejected(self) -> None:
        with pytest.raises(ValidationError):
            load_attachment(Attachment(mime_type="text/plain", data=b"hi"))


class TestChatAttachment:

    def test_json_data_is_base64_decoded(self) -> None:
        att = ChatAttachment.model_validate_json('{"name": "leaf.png", "mime_type": "image/png", '
                                                 '"data": "iVBORw0KGgpmYWtl"}')
        assert att.data == PNG
        assert att.to_attachment() == Attachment(name="leaf.png", mime_type="image/png", data=PNG)

    def test_cache_path_and_url_are_not_accepted(self) -> None:
        att = ChatAttachment.model_validate({"mime_type": "image/png", "data": "iVBORw0KGgpmYWtl",
                                             "cache_path": "/etc/passwd", "url": "http://internal/"})
        converted = att.to_attachment()
        assert converted.cache_path is None
        assert converted.url is None
