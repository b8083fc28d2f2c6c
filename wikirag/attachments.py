"""Loading attachment bytes for multi-modal prompts.

Bytes come from inline data, then a local cache path, then a remote URL.
If none of them yields bytes the request fails closed with AttachmentError;
an attachment is never silently dropped.
"""
import base64
import logging
import os
from pathlib import Path
from typing import List, Optional

import requests

from wikirag.errors import AttachmentError, ValidationError
from wikirag.schemas import Attachment

logger = logging.getLogger(__name__)


class LoadedImage:
    """Image bytes ready to be encoded into a provider envelope."""

    __slots__ = ("name", "mime_type", "data")

    def __init__(self, name: str, mime_type: str, data: bytes):
        self.name = name
        self.mime_type = mime_type
        self.data = data

    @property
    def b64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.b64}"


def _read_cache(path: str, cache_dir: str) -> Optional[bytes]:
    """Read ``path`` relative to ``cache_dir``; absolute or escaping paths are refused."""
    if not cache_dir:
        logger.warning("No attachment cache directory configured; ignoring cache path %s", path)
        return None
    base = Path(cache_dir).resolve()
    full = (base / path).resolve()
    if os.path.isabs(path) or base not in full.parents:
        logger.warning("Refusing attachment cache path outside %s: %s", base, path)
        return None
    try:
        return full.read_bytes()
    except OSError as e:
        logger.info("Attachment not in cache (%s): %s", full, e)
        return None


def _fetch(url: str, timeout: float, session: Optional[requests.Session]) -> Optional[bytes]:
    try:
        resp = (session or requests).get(url, timeout=timeout)
    except requests.RequestException as e:
        logger.warning("Attachment fetch failed for %s: %s", url, e)
        return None
    if resp.status_code != 200 or not resp.content:
        logger.warning("Attachment fetch for %s returned HTTP %d", url, resp.status_code)
        return None
    return resp.content


def load_attachment(att: Attachment, cache_dir: str = "", timeout: float = 10,
                    session: Optional[requests.Session] = None) -> LoadedImage:
    """Resolve the bytes of one image attachment.

    Raises:
        ValidationError: If the attachment is not an image.
        AttachmentError: If no source yields bytes.
    """
    mime = (att.mime_type or "").split(";")[0].strip().lower()
    if not mime.startswith("image/"):
        raise ValidationError(f"Unsupported attachment type: {att.mime_type}", code="invalid-attachment")
    data = att.data
    if not data and att.cache_path:
        data = _read_cache(att.cache_path, cache_dir)
    if not data and att.url:
        data = _fetch(att.url, timeout, session)
    if not data:
        raise AttachmentError(f"Attachment {att.name or att.url or att.cache_path!r} could not be loaded")
    return LoadedImage(att.name, mime, data)


def load_attachments(attachments: List[Attachment], cache_dir: str = "", timeout: float = 10,
                     session: Optional[requests.Session] = None) -> List[LoadedImage]:
    return [load_attachment(a, cache_dir, timeout, session) for a in attachments]
