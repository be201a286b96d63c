"""Filesystem blob store for entry photos.

Blobs are addressed by opaque keys such as ``photos/<uuid>``. Each blob is
stored as ``<root>/<key>`` with its content type in ``<root>/<key>.meta.json``.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Optional
from uuid import uuid4

from errors import ConfigurationMissing, ValidationFailed

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
PHOTO_PREFIX = "photos"


def new_photo_key() -> str:
    return f"{PHOTO_PREFIX}/{uuid4()}"


@dataclass
class Blob:
    key: str
    data: bytes
    content_type: str = DEFAULT_CONTENT_TYPE


class FileBlobStore:
    def __init__(self, root: str | os.PathLike) -> None:
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        if not key or "\\" in key or key.startswith("/"):
            raise ValidationFailed("invalid key")
        parts = PurePosixPath(key).parts
        if any(part in ("", ".", "..") for part in parts) or key.endswith(".meta.json"):
            raise ValidationFailed("invalid key")
        return self.root.joinpath(*parts)

    def put(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        meta = {"content_type": content_type or DEFAULT_CONTENT_TYPE, "size": len(data)}
        Path(f"{path}.meta.json").write_text(json.dumps(meta), encoding="utf-8")
        logger.info("Stored blob %s (%d bytes)", key, len(data))

    def get(self, key: str) -> Optional[Blob]:
        path = self._path(key)
        if not path.is_file():
            return None
        content_type = DEFAULT_CONTENT_TYPE
        meta_path = Path(f"{path}.meta.json")
        if meta_path.is_file():
            try:
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
                content_type = meta.get("content_type") or DEFAULT_CONTENT_TYPE
            except (OSError, json.JSONDecodeError) as exc:
                logger.warning("Unreadable metadata for blob %s: %s", key, exc)
        return Blob(key=key, data=path.read_bytes(), content_type=content_type)


def get_blob_store() -> FileBlobStore:
    """Return the configured photo store or raise ``ConfigurationMissing``."""
    root = os.getenv("PHOTOS_DIR", "photos")
    if not root:
        raise ConfigurationMissing("photo storage not configured")
    return FileBlobStore(root)
