"""Key/value object store for image assets, backed by fsspec.

The store is rooted at a single fsspec URL (a local directory,
``memory://``, ``s3://bucket/prefix``, ``gs://bucket/prefix``...).  Keys
are relative ``/``-separated paths such as ``dataset-3/img_001.jpg``.
"""

import logging
import posixpath

import fsspec

logger = logging.getLogger(__name__)

CONTENT_TYPES: dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


def content_type_for(file_name: str) -> str:
    """Return the MIME type for *file_name* based on its extension."""
    ext = posixpath.splitext(file_name)[1].lower()
    return CONTENT_TYPES.get(ext, "application/octet-stream")


class ObjectStore:
    """Blob storage with get/put/copy/delete/exists/list by key.

    Uses fsspec internally, so the same code serves local development
    (a directory on disk) and cloud buckets.
    """

    def __init__(self, root_url: str) -> None:
        self.fs, root = fsspec.core.url_to_fs(root_url)
        self.root = root.rstrip("/")
        self.fs.makedirs(self.root, exist_ok=True)

    def _path(self, key: str) -> str:
        key = key.strip("/")
        if not key or ".." in key.split("/"):
            raise ValueError(f"Invalid object key: {key!r}")
        return f"{self.root}/{key}"

    def _ensure_parent(self, path: str) -> None:
        self.fs.makedirs(posixpath.dirname(path), exist_ok=True)

    def get(self, key: str) -> bytes:
        """Return the full contents of the object at *key*."""
        return self.fs.cat_file(self._path(key))

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> str:
        """Write *data* under *key* and return the key."""
        path = self._path(key)
        self._ensure_parent(path)
        self.fs.pipe_file(path, data)
        logger.debug("Stored %s (%d bytes, %s)", key, len(data), content_type)
        return key

    def copy(self, src: str, dst: str) -> str:
        """Copy the object at *src* to *dst* and return *dst*."""
        src_path = self._path(src)
        dst_path = self._path(dst)
        self._ensure_parent(dst_path)
        self.fs.cp_file(src_path, dst_path)
        return dst

    def delete(self, key: str) -> None:
        """Remove the object at *key*; missing objects are ignored."""
        path = self._path(key)
        if self.fs.exists(path):
            self.fs.rm_file(path)

    def exists(self, key: str) -> bool:
        """Return ``True`` if an object is stored at *key*."""
        return self.fs.exists(self._path(key))

    def list(self, prefix: str = "") -> list[str]:
        """Return the sorted keys of every object under *prefix*."""
        base = f"{self.root}/{prefix.strip('/')}" if prefix.strip("/") else self.root
        if not self.fs.exists(base):
            return []
        return sorted(path[len(self.root) + 1:] for path in self.fs.find(base))
