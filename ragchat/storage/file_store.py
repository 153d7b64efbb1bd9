import os
import re
import uuid
from ragchat.storage.base import BlobStore

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")

class LocalBlobStore(BlobStore):
    """
    Implements BlobStore using the local disk.
    Handles are '<uuid>-<sanitised filename>' relative to the uploads directory.
    """

    def __init__(self, uploads_path: str = "./data/uploads"):
        self.uploads_path = uploads_path
        os.makedirs(self.uploads_path, exist_ok=True)

    def put(self, data: bytes, filename: str = "") -> str:
        safe_name = _UNSAFE_CHARS.sub("_", os.path.basename(filename))[:100] or "upload"
        handle = f"{uuid.uuid4()}-{safe_name}"
        with open(self._path(handle), "wb") as f:
            f.write(data)
        return handle

    def get(self, handle: str) -> bytes:
        path = self._path(handle)
        if not os.path.exists(path):
            raise FileNotFoundError(f"Blob not found: {handle}")
        with open(path, "rb") as f:
            return f.read()

    def delete(self, handle: str) -> None:
        path = self._path(handle)
        if os.path.exists(path):
            os.remove(path)

    def _path(self, handle: str) -> str:
        if os.path.basename(handle) != handle or handle in ("", ".", ".."):
            raise ValueError(f"Invalid blob handle: {handle!r}")
        return os.path.join(self.uploads_path, handle)
