import logging
import os
import tempfile
from typing import Optional

from schemas.common import new_id

logger = logging.getLogger(__name__)

ALBUMS_DIR = "Albums"
JAPAN_PHOTOS_DIR = "JapanPhotos"


class LocalImageStore:
    """
    JPEG blobs on the local filesystem, addressed by file name.

    Callers compress before saving; the store writes the bytes it is given.
    Travel plan, plan and place photos live in the root directory, album and
    prefecture photos in their own subdirectories (see `category`).
    """

    def __init__(self, root: str):
        self.root = root

    def path_for(self, file_name: str) -> str:
        if not file_name or os.path.basename(file_name) != file_name:
            raise ValueError(f"Invalid image file name: {file_name!r}")
        return os.path.join(self.root, file_name)

    def category(self, name: str) -> "LocalImageStore":
        return LocalImageStore(os.path.join(self.root, name))

    @staticmethod
    def generate_file_name(prefix: str) -> str:
        return f"{prefix}_{new_id()}.jpg"

    def save(self, data: bytes, file_name: str):
        path = self.path_for(file_name)
        os.makedirs(self.root, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=self.root, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        logger.debug(f"[ImageStore] Saved {file_name} ({len(data)} bytes)")

    def load(self, file_name: str) -> Optional[bytes]:
        path = self.path_for(file_name)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None

    def exists(self, file_name: str) -> bool:
        return os.path.isfile(self.path_for(file_name))

    def delete(self, file_name: str):
        try:
            os.remove(self.path_for(file_name))
            logger.debug(f"[ImageStore] Deleted {file_name}")
        except FileNotFoundError:
            pass
