"""
Local filesystem attachment store.
Keys are paths relative to the store directory; absolute paths are read as-is.
"""
import base64
from pathlib import Path
from typing import BinaryIO, Optional, Union

import structlog

from ..config import settings
from .provider import AttachmentStore


logger = structlog.get_logger(__name__)


class LocalAttachmentStore(AttachmentStore):
    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir or settings.attachment_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _get_path(self, key: str) -> Path:
        path = Path(key)
        if path.is_absolute():
            return path
        clean_key = key.replace("..", "").replace("\\", "/").lstrip("/")
        return self.base_dir / clean_key

    def save(self, key: str, data: Union[bytes, BinaryIO]) -> str:
        """Write bytes under key. Returns the absolute local path."""
        path = self._get_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            f.write(data.read() if hasattr(data, "read") else data)
        return str(path.resolve())

    def read_bytes(self, key: str) -> Optional[bytes]:
        path = self._get_path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def read_base64(self, key: str) -> Optional[str]:
        data = self.read_bytes(key)
        if data is None:
            return None
        return base64.b64encode(data).decode("ascii")

    def exists(self, key: str) -> bool:
        return self._get_path(key).exists()

    def delete(self, key: str) -> None:
        path = self._get_path(key)
        try:
            if path.exists():
                path.unlink()
        except OSError as e:
            logger.warning("attachment_delete_failed", path=str(path), error=str(e))
