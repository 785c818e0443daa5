import os
import threading
from pathlib import Path
from typing import Dict, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.exceptions import PersistenceError


class FileBlobStore:
    """把每个 key 存成 <root>/<key>.json，写入时先写临时文件再原子替换。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def load(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_bytes()
        except OSError as e:
            raise PersistenceError(code="STORE_READ_ERROR", message=str(e), key=key)

    def save(self, key: str, data: bytes) -> None:
        path = self._path(key)
        tmp_path = self._root / f"{key}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_bytes(data)
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise PersistenceError(code="STORE_WRITE_ERROR", message=str(e), key=key)

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(code="STORE_DELETE_ERROR", message=str(e), key=key)

    def _path(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise PersistenceError(code="INVALID_KEY", message=f"Invalid storage key: {key!r}")
        return self._root / f"{key}.json"


class MemoryBlobStore:
    """进程内的 BlobStore，用于测试或嵌入到宿主应用自己的持久化层之前。"""

    def __init__(self, initial: Optional[Dict[str, bytes]] = None):
        self._data: Dict[str, bytes] = dict(initial or {})
        self._lock = threading.Lock()
        self.save_count = 0

    def load(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(key)

    def save(self, key: str, data: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(data)
            self.save_count += 1
