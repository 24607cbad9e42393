import errno
import os
import re
from pathlib import Path
from typing import Dict, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.exceptions import BusinessError, StorageCapacityExceeded

_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
_CAPACITY_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


def _size(value: str) -> int:
    return len(value.encode("utf-8"))


def _check_key(key: str) -> None:
    if not _KEY_RE.match(key or ""):
        raise BusinessError(code="STORE_BAD_KEY", message=f"invalid storage key: {key!r}")


class MemoryKeyValueStore:
    """进程内的键值存储，写入超过配额时抛出 StorageCapacityExceeded。"""

    def __init__(self, quota_bytes: Optional[int] = None):
        self._quota = quota_bytes if quota_bytes is not None else settings.storage_quota_bytes
        self._data: Dict[str, str] = {}

    @property
    def quota_bytes(self) -> int:
        return self._quota

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        _check_key(key)
        others = sum(_size(v) for k, v in self._data.items() if k != key)
        if others + _size(value) > self._quota:
            raise StorageCapacityExceeded(
                code="STORE_QUOTA_EXCEEDED",
                message=f"writing {key!r} would exceed {self._quota} bytes",
                key=key,
            )
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def used_bytes(self) -> int:
        return sum(_size(v) for v in self._data.values())


class FileKeyValueStore:
    """每个键一个 JSON 文件的键值存储。

    写入先落临时文件再 os.replace，保证单个键要么是旧值要么是新值。
    配额按所有键文件大小之和计算；磁盘满（ENOSPC/EDQUOT）同样视为超出配额。
    """

    def __init__(self, root: str | Path | None = None, quota_bytes: Optional[int] = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._quota = quota_bytes if quota_bytes is not None else settings.storage_quota_bytes

    @property
    def quota_bytes(self) -> int:
        return self._quota

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        _check_key(key)
        return self._root / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e), key=key)

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        others = sum(p.stat().st_size for p in self._root.glob("*.json") if p != path)
        if others + _size(value) > self._quota:
            raise StorageCapacityExceeded(
                code="STORE_QUOTA_EXCEEDED",
                message=f"writing {key!r} would exceed {self._quota} bytes",
                key=key,
            )
        tmp_path = self._root / f"{key}.{uuid4().hex}.tmp"
        try:
            tmp_path.write_text(value, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            if e.errno in _CAPACITY_ERRNOS:
                raise StorageCapacityExceeded(code="STORE_QUOTA_EXCEEDED", message=str(e), key=key)
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), key=key)

    def remove(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e), key=key)

    def used_bytes(self) -> int:
        return sum(p.stat().st_size for p in self._root.glob("*.json"))
