"""In-memory backends for unit tests and local runs."""

from __future__ import annotations


class MemoryCacheBackend:
    """Dict-backed ICacheBackend; TTLs are recorded but never expire."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.available = True

    def get(self, key: str) -> str | None:
        return self._store.get(key)

    def setex(self, key: str, ttl: int, value: str) -> None:
        self._store[key] = value
        self.ttls[key] = ttl

    def delete(self, key: str) -> None:
        self._store.pop(key, None)
        self.ttls.pop(key, None)

    def ping(self) -> bool:
        return self.available


class MemoryFileStore:
    """Dict-backed IFileStore."""

    def __init__(self, base_url: str = "memory://files") -> None:
        self._files: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}
        self._base_url = base_url

    def read(self, path: str) -> bytes:
        return self._files[path]

    def write(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        self._files[path] = data
        self.content_types[path] = content_type
        return path

    def url(self, path: str) -> str:
        return f"{self._base_url}/{path}"

    def list_files(self, prefix: str) -> list[str]:
        return [k for k in self._files if k.startswith(prefix)]
