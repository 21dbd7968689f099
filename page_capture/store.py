import dataclasses
import posixpath
from dataclasses import dataclass
from threading import Lock
from typing import Dict, List, Optional

from .urls import short_h


@dataclass(frozen=True)
class ResourceInfo:
    url: str
    local_path: str
    category: str
    content: bytes
    content_type: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.content)


class ResourceStore:
    def __init__(self, max_files: int):
        self.max_files = max_files
        self._m: Dict[str, ResourceInfo] = {}
        self._paths: Dict[str, str] = {}  # local path -> url
        self._lock = Lock()

    def get(self, url: str) -> Optional[ResourceInfo]:
        with self._lock:
            return self._m.get(url)

    def __contains__(self, url: str) -> bool:
        return self.get(url) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._m)

    def is_full(self) -> bool:
        with self._lock:
            return len(self._m) >= self.max_files

    def put_if_absent(self, info: ResourceInfo) -> Optional[ResourceInfo]:
        with self._lock:
            existing = self._m.get(info.url)
            if existing is not None:
                return existing
            if len(self._m) >= self.max_files:
                return None
            owner = self._paths.get(info.local_path)
            if owner is not None and owner != info.url:
                info = dataclasses.replace(
                    info, local_path=self._disambiguate(info.local_path, info.url)
                )
            self._m[info.url] = info
            self._paths[info.local_path] = info.url
            return info

    def path_for(self, url: str, candidate: str) -> str:
        """Local path url has, or would get, if it were stored under candidate."""
        with self._lock:
            existing = self._m.get(url)
            if existing is not None:
                return existing.local_path
            owner = self._paths.get(candidate)
            if owner is not None and owner != url:
                return self._disambiguate(candidate, url)
            return candidate

    def _disambiguate(self, local_path: str, url: str) -> str:
        root, ext = posixpath.splitext(local_path)
        candidate = f"{root}_{short_h(url)}{ext}"
        n = 1
        while candidate in self._paths:
            candidate = f"{root}_{short_h(url)}_{n}{ext}"
            n += 1
        return candidate

    def replace_content(self, url: str, content: bytes) -> Optional[ResourceInfo]:
        with self._lock:
            old = self._m.get(url)
            if old is None:
                return None
            new = dataclasses.replace(old, content=content)
            self._m[url] = new
            return new

    def values(self) -> List[ResourceInfo]:
        with self._lock:
            return list(self._m.values())

    def local_paths(self) -> List[str]:
        with self._lock:
            return [r.local_path for r in self._m.values()]
