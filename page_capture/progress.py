import copy
import logging
from dataclasses import asdict, dataclass, field
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .urls import filename_from_url

PHASES = ("idle", "analyzing", "downloading", "saving", "complete", "stopped")
STATUSES = ("pending", "downloading", "completed", "failed")
TERMINAL = ("completed", "failed")


@dataclass
class FileInfo:
    name: str
    type: str
    url: str
    size: str = "pending"
    total_size: int = 0
    downloaded_size: int = 0
    status: str = "pending"
    progress: int = 0


@dataclass
class ProgressInfo:
    phase: str = "idle"
    total_files: int = 0
    completed_files: int = 0
    failed_files: int = 0
    downloading_files: int = 0
    pending_files: int = 0
    current_file: str = ""
    file_progress: int = 0
    file_list: List[FileInfo] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


ProgressCallback = Callable[[ProgressInfo], None]


def format_file_size(n: int) -> str:
    if n <= 0:
        return "0 B"
    unit = 1024
    if n < unit:
        return f"{n} B"
    sizes = ["B", "KB", "MB", "GB", "TB"]
    value = float(n)
    exp = 0
    while value >= unit and exp < len(sizes) - 1:
        value /= unit
        exp += 1
    return f"{value:.1f} {sizes[exp]}"


class ProgressReporter:
    """Thread-safe capture progress.

    The callback runs on whichever thread made the change, after the internal
    lock has been released, and always receives a private copy. It may call
    snapshot() but must not expect snapshots from different workers to arrive
    in order.
    """

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self._callback = callback
        self._info = ProgressInfo()
        self._index: Dict[str, int] = {}
        self._lock = Lock()

    def set_callback(self, callback: Optional[ProgressCallback]) -> None:
        self._callback = callback

    def snapshot(self) -> ProgressInfo:
        with self._lock:
            return copy.deepcopy(self._info)

    # -------------------- mutations --------------------

    def set_phase(self, phase: str, current_file: str = "", file_progress: int = 0) -> None:
        if phase not in PHASES:
            raise ValueError(f"unknown phase: {phase}")
        with self._lock:
            if self._info.phase == "stopped" and phase != "stopped":
                return
            self._info.phase = phase
            self._info.current_file = current_file
            self._info.file_progress = file_progress
            snap = self._recount()
        self._emit(snap)

    def set_current_file(self, label: str, file_progress: int = 0) -> None:
        with self._lock:
            self._info.current_file = label
            self._info.file_progress = file_progress
            snap = self._recount()
        self._emit(snap)

    def register_files(self, entries: Iterable[Tuple[str, str]]) -> None:
        with self._lock:
            self._info.file_list = []
            self._index = {}
            self._append(entries)
            if self._info.phase != "stopped":
                self._info.phase = "downloading"
                self._info.current_file = "preparing downloads"
                self._info.file_progress = 0
            snap = self._recount()
        self._emit(snap)

    def add_files(self, entries: Iterable[Tuple[str, str]]) -> None:
        with self._lock:
            added = self._append(entries)
            if added and self._info.phase in ("analyzing", "saving", "downloading"):
                self._info.phase = "downloading"
            snap = self._recount()
        self._emit(snap)

    def update_status(self, url: str, status: str, progress: int = 0) -> None:
        if status not in STATUSES:
            raise ValueError(f"unknown status: {status}")
        with self._lock:
            fi = self._find(url)
            if fi is None:
                logging.debug("progress: no file entry for %s", url)
                return
            fi.status = status
            fi.progress = progress
            snap = self._recount()
        self._emit(snap)

    def update_size(self, url: str, size: int) -> None:
        with self._lock:
            fi = self._find(url)
            if fi is None:
                return
            fi.size = format_file_size(size)
            fi.total_size = size
            fi.downloaded_size = size
            snap = self._recount()
        self._emit(snap)

    def update_download(
        self, url: str, downloaded: int, total: int, status: str = "downloading", progress: int = 0
    ) -> None:
        with self._lock:
            fi = self._find(url)
            if fi is None:
                return
            fi.status = status
            fi.progress = progress
            fi.downloaded_size = downloaded
            if total > 0:
                fi.total_size = total
            snap = self._recount()
        self._emit(snap)

    def stop(self) -> None:
        with self._lock:
            self._info.phase = "stopped"
            self._info.current_file = "capture stopped"
            snap = self._recount()
        self._emit(snap)

    # -------------------- internals --------------------

    def _append(self, entries: Iterable[Tuple[str, str]]) -> int:
        n = 0
        for url, category in entries:
            if url in self._index:
                continue
            self._index[url] = len(self._info.file_list)
            self._info.file_list.append(
                FileInfo(name=filename_from_url(url), type=category, url=url)
            )
            n += 1
        return n

    def _find(self, url: str) -> Optional[FileInfo]:
        i = self._index.get(url)
        if i is None:
            return None
        return self._info.file_list[i]

    def _recount(self) -> Optional[ProgressInfo]:
        counts = {s: 0 for s in STATUSES}
        for fi in self._info.file_list:
            counts[fi.status] = counts.get(fi.status, 0) + 1
        info = self._info
        info.total_files = len(info.file_list)
        info.completed_files = counts["completed"]
        info.failed_files = counts["failed"]
        info.downloading_files = counts["downloading"]
        info.pending_files = counts["pending"]
        if (
            info.phase == "downloading"
            and info.total_files > 0
            and info.completed_files + info.failed_files == info.total_files
        ):
            info.phase = "saving"
            info.current_file = "saving files"
            logging.debug("all downloads finished, phase -> saving")
        if self._callback is None:
            return None
        return copy.deepcopy(info)

    def _emit(self, snap: Optional[ProgressInfo]) -> None:
        cb = self._callback
        if cb is None or snap is None:
            return
        try:
            cb(snap)
        except Exception as e:
            logging.warning("progress callback failed: %s", e)
