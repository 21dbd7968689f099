import logging
import queue
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from threading import Lock
from typing import List, Optional, Tuple

from .cancel import CancelToken
from .fetcher import ResourceFetcher
from .progress import ProgressReporter
from .store import ResourceStore

# (tag, attribute) of an element that references the task's URL
Target = Tuple[object, str]


@dataclass
class DownloadTask:
    url: str
    category: str
    targets: List[Target] = field(default_factory=list)


@dataclass
class DownloadResult:
    task: DownloadTask
    local_path: str = ""
    success: bool = False
    error: Optional[str] = None


class DownloadScheduler:
    """Drain a fixed list of tasks through a bounded pool of workers."""

    def __init__(
        self,
        fetcher: ResourceFetcher,
        store: ResourceStore,
        progress: ProgressReporter,
        cancel: CancelToken,
        max_concurrency: int,
    ):
        self.fetcher = fetcher
        self.store = store
        self.progress = progress
        self.cancel = cancel
        self.max_concurrency = max(1, max_concurrency)

    def run(self, tasks: List[DownloadTask]) -> List[DownloadResult]:
        if not tasks:
            return []
        q: "queue.Queue[DownloadTask]" = queue.Queue()
        for t in tasks:
            q.put(t)
        results: List[DownloadResult] = []
        lock = Lock()
        workers = min(self.max_concurrency, len(tasks))
        logging.debug("downloading %d resources with %d workers", len(tasks), workers)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(self._worker, q, results, lock) for _ in range(workers)]
            for fut in futures:
                fut.result()
        return results

    def _worker(self, q: "queue.Queue[DownloadTask]", results: List[DownloadResult], lock: Lock) -> None:
        while True:
            try:
                task = q.get_nowait()
            except queue.Empty:
                return
            res = self._run_one(task)
            with lock:
                results.append(res)

    def _run_one(self, task: DownloadTask) -> DownloadResult:
        if self.cancel.cancelled:
            self.progress.update_status(task.url, "failed")
            return DownloadResult(task, error="cancelled")

        existing = self.store.get(task.url)
        if existing is not None:
            self.progress.update_status(task.url, "completed", 100)
            return DownloadResult(task, existing.local_path, True)

        if self.store.is_full():
            self.progress.update_status(task.url, "failed")
            return DownloadResult(task, error="resource limit reached")

        self.progress.update_status(task.url, "downloading")
        self.progress.set_current_file(task.url)
        local_path = self.fetcher.fetch(task.url, task.category)
        if local_path:
            self.progress.update_status(task.url, "completed", 100)
            return DownloadResult(task, local_path, True)
        self.progress.update_status(task.url, "failed")
        return DownloadResult(task, error="download failed")
