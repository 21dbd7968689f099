from __future__ import annotations

import threading
import time
import unittest

from page_capture.cancel import CancelToken
from page_capture.config import CaptureOptions
from page_capture.fetcher import ResourceFetcher
from page_capture.progress import ProgressReporter
from page_capture.scheduler import DownloadScheduler, DownloadTask
from page_capture.store import ResourceInfo, ResourceStore

from .fakes import PNG, FakeResponse, FakeSession

URLS = [f"https://ex.com/img/{i}.png" for i in range(3)]


class CountingFetcher:
    """Records how many fetches overlap."""

    def __init__(self) -> None:
        self.active = 0
        self.peak = 0
        self.lock = threading.Lock()

    def fetch(self, url: str, category: str) -> str:
        with self.lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(0.02)
        with self.lock:
            self.active -= 1
        return "static/images/x.png"


class TestDownloadScheduler(unittest.TestCase):
    def setUp(self) -> None:
        self.options = CaptureOptions().normalized()
        self.progress = ProgressReporter()
        self.cancel = CancelToken()

    def _scheduler(self, routes, store: ResourceStore, concurrency: int = 4):
        self.session = FakeSession(routes)
        fetcher = ResourceFetcher(self.session, self.options, store, self.progress, self.cancel)
        return DownloadScheduler(fetcher, store, self.progress, self.cancel, concurrency)

    def _tasks(self, urls=URLS):
        tasks = [DownloadTask(u, "images") for u in urls]
        self.progress.register_files((t.url, t.category) for t in tasks)
        return tasks

    def test_all_succeed(self) -> None:
        store = ResourceStore(200)
        sched = self._scheduler({u: FakeResponse(PNG, content_type="image/png") for u in URLS}, store)
        results = sched.run(self._tasks())
        self.assertEqual(len(results), 3)
        self.assertTrue(all(r.success for r in results))
        self.assertEqual({r.local_path for r in results}, {f"static/images/{i}.png" for i in range(3)})
        p = self.progress.snapshot()
        self.assertEqual(p.completed_files, 3)
        self.assertEqual(p.phase, "saving")

    def test_failures_are_reported(self) -> None:
        store = ResourceStore(200)
        sched = self._scheduler({URLS[0]: FakeResponse(PNG)}, store)
        results = sched.run(self._tasks())
        self.assertEqual(sum(r.success for r in results), 1)
        failed = [r for r in results if not r.success]
        self.assertEqual({r.error for r in failed}, {"download failed"})
        p = self.progress.snapshot()
        self.assertEqual((p.completed_files, p.failed_files), (1, 2))

    def test_stored_url_short_circuits(self) -> None:
        store = ResourceStore(200)
        store.put_if_absent(ResourceInfo(URLS[0], "static/images/cached.png", "images", PNG))
        sched = self._scheduler({}, store)
        results = sched.run(self._tasks(URLS[:1]))
        self.assertTrue(results[0].success)
        self.assertEqual(results[0].local_path, "static/images/cached.png")
        self.assertEqual(self.session.calls, [])

    def test_cap_reached(self) -> None:
        store = ResourceStore(1)
        sched = self._scheduler({u: FakeResponse(PNG) for u in URLS}, store, concurrency=1)
        results = sched.run(self._tasks())
        self.assertEqual(sum(r.success for r in results), 1)
        self.assertEqual(len(store), 1)

    def test_cancelled_before_start(self) -> None:
        store = ResourceStore(200)
        sched = self._scheduler({u: FakeResponse(PNG) for u in URLS}, store)
        self.cancel.cancel()
        results = sched.run(self._tasks())
        self.assertFalse(any(r.success for r in results))
        self.assertEqual(self.session.calls, [])

    def test_empty(self) -> None:
        sched = self._scheduler({}, ResourceStore(200))
        self.assertEqual(sched.run([]), [])

    def test_concurrency_is_bounded(self) -> None:
        fetcher = CountingFetcher()
        sched = DownloadScheduler(fetcher, ResourceStore(200), self.progress, self.cancel, 3)
        urls = [f"https://ex.com/{i}.png" for i in range(10)]
        results = sched.run(self._tasks(urls))
        self.assertEqual(len(results), 10)
        self.assertLessEqual(fetcher.peak, 3)
        self.assertGreaterEqual(fetcher.peak, 1)


if __name__ == "__main__":
    unittest.main()
