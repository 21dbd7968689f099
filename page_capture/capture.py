import logging
import shutil
import tempfile
import time
from dataclasses import asdict, dataclass, field
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import requests

from .archiver import Archiver
from .cancel import CancelToken
from .config import MAIN_PAGE_ATTEMPTS, CaptureOptions
from .document import DocumentProcessor
from .errors import BlockedError, CaptureCancelledError, CaptureError, FetchError
from .fetcher import ResourceFetcher, build_session, download_page
from .progress import FileInfo, ProgressCallback, ProgressInfo, ProgressReporter
from .scheduler import DownloadScheduler
from .store import ResourceStore

RETRY_BACKOFF = 1.0

SessionFactory = Callable[[CaptureOptions], requests.Session]


@dataclass
class CaptureResult:
    status_code: int
    content_type: str
    content_length: int
    content: str
    headers: Dict[str, str]
    final_url: str
    duration_ms: int
    archive_path: str
    archive_size: int
    files_count: int
    downloaded_files: List[str] = field(default_factory=list)
    file_details: List[FileInfo] = field(default_factory=list)
    success_count: int = 0
    failed_count: int = 0

    def to_dict(self, include_content: bool = True) -> Dict[str, Any]:
        d = asdict(self)
        if not include_content:
            d.pop("content", None)
        return d


@dataclass
class CaptureContext:
    """Everything that lives for exactly one capture."""

    options: CaptureOptions
    session: requests.Session
    store: ResourceStore
    progress: ProgressReporter
    cancel: CancelToken
    staging_dir: str


def normalize_url(url: str) -> str:
    u = (url or "").strip()
    if not u:
        raise CaptureError("invalid URL: empty")
    if "://" not in u:
        u = "https://" + u.lstrip("/")
    p = urlparse(u)
    if p.scheme.lower() not in ("http", "https") or not p.netloc:
        raise CaptureError(f"invalid URL: {url!r}")
    return u


class PageCapture:
    def __init__(
        self,
        progress_callback: Optional[ProgressCallback] = None,
        session_factory: SessionFactory = build_session,
    ):
        self._callback = progress_callback
        self._session_factory = session_factory
        self._progress = ProgressReporter(progress_callback)
        self._ctx: Optional[CaptureContext] = None
        self._ctx_lock = Lock()
        self._run_lock = Lock()

    def progress(self) -> ProgressInfo:
        return self._progress.snapshot()

    def stop(self) -> None:
        """Cancel the running capture, if any. Safe from any thread."""
        with self._ctx_lock:
            ctx = self._ctx
        if ctx is None:
            logging.debug("stop requested but no capture is running")
            return
        logging.info("stopping capture")
        ctx.progress.stop()
        ctx.cancel.cancel()

    # -------------------- capture --------------------

    def capture(self, url: str, options: Optional[CaptureOptions] = None) -> CaptureResult:
        target = normalize_url(url)
        opts = (options or CaptureOptions()).normalized()

        # a new capture replaces the one in flight
        self.stop()
        with self._run_lock:
            ctx = self._open_context(opts)
            try:
                return self._run(ctx, target)
            finally:
                self._close_context(ctx)

    def _open_context(self, opts: CaptureOptions) -> CaptureContext:
        try:
            staging = tempfile.mkdtemp(prefix="page_capture_")
        except OSError as e:
            raise CaptureError(f"creating staging directory failed: {e}") from e
        session = self._session_factory(opts)
        cancel = CancelToken()
        cancel.on_cancel(session.close)
        progress = ProgressReporter(self._callback)
        ctx = CaptureContext(
            options=opts,
            session=session,
            store=ResourceStore(opts.max_files),
            progress=progress,
            cancel=cancel,
            staging_dir=staging,
        )
        with self._ctx_lock:
            self._ctx = ctx
            self._progress = progress
        return ctx

    def _close_context(self, ctx: CaptureContext) -> None:
        shutil.rmtree(ctx.staging_dir, ignore_errors=True)
        ctx.session.close()
        with self._ctx_lock:
            if self._ctx is ctx:
                self._ctx = None

    def _fetch_main(self, ctx: CaptureContext, target: str) -> Tuple[str, requests.Response]:
        last: Optional[FetchError] = None
        for attempt in range(MAIN_PAGE_ATTEMPTS):
            if attempt:
                ctx.progress.set_current_file(f"retrying ({attempt + 1}/{MAIN_PAGE_ATTEMPTS})")
                time.sleep(attempt * RETRY_BACKOFF)
            ctx.cancel.raise_if_cancelled()
            try:
                return download_page(ctx.session, target, ctx.options, ctx.options.client_timeout)
            except BlockedError as e:
                raise BlockedError(f"fetching main document failed: {e}") from e
            except FetchError as e:
                if ctx.cancel.cancelled:
                    raise CaptureCancelledError("capture stopped") from e
                logging.warning(
                    "attempt %d/%d for %s failed: %s", attempt + 1, MAIN_PAGE_ATTEMPTS, target, e
                )
                last = e
        raise FetchError(
            f"fetching main document failed after {MAIN_PAGE_ATTEMPTS} attempts: {last}"
        ) from last

    def _run(self, ctx: CaptureContext, target: str) -> CaptureResult:
        started = time.monotonic()
        opts = ctx.options
        ctx.progress.set_phase("analyzing", "fetching page", 0)
        logging.info("capturing %s", target)

        html, resp = self._fetch_main(ctx, target)
        final_url = resp.url or target
        base = target
        if final_url != target:
            logging.info("redirected: %s -> %s", target, final_url)
            base = final_url

        fetcher = ResourceFetcher(ctx.session, opts, ctx.store, ctx.progress, ctx.cancel)
        scheduler = DownloadScheduler(
            fetcher, ctx.store, ctx.progress, ctx.cancel, opts.max_concurrency
        )
        processor = DocumentProcessor(opts, base, scheduler, ctx.store, ctx.progress, ctx.cancel)
        try:
            content = processor.process(html)
        except CaptureError:
            raise
        except Exception as e:
            raise CaptureError(f"processing document failed: {e}") from e
        ctx.cancel.raise_if_cancelled()

        ctx.progress.set_phase("saving", "saving files", 85)
        archiver = Archiver(ctx.staging_dir)
        written = archiver.stage(content, ctx.store.values())
        ctx.cancel.raise_if_cancelled()

        ctx.progress.set_phase("saving", "creating archive", 90)
        archive_path, archive_size = archiver.build_zip(opts.archive_dir)
        ctx.progress.set_phase("complete", "capture complete", 100)

        snap = ctx.progress.snapshot()
        result = CaptureResult(
            status_code=resp.status_code,
            content_type=resp.headers.get("Content-Type", ""),
            content_length=len(html),
            content=content,
            headers=dict(resp.headers),
            final_url=final_url,
            duration_ms=int((time.monotonic() - started) * 1000),
            archive_path=archive_path,
            archive_size=archive_size,
            files_count=len(ctx.store) + 1,
            downloaded_files=written,
            file_details=snap.file_list,
            success_count=snap.completed_files,
            failed_count=snap.total_files - snap.completed_files,
        )
        logging.info(
            "capture complete: %d resources ok, %d failed, archive %s",
            result.success_count,
            result.failed_count,
            archive_path,
        )
        return result
