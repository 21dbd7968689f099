import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from http.cookiejar import LoadError, MozillaCookieJar
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .cancel import CancelToken
from .config import (
    ASSET_HEADERS,
    CHUNK_HEADERS,
    DOCUMENT_HEADERS,
    USER_AGENT,
    VIDEO_HEADERS,
    VIDEO_TIMEOUT,
    CaptureOptions,
)
from .encoding import decode_document, maybe_decompress, transcode_text
from .errors import BlockedError, CaptureCancelledError, ChunkDownloadError, FetchError
from .extensions import correct_file_extension, local_path_for
from .media import validate_video
from .progress import ProgressReporter
from .store import ResourceInfo, ResourceStore

MIB = 1024 * 1024

CHUNK_SIZE = 2 * MIB
CHUNK_WORKERS = 4
VIDEO_CHUNK_THRESHOLD = 5 * MIB
CHUNK_THRESHOLD = 10 * MIB
STREAM_THRESHOLD = 1 * MIB
READ_BLOCK = 32 * 1024

BLOCK_SIGNATURES = ("access denied", "forbidden", "blocked", "captcha")

MAX_REDIRECTS = 10


# -------------------- Session --------------------


def build_session(options: Optional[CaptureOptions] = None) -> requests.Session:
    s = requests.Session()
    # connect errors only; statuses and read failures are handled by the callers
    retry = Retry(
        total=2,
        connect=2,
        read=0,
        status=0,
        backoff_factor=0.5,
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=64, pool_maxsize=64)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.max_redirects = MAX_REDIRECTS
    s.headers.update({"User-Agent": USER_AGENT})
    if options is not None:
        apply_session_options(s, options)
    return s


def apply_session_options(session: requests.Session, options: CaptureOptions) -> None:
    for h in options.extra_headers:
        if ":" not in h:
            logging.warning("invalid header (no colon): %s", h)
            continue
        k, v = h.split(":", 1)
        session.headers[k.strip()] = v.strip()
    if options.cookies_file:
        try:
            jar = MozillaCookieJar()
            jar.load(options.cookies_file, ignore_discard=True, ignore_expires=True)
            session.cookies.update(jar)
            logging.info("loaded cookies: %s", options.cookies_file)
        except (OSError, LoadError) as e:
            logging.error("failed to load cookies: %s", e)


def headers_for(category: str) -> Dict[str, str]:
    if category == "videos":
        return dict(VIDEO_HEADERS)
    return dict(ASSET_HEADERS)


def content_length(resp: requests.Response) -> int:
    cl = resp.headers.get("Content-Length")
    if not cl:
        return -1
    try:
        return int(cl)
    except ValueError:
        return -1


def site_root(url: str) -> Optional[str]:
    p = urlparse(url)
    if not p.scheme or not p.netloc:
        return None
    return f"{p.scheme}://{p.netloc}/"


def is_blocked(text: str) -> bool:
    low = text.lower()
    return any(sig in low for sig in BLOCK_SIGNATURES)


# -------------------- Main document --------------------


def download_page(
    session: requests.Session, url: str, options: CaptureOptions, timeout: float
) -> Tuple[str, requests.Response]:
    """Fetch and decode the main document.

    Raises FetchError for anything worth retrying and BlockedError when the
    body looks like an anti-bot page. With redirects off, a 3xx answer is
    returned as the document.
    """
    headers = dict(DOCUMENT_HEADERS)
    root = site_root(url)
    if root:
        headers["Referer"] = root
    try:
        resp = session.get(
            url, headers=headers, timeout=timeout, allow_redirects=options.follow_redirects
        )
    except requests.RequestException as e:
        raise FetchError(f"request for {url} failed: {e}") from e

    logging.debug("GET %s -> %s (%d)", url, resp.url, resp.status_code)
    if resp.status_code < 200 or resp.status_code >= 400:
        raise FetchError(f"HTTP {resp.status_code} for {url}")
    body = resp.content
    if resp.status_code >= 300:
        # redirects are off; the redirect response itself is the document
        logging.info(
            "not following HTTP %d to %s", resp.status_code, resp.headers.get("Location", "?")
        )
        if not body:
            return "", resp
    elif not body:
        raise FetchError(f"empty response body for {url}")
    body = maybe_decompress(body)
    text = decode_document(body, resp.headers.get("Content-Type"), options.force_encoding)
    if is_blocked(text):
        raise BlockedError(f"{url} refused access (anti-bot page)")
    return text, resp


# -------------------- Resources --------------------


def use_chunks(category: str, total: int) -> bool:
    if total <= 0:
        return False
    if category == "videos" and total > VIDEO_CHUNK_THRESHOLD:
        return True
    return total > CHUNK_THRESHOLD


class ResourceFetcher:
    def __init__(
        self,
        session: requests.Session,
        options: CaptureOptions,
        store: ResourceStore,
        progress: ProgressReporter,
        cancel: CancelToken,
        timeout: Optional[float] = None,
    ):
        self.session = session
        self.options = options
        self.store = store
        self.progress = progress
        self.cancel = cancel
        self.timeout = timeout if timeout is not None else options.client_timeout

    def fetch(self, url: str, category: str) -> str:
        """Download one resource into the store and return its local path, or ""."""
        existing = self.store.get(url)
        if existing is not None:
            return existing.local_path
        if self.store.is_full():
            return ""
        try:
            content, content_type = self._download(url, category)
        except CaptureCancelledError:
            logging.debug("download cancelled: %s", url)
            return ""
        except (requests.RequestException, OSError, ChunkDownloadError) as e:
            logging.warning("error downloading %s: %s", url, e)
            return ""
        if content is None:
            return ""
        if not content:
            logging.warning("empty response %s", url)
            return ""
        return self._store(url, category, content, content_type)

    def _store(self, url: str, category: str, content: bytes, content_type: Optional[str]) -> str:
        self.progress.update_size(url, len(content))

        if category == "videos":
            if validate_video(content, url):
                logging.debug("video looks complete: %s", url)
            else:
                logging.warning("video failed validation, keeping it anyway: %s", url)

        if category in ("css", "js"):
            content = transcode_text(content, content_type)

        local_path = local_path_for(url, category, self.options.correct_file_names)
        if self.options.correct_file_names:
            local_path = correct_file_extension(local_path, category, content, content_type)

        stored = self.store.put_if_absent(
            ResourceInfo(
                url=url,
                local_path=local_path,
                category=category,
                content=content,
                content_type=content_type,
            )
        )
        if stored is None:
            logging.debug("resource limit reached, dropping %s", url)
            return ""
        logging.debug("downloaded %s -> %s", url, stored.local_path)
        return stored.local_path

    def _get(self, url: str, headers: Dict[str, str], timeout: float) -> requests.Response:
        self.cancel.raise_if_cancelled()
        return self.session.get(url, headers=headers, timeout=timeout, stream=True)

    def _download(self, url: str, category: str) -> Tuple[Optional[bytes], Optional[str]]:
        """Return (body, content type); body is None when a bad status was already logged."""
        timeout = VIDEO_TIMEOUT if category == "videos" else self.timeout
        headers = headers_for(category)

        resp = self._get(url, headers, timeout)
        if resp.status_code == 206 and category == "videos":
            resp.close()
            logging.debug("partial content for %s, requesting the whole video", url)
            resp = self._get(url, VIDEO_HEADERS, timeout)
            if resp.status_code != 200:
                resp.close()
                logging.warning("failed %s -> HTTP %s on full request", url, resp.status_code)
                return None, None
        elif resp.status_code not in (200, 206):
            resp.close()
            logging.warning("failed %s -> HTTP %s", url, resp.status_code)
            return None, None

        content_type = resp.headers.get("Content-Type")
        with resp:
            total = content_length(resp)
            self.progress.update_download(url, 0, max(total, 0))

            if use_chunks(category, total):
                resp.close()
                try:
                    return self._download_chunks(url, total, timeout), content_type
                except ChunkDownloadError as e:
                    self.cancel.raise_if_cancelled()
                    logging.warning("chunked download of %s failed (%s), streaming instead", url, e)
                with self._get(url, headers, timeout) as again:
                    if again.status_code != 200:
                        logging.warning("failed %s -> HTTP %s", url, again.status_code)
                        return None, content_type
                    return self._read_monitored(url, again, total), content_type

            if total < 0 or total > STREAM_THRESHOLD:
                return self._read_monitored(url, resp, total), content_type

            content = resp.content
            self.progress.update_download(url, len(content), len(content), progress=100)
            return content, content_type

    def _read_monitored(self, url: str, resp: requests.Response, total: int) -> bytes:
        buf = bytearray()
        last = 0
        for block in resp.iter_content(chunk_size=READ_BLOCK):
            self.cancel.raise_if_cancelled()
            if not block:
                continue
            buf.extend(block)
            if total > 0:
                pct = min(100, len(buf) * 100 // total)
                if pct >= last + 5 or pct == 100:
                    self.progress.update_download(url, len(buf), total, progress=pct)
                    last = pct
            else:
                self.progress.update_download(url, len(buf), 0)
        if total <= 0 and buf:
            self.progress.update_download(url, len(buf), len(buf), progress=100)
        return bytes(buf)

    # -------------------- chunked --------------------

    def _fetch_chunk(self, url: str, index: int, total: int, timeout: float) -> bytes:
        start = index * CHUNK_SIZE
        end = min(start + CHUNK_SIZE, total) - 1
        if self.cancel.cancelled:
            raise ChunkDownloadError(f"chunk {index} cancelled")
        headers = dict(CHUNK_HEADERS)
        headers["Range"] = f"bytes={start}-{end}"
        try:
            resp = self.session.get(url, headers=headers, timeout=timeout)
        except requests.RequestException as e:
            raise ChunkDownloadError(f"chunk {index}: {e}") from e
        if resp.status_code != 206:
            raise ChunkDownloadError(f"chunk {index}: HTTP {resp.status_code}, range ignored")
        data = resp.content
        if len(data) != end - start + 1:
            raise ChunkDownloadError(
                f"chunk {index}: expected {end - start + 1} bytes, got {len(data)}"
            )
        if self.cancel.cancelled:
            raise ChunkDownloadError(f"chunk {index} cancelled")
        return data

    def _download_chunks(self, url: str, total: int, timeout: float) -> bytes:
        n = (total + CHUNK_SIZE - 1) // CHUNK_SIZE
        logging.debug("chunked download of %s: %d chunks", url, n)
        parts: List[Optional[bytes]] = [None] * n
        done = 0
        got = 0
        with ThreadPoolExecutor(max_workers=CHUNK_WORKERS) as pool:
            futures = {pool.submit(self._fetch_chunk, url, i, total, timeout): i for i in range(n)}
            try:
                for fut in as_completed(futures):
                    i = futures[fut]
                    parts[i] = fut.result()
                    done += 1
                    got += len(parts[i])
                    self.progress.update_download(url, got, total, progress=done * 100 // n)
                    logging.debug("chunk %d/%d of %s done", i + 1, n, url)
            except ChunkDownloadError:
                for f in futures:
                    f.cancel()
                raise
        return b"".join(p for p in parts if p is not None)
