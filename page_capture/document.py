import logging
import posixpath
import re
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

from bs4 import BeautifulSoup

from .cancel import CancelToken
from .config import CaptureOptions
from .extensions import local_path_for
from .progress import ProgressReporter
from .sanitizer import Sanitizer
from .scheduler import DownloadResult, DownloadScheduler, DownloadTask
from .store import ResourceStore
from .urls import resolve_url

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
# only the bare string form; @import url(...) is covered by CSS_URL_RE
CSS_IMPORT_RE = re.compile(r"@import\s+([\"'])([^\"']+)\1", re.IGNORECASE)
FONT_FACE_RE = re.compile(r"@font-face\s*\{[^}]*\}", re.IGNORECASE)
META_CHARSET_VALUE_RE = re.compile(r"charset\s*=\s*[^;\s]+", re.IGNORECASE)

FONT_EXTENSIONS = (".woff2", ".woff", ".ttf", ".otf", ".eot")

# kind of reference found in CSS text -> resource category
CSS_REF_CATEGORIES = {"import": "css", "font": "fonts", "url": "images"}

# stylesheet dependency passes after the first download round
CSS_PASSES = 2

# (selector, attribute, category, option flag)
ELEMENT_SOURCES = (
    ("link[rel~=stylesheet][href]", "href", "css", "include_styles"),
    ("script[src]", "src", "js", "include_scripts"),
    ("img[src]", "src", "images", "include_images"),
    ("video[src]", "src", "videos", "include_videos"),
    ("video source[src]", "src", "videos", "include_videos"),
    ("audio[src]", "src", "videos", "include_videos"),
    ("audio source[src]", "src", "videos", "include_videos"),
    ("link[rel~=preload][as=font][href]", "href", "fonts", "include_fonts"),
)

CATEGORY_FLAGS = {
    "css": "include_styles",
    "js": "include_scripts",
    "images": "include_images",
    "videos": "include_videos",
    "fonts": "include_fonts",
}

# -------------------- HTML utils --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception as e:
        logging.debug("lxml parser unavailable (%s), using html.parser", e)
        return BeautifulSoup(html, "html.parser")


def serialize_html(soup: BeautifulSoup) -> str:
    return soup.decode(formatter="minimal")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag is not None:
        resolved = resolve_url(tag["href"], fallback)
        if resolved:
            return resolved
    return fallback


def force_utf8_meta(soup: BeautifulSoup) -> None:
    """The saved document is always UTF-8; make its declaration agree."""
    for meta in soup.find_all("meta"):
        charset = meta.get("charset")
        if charset is not None:
            if charset.strip().lower() not in ("utf-8", "utf8"):
                meta["charset"] = "utf-8"
            continue
        if (meta.get("http-equiv") or "").strip().lower() == "content-type":
            content = meta.get("content") or ""
            m = META_CHARSET_VALUE_RE.search(content)
            if m and m.group(0).split("=", 1)[1].strip().lower() not in ("utf-8", "utf8"):
                meta["content"] = META_CHARSET_VALUE_RE.sub("charset=utf-8", content)


# -------------------- CSS references --------------------


def _font_spans(text: str) -> List[Tuple[int, int]]:
    return [m.span() for m in FONT_FACE_RE.finditer(text)]


def _ref_kind(text: str, m: "re.Match[str]", spans: List[Tuple[int, int]]) -> str:
    if text[max(0, m.start() - 32) : m.start()].rstrip().lower().endswith("@import"):
        return "import"
    ref = m.group(2).lower()
    if any(s <= m.start() < e for s, e in spans) and any(x in ref for x in FONT_EXTENSIONS):
        return "font"
    return "url"


def iter_css_refs(text: str) -> Iterator[Tuple[str, str]]:
    """Yield (reference, kind) for every url() and @import in CSS text."""
    spans = _font_spans(text)
    for m in CSS_URL_RE.finditer(text):
        yield m.group(2).strip(), _ref_kind(text, m, spans)
    for m in CSS_IMPORT_RE.finditer(text):
        yield m.group(2).strip(), "import"


CssMapper = Callable[[str, str], Optional[str]]


def rewrite_css_refs(text: str, mapper: CssMapper) -> str:
    """Replace references for which mapper returns a new value."""
    spans = _font_spans(text)

    def repl_url(m: "re.Match[str]") -> str:
        q = m.group(1) or ""
        new = mapper(m.group(2).strip(), _ref_kind(text, m, spans))
        if new is None:
            return m.group(0)
        return f"url({q}{new}{q})"

    def repl_import(m: "re.Match[str]") -> str:
        q = m.group(1)
        new = mapper(m.group(2).strip(), "import")
        if new is None:
            return m.group(0)
        return f"@import {q}{new}{q}"

    t = CSS_URL_RE.sub(repl_url, text)
    return CSS_IMPORT_RE.sub(repl_import, t)


# -------------------- Pretty printer --------------------

PROTECTED_RE = re.compile(
    r"<!--.*?-->|<(script|style|pre|textarea)\b[^>]*>.*?</\1\s*>",
    re.IGNORECASE | re.DOTALL,
)
PLACEHOLDER_RE = re.compile(r"\x00KEEP(\d+)\x00")
OPEN_TAG_RE = re.compile(r"<([a-zA-Z][\w:-]*)(?:\s[^<>]*)?(?<!/)>")
CLOSE_TAG_RE = re.compile(r"</[a-zA-Z][\w:-]*\s*>")

VOID_TAGS = {
    "area", "base", "br", "col", "embed", "hr", "img", "input",
    "link", "meta", "param", "source", "track", "wbr",
}
BLOCK_TAGS = (
    "div", "p", "h1", "h2", "h3", "h4", "h5", "h6", "ul", "ol", "li",
    "nav", "section", "article", "header", "footer", "main",
)
BLOCK_OPEN_RES = [re.compile(rf"(<{t}\b)", re.IGNORECASE) for t in BLOCK_TAGS]
BLOCK_CLOSE_RES = [re.compile(rf"(</{t}\s*>)", re.IGNORECASE) for t in BLOCK_TAGS]


def format_html(html: str) -> str:
    """Put tags on their own lines with two-space indentation.

    Bodies of script, style, pre and textarea elements and comments are
    written back verbatim.
    """
    saved: List[str] = []

    def stash(m: "re.Match[str]") -> str:
        saved.append(m.group(0))
        return f"\n\x00KEEP{len(saved) - 1}\x00\n"

    text = PROTECTED_RE.sub(stash, html)
    text = text.replace("><", ">\n<")
    for rx in BLOCK_OPEN_RES:
        text = rx.sub(r"\n\1", text)
    for rx in BLOCK_CLOSE_RES:
        text = rx.sub(r"\1\n", text)

    out: List[str] = []
    indent = 0
    for raw in text.split("\n"):
        line = raw.strip()
        if not line:
            continue
        opens = sum(1 for name in OPEN_TAG_RE.findall(line) if name.lower() not in VOID_TAGS)
        closes = len(CLOSE_TAG_RE.findall(line))
        if line.startswith("</"):
            indent = max(0, indent - 1)
            closes -= 1
        out.append("  " * indent + line)
        indent = max(0, indent + opens - closes)

    result = "\n".join(out)
    return PLACEHOLDER_RE.sub(lambda m: saved[int(m.group(1))], result)


# -------------------- Processor --------------------


class DocumentProcessor:
    def __init__(
        self,
        options: CaptureOptions,
        base_url: str,
        scheduler: DownloadScheduler,
        store: ResourceStore,
        progress: ProgressReporter,
        cancel: CancelToken,
    ):
        self.options = options
        self.base_url = base_url
        self.scheduler = scheduler
        self.store = store
        self.progress = progress
        self.cancel = cancel
        self.task_count = 0

    def wants(self, category: str) -> bool:
        flag = CATEGORY_FLAGS.get(category)
        return bool(flag and getattr(self.options, flag))

    def process(self, html: str) -> str:
        self.progress.set_phase("analyzing", "parsing document", 0)
        soup = bs4_parse(html)
        base = effective_base_url(soup, self.base_url)

        self.progress.set_phase("analyzing", "collecting resources", 10)
        tasks = self.collect_tasks(soup, base)
        self.task_count = len(tasks)
        logging.info("found %d resources", len(tasks))

        if tasks:
            self.progress.register_files((t.url, t.category) for t in tasks)
            results = self.scheduler.run(tasks)
            ok = self.apply_results(results)
            logging.info("downloaded %d/%d resources", ok, len(tasks))
            self.process_stylesheets(results, {t.url for t in tasks})

        self.rewrite_style_blocks(soup, base)
        force_utf8_meta(soup)
        if self.options.sanitize:
            Sanitizer(self.options).apply(soup)
        return format_html(serialize_html(soup))

    # -------------------- discovery --------------------

    def collect_tasks(self, soup: BeautifulSoup, base: str) -> List[DownloadTask]:
        tasks: Dict[str, DownloadTask] = {}

        def add(url: str, category: str, target: Optional[Tuple[object, str]] = None) -> None:
            task = tasks.get(url)
            if task is None:
                task = tasks[url] = DownloadTask(url, category)
            if target is not None:
                task.targets.append(target)

        for selector, attr, category, flag in ELEMENT_SOURCES:
            if not getattr(self.options, flag):
                continue
            for tag in soup.select(selector):
                absu = resolve_url(tag.get(attr), base)
                if not absu:
                    logging.debug("skip unresolvable %s=%r", attr, tag.get(attr))
                    continue
                add(absu, category, (tag, attr))

        for style in soup.find_all("style"):
            text = style.string
            if not text:
                continue
            for ref, kind in iter_css_refs(text):
                category = self._inline_category(kind)
                if category is None:
                    continue
                absu = resolve_url(ref, base)
                if absu:
                    add(absu, category)
        return list(tasks.values())

    def _inline_category(self, kind: str) -> Optional[str]:
        if kind == "font" and self.options.include_fonts:
            return "fonts"
        if kind in ("font", "url") and self.options.include_images:
            return "images"
        return None

    # -------------------- rewriting --------------------

    def apply_results(self, results: List[DownloadResult]) -> int:
        ok = 0
        for res in results:
            if not res.success or not res.local_path:
                continue
            ok += 1
            for tag, attr in res.task.targets:
                tag[attr] = res.local_path
                for rm in ("integrity", "crossorigin"):
                    if rm in tag.attrs:
                        del tag.attrs[rm]
        return ok

    def _local_for(self, absu: str, category: str) -> Optional[str]:
        info = self.store.get(absu)
        if info is not None:
            return info.local_path
        if self.options.keep_remote_on_failure:
            return None
        candidate = local_path_for(absu, category, self.options.correct_file_names)
        return self.store.path_for(absu, candidate)

    def rewrite_style_blocks(self, soup: BeautifulSoup, base: str) -> None:
        def mapper(ref: str, kind: str) -> Optional[str]:
            category = self._inline_category(kind)
            if category is None and kind != "import":
                return None
            absu = resolve_url(ref, base)
            if not absu:
                return None
            if category is None:
                # inline @import is not downloaded, only made absolute
                return absu
            return self._local_for(absu, category) or absu

        for style in soup.find_all("style"):
            text = style.string
            if not text:
                continue
            new_text = rewrite_css_refs(str(text), mapper)
            if new_text != text:
                style.string = new_text

    def rewrite_stylesheet(self, css_url: str, downloaded: bool = True) -> None:
        info = self.store.get(css_url)
        if info is None:
            return
        rel_dir = posixpath.dirname(info.local_path)

        def mapper(ref: str, kind: str) -> Optional[str]:
            absu = resolve_url(ref, css_url)
            if not absu:
                return None
            category = CSS_REF_CATEGORIES[kind]
            if not self.wants(category):
                return absu
            if downloaded:
                local = self._local_for(absu, category)
            else:
                found = self.store.get(absu)
                local = found.local_path if found is not None else None
            if local is None:
                return absu
            return posixpath.relpath(local, rel_dir)

        text = info.content.decode("utf-8", errors="replace")
        new_text = rewrite_css_refs(text, mapper)
        if new_text != text:
            self.store.replace_content(css_url, new_text.encode("utf-8"))

    def process_stylesheets(self, results: List[DownloadResult], scheduled: Set[str]) -> None:
        """Fetch what downloaded stylesheets reference and point them at local copies.

        URLs in scheduled were already attempted in this capture and are not
        fetched again, whatever their outcome.
        """
        pending = [r.task.url for r in results if r.success and r.task.category == "css"]
        done: Set[str] = set()
        for _ in range(CSS_PASSES):
            pending = [u for u in pending if u not in done]
            if not pending or self.cancel.cancelled:
                break
            new_tasks: Dict[str, DownloadTask] = {}
            for css_url in pending:
                info = self.store.get(css_url)
                if info is None:
                    continue
                text = info.content.decode("utf-8", errors="replace")
                for ref, kind in iter_css_refs(text):
                    category = CSS_REF_CATEGORIES[kind]
                    if not self.wants(category):
                        continue
                    absu = resolve_url(ref, css_url)
                    if not absu or absu in scheduled:
                        continue
                    scheduled.add(absu)
                    new_tasks[absu] = DownloadTask(absu, category)

            next_pending: List[str] = []
            if new_tasks:
                logging.info("stylesheets reference %d more resources", len(new_tasks))
                self.task_count += len(new_tasks)
                self.progress.add_files((t.url, t.category) for t in new_tasks.values())
                more = self.scheduler.run(list(new_tasks.values()))
                next_pending = [r.task.url for r in more if r.success and r.task.category == "css"]

            for css_url in pending:
                self.rewrite_stylesheet(css_url)
                done.add(css_url)
            pending = next_pending

        # stylesheets imported in the last pass only link what is already stored
        for css_url in pending:
            if css_url not in done:
                self.rewrite_stylesheet(css_url, downloaded=False)
