import hashlib
import posixpath
import re
from typing import Optional, Tuple
from urllib.parse import unquote, urlparse

INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')

NON_FETCHABLE_PREFIXES = ("#", "mailto:", "tel:", "javascript:", "data:", "blob:", "about:")


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if not u:
        return False
    if u.lower().startswith(NON_FETCHABLE_PREFIXES):
        return False
    return True


def _split_suffix(ref: str) -> Tuple[str, str]:
    cut = len(ref)
    for ch in ("?", "#"):
        i = ref.find(ch)
        if i != -1:
            cut = min(cut, i)
    return ref[:cut], ref[cut:]


def _collapse(path: str) -> str:
    trailing = path.endswith("/")
    out = posixpath.normpath(path)
    if out.startswith("//"):
        out = "/" + out.lstrip("/")
    if out == ".":
        out = "/"
    if trailing and not out.endswith("/"):
        out += "/"
    return out


def resolve_url(ref: Optional[str], base: Optional[str]) -> str:
    if not base or ref is None:
        return ""
    ref = ref.strip()
    if not can_fetch_url(ref):
        return ""
    b = urlparse(base)
    if not b.scheme or not b.netloc:
        return ""

    low = ref.lower()
    if low.startswith("http://") or low.startswith("https://"):
        return ref
    if ref.startswith("//"):
        return f"{b.scheme}:{ref}"
    if ref.startswith("/"):
        path, rest = _split_suffix(ref)
        return f"{b.scheme}://{b.netloc}{_collapse(path)}{rest}"

    base_dir = posixpath.dirname(b.path)
    if base_dir in (".", "/"):
        base_dir = ""
    while ref.startswith("./"):
        ref = ref[2:]
    path, rest = _split_suffix(ref)
    joined = f"{base_dir}/{path}" if path else f"{base_dir}/"
    if "/./" in joined or "/../" in joined or joined.endswith(("/.", "/..")):
        joined = _collapse(joined)
    return f"{b.scheme}://{b.netloc}{joined}{rest}"


def sanitize_filename(name: str) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", name)
    name = name or "file"
    if name.startswith("."):
        name = "_" + name[1:]
    return name[:200]


def filename_from_url(url: str) -> str:
    try:
        p = urlparse(url)
    except ValueError:
        return "unknown"
    name = posixpath.basename(unquote(p.path))
    if not name or name in (".", "..", "/"):
        return "index"
    return name


def short_h(url: str) -> str:
    return hashlib.md5(url.encode("utf-8")).hexdigest()[:8]


def full_h(data: str) -> str:
    return hashlib.md5(data.encode("utf-8")).hexdigest()
