import logging
import mimetypes
import posixpath
import re
from typing import Callable, List, Optional, Sequence
from urllib.parse import unquote, urlparse

from .urls import full_h, sanitize_filename

DEFAULT_EXTENSIONS = {
    "css": ".css",
    "js": ".js",
    "images": ".jpg",
    "videos": ".mp4",
    "fonts": ".woff2",
}

CATEGORY_EXTENSIONS = {
    "css": {".css"},
    "js": {".js", ".mjs"},
    "images": {".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico", ".bmp", ".avif"},
    "fonts": {".woff2", ".woff", ".ttf", ".otf", ".eot"},
}

VIDEO_EXTENSIONS = {
    ".mp4", ".avi", ".mov", ".wmv", ".flv", ".webm", ".mkv", ".m4v", ".3gp",
    ".ogv", ".ts", ".m3u8", ".f4v", ".asf", ".rm", ".rmvb", ".vob", ".mpg",
    ".mpeg", ".m2v", ".divx", ".xvid",
    # audio elements share the videos category
    ".mp3", ".m4a", ".aac", ".ogg", ".oga", ".wav", ".flac", ".opus",
}

KNOWN_EXTENSIONS = set(VIDEO_EXTENSIONS).union(*CATEGORY_EXTENSIONS.values())

INCORRECT_SUFFIXES = (
    ".download", ".tmp", ".temp", ".backup", ".bak", ".old", ".new",
    ".gz", ".zip", ".tar", ".rar", ".7z", ".bz2",
    ".map", ".dev", ".prod", ".test", ".debug", ".release",
    ".cache", ".lock", ".log", ".out", ".err",
    ".下载", ".临时", ".备份", ".缓存", ".测试",
    "下载", "临时", "备份", "缓存", "测试",
    ".part", ".crdownload", ".downloading",
    ".1", ".2", ".3", ".copy", ".orig",
)

MODIFIERS = {
    "min", "minified", "compressed",
    "bundle", "bundled",
    "dev", "development", "debug",
    "prod", "production", "release",
    "latest", "stable", "beta", "alpha",
    "full", "lite", "slim",
    "es5", "es6", "es2015", "es2017", "es2018",
    "umd", "cjs", "esm", "amd",
}

VERSION_RE = re.compile(r"^\d+(\.\d+)*$")

CONTENT_TYPE_EXTENSIONS = (
    ("text/css", ".css"),
    ("text/javascript", ".js"),
    ("application/javascript", ".js"),
    ("application/x-javascript", ".js"),
    ("image/jpeg", ".jpg"),
    ("image/png", ".png"),
    ("image/gif", ".gif"),
    ("image/webp", ".webp"),
    ("image/svg", ".svg"),
    ("image/avif", ".avif"),
    ("image/x-icon", ".ico"),
    ("image/vnd.microsoft.icon", ".ico"),
    ("font/woff2", ".woff2"),
    ("font/woff", ".woff"),
    ("application/font-woff", ".woff"),
    ("font/ttf", ".ttf"),
    ("application/x-font-ttf", ".ttf"),
    ("font/otf", ".otf"),
    ("video/mp4", ".mp4"),
    ("video/webm", ".webm"),
    ("video/quicktime", ".mov"),
    ("audio/mpeg", ".mp3"),
    ("audio/ogg", ".ogg"),
)

CSS_INDICATORS = (
    "{", "}", "color:", "background:", "font-", "margin:", "padding:",
    "@import", "@media", "@keyframes", "display:", "position:",
    "width:", "height:", "border:", "text-", "line-height:",
)
JS_INDICATORS = (
    "function", "var ", "let ", "const ", "return", "if(", "else",
    "document.", "window.", "console.", "alert(", "typeof",
    "null", "undefined", "true", "false", "this.", "prototype",
    "addeventlistener", "getelementbyid", "queryselector",
)

FILENAME_HINTS = (
    ".woff2", ".woff", ".jpeg", ".jpg", ".png", ".gif", ".webp", ".svg",
    ".ttf", ".otf", ".eot", ".mp4", ".webm", ".avi", ".mov", ".css", ".js",
)

JS_LIBRARY_HINTS = ("jquery", "bootstrap", "angular", "react", "vue", "lodash")
CSS_NAME_HINTS = ("style", "theme")

SAMPLE_SIZE = 2000


def default_extension(category: str) -> str:
    return DEFAULT_EXTENSIONS.get(category, ".txt")


def guess_ext_from_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    ct = content_type.split(";")[0].strip().lower()
    for prefix, ext in CONTENT_TYPE_EXTENSIONS:
        if ct.startswith(prefix):
            return ext
    if ct.startswith(("image/", "font/", "video/", "audio/")):
        return mimetypes.guess_extension(ct)
    return None


# -------------------- Classifiers --------------------
# Each returns an extension or None; the first confident answer wins.

Classifier = Callable[[str, bytes, Optional[str], str], Optional[str]]


def by_content_type(category: str, content: bytes, content_type: Optional[str], name: str) -> Optional[str]:
    return guess_ext_from_type(content_type)


def by_magic_bytes(category: str, content: bytes, content_type: Optional[str], name: str) -> Optional[str]:
    head = content[:16]
    if head[:2] == b"\xff\xd8":
        return ".jpg"
    if head[:4] == b"\x89PNG":
        return ".png"
    if head[:3] == b"GIF":
        return ".gif"
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return ".webp"
    if head[:4] == b"wOF2":
        return ".woff2"
    if head[:4] == b"wOFF":
        return ".woff"
    if head[:4] == b"OTTO":
        return ".otf"
    if head[:4] == b"\x00\x01\x00\x00" and category == "fonts":
        return ".ttf"
    if head[4:8] == b"ftyp":
        return ".mov" if head[8:12] in (b"qt  ", b"mov ") else ".mp4"
    if head[:4] == b"\x1a\x45\xdf\xa3":
        return ".webm"
    if head[:4] == b"RIFF" and head[8:12] == b"AVI ":
        return ".avi"
    return None


def _text_sample(content: bytes) -> Optional[str]:
    sample = content[:SAMPLE_SIZE]
    if not sample or b"\x00" in sample:
        return None
    return sample.decode("utf-8", errors="ignore").lower()


def keyword_score(text: str, indicators: Sequence[str]) -> int:
    return sum(1 for ind in indicators if ind in text)


def by_text_markers(category: str, content: bytes, content_type: Optional[str], name: str) -> Optional[str]:
    text = _text_sample(content)
    if text is None:
        return None
    if "<svg" in text or 'xmlns="http://www.w3.org/2000/svg"' in text:
        return ".svg"
    if "<html" in text or "<!doctype" in text:
        return ".html"
    css = keyword_score(text, CSS_INDICATORS)
    js = keyword_score(text, JS_INDICATORS)
    if css >= 3 or js >= 3:
        if css > js or (css == js and category == "css"):
            return ".css"
        return ".js"
    if category == "css" and css > 0:
        return ".css"
    if category == "js" and js > 0:
        return ".js"
    return None


def by_filename(category: str, content: bytes, content_type: Optional[str], name: str) -> Optional[str]:
    low = name.lower()
    for hint in FILENAME_HINTS:
        if hint in low:
            return ".jpg" if hint == ".jpeg" else hint
    if any(lib in low for lib in JS_LIBRARY_HINTS) and category != "css":
        return ".js"
    if any(h in low for h in CSS_NAME_HINTS) or ("bootstrap" in low and category == "css"):
        return ".css"
    return None


def by_default(category: str, content: bytes, content_type: Optional[str], name: str) -> Optional[str]:
    return default_extension(category)


CLASSIFIERS: List[Classifier] = [
    by_content_type,
    by_magic_bytes,
    by_text_markers,
    by_filename,
    by_default,
]


def detect_extension(
    category: str,
    content: bytes,
    content_type: Optional[str],
    name: str,
    classifiers: Sequence[Classifier] = CLASSIFIERS,
) -> str:
    for classify in classifiers:
        ext = classify(category, content, content_type, name)
        if ext:
            logging.debug("extension for %s: %s (%s)", name, ext, classify.__name__)
            return ext
    return default_extension(category)


# -------------------- Filename cleanup --------------------


def is_version_or_modifier(part: str) -> bool:
    return bool(VERSION_RE.match(part)) or part in MODIFIERS


def extract_main_filename(name: str) -> str:
    if not name:
        return ""
    parts = name.split(".")
    if len(parts) > 1:
        main = [p for p in parts if not is_version_or_modifier(p.lower())]
        if main:
            return ".".join(main)
    if "-" in name:
        first = name.split("-")[0]
        if len(first) > 2:
            return first
    return name


def remove_incorrect_extensions(name: str, category: str) -> str:
    result = name.split("?", 1)[0].split("#", 1)[0]
    changed = True
    while changed:
        changed = False
        for suffix in INCORRECT_SUFFIXES:
            if result.endswith(suffix):
                result = result[: -len(suffix)]
                changed = True
                break
        trimmed = result.rstrip(". ")
        if trimmed != result:
            result = trimmed
            changed = True
    result = extract_main_filename(result)
    if not result or result.startswith(".") or len(result) < 2:
        result = f"{category}_{full_h(name)[:8]}"
    return result


HTML_LIKE_EXTENSIONS = {".html", ".htm", ".php", ".asp", ".aspx", ".jsp", ".jspx", ".cfm", ".txt"}


def strip_known_extension(name: str) -> str:
    root, ext = posixpath.splitext(name)
    while root and (ext.lower() in KNOWN_EXTENSIONS or ext.lower() in HTML_LIKE_EXTENSIONS):
        name = root
        root, ext = posixpath.splitext(name)
    return name


# -------------------- Local paths --------------------


def has_category_extension(name: str, category: str) -> bool:
    ext = posixpath.splitext(name)[1].lower()
    if category == "videos":
        return ext in VIDEO_EXTENSIONS
    return ext in CATEGORY_EXTENSIONS.get(category, {default_extension(category)})


def local_path_for(url: str, category: str, correct_names: bool = False) -> str:
    try:
        name = posixpath.basename(unquote(urlparse(url).path))
    except ValueError:
        name = ""
    if name in ("", ".", ".."):
        name = full_h(url) + default_extension(category)
    if correct_names:
        name = remove_incorrect_extensions(name, category)
    name = sanitize_filename(name)
    if not has_category_extension(name, category):
        if category == "videos":
            if "." not in name:
                name += default_extension(category)
        else:
            name += default_extension(category)
    return f"static/{category}/{name}"


def correct_file_extension(
    local_path: str, category: str, content: bytes, content_type: Optional[str]
) -> str:
    directory, name = posixpath.split(local_path)
    name = name.split("?", 1)[0].split("#", 1)[0]
    ext = detect_extension(category, content, content_type, name)
    if name.lower().endswith(ext):
        return posixpath.join(directory, name)
    stem = strip_known_extension(remove_incorrect_extensions(name, category))
    fixed = posixpath.join(directory, stem + ext)
    logging.debug("corrected file name %s -> %s", local_path, fixed)
    return fixed
