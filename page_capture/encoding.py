import codecs
import gzip
import logging
import re
import zlib
from typing import Optional

from charset_normalizer import from_bytes

META_CHARSET_RE = re.compile(rb"""charset\s*=\s*["']?([^"'\s/>;]+)""", re.IGNORECASE)
CSS_CHARSET_RE = re.compile(rb"""^\s*@charset\s+["']([^"']+)["']""", re.IGNORECASE)
HTML_MARKERS = ("<html", "<head", "<body", "<!doctype")

# tried in order when nothing declares a charset
FALLBACK_ENCODINGS = ("utf-8", "gbk", "gb18030", "big5", "cp1252", "latin-1")

ENCODING_ALIASES = {
    "utf8": "utf-8",
    "gb2312": "gbk",
    "sjis": "shift_jis",
    "shift-jis": "shift_jis",
    "latin1": "latin-1",
    "iso-8859-1": "latin-1",
    "windows-1252": "cp1252",
    "x-gbk": "gbk",
}


def encoding_by_name(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    n = name.strip().strip("\"'").lower()
    n = ENCODING_ALIASES.get(n, n)
    try:
        return codecs.lookup(n).name
    except LookupError:
        return None


def is_valid_utf8(data: bytes) -> bool:
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return True


def looks_like_html(text: str) -> bool:
    low = text[:4096].lower()
    return any(m in low for m in HTML_MARKERS)


def charset_from_content_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type or "charset=" not in content_type.lower():
        return None
    part = content_type.lower().split("charset=", 1)[1]
    return part.split(";")[0].strip().strip("\"'") or None


def _try_decode(body: bytes, name: Optional[str]) -> Optional[str]:
    enc = encoding_by_name(name)
    if enc is None:
        return None
    try:
        return body.decode(enc)
    except (UnicodeDecodeError, LookupError) as e:
        logging.debug("decode as %s failed: %s", enc, e)
        return None


def maybe_decompress(body: bytes, content_encoding: Optional[str] = None) -> bytes:
    ce = (content_encoding or "").lower()
    if body[:2] == b"\x1f\x8b" or "gzip" in ce:
        try:
            return gzip.decompress(body)
        except (OSError, EOFError, zlib.error) as e:
            logging.debug("gzip decompress failed: %s", e)
            return body
    if "deflate" in ce:
        for wbits in (zlib.MAX_WBITS, -zlib.MAX_WBITS):
            try:
                return zlib.decompress(body, wbits)
            except zlib.error:
                continue
    return body


def decode_document(
    body: bytes, content_type: Optional[str] = None, force_encoding: Optional[str] = None
) -> str:
    if force_encoding and force_encoding.lower() != "auto":
        text = _try_decode(body, force_encoding)
        if text is not None:
            return text
        logging.warning("forced encoding %s unusable, falling back", force_encoding)
        return body.decode("utf-8", errors="replace")
    return detect_and_decode(body, content_type, want_html=True)


def detect_and_decode(
    body: bytes, content_type: Optional[str] = None, *, want_html: bool = False
) -> str:
    if not body:
        return ""

    if is_valid_utf8(body):
        text = body.decode("utf-8")
        if not want_html or looks_like_html(text):
            return text
        logging.debug("valid UTF-8 without HTML markers, probing other charsets")

    declared = charset_from_content_type(content_type)
    if declared:
        text = _try_decode(body, declared)
        if text is not None:
            logging.debug("decoded with Content-Type charset %s", declared)
            return text

    head = body[:2048]
    m = META_CHARSET_RE.search(head) or CSS_CHARSET_RE.search(head)
    if m:
        name = m.group(1).decode("ascii", errors="ignore")
        text = _try_decode(body, name)
        if text is not None:
            logging.debug("decoded with in-document charset %s", name)
            return text

    best = from_bytes(body).best()
    if best is not None and best.encoding:
        text = _try_decode(body, best.encoding)
        if text is not None and (not want_html or looks_like_html(text)):
            logging.debug("decoded with detected charset %s", best.encoding)
            return text

    for name in FALLBACK_ENCODINGS:
        text = _try_decode(body, name)
        if text is None:
            continue
        if not want_html or looks_like_html(text):
            logging.debug("decoded with fallback charset %s", name)
            return text

    logging.debug("no charset fits, decoding as UTF-8 with replacement")
    return body.decode("utf-8", errors="replace")


def transcode_text(body: bytes, content_type: Optional[str] = None) -> bytes:
    if is_valid_utf8(body):
        return body
    return detect_and_decode(body, content_type).encode("utf-8")
