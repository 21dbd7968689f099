from __future__ import annotations

import gzip
import unittest
import zlib

from page_capture.encoding import (
    charset_from_content_type,
    decode_document,
    detect_and_decode,
    encoding_by_name,
    maybe_decompress,
    transcode_text,
)

GBK_PAGE = '<html><head><meta charset="gbk"></head><body>中文内容</body></html>'


class TestDecodeDocument(unittest.TestCase):
    def test_utf8_passes_through(self) -> None:
        html = "<html><body>héllo</body></html>"
        self.assertEqual(decode_document(html.encode("utf-8")), html)

    def test_meta_charset(self) -> None:
        text = decode_document(GBK_PAGE.encode("gbk"))
        self.assertIn("中文内容", text)

    def test_content_type_charset(self) -> None:
        body = "<html><body>中文内容</body></html>".encode("gbk")
        text = decode_document(body, "text/html; charset=GBK")
        self.assertIn("中文内容", text)

    def test_forced_encoding(self) -> None:
        body = "<html><body>中文内容</body></html>".encode("gbk")
        self.assertIn("中文内容", decode_document(body, None, "gb2312"))

    def test_unusable_forced_encoding_falls_back(self) -> None:
        text = decode_document(b"<html>ok</html>", None, "no-such-charset")
        self.assertEqual(text, "<html>ok</html>")

    def test_empty(self) -> None:
        self.assertEqual(detect_and_decode(b""), "")


class TestHelpers(unittest.TestCase):
    def test_encoding_by_name(self) -> None:
        self.assertEqual(encoding_by_name("UTF8"), "utf-8")
        self.assertEqual(encoding_by_name("gb2312"), "gbk")
        self.assertEqual(encoding_by_name("'latin1'"), "iso8859-1")
        self.assertIsNone(encoding_by_name("bogus"))
        self.assertIsNone(encoding_by_name(None))

    def test_charset_from_content_type(self) -> None:
        self.assertEqual(charset_from_content_type('text/html; charset="UTF-8"'), "utf-8")
        self.assertIsNone(charset_from_content_type("text/html"))
        self.assertIsNone(charset_from_content_type(None))

    def test_maybe_decompress(self) -> None:
        self.assertEqual(maybe_decompress(gzip.compress(b"hello")), b"hello")
        self.assertEqual(maybe_decompress(b"plain"), b"plain")
        self.assertEqual(maybe_decompress(zlib.compress(b"x" * 10), "deflate"), b"x" * 10)
        raw = zlib.compressobj(wbits=-zlib.MAX_WBITS)
        body = raw.compress(b"raw deflate") + raw.flush()
        self.assertEqual(maybe_decompress(body, "deflate"), b"raw deflate")

    def test_corrupt_gzip_is_returned_unchanged(self) -> None:
        body = b"\x1f\x8bnot really gzip"
        self.assertEqual(maybe_decompress(body), body)

    def test_transcode_text(self) -> None:
        css = "body{content:'中'}"
        self.assertEqual(transcode_text(css.encode("utf-8")), css.encode("utf-8"))
        out = transcode_text(css.encode("gbk"), "text/css; charset=gbk")
        self.assertEqual(out, css.encode("utf-8"))

    def test_css_charset_rule(self) -> None:
        css = '@charset "gbk";\nbody{content:"中文"}'
        out = transcode_text(css.encode("gbk"))
        self.assertIn("中文".encode("utf-8"), out)


if __name__ == "__main__":
    unittest.main()
