from __future__ import annotations

import unittest
from typing import Dict, Tuple

from bs4 import BeautifulSoup

from page_capture.cancel import CancelToken
from page_capture.config import CaptureOptions
from page_capture.document import (
    DocumentProcessor,
    bs4_parse,
    effective_base_url,
    force_utf8_meta,
    format_html,
    iter_css_refs,
    rewrite_css_refs,
)
from page_capture.fetcher import ResourceFetcher
from page_capture.progress import ProgressReporter
from page_capture.scheduler import DownloadScheduler
from page_capture.store import ResourceStore
from page_capture.urls import short_h

from .fakes import PNG, FakeResponse, FakeSession

BASE = "https://ex.com/page/index.html"


def make_processor(
    routes: Dict[str, object], **opts: object
) -> Tuple[DocumentProcessor, FakeSession, ResourceStore, ProgressReporter]:
    options = CaptureOptions(**opts).normalized()
    session = FakeSession(routes)
    store = ResourceStore(options.max_files)
    progress = ProgressReporter()
    cancel = CancelToken()
    fetcher = ResourceFetcher(session, options, store, progress, cancel)
    scheduler = DownloadScheduler(fetcher, store, progress, cancel, options.max_concurrency)
    proc = DocumentProcessor(options, BASE, scheduler, store, progress, cancel)
    return proc, session, store, progress


class TestCollectTasks(unittest.TestCase):
    HTML = (
        "<html><head>"
        '<link rel="stylesheet" href="/css/site.css">'
        '<link rel="preload" as="font" href="/f/a.woff2">'
        '<link rel="icon" href="/favicon.ico">'
        "<style>body{background:url('/img/bg.png')}</style>"
        "</head><body>"
        '<script src="app.js"></script>'
        '<img src="/img/a.png"><img src="/img/a.png">'
        '<img src="data:image/png;base64,AAAA">'
        '<video src="/v/a.mp4"><source src="/v/b.webm"></video>'
        '<audio><source src="/v/c.mp3"></audio>'
        "</body></html>"
    )

    def test_everything_enabled(self) -> None:
        proc, _, _, _ = make_processor({}, include_fonts=True, include_videos=True)
        soup = bs4_parse(self.HTML)
        tasks = {t.url: t for t in proc.collect_tasks(soup, BASE)}
        self.assertEqual(
            {u: t.category for u, t in tasks.items()},
            {
                "https://ex.com/css/site.css": "css",
                "https://ex.com/page/app.js": "js",
                "https://ex.com/img/a.png": "images",
                "https://ex.com/img/bg.png": "images",
                "https://ex.com/v/a.mp4": "videos",
                "https://ex.com/v/b.webm": "videos",
                "https://ex.com/v/c.mp3": "videos",
                "https://ex.com/f/a.woff2": "fonts",
            },
        )
        self.assertEqual(len(tasks["https://ex.com/img/a.png"].targets), 2)
        self.assertEqual(tasks["https://ex.com/img/bg.png"].targets, [])

    def test_defaults_skip_fonts_and_videos(self) -> None:
        proc, _, _, _ = make_processor({})
        cats = {t.category for t in proc.collect_tasks(bs4_parse(self.HTML), BASE)}
        self.assertEqual(cats, {"css", "js", "images"})

    def test_everything_disabled(self) -> None:
        proc, session, _, _ = make_processor(
            {}, include_images=False, include_styles=False, include_scripts=False
        )
        self.assertEqual(proc.collect_tasks(bs4_parse(self.HTML), BASE), [])
        out = proc.process(self.HTML)
        self.assertIn('href="/css/site.css"', out)
        self.assertIn('src="/img/a.png"', out)
        self.assertIn("url('/img/bg.png')", out)
        self.assertEqual(session.calls, [])

    def test_base_href(self) -> None:
        soup = bs4_parse('<head><base href="https://cdn.ex.com/assets/"></head>')
        self.assertEqual(effective_base_url(soup, BASE), "https://cdn.ex.com/assets/")
        self.assertEqual(effective_base_url(bs4_parse("<p>x</p>"), BASE), BASE)


class TestProcess(unittest.TestCase):
    def test_rewrites_downloaded_references(self) -> None:
        html = (
            "<html><head>"
            '<link rel="stylesheet" href="/css/site.css" integrity="sha384-x" crossorigin="anonymous">'
            '</head><body><script src="/js/app.js"></script>'
            '<img src="/img/a.png"><img src="/img/a.png">'
            '<img src="/img/missing.png">'
            "</body></html>"
        )
        proc, session, store, progress = make_processor(
            {
                "https://ex.com/css/site.css": FakeResponse(b"body{color:red}", content_type="text/css"),
                "https://ex.com/js/app.js": FakeResponse(b"var a=1;", content_type="text/javascript"),
                "https://ex.com/img/a.png": FakeResponse(PNG, content_type="image/png"),
            }
        )
        out = proc.process(html)
        self.assertIn('href="static/css/site.css"', out)
        self.assertIn('src="static/js/app.js"', out)
        self.assertEqual(out.count('src="static/images/a.png"'), 2)
        self.assertIn('src="/img/missing.png"', out)
        self.assertNotIn("integrity", out)
        self.assertNotIn("crossorigin", out)
        self.assertEqual(session.count("https://ex.com/img/a.png"), 1)
        self.assertEqual(len(store), 3)
        self.assertEqual(proc.task_count, 4)
        p = progress.snapshot()
        self.assertEqual((p.completed_files, p.failed_files), (3, 1))

    def test_inline_style_failed_image_gets_local_path(self) -> None:
        html = "<html><head><style>body{background:url(/img/bg.png)}</style></head><body></body></html>"
        proc, _, _, _ = make_processor({})
        out = proc.process(html)
        self.assertIn("url(static/images/bg.png)", out)

    def test_inline_style_failed_image_can_stay_remote(self) -> None:
        html = "<html><head><style>body{background:url(/img/bg.png)}</style></head><body></body></html>"
        proc, _, _, _ = make_processor({}, keep_remote_on_failure=True)
        out = proc.process(html)
        self.assertIn("url(https://ex.com/img/bg.png)", out)

    def test_inline_font_face(self) -> None:
        html = (
            "<html><head><style>@font-face{font-family:x;src:url(/f/a.woff2) format('woff2')}</style>"
            "</head><body></body></html>"
        )
        proc, _, store, _ = make_processor(
            {"https://ex.com/f/a.woff2": FakeResponse(b"wOF2" + b"\x00" * 16)}, include_fonts=True
        )
        out = proc.process(html)
        self.assertIn("url(static/fonts/a.woff2)", out)
        self.assertEqual(store.get("https://ex.com/f/a.woff2").category, "fonts")

    def test_external_stylesheet_references(self) -> None:
        css = b"@import 'theme.css';\nbody{background:url(/img/bg.png)}\n.x{background:url(../img/gone.png)}"
        html = '<html><head><link rel="stylesheet" href="/css/site.css"></head><body></body></html>'
        proc, session, store, _ = make_processor(
            {
                "https://ex.com/css/site.css": FakeResponse(css, content_type="text/css"),
                "https://ex.com/css/theme.css": FakeResponse(
                    b"h1{background:url(hero.png)}", content_type="text/css"
                ),
                "https://ex.com/img/bg.png": FakeResponse(PNG, content_type="image/png"),
                "https://ex.com/css/hero.png": FakeResponse(PNG, content_type="image/png"),
            }
        )
        proc.process(html)
        site = store.get("https://ex.com/css/site.css").content.decode("utf-8")
        self.assertIn("@import 'theme.css'", site)
        self.assertIn("url(../images/bg.png)", site)
        self.assertIn("url(../images/gone.png)", site)
        theme = store.get("https://ex.com/css/theme.css").content.decode("utf-8")
        self.assertIn("url(../images/hero.png)", theme)
        self.assertIn("https://ex.com/img/bg.png", store)
        self.assertEqual(session.count("https://ex.com/img/gone.png"), 1)

    def test_failed_image_is_not_fetched_again_for_stylesheet(self) -> None:
        html = (
            '<html><head><link rel="stylesheet" href="/s.css"></head>'
            '<body><img src="/bg.png"></body></html>'
        )
        proc, session, _, progress = make_processor(
            {
                "https://ex.com/s.css": FakeResponse(
                    b"body{background:url(/bg.png)}", content_type="text/css"
                ),
                "https://ex.com/bg.png": FakeResponse(b"oops", 500),
            }
        )
        out = proc.process(html)
        self.assertEqual(session.count("https://ex.com/bg.png"), 1)
        self.assertIn('src="/bg.png"', out)
        self.assertEqual(proc.task_count, 2)
        p = progress.snapshot()
        self.assertEqual((p.total_files, p.completed_files, p.failed_files), (2, 1, 1))

    def test_failed_reference_does_not_take_another_files_path(self) -> None:
        html = (
            '<html><head><link rel="stylesheet" href="/css/s.css"></head>'
            '<body><img src="/a/logo.png"></body></html>'
        )
        proc, _, store, _ = make_processor(
            {
                "https://ex.com/css/s.css": FakeResponse(
                    b"body{background:url(/b/logo.png)}", content_type="text/css"
                ),
                "https://ex.com/a/logo.png": FakeResponse(PNG, content_type="image/png"),
            }
        )
        proc.process(html)
        self.assertEqual(store.get("https://ex.com/a/logo.png").local_path, "static/images/logo.png")
        css = store.get("https://ex.com/css/s.css").content.decode("utf-8")
        self.assertIn(f"url(../images/logo_{short_h('https://ex.com/b/logo.png')}.png)", css)

    def test_inline_import_is_made_absolute(self) -> None:
        html = "<html><head><style>@import 'theme.css';</style></head><body></body></html>"
        proc, session, _, _ = make_processor({})
        out = proc.process(html)
        self.assertIn("@import 'https://ex.com/page/theme.css'", out)
        self.assertEqual(session.calls, [])

    def test_external_stylesheet_disabled_category_goes_absolute(self) -> None:
        html = '<html><head><link rel="stylesheet" href="/css/site.css"></head><body></body></html>'
        proc, session, store, _ = make_processor(
            {
                "https://ex.com/css/site.css": FakeResponse(
                    b"body{background:url(/img/bg.png)}", content_type="text/css"
                )
            },
            include_images=False,
        )
        proc.process(html)
        site = store.get("https://ex.com/css/site.css").content.decode("utf-8")
        self.assertIn("url(https://ex.com/img/bg.png)", site)
        self.assertEqual(session.count("https://ex.com/img/bg.png"), 0)

    def test_sanitizer_runs_when_enabled(self) -> None:
        html = (
            "<html><head>"
            '<script src="https://www.google-analytics.com/analytics.js"></script>'
            "</head><body><p>x</p></body></html>"
        )
        proc, _, _, _ = make_processor({}, include_scripts=False, remove_analytics=True)
        out = proc.process(html)
        self.assertNotIn("google-analytics", out)


class TestCssRefs(unittest.TestCase):
    CSS = (
        "@import url(\"b.css\");\n"
        "@import 'c.css';\n"
        "body{background:url('a.png')}\n"
        "@font-face{font-family:f;src:url(f.woff2) format('woff2')}\n"
    )

    def test_iter_css_refs(self) -> None:
        self.assertEqual(
            sorted(iter_css_refs(self.CSS)),
            [("a.png", "url"), ("b.css", "import"), ("c.css", "import"), ("f.woff2", "font")],
        )

    def test_rewrite_keeps_quotes(self) -> None:
        out = rewrite_css_refs(self.CSS, lambda ref, kind: "x/" + ref if kind != "font" else None)
        self.assertIn('@import url("x/b.css")', out)
        self.assertIn("@import 'x/c.css'", out)
        self.assertIn("url('x/a.png')", out)
        self.assertIn("url(f.woff2)", out)


class TestHtmlHelpers(unittest.TestCase):
    def test_format_html(self) -> None:
        html = "<html><head><title>t</title></head><body><div><p>hi</p></div></body></html>"
        self.assertEqual(
            format_html(html),
            "<html>\n"
            "  <head>\n"
            "    <title>t</title>\n"
            "  </head>\n"
            "  <body>\n"
            "    <div>\n"
            "      <p>hi</p>\n"
            "    </div>\n"
            "  </body>\n"
            "</html>",
        )

    def test_format_html_keeps_protected_blocks(self) -> None:
        script = "<script>if (a<b) {\n  x();\n}</script>"
        pre = "<pre>  keep\n    this</pre>"
        out = format_html(f"<body>{script}{pre}<!-- a\n  b --></body>")
        self.assertIn(script, out)
        self.assertIn(pre, out)
        self.assertIn("<!-- a\n  b -->", out)

    def test_void_tags_do_not_indent(self) -> None:
        out = format_html('<head><meta charset="utf-8"><link rel="stylesheet" href="a.css"></head>')
        self.assertEqual(
            out.split("\n"),
            ["<head>", '  <meta charset="utf-8">', '  <link rel="stylesheet" href="a.css">', "</head>"],
        )

    def test_force_utf8_meta(self) -> None:
        soup = BeautifulSoup(
            '<head><meta charset="gbk">'
            '<meta http-equiv="Content-Type" content="text/html; charset=gb2312"></head>',
            "html.parser",
        )
        force_utf8_meta(soup)
        metas = soup.find_all("meta")
        self.assertEqual(metas[0]["charset"], "utf-8")
        self.assertEqual(metas[1]["content"], "text/html; charset=utf-8")


if __name__ == "__main__":
    unittest.main()
