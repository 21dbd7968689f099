import argparse
import json
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from .capture import CaptureResult, PageCapture
from .config import (
    DEFAULT_CONCURRENCY,
    MIN_FILES,
    MIN_TIMEOUT,
    CaptureOptions,
    load_config_file,
    option_name,
)
from .errors import CaptureError
from .progress import format_file_size

CONFIG_GROUPS = ("capture", "sanitize", "http", "general")

SANITIZE_FLAGS = (
    "remove_analytics",
    "remove_tracking",
    "remove_ads",
    "remove_tag_manager",
    "remove_malicious_tags",
)


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Capture a web page and its assets into a ZIP archive.",
        add_help=True,
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("url", help="page URL (https:// is assumed when missing)")

    # assets
    p.add_argument(
        "--no-images", dest="include_images", action="store_false", help="skip images"
    )
    p.add_argument(
        "--no-styles", dest="include_styles", action="store_false", help="skip stylesheets"
    )
    p.add_argument(
        "--no-scripts", dest="include_scripts", action="store_false", help="skip scripts"
    )
    p.add_argument("--fonts", dest="include_fonts", action="store_true", help="download fonts")
    p.add_argument(
        "--videos", dest="include_videos", action="store_true", help="download video and audio"
    )
    p.add_argument(
        "--no-redirects",
        dest="follow_redirects",
        action="store_false",
        help="fail instead of following redirects of the main page",
    )
    p.add_argument(
        "--correct-file-names",
        action="store_true",
        help="fix file extensions from content type and content",
    )
    p.add_argument(
        "--keep-remote-on-failure",
        action="store_true",
        help="CSS references that failed to download keep their remote URL",
    )

    # sanitize
    p.add_argument("--remove-analytics", action="store_true", help="strip analytics scripts")
    p.add_argument("--remove-tracking", action="store_true", help="strip tracking pixels/SDKs")
    p.add_argument("--remove-ads", action="store_true", help="strip ad network code")
    p.add_argument(
        "--remove-tag-manager", action="store_true", help="strip tag manager scripts/iframes"
    )
    p.add_argument(
        "--remove-malicious",
        dest="remove_malicious_tags",
        action="store_true",
        help="strip <base>, refresh/redirect <meta> and redirect scripts",
    )
    p.add_argument("--sanitize-all", action="store_true", help="enable every --remove-* option")

    # limits
    p.add_argument(
        "--timeout", type=int, default=MIN_TIMEOUT, help="request timeout seconds (60..300)"
    )
    p.add_argument(
        "--max-files", type=int, default=MIN_FILES, help="max stored resources (200..1000)"
    )
    p.add_argument(
        "--concurrency",
        dest="max_concurrency",
        type=int,
        default=DEFAULT_CONCURRENCY,
        help="parallel downloads",
    )
    p.add_argument(
        "--encoding",
        dest="force_encoding",
        type=str,
        default="auto",
        help="decode the page with this charset instead of detecting it",
    )

    # output
    p.add_argument(
        "--output-dir",
        dest="archive_dir",
        type=str,
        default=None,
        help="directory for the ZIP (default: system temp dir)",
    )
    p.add_argument("--json", action="store_true", help="print the result as JSON")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")

    # session
    p.add_argument(
        "--cookies",
        dest="cookies_file",
        type=str,
        default=None,
        help="cookies.txt (Netscape/Mozilla format)",
    )
    p.add_argument(
        "--header",
        dest="extra_headers",
        action="append",
        default=[],
        help="extra request header 'Name: value'",
    )

    return p


def flatten_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for k, v in cfg.items():
        if k in CONFIG_GROUPS and isinstance(v, dict):
            continue
        flat[option_name(k)] = v
    for g in CONFIG_GROUPS:
        if isinstance(cfg.get(g), dict):
            for k, v in cfg[g].items():
                flat[option_name(k)] = v
    # CLI spellings that differ from the option fields
    for alias, name in (
        ("header", "extra_headers"),
        ("cookies", "cookies_file"),
        ("encoding", "force_encoding"),
        ("concurrency", "max_concurrency"),
        ("output_dir", "archive_dir"),
    ):
        if alias in flat:
            flat.setdefault(name, flat.pop(alias))
    return flat


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        try:
            cfg = load_config_file(preliminary.config)
        except (OSError, RuntimeError, ValueError) as e:
            parser.error(f"cannot read config {preliminary.config}: {e}")
        if isinstance(cfg, dict):
            parser.set_defaults(**flatten_config(cfg))
    args = parser.parse_args(argv)
    return args


def options_from_args(args: argparse.Namespace) -> CaptureOptions:
    data = dict(vars(args))
    if data.get("sanitize_all"):
        for flag in SANITIZE_FLAGS:
            data[flag] = True
    return CaptureOptions.from_dict(data)


def print_summary(result: CaptureResult) -> None:
    print(f"page:     {result.final_url} (HTTP {result.status_code})")
    print(f"archive:  {result.archive_path} ({format_file_size(result.archive_size)})")
    print(f"files:    {result.files_count} (incl. index.html)")
    print(f"assets:   {result.success_count} ok, {result.failed_count} failed")
    print(f"duration: {result.duration_ms} ms")


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    options = options_from_args(args)
    capture = PageCapture()
    with ThreadPoolExecutor(max_workers=1) as pool:
        fut = pool.submit(capture.capture, args.url, options)
        try:
            result = fut.result()
        except KeyboardInterrupt:
            logging.warning("interrupted, stopping capture")
            capture.stop()
            return 130
        except CaptureError as e:
            logging.error("capture failed: %s", e)
            return 1

    if args.json:
        print(json.dumps(result.to_dict(include_content=False), indent=2, ensure_ascii=False))
    else:
        print_summary(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
