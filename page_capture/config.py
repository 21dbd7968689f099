import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

# -------------------- Limits --------------------

MIN_TIMEOUT = 60
MAX_TIMEOUT = 300
CLIENT_TIMEOUT_FLOOR = 120
VIDEO_TIMEOUT = 600

MIN_FILES = 200
MAX_FILES = 1000

DEFAULT_CONCURRENCY = 10
MAIN_PAGE_ATTEMPTS = 3

# -------------------- Header templates --------------------

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36"
)

DOCUMENT_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,"
    "image/avif,image/webp,image/apng,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "Upgrade-Insecure-Requests": "1",
}

ASSET_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "*/*",
}

# no Range here: the first request must get a full 200 body
VIDEO_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "video/webm,video/ogg,video/*;q=0.9,application/ogg;q=0.7,"
    "audio/*;q=0.6,*/*;q=0.5",
    "Accept-Encoding": "identity",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

CHUNK_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "video/*,*/*;q=0.8",
    "Accept-Encoding": "identity",
}

# -------------------- Options --------------------


@dataclass(frozen=True)
class CaptureOptions:
    include_images: bool = True
    include_styles: bool = True
    include_scripts: bool = True
    include_fonts: bool = False
    include_videos: bool = False
    follow_redirects: bool = True

    # Sanitization
    remove_analytics: bool = False
    remove_tracking: bool = False
    remove_ads: bool = False
    remove_tag_manager: bool = False
    remove_malicious_tags: bool = False

    correct_file_names: bool = False
    timeout: int = MIN_TIMEOUT
    create_zip: bool = True
    max_files: int = MIN_FILES
    max_concurrency: int = DEFAULT_CONCURRENCY
    force_encoding: str = "auto"

    # CSS references whose download failed keep the remote URL
    keep_remote_on_failure: bool = False
    archive_dir: Optional[str] = None

    # Session
    extra_headers: Tuple[str, ...] = field(default_factory=tuple)  # "Name: value"
    cookies_file: Optional[str] = None

    @property
    def sanitize(self) -> bool:
        return (
            self.remove_analytics
            or self.remove_tracking
            or self.remove_ads
            or self.remove_tag_manager
            or self.remove_malicious_tags
        )

    @property
    def client_timeout(self) -> float:
        return float(max(self.timeout, CLIENT_TIMEOUT_FLOOR))

    def normalized(self) -> "CaptureOptions":
        concurrency = self.max_concurrency
        if concurrency <= 0:
            concurrency = DEFAULT_CONCURRENCY
        return dataclasses.replace(
            self,
            timeout=clamp(int(self.timeout), MIN_TIMEOUT, MAX_TIMEOUT),
            max_files=clamp(int(self.max_files), MIN_FILES, MAX_FILES),
            max_concurrency=concurrency,
            force_encoding=(self.force_encoding or "auto").strip() or "auto",
            extra_headers=tuple(self.extra_headers or ()),
            create_zip=True,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CaptureOptions":
        names = {f.name for f in dataclasses.fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            name = key if key in names else _CAMEL_KEYS.get(key)
            if name is None:
                continue
            if name == "extra_headers":
                value = tuple(value or ())
            kwargs[name] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        d = dataclasses.asdict(self)
        d["extra_headers"] = list(self.extra_headers)
        return d


# keys used by the JSON API of the desktop client
_CAMEL_KEYS = {
    "includeImages": "include_images",
    "includeStyles": "include_styles",
    "includeScripts": "include_scripts",
    "includeFonts": "include_fonts",
    "includeVideos": "include_videos",
    "followRedirects": "follow_redirects",
    "removeAnalytics": "remove_analytics",
    "removeTracking": "remove_tracking",
    "removeAds": "remove_ads",
    "removeTagManager": "remove_tag_manager",
    "removeMaliciousTags": "remove_malicious_tags",
    "correctFileNames": "correct_file_names",
    "createZip": "create_zip",
    "maxFiles": "max_files",
    "maxConcurrency": "max_concurrency",
    "forceEncoding": "force_encoding",
    "keepRemoteOnFailure": "keep_remote_on_failure",
    "archiveDir": "archive_dir",
    "extraHeaders": "extra_headers",
    "cookiesFile": "cookies_file",
}


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        try:
            import tomllib  # py311+
        except ImportError:
            try:
                import tomli as tomllib  # backport
            except ImportError:
                raise RuntimeError("TOML config requires Python 3.11+ or 'tomli'")
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        try:
            import yaml
        except ImportError:
            raise RuntimeError("YAML config requires 'PyYAML'")
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


def option_name(key: str) -> str:
    """Map a camelCase API key to its CaptureOptions field name."""
    return _CAMEL_KEYS.get(key, key)
