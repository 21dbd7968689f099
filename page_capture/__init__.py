"""Single-page capture: fetch a page, localize its assets and zip the result."""

from .capture import CaptureResult, PageCapture
from .config import CaptureOptions
from .errors import BlockedError, CaptureCancelledError, CaptureError, FetchError
from .progress import FileInfo, ProgressInfo

__all__ = [
    "BlockedError",
    "CaptureCancelledError",
    "CaptureError",
    "CaptureOptions",
    "CaptureResult",
    "FetchError",
    "FileInfo",
    "PageCapture",
    "ProgressInfo",
]

__version__ = "0.1.0"
