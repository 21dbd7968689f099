class CaptureError(Exception):
    """Fatal capture failure; the message carries the failed step."""


class FetchError(CaptureError):
    pass


class BlockedError(FetchError):
    """The site answered with a bot-block page. Never retried."""


class CaptureCancelledError(CaptureError):
    pass


class ChunkDownloadError(Exception):
    pass
