# 18.10.26


class MediaStitchError(Exception):
    """Base class for every error raised while assembling a stream."""


class FatalManifest(MediaStitchError):
    """Manifest is unreachable, unparseable, empty or has nothing playable."""


class FatalFirstSegment(MediaStitchError):
    def __init__(self, segment, cause=None):
        self.segment = segment
        self.cause = cause
        super().__init__(f"First segment of {segment.track.value} track failed permanently: {cause}")


class FatalKeyResolution(MediaStitchError):
    def __init__(self, uri, reason):
        self.uri = uri
        self.reason = reason
        super().__init__(f"Cannot resolve key {uri}: {reason}")


class RecoverableSegment(MediaStitchError):
    def __init__(self, segment, cause=None):
        self.segment = segment
        self.cause = cause
        super().__init__(f"Segment {segment.sequence_index} skipped after retries: {cause}")


class FatalUrlRefreshTimeout(MediaStitchError):
    def __init__(self, timeout):
        self.timeout = timeout
        super().__init__(f"URL refresh did not answer within {timeout}s")


class Cancelled(MediaStitchError):
    """Job was cancelled by the caller. Not a failure."""


class SegmentRejected(MediaStitchError):
    """Response body does not look like media data; the attempt is retried."""

    def __init__(self, reason, detail=""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class SegmentHTTPError(MediaStitchError):
    def __init__(self, status_code, url, retry_after=None):
        self.status_code = status_code
        self.url = url
        self.retry_after = retry_after
        super().__init__(f"HTTP {status_code} for {url}")


class SpillWriteError(MediaStitchError):
    """Disk slot could not be written after all retries."""
