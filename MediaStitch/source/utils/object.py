# 18.10.26

from enum import Enum
from typing import List, Optional


class Track(str, Enum):
    VIDEO = "video"
    AUDIO = "audio"
    MUXED = "muxed"


class Phase(str, Enum):
    PARSING = "parsing"
    RESOLVING_KEYS = "resolving_keys"
    DOWNLOADING = "downloading"
    MERGING = "merging"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ByteRange:
    def __init__(self, length: int, offset: int = 0):
        self.length = length
        self.offset = offset

    @property
    def end(self) -> int:
        """Offset of the first byte after this range."""
        return self.offset + self.length

    def header(self) -> str:
        return f"bytes={self.offset}-{self.end - 1}"

    def __eq__(self, other):
        return isinstance(other, ByteRange) and (self.offset, self.length) == (other.offset, other.length)

    def __hash__(self):
        return hash((self.offset, self.length))

    def __repr__(self):
        return f"ByteRange({self.length}@{self.offset})"


class KeyRef:
    def __init__(self, method: str, uri: Optional[str], iv: Optional[bytes] = None, key_format: str = "identity"):
        self.method = method
        self.uri = uri
        self.iv = iv
        self.key_format = key_format

    def __repr__(self):
        return f"KeyRef({self.method}, {self.uri})"


class Segment:
    def __init__(self, url: str, sequence_index: int, track: Track = Track.MUXED, duration: Optional[float] = None, byte_range: Optional[ByteRange] = None, key: Optional[KeyRef] = None, is_init: bool = False):
        self.url = url
        self.sequence_index = -1 if is_init else sequence_index
        self.track = track
        self.duration = duration
        self.byte_range = byte_range
        self.key = key
        self.is_init = is_init
        self.is_ad = False

        # Markers read by the ad classifier
        self.discontinuity = False
        self.ad_cue = None
        self.ad_cue_duration = None
        self.ad_hint = False

    def sort_key(self):
        return self.sequence_index

    def __repr__(self):
        kind = "init" if self.is_init else self.sequence_index
        return f"Segment({kind}, {self.track.value})"


class EncryptionKey:
    def __init__(self, uri: str, raw: bytes):
        self.uri = uri
        self.raw = raw

    def __repr__(self):
        return f"EncryptionKey({self.uri})"


class AudioRendition:
    def __init__(self, group_id: str, uri: Optional[str] = None, name: str = "unknown", language: str = "und", default: bool = False, autoselect: bool = False, channels: Optional[str] = None):
        self.group_id = group_id
        self.uri = uri
        self.name = name
        self.language = language
        self.default = default
        self.autoselect = autoselect
        self.channels = channels

    def __repr__(self):
        return f"AudioRendition({self.group_id}, {self.language}, {self.uri})"


class Variant:
    def __init__(self, url: str, bandwidth: int = 0, resolution: Optional[str] = None, codecs: Optional[str] = None, audio_group: Optional[str] = None):
        self.url = url
        self.bandwidth = bandwidth
        self.resolution = resolution
        self.codecs = codecs
        self.audio_group = audio_group
        self.frame_rate = None
        self.audio_tracks: List[AudioRendition] = []

    @property
    def height(self) -> int:
        height = self.resolution.partition("x")[2] if self.resolution else ""
        return int(height) if height.isdigit() else 0

    def __repr__(self):
        return f"Variant({self.bandwidth}, {self.resolution})"


class Representation:
    def __init__(self, rep_id: str, rep_type: str, bandwidth: int = 0, width: int = 0, height: int = 0, codecs: Optional[str] = None, mime_type: Optional[str] = None):
        self.id = rep_id
        self.type = rep_type
        self.bandwidth = bandwidth
        self.width = width
        self.height = height
        self.codecs = codecs
        self.mime_type = mime_type
        self.segments: List[Segment] = []

    def __repr__(self):
        return f"Representation({self.id}, {self.type}, {self.bandwidth}, {len(self.segments)} segments)"


class DownloadJob:
    def __init__(self, job_id: str, track: Track, segments: List[Segment], concurrency: int, max_retries: int, timeout: float, cancel_event, base_url: str = "", codecs: Optional[str] = None, mime_type: Optional[str] = None):
        self.id = job_id
        self.track = track
        self.segments = sorted(segments, key=Segment.sort_key)
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.timeout = timeout
        self.cancel_event = cancel_event
        self.base_url = base_url
        self.codecs = codecs
        self.mime_type = mime_type

    def __repr__(self):
        return f"DownloadJob({self.id}, {self.track.value}, {len(self.segments)} segments)"


class ProgressEvent:
    def __init__(self, phase: Phase, percent: float, message: str = "", throughput: float = 0.0):
        self.phase = phase
        self.percent = percent
        self.message = message
        self.throughput = throughput

    @property
    def indeterminate(self) -> bool:
        return self.percent < 0

    def __repr__(self):
        return f"ProgressEvent({self.phase.value}, {self.percent:.1f}, {self.message!r})"


class TrackResult:
    def __init__(self, track: Track, size: int, mime_type: str, data: Optional[bytes] = None, path: Optional[str] = None, skipped_segment_count: int = 0, duplicate_count: int = 0, detected_audio_codec: Optional[str] = None):
        self.track = track
        self.data = data
        self.path = path
        self.size = size
        self.mime_type = mime_type
        self.skipped_segment_count = skipped_segment_count
        self.duplicate_count = duplicate_count
        self.detected_audio_codec = detected_audio_codec

    def read(self) -> bytes:
        if self.data is not None:
            return self.data
        with open(self.path, "rb") as f:
            return f.read()

    def __repr__(self):
        where = "memory" if self.data is not None else self.path
        return f"TrackResult({self.track.value}, {self.size} bytes, {self.mime_type}, {where})"


class AssemblyResult:
    def __init__(self, status: Phase, tracks: Optional[List[TrackResult]] = None, error: Optional[Exception] = None):
        self.status = status
        self.tracks = tracks or []
        self.error = error

    @property
    def track_count(self) -> int:
        return len(self.tracks)

    @property
    def skipped_segment_count(self) -> int:
        return sum(t.skipped_segment_count for t in self.tracks)

    @property
    def ok(self) -> bool:
        return self.status == Phase.DONE

    def __repr__(self):
        return f"AssemblyResult({self.status.value}, {self.track_count} tracks, error={self.error!r})"
