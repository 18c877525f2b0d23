# 18.10.26

from typing import Iterable, Optional
from urllib.parse import urlparse


# Object
from .object import Track


AUDIO_CODECS = {
    "mp4a.40.2": "aac",
    "mp4a.40.5": "he-aac",
    "mp4a.40.29": "he-aacv2",
    "mp4a.40.34": "mp3",
    "mp4a.6b": "mp3",
    "mp4a.69": "mp3",
    "mp4a.a5": "ac-3",
    "mp4a.a6": "e-ac-3",
    "ac-3": "ac-3",
    "ec-3": "e-ac-3",
    "ac-4": "ac-4",
    "opus": "opus",
    "flac": "flac",
    "vorbis": "vorbis",
}

AUDIO_EXTENSIONS = {
    ".aac": ("aac", "audio/aac"),
    ".mp3": ("mp3", "audio/mpeg"),
    ".ac3": ("ac-3", "audio/ac3"),
    ".ec3": ("e-ac-3", "audio/eac3"),
}


def url_extension(url: str) -> str:
    path = urlparse(url).path.lower()
    dot = path.rfind(".")
    if dot == -1 or "/" in path[dot:]:
        return ""
    return path[dot:]


def detect_audio_codec(codecs: Optional[str] = None, urls: Iterable[str] = ()) -> Optional[str]:
    """Name the audio codec from a CODECS list, falling back to segment extensions."""
    if codecs:
        for codec in codecs.split(","):
            codec = codec.strip().lower()
            if codec in AUDIO_CODECS:
                return AUDIO_CODECS[codec]
            if codec.startswith("mp4a"):
                return "aac"

    for url in urls:
        ext = url_extension(url)
        if ext in AUDIO_EXTENSIONS:
            return AUDIO_EXTENSIONS[ext][0]
    return None


def detect_mime_type(track: Track, urls: Iterable[str], first_bytes: bytes = b"") -> str:
    """MPEG-TS by sync byte or extension, raw audio by extension, otherwise fMP4."""
    urls = list(urls)
    extensions = {url_extension(u) for u in urls}

    if first_bytes[:1] == b"\x47" or ".ts" in extensions:
        return "video/mp2t"

    for ext in extensions:
        if ext in AUDIO_EXTENSIONS:
            return AUDIO_EXTENSIONS[ext][1]

    if track == Track.AUDIO:
        return "audio/mp4"
    return "video/mp4"
