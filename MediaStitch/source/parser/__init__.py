# 18.10.26

from ..utils.exceptions import FatalManifest
from .fetcher import ManifestFetcher
from .hls import HLSParser
from .dash import DashParser


def detect_manifest_type(text: str) -> str:
    """Identify a manifest by its content signature, never by URL extension."""
    head = text.lstrip('\ufeff \t\r\n')
    if head.startswith('#EXTM3U'):
        return 'hls'
    if '<MPD' in head[:4096]:
        return 'dash'
    raise FatalManifest("Unrecognised manifest: neither #EXTM3U nor <MPD>")


__all__ = [
    "ManifestFetcher",
    "HLSParser",
    "DashParser",
    "detect_manifest_type",
]
