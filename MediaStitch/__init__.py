# 18.10.26

from .version import __title__, __version__
from .source import StreamAssembler
from .source.downloader import PoolHooks
from .source.utils.object import AssemblyResult, Phase, ProgressEvent, Track, TrackResult

__all__ = [
    "__title__",
    "__version__",
    "StreamAssembler",
    "PoolHooks",
    "AssemblyResult",
    "Phase",
    "ProgressEvent",
    "Track",
    "TrackResult",
]
