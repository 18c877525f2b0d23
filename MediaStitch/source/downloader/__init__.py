# 18.10.26

from .ads import AdHeuristic
from .dedup import DuplicateDetector
from .segments import HttpSegmentFetcher, PoolHooks, PoolResult, SegmentPool

__all__ = [
    "AdHeuristic",
    "DuplicateDetector",
    "HttpSegmentFetcher",
    "PoolHooks",
    "PoolResult",
    "SegmentPool",
]
