# 18.10.26

from .decrypt import KeyCache, KeyResolver, SegmentDecryptor

__all__ = [
    "KeyCache",
    "KeyResolver",
    "SegmentDecryptor",
]
