# 18.10.26

import hashlib
import logging
import threading
from typing import Dict


# Variable
logger = logging.getLogger(__name__)
FULL_HASH_LIMIT = 1024 * 1024
HEAD_BYTES = 8 * 1024
MIDDLE_BYTES = 4 * 1024
TAIL_BYTES = 4 * 1024


def fingerprint(data: bytes) -> str:
    """Cheap content fingerprint; sampled for payloads of 1 MB and more."""
    digest = hashlib.blake2b(digest_size=16)
    digest.update(len(data).to_bytes(8, 'big'))

    if len(data) < FULL_HASH_LIMIT:
        digest.update(data)
    else:
        middle = len(data) // 2 - MIDDLE_BYTES // 2
        digest.update(data[:HEAD_BYTES])
        digest.update(data[middle:middle + MIDDLE_BYTES])
        digest.update(data[-TAIL_BYTES:])

    return digest.hexdigest()


class DuplicateDetector:
    def __init__(self):
        self._seen: Dict[str, int] = {}
        self._lock = threading.Lock()
        self.duplicates = 0

    def is_duplicate(self, data: bytes, sequence_index: int) -> bool:
        """Register ``data``; True when an earlier segment already carried it."""
        key = fingerprint(data)
        with self._lock:
            first = self._seen.setdefault(key, sequence_index)
            if first == sequence_index:
                return False
            self.duplicates += 1

        logger.info(f"Segment {sequence_index} duplicates segment {first}, skipping")
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
