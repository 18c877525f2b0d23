# 18.10.26

import os
import time
import shutil
import logging
import tempfile
import threading
from typing import Dict, List, Optional, Set


# Internal utilities
from MediaStitch.utils import config_manager


# Logic
from .exceptions import SpillWriteError
from .file_size import format_size


# Variable
logger = logging.getLogger(__name__)
MB = 1024 * 1024
RAM_THRESHOLD = config_manager.config.get_int('SPILL', 'ram_threshold_mb', default=100) * MB
ASSUMED_SEGMENT_SIZE = config_manager.config.get_float('SPILL', 'assumed_segment_mb', default=1.0) * MB
WRITE_RETRIES = config_manager.config.get_int('SPILL', 'write_retries', default=3)
TEMP_DIR = config_manager.config.get('SPILL', 'temp_dir') or None
COPY_CHUNK = 1024 * 1024


class MemorySpill:
    kind = "memory"

    def __init__(self):
        self._slots: Dict[int, bytes] = {}
        self._lock = threading.Lock()

    def write(self, index: int, data: bytes) -> None:
        with self._lock:
            self._slots[index] = data

    def read(self, index: int) -> bytes:
        with self._lock:
            return self._slots[index]

    def delete(self, index: int) -> None:
        with self._lock:
            self._slots.pop(index, None)

    def indices(self) -> List[int]:
        with self._lock:
            return sorted(self._slots)

    @property
    def size(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._slots.values())

    def assemble(self) -> bytes:
        """Join slots in index order and release them."""
        with self._lock:
            data = b"".join(self._slots[i] for i in sorted(self._slots))
            self._slots.clear()
        return data

    def discard(self) -> None:
        with self._lock:
            self._slots.clear()


class DiskSpill:
    kind = "disk"

    def __init__(self, temp_dir: Optional[str] = TEMP_DIR, write_retries: int = WRITE_RETRIES, retry_delay: float = 0.2):
        self.base_dir = temp_dir or tempfile.gettempdir()
        os.makedirs(self.base_dir, exist_ok=True)
        self.slot_dir = tempfile.mkdtemp(prefix="mediastitch_", dir=self.base_dir)
        self.write_retries = max(1, write_retries)
        self.retry_delay = retry_delay
        self._indices: Set[int] = set()
        self._bytes = 0
        self._lock = threading.Lock()

    def _slot_path(self, index: int) -> str:
        return os.path.join(self.slot_dir, f"seg_{index + 1:08d}.bin")

    def write(self, index: int, data: bytes) -> None:
        path = self._slot_path(index)
        part = path + ".part"

        for attempt in range(1, self.write_retries + 1):
            try:
                with open(part, "wb") as f:
                    f.write(data)
                os.replace(part, path)
                break

            except OSError as e:
                logger.warning(f"Slot {index} write failed (attempt {attempt}/{self.write_retries}): {e}")
                if attempt == self.write_retries:
                    raise SpillWriteError(f"Cannot write slot {index} to {self.slot_dir}: {e}") from e
                time.sleep(self.retry_delay * attempt)

        with self._lock:
            self._indices.add(index)
            self._bytes += len(data)

    def read(self, index: int) -> bytes:
        with open(self._slot_path(index), "rb") as f:
            return f.read()

    def delete(self, index: int) -> None:
        with self._lock:
            self._indices.discard(index)
        path = self._slot_path(index)
        if os.path.exists(path):
            os.remove(path)

    def indices(self) -> List[int]:
        with self._lock:
            return sorted(self._indices)

    @property
    def size(self) -> int:
        with self._lock:
            return self._bytes

    def assemble(self, output_path: Optional[str] = None, suffix: str = ".bin") -> str:
        """Concatenate slots into ``output_path``, deleting each slot once copied."""
        if output_path is None:
            fd, output_path = tempfile.mkstemp(prefix="mediastitch_", suffix=suffix, dir=self.base_dir)
            os.close(fd)

        with open(output_path, "wb") as outfile:
            for index in self.indices():
                with open(self._slot_path(index), "rb") as f:
                    shutil.copyfileobj(f, outfile, COPY_CHUNK)
                self.delete(index)

        logger.info(f"Assembled {format_size(os.path.getsize(output_path))} into {output_path}")
        self.discard()
        return output_path

    def discard(self) -> None:
        with self._lock:
            self._indices.clear()
        shutil.rmtree(self.slot_dir, ignore_errors=True)


class SpillStore:
    """Chooses in-memory or disk accumulation for one download job."""

    @staticmethod
    def estimate(segment_count: int, assumed_segment_size: float = ASSUMED_SEGMENT_SIZE) -> int:
        return int(segment_count * assumed_segment_size)

    @staticmethod
    def create(segment_count: int, threshold: int = RAM_THRESHOLD, temp_dir: Optional[str] = TEMP_DIR, force: Optional[str] = None):
        estimate = SpillStore.estimate(segment_count)
        kind = force or ("memory" if estimate < threshold else "disk")

        logger.info(f"Estimated {format_size(estimate)} for {segment_count} segments, using {kind} storage")
        if kind == "memory":
            return MemorySpill()
        if kind == "disk":
            return DiskSpill(temp_dir=temp_dir)
        raise ValueError(f"Unknown spill strategy: {kind}")
