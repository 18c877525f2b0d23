# 18.10.26

import time
import random
import logging
import threading
from collections import deque
from email.utils import parsedate_to_datetime
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, TimeoutError as FutureTimeout, wait
from typing import Callable, Dict, List, Optional


# External libraries
import httpx


# Internal utilities
from MediaStitch.utils import config_manager
from MediaStitch.utils.http_client import create_client, get_headers


# Logic
from ..utils.object import Segment
from ..utils.file_size import format_size
from ..utils.exceptions import Cancelled, FatalFirstSegment, FatalUrlRefreshTimeout, RecoverableSegment, SegmentHTTPError
from .validator import check_headers, check_payload


# Variable
logger = logging.getLogger(__name__)
TIMEOUT = config_manager.config.get_int('REQUESTS', 'timeout', default=30)
MAX_WORKERS = config_manager.config.get_int('DOWNLOAD', 'thread_count', default=6)
MAX_RETRIES = config_manager.config.get_int('REQUESTS', 'max_retry', default=6)
BASE_DELAY = config_manager.config.get_float('DOWNLOAD', 'retry_base_delay', default=0.5)
MAX_DELAY = config_manager.config.get_float('DOWNLOAD', 'retry_max_delay', default=30.0)
VALIDATE_CONTENT = config_manager.config.get_bool('DOWNLOAD', 'validate_content', default=True)
MIN_SEGMENT_BYTES = config_manager.config.get_int('DOWNLOAD', 'min_segment_bytes', default=512)
URL_REFRESH_TIMEOUT = config_manager.config.get_float('HOOKS', 'url_refresh_timeout', default=30.0)
SLEEP_DRIFT = config_manager.config.get_float('HOOKS', 'sleep_drift', default=30.0)
NETWORK_WINDOW = config_manager.config.get_float('HOOKS', 'network_window', default=10.0)

FORBIDDEN_STATUSES = (403, 410)
FORBIDDEN_BEFORE_REFRESH = 3
NETWORK_ERRORS_BEFORE_SIGNAL = 3
THROTTLES_BEFORE_BACKOFF = 2
SUCCESSES_BEFORE_RESTORE = 10


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After as seconds, from either delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, when.timestamp() - time.time())


def status_of(error: Exception) -> Optional[int]:
    if isinstance(error, SegmentHTTPError):
        return error.status_code
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


class PoolHooks:
    """
    Caller policy plugged into a SegmentPool. Override what you need.

    ``refresh_urls`` receives the URLs still to be fetched and returns a mapping
    old URL -> new URL (or None to keep them). It runs under a timeout; missing it
    aborts the job.
    """

    def refresh_urls(self, pending_urls: List[str]) -> Optional[Dict[str, str]]:
        return None

    def on_sleep_wake(self, gap_seconds: float) -> None:
        pass

    def on_network_change(self, error_count: int) -> None:
        pass

    @property
    def supports_refresh(self) -> bool:
        return type(self).refresh_urls is not PoolHooks.refresh_urls


class HttpSegmentFetcher:
    def __init__(self, headers: Optional[Dict[str, str]] = None, validate: bool = VALIDATE_CONTENT, min_bytes: int = MIN_SEGMENT_BYTES, transport: Optional[httpx.BaseTransport] = None):
        self.headers = headers or get_headers()
        self.validate = validate
        self.min_bytes = min_bytes
        self.client = create_client(headers=self.headers, timeout=TIMEOUT, follow_redirects=True, transport=transport)

    def __call__(self, segment: Segment, url: str, timeout: float) -> bytes:
        request_headers = {}
        if segment.byte_range is not None:
            request_headers['Range'] = segment.byte_range.header()

        response = self.client.get(url, headers=request_headers, timeout=timeout)
        if response.status_code >= 400:
            raise SegmentHTTPError(response.status_code, url, parse_retry_after(response.headers.get('Retry-After')))

        data = response.content
        if segment.byte_range is not None and response.status_code == 200 and len(data) > segment.byte_range.length:
            logger.debug(f"Server ignored Range for segment {segment.sequence_index}, slicing locally")
            data = data[segment.byte_range.offset:segment.byte_range.end]

        if self.validate:
            check_headers(response.headers)
            if not segment.is_init:
                check_payload(data, self.min_bytes, encrypted=segment.key is not None)

        return data

    def abort(self) -> None:
        """Close the client, failing in-flight requests."""
        self.client.close()

    def close(self) -> None:
        self.client.close()


class PoolResult:
    def __init__(self):
        self.completed = 0
        self.skipped: List[Segment] = []
        self.bytes_fetched = 0

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    def __repr__(self):
        return f"PoolResult(completed={self.completed}, skipped={self.skipped_count}, bytes={self.bytes_fetched})"


class SegmentPool:
    def __init__(self, fetch: Callable[[Segment, str, float], bytes], concurrency: int = MAX_WORKERS, max_retries: int = MAX_RETRIES, timeout: float = TIMEOUT, hooks: Optional[PoolHooks] = None, cancel_event: Optional[threading.Event] = None, base_delay: float = BASE_DELAY, max_delay: float = MAX_DELAY, url_refresh_timeout: float = URL_REFRESH_TIMEOUT, sleep_drift: float = SLEEP_DRIFT, network_window: float = NETWORK_WINDOW):
        self.fetch = fetch
        self.concurrency = max(1, concurrency)
        self.max_retries = max(1, max_retries)
        self.timeout = timeout
        self.hooks = hooks or PoolHooks()
        self.cancel_event = cancel_event or threading.Event()
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.url_refresh_timeout = url_refresh_timeout
        self.sleep_drift = sleep_drift
        self.network_window = network_window

        self._lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._halt = threading.Event()
        self._limit = self.concurrency
        self._url_map: Dict[str, str] = {}
        self._remaining: Dict[int, Segment] = {}
        self._first_index = None
        self._consecutive_forbidden = 0
        self._consecutive_throttle = 0
        self._successes_since_throttle = 0
        self._network_errors = deque()
        self._clock = (time.time(), time.monotonic())

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def limit(self) -> int:
        with self._lock:
            return self._limit

    def cancel(self) -> None:
        if self.cancel_event.is_set():
            return
        logger.info("Segment pool cancelled")
        self.cancel_event.set()
        abort = getattr(self.fetch, 'abort', None)
        if callable(abort):
            abort()

    def update_urls(self, mapping: Dict[str, str]) -> None:
        with self._lock:
            for old, new in mapping.items():
                self._url_map[old] = new
            logger.info(f"URL map updated with {len(mapping)} entries")

    def _current_url(self, segment: Segment) -> str:
        with self._lock:
            return self._url_map.get(segment.url, segment.url)

    def _halted(self) -> bool:
        return self.cancel_event.is_set() or self._halt.is_set()

    def _is_fatal_segment(self, segment: Segment) -> bool:
        return segment.is_init or segment.sequence_index == self._first_index

    def _backoff(self, attempt: int, retry_after: Optional[float] = None) -> float:
        if retry_after is not None:
            return retry_after
        delay = self.base_delay * (2 ** attempt) + random.uniform(0, self.base_delay)
        return min(self.max_delay, delay)

    def _sleep(self, delay: float) -> None:
        deadline = time.monotonic() + delay
        while not self._halted():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self.cancel_event.wait(min(0.25, remaining))

    def run(self, segments: List[Segment], on_complete: Optional[Callable[[Segment, bytes], None]] = None, on_skip: Optional[Callable[[Segment], None]] = None) -> PoolResult:
        """Fetch ``segments`` with at most ``concurrency`` requests in flight."""
        result = PoolResult()
        ordered = sorted(segments, key=Segment.sort_key)
        media = [s.sequence_index for s in ordered if not s.is_init]
        self._first_index = media[0] if media else None
        self._remaining = {s.sequence_index: s for s in ordered}
        self._halt.clear()

        pending = deque(ordered)
        in_flight = {}
        fatal = None

        logger.info(f"Downloading {len(ordered)} segments with {self.concurrency} workers")
        executor = ThreadPoolExecutor(max_workers=self.concurrency)
        try:
            while pending or in_flight:
                while pending and len(in_flight) < self.limit and fatal is None and not self.cancelled:
                    segment = pending.popleft()
                    in_flight[executor.submit(self._download, segment, on_complete)] = segment

                if not in_flight:
                    break

                done, _ = wait(in_flight, timeout=0.5, return_when=FIRST_COMPLETED)
                for future in done:
                    segment = in_flight.pop(future)
                    with self._lock:
                        self._remaining.pop(segment.sequence_index, None)

                    try:
                        size = future.result()
                    except RecoverableSegment as e:
                        logger.error(str(e))
                        result.skipped.append(segment)
                        if on_skip is not None:
                            on_skip(segment)
                        continue
                    except Exception as e:
                        logger.error(f"Fatal download error: {e}")
                        fatal = fatal or e
                        self._halt.set()
                        continue

                    if size is not None:
                        result.completed += 1
                        result.bytes_fetched += size

                if (fatal is not None or self.cancelled) and not in_flight:
                    break

        finally:
            executor.shutdown(wait=True, cancel_futures=True)

        if fatal is not None:
            raise fatal
        if self.cancelled:
            raise Cancelled(f"Cancelled after {result.completed} of {len(ordered)} segments")

        if result.skipped:
            logger.warning(f"{result.skipped_count} segments skipped after {self.max_retries} attempts")
        return result

    def _download(self, segment: Segment, on_complete) -> Optional[int]:
        last_error = None

        for attempt in range(self.max_retries):
            if self._halted():
                return None

            url = self._current_url(segment)
            try:
                data = self.fetch(segment, url, self.timeout)

            except (FatalUrlRefreshTimeout, Cancelled):
                raise
            except Exception as e:
                if self._halted():
                    return None

                last_error = e
                retry_after = self._on_failure(segment, e)
                logger.warning(f"Segment {segment.sequence_index} failed (attempt {attempt + 1}/{self.max_retries}): {e}")

                if attempt + 1 < self.max_retries:
                    self._sleep(self._backoff(attempt, retry_after))
                continue

            self._on_success()
            logger.debug(f"Downloaded segment {segment.sequence_index} ({format_size(len(data))})")
            if on_complete is not None:
                on_complete(segment, data)
            return len(data)

        if self._is_fatal_segment(segment):
            raise FatalFirstSegment(segment, last_error)
        raise RecoverableSegment(segment, last_error)

    def _on_success(self) -> None:
        with self._lock:
            self._consecutive_forbidden = 0
            self._consecutive_throttle = 0
            if self._limit < self.concurrency:
                self._successes_since_throttle += 1
                if self._successes_since_throttle >= SUCCESSES_BEFORE_RESTORE:
                    self._limit += 1
                    self._successes_since_throttle = 0
                    logger.info(f"Restored concurrency to {self._limit}")
        self._check_clock()

    def _on_failure(self, segment: Segment, error: Exception) -> Optional[float]:
        """Update failure counters; returns a server-requested delay if any."""
        status = status_of(error)

        if status == 429:
            with self._lock:
                self._consecutive_throttle += 1
                self._successes_since_throttle = 0
                if self._consecutive_throttle >= THROTTLES_BEFORE_BACKOFF and self._limit > 1:
                    self._limit = max(1, self._limit // 2)
                    self._consecutive_throttle = 0
                    logger.warning(f"Rate limited, concurrency reduced to {self._limit}")
            return getattr(error, 'retry_after', None)

        if status in FORBIDDEN_STATUSES:
            with self._lock:
                self._consecutive_forbidden += 1
                trigger = self._consecutive_forbidden >= FORBIDDEN_BEFORE_REFRESH
            if self.hooks.supports_refresh and (trigger or self._refresh_lock.locked()):
                self._refresh_urls()
            return None

        if isinstance(error, (httpx.NetworkError, ConnectionError)):
            self._on_network_error(segment)
        return None

    def _refresh_urls(self) -> None:
        if not self._refresh_lock.acquire(blocking=False):
            # Another worker is refreshing; retry only once its map is applied
            if self._refresh_lock.acquire(timeout=self.url_refresh_timeout):
                self._refresh_lock.release()
            return

        try:
            with self._lock:
                pending_urls = [self._url_map.get(s.url, s.url) for s in self._remaining.values()]
                self._consecutive_forbidden = 0

            logger.info(f"Requesting URL refresh for {len(pending_urls)} segments")
            refresher = ThreadPoolExecutor(max_workers=1)
            future = refresher.submit(self.hooks.refresh_urls, pending_urls)
            try:
                mapping = future.result(timeout=self.url_refresh_timeout)
            except FutureTimeout:
                self._halt.set()
                raise FatalUrlRefreshTimeout(self.url_refresh_timeout)
            except Exception as e:
                logger.error(f"URL refresh hook failed: {e}")
                mapping = None
            finally:
                refresher.shutdown(wait=False)

            if mapping:
                with self._lock:
                    reverse = {current: original for original, current in self._url_map.items()}
                    for old, new in mapping.items():
                        self._url_map[reverse.get(old, old)] = new
                logger.info(f"Applied {len(mapping)} refreshed URLs")

        finally:
            self._refresh_lock.release()

    def _on_network_error(self, segment: Segment) -> None:
        now = time.monotonic()
        with self._lock:
            self._network_errors.append((now, segment.sequence_index))
            while self._network_errors and now - self._network_errors[0][0] > self.network_window:
                self._network_errors.popleft()
            distinct = {index for _, index in self._network_errors}
            signal = len(distinct) >= NETWORK_ERRORS_BEFORE_SIGNAL
            if signal:
                self._network_errors.clear()

        if signal:
            logger.warning(f"{len(distinct)} connection errors within {self.network_window}s, network may have changed")
            try:
                self.hooks.on_network_change(len(distinct))
            except Exception as e:
                logger.error(f"network_change hook failed: {e}")

    def _check_clock(self) -> None:
        wall, mono = time.time(), time.monotonic()
        with self._lock:
            last_wall, last_mono = self._clock
            self._clock = (wall, mono)
        gap = (wall - last_wall) - (mono - last_mono)

        if gap > self.sleep_drift:
            logger.warning(f"Clock jumped {gap:.0f}s, system probably slept")
            try:
                self.hooks.on_sleep_wake(gap)
            except Exception as e:
                logger.error(f"sleep_wake hook failed: {e}")
