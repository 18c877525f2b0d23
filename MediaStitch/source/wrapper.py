# 18.10.26

import os
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, Union


# External libraries
import httpx
from rich.console import Console


# Internal utilities
from MediaStitch.utils import config_manager
from MediaStitch.utils.http_client import get_headers


# Logic
from .parser import DashParser, HLSParser, ManifestFetcher, detect_manifest_type
from .decrypt import KeyResolver, SegmentDecryptor
from .downloader import AdHeuristic, DuplicateDetector, HttpSegmentFetcher, PoolHooks, SegmentPool
from .downloader.segments import BASE_DELAY
from .utils.codec import detect_audio_codec, detect_mime_type
from .utils.exceptions import Cancelled, FatalManifest, MediaStitchError
from .utils.file_size import format_bitrate, format_size
from .utils.merger import SpillStore
from .utils.object import AssemblyResult, DownloadJob, Phase, ProgressEvent, Segment, Track, TrackResult
from .utils.tracker import ProgressTracker


# Variable
logger = logging.getLogger(__name__)
console = Console()
MAX_WORKERS = config_manager.config.get_int('DOWNLOAD', 'thread_count', default=6)
MAX_RETRIES = config_manager.config.get_int('REQUESTS', 'max_retry', default=6)
TIMEOUT = config_manager.config.get_int('REQUESTS', 'timeout', default=30)
FILTER_ADS = config_manager.config.get_bool('DOWNLOAD', 'filter_ads', default=True)
VALIDATE_CONTENT = config_manager.config.get_bool('DOWNLOAD', 'validate_content', default=True)

MIME_EXTENSIONS = {
    "video/mp2t": ".ts",
    "video/mp4": ".mp4",
    "audio/mp4": ".m4a",
    "audio/aac": ".aac",
    "audio/mpeg": ".mp3",
    "audio/ac3": ".ac3",
    "audio/eac3": ".ec3",
}


class DecryptingFetcher:
    """Segment fetch followed by inline decryption."""

    def __init__(self, fetch, decryptor: SegmentDecryptor):
        self.fetch = fetch
        self.decryptor = decryptor

    def __call__(self, segment: Segment, url: str, timeout: float) -> bytes:
        return self.decryptor.decrypt(self.fetch(segment, url, timeout), segment)

    def abort(self) -> None:
        abort = getattr(self.fetch, 'abort', None)
        if callable(abort):
            abort()


class JobOutput:
    def __init__(self, job: DownloadJob, spill):
        self.job = job
        self.spill = spill
        self.dedup = DuplicateDetector()
        self.skipped = 0


class StreamAssembler:
    def __init__(self, url: str, headers: Optional[Dict[str, str]] = None, key: Optional[Union[str, bytes]] = None, on_progress: Optional[Callable[[ProgressEvent], None]] = None, hooks: Optional[PoolHooks] = None, concurrency: int = MAX_WORKERS, max_retries: int = MAX_RETRIES, timeout: float = TIMEOUT, filter_ads: bool = FILTER_ADS, validate_content: bool = VALIDATE_CONTENT, base_delay: float = BASE_DELAY, spill: Optional[str] = None, temp_dir: Optional[str] = None, transport: Optional[httpx.BaseTransport] = None, segment_fetcher=None):
        self.url = url
        self.headers = headers or get_headers()
        self.hooks = hooks
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.timeout = timeout
        self.base_delay = base_delay
        self.filter_ads = filter_ads
        self.spill_strategy = spill
        self.temp_dir = temp_dir

        self.manifest_fetcher = ManifestFetcher(self.headers, transport=transport)
        self.key_resolver = KeyResolver(self.headers, preset_key=key, transport=transport)
        self.segment_fetcher = segment_fetcher or HttpSegmentFetcher(self.headers, validate=validate_content, transport=transport)
        self.tracker = ProgressTracker(on_progress)

        self.state = Phase.PARSING
        self.jobs: List[DownloadJob] = []
        self._outputs: List[JobOutput] = []
        self._pools: List[SegmentPool] = []
        self._abort = threading.Event()
        self._cancelled = False
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop scheduling new fetches; ``start`` resolves as Cancelled."""
        logger.info("Cancellation requested")
        with self._lock:
            self._cancelled = True
            pools = list(self._pools)
        for pool in pools:
            pool.cancel()
        self._abort.set()

    def _set_state(self, phase: Phase, message: str = "") -> None:
        self.state = phase
        logger.info(f"State -> {phase.value}{': ' + message if message else ''}")
        self.tracker.set_phase(phase, message)

    def _check_cancel(self) -> None:
        if self._cancelled:
            raise Cancelled("Cancelled by caller")

    def start(self) -> AssemblyResult:
        try:
            self._set_state(Phase.PARSING, self.url)
            self.jobs = self._parse()
            self._check_cancel()

            self._set_state(Phase.RESOLVING_KEYS)
            cache = self.key_resolver.resolve_all(s for job in self.jobs for s in job.segments)
            self._check_cancel()

            self._set_state(Phase.DOWNLOADING, f"{sum(len(j.segments) for j in self.jobs)} segments")
            self._download(SegmentDecryptor(cache))
            self._check_cancel()

            self._set_state(Phase.MERGING)
            tracks = [self._merge(output) for output in self._outputs]

            self._set_state(Phase.FINALIZING)
            result = AssemblyResult(Phase.DONE, tracks)
            if result.skipped_segment_count:
                console.print(f"[yellow]{result.skipped_segment_count} segments could not be downloaded and were skipped.")

            self._set_state(Phase.DONE, ", ".join(f"{t.track.value} {format_size(t.size)}" for t in tracks))
            return result

        except Cancelled as e:
            self._discard()
            self._set_state(Phase.CANCELLED, str(e))
            return AssemblyResult(Phase.CANCELLED, error=e)

        except MediaStitchError as e:
            logger.error(f"Assembly failed: {e}")
            self._discard()
            self._set_state(Phase.FAILED, str(e))
            return AssemblyResult(Phase.FAILED, error=e)

        except (OSError, httpx.HTTPError) as e:
            logger.exception(f"Unexpected I/O error: {e}")
            self._discard()
            self._set_state(Phase.FAILED, str(e))
            return AssemblyResult(Phase.FAILED, error=e)

        finally:
            close = getattr(self.segment_fetcher, 'close', None)
            if callable(close):
                close()

    def _parse(self) -> List[DownloadJob]:
        text, final_url = self.manifest_fetcher.fetch(self.url)
        kind = detect_manifest_type(text)
        logger.info(f"Manifest type: {kind}")

        if kind == 'hls':
            jobs = self._hls_jobs(text, final_url)
        else:
            jobs = self._dash_jobs(text, final_url)

        jobs = [self._filter_ads(job) for job in jobs]
        for job in jobs:
            if not any(not s.is_init for s in job.segments):
                raise FatalManifest(f"No content segments left for {job.track.value} track")
            self.tracker.add_track(job.track, len(job.segments))
        return jobs

    def _new_job(self, track: Track, segments: List[Segment], base_url: str, codecs: Optional[str] = None, mime_type: Optional[str] = None) -> DownloadJob:
        return DownloadJob(
            job_id=f"{track.value}",
            track=track,
            segments=segments,
            concurrency=self.concurrency,
            max_retries=self.max_retries,
            timeout=self.timeout,
            cancel_event=self._abort,
            base_url=base_url,
            codecs=codecs,
            mime_type=mime_type,
        )

    def _hls_jobs(self, text: str, url: str) -> List[DownloadJob]:
        selection = HLSParser(fetcher=self.manifest_fetcher).resolve(text, url)
        codecs = selection.variant.codecs if selection.variant else None
        jobs = [self._new_job(selection.media.track, selection.media.segments, selection.media.url, codecs)]

        if selection.audio_media is not None:
            logger.info(f"Detached audio: {selection.audio.name} ({selection.audio.language})")
            jobs.append(self._new_job(Track.AUDIO, selection.audio_media.segments, selection.audio_media.url, codecs))
        return jobs

    def _dash_jobs(self, text: str, url: str) -> List[DownloadJob]:
        representations = DashParser().parse(text, url)
        video, audio = DashParser.select(representations)
        jobs = []

        if video is not None:
            track = Track.MUXED if any(s.track == Track.MUXED for s in video.segments) else Track.VIDEO
            logger.info(f"Selected video {video.id} {video.width}x{video.height} @ {format_bitrate(video.bandwidth)}")
            jobs.append(self._new_job(track, video.segments, url, video.codecs, video.mime_type))
        if audio is not None:
            logger.info(f"Selected audio {audio.id} @ {format_bitrate(audio.bandwidth)}")
            jobs.append(self._new_job(Track.AUDIO, audio.segments, url, audio.codecs, audio.mime_type))

        if not jobs:
            raise FatalManifest(f"No video or audio representation in {url}")
        return jobs

    def _filter_ads(self, job: DownloadJob) -> DownloadJob:
        if not self.filter_ads:
            return job
        content, ads = AdHeuristic(job.base_url).filter(job.segments)
        if ads:
            console.print(f"[cyan]Skipping {len(ads)} ad segments in {job.track.value} track")
            job.segments = content
        return job

    def _download(self, decryptor: SegmentDecryptor) -> None:
        fetch = DecryptingFetcher(self.segment_fetcher, decryptor)

        for job in self.jobs:
            spill = SpillStore.create(len(job.segments), temp_dir=self.temp_dir, force=self.spill_strategy)
            self._outputs.append(JobOutput(job, spill))

        with self._lock:
            self._check_cancel()
            self._pools = [
                SegmentPool(fetch, concurrency=job.concurrency, max_retries=job.max_retries, timeout=job.timeout, hooks=self.hooks, cancel_event=job.cancel_event, base_delay=self.base_delay)
                for job in self.jobs
            ]

        if len(self._outputs) == 1:
            self._run_job(self._outputs[0], self._pools[0])
            return

        errors = []
        with ThreadPoolExecutor(max_workers=len(self._outputs)) as executor:
            futures = [executor.submit(self._run_job, output, pool) for output, pool in zip(self._outputs, self._pools)]
            for future in as_completed(futures):
                try:
                    future.result()
                except MediaStitchError as e:
                    errors.append(e)

        failures = [e for e in errors if not isinstance(e, Cancelled)]
        if failures:
            raise failures[0]
        if errors:
            raise errors[0]

    def _run_job(self, output: JobOutput, pool: SegmentPool) -> None:
        job = output.job

        def on_complete(segment: Segment, data: bytes) -> None:
            if output.dedup.is_duplicate(data, segment.sequence_index):
                self.tracker.segment_done(job.track, 0, f"{job.track.value}: duplicate segment {segment.sequence_index}")
                return
            output.spill.write(segment.sequence_index, data)
            self.tracker.segment_done(job.track, len(data))

        def on_skip(segment: Segment) -> None:
            output.skipped += 1
            self.tracker.segment_done(job.track, 0, f"{job.track.value}: skipped segment {segment.sequence_index}")

        try:
            result = pool.run(job.segments, on_complete=on_complete, on_skip=on_skip)
        except Cancelled:
            raise
        except Exception:
            # A failed track stops its sibling
            job.cancel_event.set()
            raise
        logger.info(f"{job.track.value} track: {result.completed} fetched, {result.skipped_count} skipped, {output.dedup.duplicates} duplicates")

    def _merge(self, output: JobOutput) -> TrackResult:
        job = output.job
        urls = [s.url for s in job.segments]
        indices = output.spill.indices()
        media_indices = [i for i in indices if i >= 0]
        first_bytes = output.spill.read(media_indices[0])[:4] if media_indices else b""
        mime_type = detect_mime_type(job.track, urls, first_bytes)

        codec = None
        if job.track in (Track.AUDIO, Track.MUXED):
            codec = detect_audio_codec(job.codecs, urls)

        if output.spill.kind == "memory":
            data = output.spill.assemble()
            size, path = len(data), None
        else:
            path = output.spill.assemble(suffix=MIME_EXTENSIONS.get(mime_type, ".bin"))
            data = None
            size = os.path.getsize(path)

        return TrackResult(
            track=job.track,
            size=size,
            mime_type=mime_type,
            data=data,
            path=path,
            skipped_segment_count=output.skipped,
            duplicate_count=output.dedup.duplicates,
            detected_audio_codec=codec,
        )

    def _discard(self) -> None:
        for output in self._outputs:
            output.spill.discard()
