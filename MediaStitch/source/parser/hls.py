# 18.10.26

import re
import logging
from typing import Dict, List, Optional
from urllib.parse import urljoin


# Internal utilities
from MediaStitch.utils import config_manager


# Logic
from ..utils.object import AudioRendition, ByteRange, KeyRef, Segment, Track, Variant
from ..utils.exceptions import FatalManifest
from ..utils.file_size import format_bitrate


# Variable
logger = logging.getLogger(__name__)
ATTRIBUTE_RE = re.compile(r'([A-Z0-9_-]+)\s*=\s*(?:"([^"]*)"|([^,\s]*))')
MAX_DEPTH = config_manager.config.get_int('HLS', 'max_depth', default=5)


def parse_attributes(line: str) -> Dict[str, str]:
    """Parse an ``ATTR=value,ATTR="quoted, value"`` list following the tag colon."""
    _, _, attr_list = line.partition(':')
    attrs = {}
    for match in ATTRIBUTE_RE.finditer(attr_list):
        value = match.group(2) if match.group(2) is not None else match.group(3)
        attrs[match.group(1)] = value
    return attrs


def parse_iv(value: Optional[str]) -> Optional[bytes]:
    if not value:
        return None
    hex_value = value[2:] if value.lower().startswith('0x') else value
    return bytes.fromhex(hex_value.zfill(32)[-32:])


def sequence_iv(sequence: int) -> bytes:
    return max(sequence, 0).to_bytes(16, 'big')


def parse_byterange(value: str):
    """Split ``<n>[@<o>]`` into (length, offset or None)."""
    length, _, offset = value.strip().partition('@')
    return int(length), (int(offset) if offset else None)


def is_master(text: str) -> bool:
    return '#EXT-X-STREAM-INF' in text


def is_media(text: str) -> bool:
    return '#EXTINF' in text


class MasterPlaylist:
    def __init__(self, url: str):
        self.url = url
        self.variants: List[Variant] = []
        self.audio_renditions: List[AudioRendition] = []

    def renditions_for(self, group_id: Optional[str]) -> List[AudioRendition]:
        if not group_id:
            return []
        return [r for r in self.audio_renditions if r.group_id == group_id]


class MediaPlaylist:
    def __init__(self, url: str, track: Track):
        self.url = url
        self.track = track
        self.segments: List[Segment] = []
        self.target_duration = None
        self.media_sequence = 0
        self.end_list = False

    @property
    def duration(self) -> float:
        return sum(s.duration or 0 for s in self.segments if not s.is_init)

    @property
    def is_encrypted(self) -> bool:
        return any(s.key is not None for s in self.segments)


class HlsSelection:
    def __init__(self, media: MediaPlaylist, variant: Optional[Variant] = None, audio: Optional[AudioRendition] = None, audio_media: Optional[MediaPlaylist] = None):
        self.media = media
        self.variant = variant
        self.audio = audio
        self.audio_media = audio_media


class HLSParser:
    def __init__(self, fetcher=None, max_depth: int = MAX_DEPTH):
        self.fetcher = fetcher
        self.max_depth = max_depth

    def parse_master(self, text: str, url: str) -> MasterPlaylist:
        try:
            return self._scan_master(text, url)
        except ValueError as e:
            raise FatalManifest(f"Malformed master playlist {url}: {e}") from e

    def _scan_master(self, text: str, url: str) -> MasterPlaylist:
        master = MasterPlaylist(url)
        pending = None

        for raw in text.splitlines():
            line = raw.strip()
            if not line:
                continue

            if line.startswith('#EXT-X-STREAM-INF:'):
                pending = parse_attributes(line)

            elif line.startswith('#EXT-X-MEDIA:'):
                attrs = parse_attributes(line)
                if attrs.get('TYPE') == 'AUDIO':
                    master.audio_renditions.append(AudioRendition(
                        group_id=attrs.get('GROUP-ID', ''),
                        uri=urljoin(url, attrs['URI']) if attrs.get('URI') else None,
                        name=attrs.get('NAME', 'unknown'),
                        language=attrs.get('LANGUAGE', 'und'),
                        default=attrs.get('DEFAULT') == 'YES',
                        autoselect=attrs.get('AUTOSELECT') == 'YES',
                        channels=attrs.get('CHANNELS'),
                    ))

            elif not line.startswith('#') and pending is not None:
                bandwidth = pending.get('BANDWIDTH') or pending.get('AVERAGE-BANDWIDTH') or 0
                variant = Variant(
                    url=urljoin(url, line),
                    bandwidth=int(bandwidth),
                    resolution=pending.get('RESOLUTION'),
                    codecs=pending.get('CODECS'),
                    audio_group=pending.get('AUDIO'),
                )
                variant.frame_rate = pending.get('FRAME-RATE')
                master.variants.append(variant)
                pending = None

        for variant in master.variants:
            variant.audio_tracks = master.renditions_for(variant.audio_group)

        logger.info(f"Master playlist: {len(master.variants)} variants, {len(master.audio_renditions)} audio renditions")
        return master

    def parse_media(self, text: str, url: str, track: Track = Track.MUXED) -> MediaPlaylist:
        try:
            return self._scan_media(text, url, track)
        except ValueError as e:
            raise FatalManifest(f"Malformed media playlist {url}: {e}") from e

    def _scan_media(self, text: str, url: str, track: Track) -> MediaPlaylist:
        playlist = MediaPlaylist(url, track)
        sequence = 0
        active_key = None
        pending_duration = None
        pending_range = None
        range_ends: Dict[str, int] = {}
        discontinuity = False
        cue = None
        cue_duration = None
        map_uri = None

        for raw in text.splitlines():
            line = raw.strip()
            if not line:
                continue

            if line.startswith('#EXT-X-MEDIA-SEQUENCE:'):
                sequence = int(line.split(':', 1)[1])
                playlist.media_sequence = sequence

            elif line.startswith('#EXT-X-TARGETDURATION:'):
                playlist.target_duration = float(line.split(':', 1)[1])

            elif line.startswith('#EXT-X-KEY:'):
                attrs = parse_attributes(line)
                method = attrs.get('METHOD', 'NONE')
                if method == 'NONE':
                    active_key = None
                else:
                    active_key = KeyRef(
                        method=method,
                        uri=urljoin(url, attrs['URI']) if attrs.get('URI') else None,
                        iv=parse_iv(attrs.get('IV')),
                        key_format=attrs.get('KEYFORMAT', 'identity'),
                    )
                    logger.info(f"Found encryption: {method}, key: {active_key.uri}")

            elif line.startswith('#EXT-X-MAP:'):
                attrs = parse_attributes(line)
                uri = urljoin(url, attrs.get('URI', ''))
                if map_uri is None:
                    map_uri = uri
                    byte_range = None
                    if attrs.get('BYTERANGE'):
                        length, offset = parse_byterange(attrs['BYTERANGE'])
                        byte_range = ByteRange(length, offset or 0)
                    init = Segment(uri, -1, track=track, byte_range=byte_range, key=self._segment_key(active_key, sequence), is_init=True)
                    playlist.segments.append(init)
                elif uri != map_uri:
                    logger.warning(f"Ignoring additional init segment {uri}")

            elif line.startswith('#EXT-X-BYTERANGE:'):
                pending_range = parse_byterange(line.split(':', 1)[1])

            elif line.startswith('#EXTINF:'):
                value = line.split(':', 1)[1].split(',', 1)[0]
                try:
                    pending_duration = float(value)
                except ValueError:
                    pending_duration = 0.0

            elif line.startswith('#EXT-X-DISCONTINUITY') and not line.startswith('#EXT-X-DISCONTINUITY-SEQUENCE'):
                discontinuity = True

            elif line.startswith('#EXT-X-ENDLIST'):
                playlist.end_list = True

            elif line.startswith('#'):
                marker = self._ad_cue(line)
                if marker:
                    cue, parsed_duration = marker
                    if parsed_duration is not None:
                        cue_duration = parsed_duration

            elif pending_duration is not None:
                seg_url = urljoin(url, line)
                byte_range = None
                if pending_range is not None:
                    length, offset = pending_range
                    if offset is None:
                        offset = range_ends.get(seg_url, 0)
                    byte_range = ByteRange(length, offset)
                    range_ends[seg_url] = byte_range.end

                segment = Segment(seg_url, sequence, track=track, duration=pending_duration, byte_range=byte_range, key=self._segment_key(active_key, sequence))
                segment.discontinuity = discontinuity
                segment.ad_cue = cue
                segment.ad_cue_duration = cue_duration if cue == 'start' else None
                playlist.segments.append(segment)

                sequence += 1
                pending_duration = None
                pending_range = None
                discontinuity = False
                cue = None
                cue_duration = None

        if not playlist.end_list:
            logger.warning(f"Playlist has no #EXT-X-ENDLIST, treating it as a snapshot: {url}")

        logger.info(f"Found {len(playlist.segments)} segments, duration: {playlist.duration:.1f}s")
        return playlist

    @staticmethod
    def _segment_key(active_key: Optional[KeyRef], sequence: int) -> Optional[KeyRef]:
        if active_key is None:
            return None
        return KeyRef(active_key.method, active_key.uri, active_key.iv or sequence_iv(sequence), active_key.key_format)

    @staticmethod
    def _ad_cue(line: str):
        """Return ('start'|'end', duration or None) for vendor ad markers."""
        if line.startswith('#EXT-X-CUE-OUT-CONT') or line.startswith('#EXT-OATCLS-SCTE35'):
            return 'start', None

        if line.startswith('#EXT-X-CUE-OUT'):
            _, _, value = line.partition(':')
            duration = None
            if value:
                match = re.search(r'(?:DURATION=)?([\d.]+)', value)
                if match:
                    duration = float(match.group(1))
            return 'start', duration

        if line.startswith('#EXT-X-CUE-IN'):
            return 'end', None

        if line.startswith('#EXT-X-DATERANGE:'):
            attrs = parse_attributes(line)
            if 'SCTE35-OUT' in attrs:
                duration = attrs.get('PLANNED-DURATION') or attrs.get('DURATION')
                return 'start', float(duration) if duration else None
            if 'SCTE35-IN' in attrs:
                return 'end', None

        if line.startswith('#EXT-X-SCTE35:'):
            attrs = parse_attributes(line)
            if attrs.get('CUE-OUT') == 'YES':
                return 'start', None
            if attrs.get('CUE-IN') == 'YES':
                return 'end', None

        return None

    @staticmethod
    def select_variant(master: MasterPlaylist) -> Variant:
        if not master.variants:
            raise FatalManifest(f"Master playlist has no variants: {master.url}")
        return max(master.variants, key=lambda v: (v.bandwidth, v.height))

    @staticmethod
    def select_audio(variant: Variant) -> Optional[AudioRendition]:
        """Detached audio rendition for the variant, or None when audio is muxed in."""
        candidates = [r for r in variant.audio_tracks if r.uri]
        if not candidates:
            return None
        for rendition in candidates:
            if rendition.default:
                return rendition
        return candidates[0]

    def resolve(self, text: str, url: str, depth: int = 0) -> HlsSelection:
        """Follow master playlists down to the selected media playlist (and its audio)."""
        if depth > self.max_depth:
            raise FatalManifest(f"HLS playlist nesting exceeds {self.max_depth} levels at {url}")

        if not is_master(text):
            if not is_media(text):
                raise FatalManifest(f"Playlist has neither variants nor segments: {url}")
            return HlsSelection(self.parse_media(text, url, Track.MUXED))

        master = self.parse_master(text, url)
        variant = self.select_variant(master)
        logger.info(f"Selected variant {variant.resolution or '?'} @ {format_bitrate(variant.bandwidth)}")

        child_text, child_url = self._fetch(variant.url)
        selection = self.resolve(child_text, child_url, depth + 1)
        if selection.variant is None:
            selection.variant = variant

        audio = self.select_audio(variant)
        if audio is not None and selection.audio is None:
            audio_text, audio_url = self._fetch(audio.uri)
            if is_master(audio_text):
                raise FatalManifest(f"Audio rendition points at a master playlist: {audio.uri}")
            selection.audio = audio
            selection.audio_media = self.parse_media(audio_text, audio_url, Track.AUDIO)
            selection.media.track = Track.VIDEO
            for segment in selection.media.segments:
                segment.track = Track.VIDEO

        return selection

    def _fetch(self, url: str):
        if self.fetcher is None:
            raise FatalManifest(f"No fetcher available to load {url}")
        return self.fetcher.fetch(url)
