# 18.10.26

import re
import math
import logging
from urllib.parse import urljoin
from typing import Dict, List, Optional, Tuple


# External libraries
from lxml import etree
from isodate import parse_duration, ISO8601Error


# Logic
from ..utils.object import ByteRange, Representation, Segment, Track
from ..utils.exceptions import FatalManifest


# Variable
logger = logging.getLogger(__name__)
DASH_NS = 'urn:mpeg:dash:schema:mpd:2011'
TEMPLATE_RE = re.compile(r'\$(RepresentationID|Number|Bandwidth|Time)(?:%0(\d+)d)?\$')
VIDEO_CODECS = ('avc', 'hvc', 'hev', 'vp8', 'vp9', 'vp09', 'av01', 'dvh', 'dvhe', 'mp4v')
AUDIO_CODECS = ('mp4a', 'ac-3', 'ec-3', 'ac-4', 'opus', 'flac', 'vorbis', 'dtsc')


class DurationUtils:
    """ISO-8601 durations as float seconds"""

    @staticmethod
    def parse_duration(duration_str: Optional[str]) -> float:
        if not duration_str:
            return 0.0
        try:
            return parse_duration(duration_str.strip()).total_seconds()
        except (ISO8601Error, ValueError):
            logger.warning(f"Invalid ISO-8601 duration: {duration_str}")
            return 0.0


class URLBuilder:
    """Handles URL construction with template substitution"""

    @staticmethod
    def build_url(base: str, template: str, rep_id: Optional[str] = None, number: Optional[int] = None, time: Optional[int] = None, bandwidth: Optional[int] = None) -> str:
        values = {
            'RepresentationID': rep_id,
            'Number': number,
            'Bandwidth': bandwidth,
            'Time': time,
        }

        def substitute(match):
            value = values.get(match.group(1))
            if value is None:
                return match.group(0)
            if match.group(2):
                return str(value).zfill(int(match.group(2)))
            return str(value)

        resolved = TEMPLATE_RE.sub(substitute, template).replace('$$', '$')
        return URLBuilder._finalize_url(base, resolved)

    @staticmethod
    def _finalize_url(base: str, template: str) -> str:
        """Finalize URL construction preserving query and fragment"""
        parts = template.split('#', 1)
        path_and_query = parts[0]
        fragment = ('#' + parts[1]) if len(parts) == 2 else ''

        if '?' in path_and_query:
            path, query = path_and_query.split('?', 1)
            return urljoin(base, path) + '?' + query + fragment
        return urljoin(base, path_and_query) + fragment


class NamespaceManager:
    """Namespace-aware lookups that also work on MPDs without an xmlns"""

    def __init__(self, root: etree._Element):
        self.namespace = None
        if isinstance(root.tag, str) and root.tag.startswith('{'):
            self.namespace = root.tag[1:].split('}', 1)[0]
        self.nsmap = {'mpd': self.namespace} if self.namespace else {}

    def _path(self, path: str) -> str:
        if not self.namespace:
            return path
        return '/'.join(step if step in ('.', '..', '') else f'mpd:{step}' for step in path.split('/'))

    def find(self, element: etree._Element, path: str) -> Optional[etree._Element]:
        return element.find(self._path(path), namespaces=self.nsmap)

    def findall(self, element: etree._Element, path: str) -> List[etree._Element]:
        return element.findall(self._path(path), namespaces=self.nsmap)


class BaseURLResolver:
    """Resolves base URLs at different MPD hierarchy levels"""

    def __init__(self, mpd_url: str, ns_manager: NamespaceManager):
        self.mpd_url = mpd_url
        self.ns = ns_manager

    def resolve_base_url(self, element: etree._Element, current_base: str) -> str:
        base_elem = self.ns.find(element, 'BaseURL')
        if base_elem is not None and base_elem.text and base_elem.text.strip():
            return urljoin(current_base, base_elem.text.strip())
        return current_base


class SegmentTimelineParser:
    """Expands SegmentTimeline into presentation times"""

    def __init__(self, ns_manager: NamespaceManager):
        self.ns = ns_manager

    def parse(self, timeline: etree._Element, end_time: Optional[int]) -> List[Tuple[int, int]]:
        """Return [(time, duration)], honouring negative repeat counts."""
        entries = self.ns.findall(timeline, 'S')
        result = []
        current_time = 0

        for idx, s_elem in enumerate(entries):
            d = s_elem.get('d')
            if d is None:
                continue
            d = int(d)
            if s_elem.get('t') is not None:
                current_time = int(s_elem.get('t'))

            r = int(s_elem.get('r', 0))
            if r >= 0:
                count = r + 1
            else:
                next_t = entries[idx + 1].get('t') if idx + 1 < len(entries) else None
                limit = int(next_t) if next_t is not None else end_time
                if limit is None or d <= 0:
                    logger.warning("Open-ended SegmentTimeline repeat without a known end, emitting one segment")
                    count = 1
                else:
                    count = max(0, math.ceil((limit - current_time) / d))

            for _ in range(count):
                result.append((current_time, d))
                current_time += d

        return result


class MetadataExtractor:
    """Extracts type metadata from adaptation sets and representations"""

    @staticmethod
    def determine_content_type(content_type: Optional[str], mime_type: Optional[str], width: int, height: int, codecs: Optional[str]) -> str:
        if content_type:
            return content_type.lower()
        if mime_type:
            main = mime_type.split('/')[0].lower()
            if main == 'application' and codecs and codecs.lower().startswith(('stpp', 'wvtt')):
                return 'text'
            if main in ('video', 'audio', 'text', 'image'):
                return main
        if width or height:
            return 'video'
        if codecs:
            lowered = codecs.lower()
            if lowered.startswith(VIDEO_CODECS):
                return 'video'
            if lowered.startswith(AUDIO_CODECS):
                return 'audio'
        return 'unknown'

    @staticmethod
    def track_for(content_type: str, codecs: Optional[str]) -> Track:
        if content_type == 'audio':
            return Track.AUDIO
        if codecs:
            parts = [c.strip().lower() for c in codecs.split(',')]
            has_video = any(p.startswith(VIDEO_CODECS) for p in parts)
            has_audio = any(p.startswith(AUDIO_CODECS) for p in parts)
            if has_video and has_audio:
                return Track.MUXED
        return Track.VIDEO


class AdPeriodDetector:
    """Detects advertisement periods"""

    AD_INDICATORS = ['_ad/', 'ad_bumper', '/creative/', '_OandO/']
    AD_PERIOD_RE = re.compile(r'(^|[_\-.])(ad|ads|preroll|midroll|postroll)([_\-.]|\d|$)', re.IGNORECASE)

    @staticmethod
    def is_ad_period(period_id: Optional[str], base_url: str) -> bool:
        for indicator in AdPeriodDetector.AD_INDICATORS:
            if indicator in base_url:
                return True
        return bool(period_id and AdPeriodDetector.AD_PERIOD_RE.search(period_id))


class PeriodRepresentation:
    """One representation as seen inside a single period."""

    def __init__(self, rep: Representation, init: Optional[Segment], segments: List[Segment], ad_hint: bool):
        self.rep = rep
        self.init = init
        self.segments = segments
        self.ad_hint = ad_hint


class DashParser:
    def __init__(self):
        self.ns = None
        self.url_resolver = None
        self.timeline_parser = None
        self.mpd_duration = 0.0
        self.root = None

    def parse(self, text: str, url: str) -> List[Representation]:
        """Parse MPD text into representations grouped by (id, type) across periods."""
        try:
            root = etree.fromstring(text.encode('utf-8') if isinstance(text, str) else text)
        except etree.XMLSyntaxError as e:
            raise FatalManifest(f"Invalid MPD XML at {url}: {e}") from e

        if not isinstance(root.tag, str) or etree.QName(root).localname != 'MPD':
            raise FatalManifest(f"Document root is not <MPD>: {url}")

        self.ns = NamespaceManager(root)
        self.url_resolver = BaseURLResolver(url, self.ns)
        self.timeline_parser = SegmentTimelineParser(self.ns)
        self.mpd_duration = DurationUtils.parse_duration(root.get('mediaPresentationDuration'))

        if root.get('type') == 'dynamic':
            logger.warning("Dynamic MPD, treating it as a snapshot")

        try:
            periods, representations = self._collect(root, url)
        except ValueError as e:
            raise FatalManifest(f"Malformed value in MPD {url}: {e}") from e

        if not representations:
            raise FatalManifest(f"MPD has no playable representations: {url}")

        logger.info(f"MPD parsed: {len(periods)} periods, {len(representations)} representations")
        return representations

    def _collect(self, root: etree._Element, url: str) -> Tuple[List[etree._Element], List[Representation]]:
        self.root = root
        base_url = self.url_resolver.resolve_base_url(root, url)
        periods = self.ns.findall(root, 'Period')
        implicit = not periods
        if implicit:
            periods = [root]
        timings = self._period_timings(periods, implicit)

        aggregator: Dict[Tuple[str, str], List[PeriodRepresentation]] = {}
        for period_idx, period in enumerate(periods):
            _, duration = timings[period_idx]
            period_base = base_url if implicit else self.url_resolver.resolve_base_url(period, base_url)
            ad_hint = False if implicit else AdPeriodDetector.is_ad_period(period.get('id'), period_base)
            if ad_hint:
                logger.info(f"Period {period.get('id') or period_idx} looks like an ad break")

            for adapt_set in self.ns.findall(period, 'AdaptationSet'):
                for parsed in self._parse_adaptation_set(adapt_set, period, period_base, duration, ad_hint):
                    key = (parsed.rep.id, parsed.rep.type)
                    aggregator.setdefault(key, []).append(parsed)

        representations = [self._merge_periods(parts) for parts in aggregator.values()]
        return periods, [r for r in representations if r.segments]

    def _period_timings(self, periods: List[etree._Element], implicit: bool) -> List[Tuple[float, float]]:
        """(start, duration) in seconds for every period."""
        if implicit:
            return [(0.0, self.mpd_duration)]

        starts = []
        previous_end = 0.0
        for period in periods:
            start = DurationUtils.parse_duration(period.get('start')) if period.get('start') else previous_end
            starts.append(start)
            previous_end = start + DurationUtils.parse_duration(period.get('duration'))

        timings = []
        for idx, period in enumerate(periods):
            duration = 0.0
            if period.get('duration'):
                duration = DurationUtils.parse_duration(period.get('duration'))
            elif idx + 1 < len(periods) and periods[idx + 1].get('start'):
                duration = starts[idx + 1] - starts[idx]
            elif self.mpd_duration:
                duration = self.mpd_duration - starts[idx]
            timings.append((starts[idx], max(duration, 0.0)))
        return timings

    def _parse_adaptation_set(self, adapt_set, period, base_url: str, period_duration: float, ad_hint: bool) -> List[PeriodRepresentation]:
        results = []
        adapt_base = self.url_resolver.resolve_base_url(adapt_set, base_url)

        if self.ns.find(adapt_set, 'ContentProtection') is not None:
            logger.warning("AdaptationSet carries ContentProtection, segments will stay DRM-encrypted")

        for rep_elem in self.ns.findall(adapt_set, 'Representation'):
            rep_base = self.url_resolver.resolve_base_url(rep_elem, adapt_base)
            codecs = rep_elem.get('codecs') or adapt_set.get('codecs')
            mime_type = rep_elem.get('mimeType') or adapt_set.get('mimeType')
            width = int(rep_elem.get('width') or adapt_set.get('width') or 0)
            height = int(rep_elem.get('height') or adapt_set.get('height') or 0)
            content_type = MetadataExtractor.determine_content_type(adapt_set.get('contentType'), mime_type, width, height, codecs)

            if content_type not in ('video', 'audio'):
                logger.debug(f"Skipping {content_type} representation {rep_elem.get('id')}")
                continue

            rep = Representation(
                rep_id=rep_elem.get('id') or f"{content_type}_{rep_elem.get('bandwidth', 0)}",
                rep_type=content_type,
                bandwidth=int(rep_elem.get('bandwidth') or 0),
                width=width,
                height=height,
                codecs=codecs,
                mime_type=mime_type,
            )
            track = MetadataExtractor.track_for(content_type, codecs)
            init, segments = self._build_segments(rep, rep_elem, adapt_set, period, rep_base, period_duration, track)
            results.append(PeriodRepresentation(rep, init, segments, ad_hint))

        return results

    def _merged_template(self, elements) -> Tuple[Dict[str, str], Optional[etree._Element]]:
        """Combine SegmentTemplate attributes from outermost to innermost level."""
        attrs: Dict[str, str] = {}
        timeline = None
        found = False
        for element in elements:
            template = self.ns.find(element, 'SegmentTemplate')
            if template is None:
                continue
            found = True
            attrs.update(template.attrib)
            inner_timeline = self.ns.find(template, 'SegmentTimeline')
            if inner_timeline is not None:
                timeline = inner_timeline
        return (attrs if found else {}), timeline

    def _build_segments(self, rep: Representation, rep_elem, adapt_set, period, base_url: str, period_duration: float, track: Track):
        template_attrs, timeline = self._merged_template([period, adapt_set, rep_elem])
        if template_attrs:
            return self._template_segments(rep, template_attrs, timeline, base_url, period_duration, track)

        segment_list = self.ns.find(rep_elem, 'SegmentList')
        if segment_list is None:
            segment_list = self.ns.find(adapt_set, 'SegmentList')
        if segment_list is not None:
            return self._list_segments(segment_list, base_url, track)

        # SegmentBase or bare BaseURL: the whole resource is one segment
        if self._has_resource([self.root, period, adapt_set, rep_elem]):
            return None, [Segment(base_url, 0, track=track, duration=period_duration or None)]

        logger.warning(f"Representation {rep.id} has no segment information, skipping")
        return None, []

    def _has_resource(self, elements) -> bool:
        """True when a BaseURL or SegmentBase is declared at any level."""
        for element in elements:
            if element is None:
                continue
            base = self.ns.find(element, 'BaseURL')
            if base is not None and base.text and base.text.strip():
                return True
            if self.ns.find(element, 'SegmentBase') is not None:
                return True
        return False

    def _template_segments(self, rep: Representation, attrs: Dict[str, str], timeline, base_url: str, period_duration: float, track: Track):
        timescale = int(attrs.get('timescale') or 1)
        start_number = int(attrs.get('startNumber') or 1)
        pto = int(attrs.get('presentationTimeOffset') or 0)
        media = attrs.get('media')

        init = None
        if attrs.get('initialization'):
            init_url = URLBuilder.build_url(base_url, attrs['initialization'], rep_id=rep.id, bandwidth=rep.bandwidth)
            init = Segment(init_url, -1, track=track, is_init=True)

        if not media:
            return init, []

        segments = []
        if timeline is not None:
            end_time = pto + int(round(period_duration * timescale)) if period_duration else None
            for idx, (time, duration) in enumerate(self.timeline_parser.parse(timeline, end_time)):
                url = URLBuilder.build_url(base_url, media, rep_id=rep.id, number=start_number + idx, time=time, bandwidth=rep.bandwidth)
                segments.append(Segment(url, idx, track=track, duration=duration / timescale))

        elif attrs.get('duration'):
            duration = int(attrs['duration'])
            if not period_duration:
                logger.warning(f"Representation {rep.id} has a fixed-duration template but no known period duration")
                return init, []
            count = math.ceil(period_duration * timescale / duration)
            for idx in range(count):
                time = pto + idx * duration
                url = URLBuilder.build_url(base_url, media, rep_id=rep.id, number=start_number + idx, time=time, bandwidth=rep.bandwidth)
                segments.append(Segment(url, idx, track=track, duration=duration / timescale))

        else:
            url = URLBuilder.build_url(base_url, media, rep_id=rep.id, number=start_number, bandwidth=rep.bandwidth)
            segments.append(Segment(url, 0, track=track, duration=period_duration or None))

        return init, segments

    def _list_segments(self, segment_list, base_url: str, track: Track):
        timescale = int(segment_list.get('timescale') or 1)
        duration = segment_list.get('duration')
        seg_duration = int(duration) / timescale if duration else None

        init = None
        init_elem = self.ns.find(segment_list, 'Initialization')
        if init_elem is not None:
            init_url = urljoin(base_url, init_elem.get('sourceURL')) if init_elem.get('sourceURL') else base_url
            init = Segment(init_url, -1, track=track, byte_range=self._parse_range(init_elem.get('range')), is_init=True)

        segments = []
        for idx, seg_elem in enumerate(self.ns.findall(segment_list, 'SegmentURL')):
            media = seg_elem.get('media')
            url = urljoin(base_url, media) if media else base_url
            segments.append(Segment(url, idx, track=track, duration=seg_duration, byte_range=self._parse_range(seg_elem.get('mediaRange'))))

        return init, segments

    @staticmethod
    def _parse_range(value: Optional[str]) -> Optional[ByteRange]:
        """``first-last`` (inclusive) to a ByteRange."""
        if not value or '-' not in value:
            return None
        first, last = value.split('-', 1)
        first, last = int(first), int(last)
        return ByteRange(last - first + 1, first)

    @staticmethod
    def _merge_periods(parts: List[PeriodRepresentation]) -> Representation:
        rep = parts[0].rep
        rep.bandwidth = max(p.rep.bandwidth for p in parts)
        init = next((p.init for p in parts if p.init is not None), None)

        segments = [init] if init is not None else []
        offset = 0
        for period_idx, part in enumerate(parts):
            for idx, segment in enumerate(part.segments):
                segment.sequence_index = offset + idx
                segment.ad_hint = part.ad_hint
                if idx == 0 and period_idx > 0:
                    segment.discontinuity = True
                segments.append(segment)
            offset += len(part.segments)

        rep.segments = segments
        return rep

    @staticmethod
    def select(representations: List[Representation]) -> Tuple[Optional[Representation], Optional[Representation]]:
        """Highest bandwidth video (or muxed) and audio representation, ignoring ad-only ones."""
        def playable(rep):
            return any(not s.ad_hint for s in rep.segments if not s.is_init)

        candidates = [r for r in representations if playable(r)] or representations
        videos = [r for r in candidates if r.type == 'video']
        audios = [r for r in candidates if r.type == 'audio']

        video = max(videos, key=lambda r: (r.bandwidth, r.height)) if videos else None
        audio = max(audios, key=lambda r: r.bandwidth) if audios else None

        if video is not None and any(s.track == Track.MUXED for s in video.segments):
            audio = None
        return video, audio
