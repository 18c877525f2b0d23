# 18.10.26

import logging
from typing import List, Optional, Tuple
from urllib.parse import urlparse


# Logic
from ..utils.object import Segment


# Variable
logger = logging.getLogger(__name__)


class AdHeuristic:
    """
    Marks inserted advertising in a segment list. Three rules, union of matches:

    1. segments inside vendor ad cue pairs (or inside vendor-hinted ad periods);
    2. short segments from a foreign host right after a discontinuity;
    3. discontinuity regions (not first or last) much shorter than the average region.
    """

    SHORT_SEGMENT = 1.0
    POSITIONS_AFTER_DISCONTINUITY = 2
    MIN_REGIONS = 3
    MAX_THRESHOLD = 15.0
    MEAN_RATIO = 0.15

    def __init__(self, base_url: str):
        self.base_host = (urlparse(base_url).hostname or '').lower()

    def classify(self, segments: List[Segment]) -> List[Segment]:
        media = [s for s in segments if not s.is_init]
        for s in media:
            s.is_ad = False

        flagged = set()
        flagged.update(self._vendor_regions(media))
        flagged.update(self._foreign_after_discontinuity(media))
        flagged.update(self._short_regions(media))

        for idx in flagged:
            media[idx].is_ad = True

        if flagged:
            logger.info(f"Ad filter flagged {len(flagged)} of {len(media)} segments")
        return segments

    def filter(self, segments: List[Segment]) -> Tuple[List[Segment], List[Segment]]:
        """Return (content, ads) after classification."""
        self.classify(segments)
        content = [s for s in segments if not s.is_ad]
        ads = [s for s in segments if s.is_ad]
        return content, ads

    @staticmethod
    def regions(media: List[Segment]) -> List[List[int]]:
        """Indices of ``media`` grouped into discontinuity-delimited regions."""
        regions: List[List[int]] = []
        for idx, segment in enumerate(media):
            if not regions or segment.discontinuity:
                regions.append([])
            regions[-1].append(idx)
        return regions

    def _vendor_regions(self, media: List[Segment]) -> List[int]:
        flagged = []
        in_ad = False
        remaining: Optional[float] = None

        for idx, segment in enumerate(media):
            if segment.ad_cue == 'end':
                in_ad = False
                remaining = None

            elif segment.ad_cue == 'start':
                if not in_ad:
                    in_ad = True
                    remaining = segment.ad_cue_duration
                elif remaining is None and segment.ad_cue_duration is not None:
                    remaining = segment.ad_cue_duration

            if in_ad or segment.ad_hint:
                flagged.append(idx)

            if in_ad and remaining is not None:
                remaining -= segment.duration or 0.0
                if remaining <= 1e-3:
                    in_ad = False
                    remaining = None

        return flagged

    def _foreign_after_discontinuity(self, media: List[Segment]) -> List[int]:
        flagged = []
        if not self.base_host:
            return flagged

        since_discontinuity = None
        for idx, segment in enumerate(media):
            if segment.discontinuity:
                since_discontinuity = 0
            elif since_discontinuity is not None:
                since_discontinuity += 1

            if since_discontinuity is None or since_discontinuity >= self.POSITIONS_AFTER_DISCONTINUITY:
                continue
            if segment.duration is None or segment.duration >= self.SHORT_SEGMENT:
                continue

            host = (urlparse(segment.url).hostname or '').lower()
            if host and host != self.base_host:
                flagged.append(idx)

        return flagged

    def _short_regions(self, media: List[Segment]) -> List[int]:
        regions = self.regions(media)
        if len(regions) < self.MIN_REGIONS:
            return []

        durations = [sum(media[i].duration or 0.0 for i in region) for region in regions]
        mean = sum(durations) / len(durations)
        threshold = min(self.MAX_THRESHOLD, mean * self.MEAN_RATIO)

        flagged = []
        for region, duration in zip(regions[1:-1], durations[1:-1]):
            if duration < threshold:
                logger.debug(f"Region of {duration:.1f}s below threshold {threshold:.1f}s")
                flagged.extend(region)
        return flagged
