# 18.10.26

import pytest

from MediaStitch.source.parser.dash import DashParser, DurationUtils, URLBuilder
from MediaStitch.source.utils.exceptions import FatalManifest
from MediaStitch.source.utils.object import ByteRange, Track


MPD_URL = "https://cdn.example.com/dash/manifest.mpd"


def mpd(body, duration="PT62S", namespace=True):
    xmlns = ' xmlns="urn:mpeg:dash:schema:mpd:2011"' if namespace else ""
    return f'<?xml version="1.0" encoding="UTF-8"?>\n<MPD{xmlns} type="static" mediaPresentationDuration="{duration}">{body}</MPD>'


def video_set(template, rep_id="v1", bandwidth=3000000, extra=""):
    return f"""
    <AdaptationSet contentType="video" mimeType="video/mp4">
      {template}
      <Representation id="{rep_id}" bandwidth="{bandwidth}" width="1920" height="1080" codecs="avc1.640028"/>
      {extra}
    </AdaptationSet>"""


def by_id(representations, rep_id):
    return next(r for r in representations if r.id == rep_id)


def media(rep):
    return [s for s in rep.segments if not s.is_init]


def test_duration_parsing():
    assert DurationUtils.parse_duration("PT1H2M3.5S") == pytest.approx(3723.5)
    assert DurationUtils.parse_duration(None) == 0.0
    assert DurationUtils.parse_duration("garbage") == 0.0


def test_url_template_substitution():
    url = URLBuilder.build_url(MPD_URL, "$RepresentationID$/seg-$Number%05d$-$Bandwidth$.m4s?tok=1", rep_id="v1", number=42, bandwidth=800)
    assert url == "https://cdn.example.com/dash/v1/seg-00042-800.m4s?tok=1"


def test_open_ended_repeat_fills_the_period():
    template = """
      <SegmentTemplate timescale="1000" initialization="init-$RepresentationID$.mp4" media="t-$Time$.m4s">
        <SegmentTimeline>
          <S t="0" d="2000" r="1"/>
          <S d="4000" r="-1"/>
        </SegmentTimeline>
      </SegmentTemplate>"""
    rep = DashParser().parse(mpd(f"<Period>{video_set(template)}</Period>"), MPD_URL)[0]
    segments = media(rep)

    # 2 explicit + ceil((62000 - 4000) / 4000)
    assert len(segments) == 17
    assert segments[0].url == "https://cdn.example.com/dash/t-0.m4s"
    assert segments[2].url == "https://cdn.example.com/dash/t-4000.m4s"
    assert segments[-1].url == "https://cdn.example.com/dash/t-60000.m4s"
    assert rep.segments[0].is_init and rep.segments[0].url.endswith("/init-v1.mp4")


def test_negative_repeat_stops_at_next_explicit_time():
    template = """
      <SegmentTemplate timescale="1000" media="n-$Number$.m4s" startNumber="1">
        <SegmentTimeline>
          <S t="0" d="2000" r="-1"/>
          <S t="10000" d="5000"/>
        </SegmentTimeline>
      </SegmentTemplate>"""
    rep = DashParser().parse(mpd(f"<Period>{video_set(template)}</Period>"), MPD_URL)[0]
    segments = media(rep)

    assert len(segments) == 6
    assert [s.sequence_index for s in segments] == list(range(6))
    assert segments[-1].url.endswith("/n-6.m4s")
    assert segments[-1].duration == pytest.approx(5.0)


def test_fixed_duration_template_with_padded_number():
    template = '<SegmentTemplate timescale="1" duration="4" startNumber="3" initialization="init-$RepresentationID$-$Bandwidth$.mp4" media="chunk-$RepresentationID$-$Number%05d$.m4s"/>'
    rep = DashParser().parse(mpd(f'<Period duration="PT10S">{video_set(template, bandwidth=800)}</Period>'), MPD_URL)[0]

    assert rep.segments[0].url == "https://cdn.example.com/dash/init-v1-800.mp4"
    assert [s.url.rsplit("/", 1)[1] for s in media(rep)] == ["chunk-v1-00003.m4s", "chunk-v1-00004.m4s", "chunk-v1-00005.m4s"]


def test_segment_list_with_media_ranges():
    body = """
    <Period>
      <AdaptationSet mimeType="audio/mp4">
        <Representation id="a1" bandwidth="128000" codecs="mp4a.40.2">
          <BaseURL>audio.mp4</BaseURL>
          <SegmentList timescale="1000" duration="4000">
            <Initialization range="0-799"/>
            <SegmentURL mediaRange="800-1799"/>
            <SegmentURL mediaRange="1800-2599"/>
          </SegmentList>
        </Representation>
      </AdaptationSet>
    </Period>"""
    rep = DashParser().parse(mpd(body), MPD_URL)[0]

    assert rep.type == "audio"
    init, first, second = rep.segments
    assert init.is_init and init.byte_range == ByteRange(800, 0)
    assert first.url == "https://cdn.example.com/dash/audio.mp4"
    assert first.byte_range == ByteRange(1000, 800)
    assert second.byte_range.header() == "bytes=1800-2599"
    assert first.duration == pytest.approx(4.0)
    assert first.track == Track.AUDIO


def test_bare_base_url_is_one_segment():
    body = """
    <Period>
      <AdaptationSet contentType="video">
        <Representation id="v1" bandwidth="1000" width="640" height="360">
          <BaseURL>https://media.example.com/full.mp4</BaseURL>
          <SegmentBase indexRange="0-100"/>
        </Representation>
      </AdaptationSet>
    </Period>"""
    rep = DashParser().parse(mpd(body), MPD_URL)[0]

    assert len(rep.segments) == 1
    assert rep.segments[0].url == "https://media.example.com/full.mp4"
    assert rep.segments[0].byte_range is None


def test_mpd_level_base_url_is_one_segment():
    body = """
    <BaseURL>https://media.example.com/movie.mp4</BaseURL>
    <Period>
      <AdaptationSet contentType="video">
        <Representation id="v1" bandwidth="1000" width="640" height="360"/>
      </AdaptationSet>
    </Period>"""
    rep = DashParser().parse(mpd(body), MPD_URL)[0]

    assert [s.url for s in rep.segments] == ["https://media.example.com/movie.mp4"]


def test_representation_without_segment_information_is_dropped():
    body = """
    <Period>
      <AdaptationSet contentType="video">
        <Representation id="v1" bandwidth="1000" width="640" height="360"/>
      </AdaptationSet>
    </Period>"""
    with pytest.raises(FatalManifest):
        DashParser().parse(mpd(body), MPD_URL)


def test_only_described_representations_survive():
    template = '<SegmentTemplate media="$Number$.m4s" duration="4" startNumber="1"/>'
    body = f"""
    <Period>
      {video_set(template)}
      <AdaptationSet contentType="audio" mimeType="audio/mp4">
        <Representation id="a1" bandwidth="128000" codecs="mp4a.40.2"/>
      </AdaptationSet>
    </Period>"""
    representations = DashParser().parse(mpd(body), MPD_URL)

    assert [r.id for r in representations] == ["v1"]
    assert all(s.url != MPD_URL for s in representations[0].segments)


def test_periods_are_joined_with_continuous_indices():
    template = '<SegmentTemplate timescale="1" duration="5" initialization="init.mp4" media="$RepresentationID$-$Number$.m4s"/>'
    body = f"""
    <Period id="p1" duration="PT15S"><BaseURL>p1/</BaseURL>{video_set(template)}</Period>
    <Period id="p2" duration="PT10S"><BaseURL>p2/</BaseURL>{video_set(template)}</Period>"""
    reps = DashParser().parse(mpd(body, duration="PT25S"), MPD_URL)

    assert len(reps) == 1
    segments = reps[0].segments
    assert sum(1 for s in segments if s.is_init) == 1
    assert segments[0].url == "https://cdn.example.com/dash/p1/init.mp4"

    content = media(reps[0])
    assert [s.sequence_index for s in content] == [0, 1, 2, 3, 4]
    assert [s.discontinuity for s in content] == [False, False, False, True, False]
    assert content[3].url == "https://cdn.example.com/dash/p2/v1-1.m4s"


def test_ad_period_is_hinted_and_ad_only_reps_are_not_selected():
    template = '<SegmentTemplate timescale="1" duration="5" media="$RepresentationID$-$Number$.m4s"/>'
    body = f"""
    <Period id="preroll_ad" duration="PT10S">{video_set(template, rep_id="ad-video", bandwidth=9000000)}</Period>
    <Period id="main" duration="PT20S">{video_set(template, rep_id="v1", bandwidth=3000000)}</Period>"""
    reps = DashParser().parse(mpd(body, duration="PT30S"), MPD_URL)

    ad = by_id(reps, "ad-video")
    assert all(s.ad_hint for s in ad.segments)
    assert not any(s.ad_hint for s in by_id(reps, "v1").segments)

    video, audio = DashParser.select(reps)
    assert video.id == "v1"
    assert audio is None


def test_missing_period_is_treated_as_one_implicit_period():
    template = '<SegmentTemplate timescale="1" duration="2" media="s$Number$.m4s"/>'
    rep = DashParser().parse(mpd(video_set(template), duration="PT6S", namespace=False), MPD_URL)[0]
    assert len(media(rep)) == 3


def test_select_picks_best_video_and_audio():
    template = '<SegmentTemplate timescale="1" duration="5" media="$RepresentationID$-$Number$.m4s"/>'
    body = f"""
    <Period duration="PT10S">
      <AdaptationSet contentType="video">
        {template}
        <Representation id="low" bandwidth="500000" width="640" height="360"/>
        <Representation id="high" bandwidth="4000000" width="1920" height="1080"/>
      </AdaptationSet>
      <AdaptationSet contentType="audio" lang="en">
        {template}
        <Representation id="a64" bandwidth="64000" codecs="mp4a.40.5"/>
        <Representation id="a128" bandwidth="128000" codecs="mp4a.40.2"/>
      </AdaptationSet>
      <AdaptationSet contentType="text" mimeType="application/ttml+xml">
        {template}
        <Representation id="subs" bandwidth="100"/>
      </AdaptationSet>
    </Period>"""
    reps = DashParser().parse(mpd(body), MPD_URL)
    video, audio = DashParser.select(reps)

    assert {r.id for r in reps} == {"low", "high", "a64", "a128"}
    assert video.id == "high"
    assert audio.id == "a128"


def test_muxed_video_has_no_separate_audio():
    template = '<SegmentTemplate timescale="1" duration="5" media="$RepresentationID$-$Number$.ts"/>'
    body = f"""
    <Period duration="PT10S">
      <AdaptationSet mimeType="video/mp2t">
        {template}
        <Representation id="mux" bandwidth="2000000" codecs="avc1.4d401f,mp4a.40.2" width="1280" height="720"/>
      </AdaptationSet>
      <AdaptationSet contentType="audio">
        {template}
        <Representation id="a1" bandwidth="128000"/>
      </AdaptationSet>
    </Period>"""
    video, audio = DashParser.select(DashParser().parse(mpd(body), MPD_URL))

    assert video.id == "mux"
    assert all(s.track == Track.MUXED for s in video.segments)
    assert audio is None


@pytest.mark.parametrize("text", ["<MPD><Period>", "<html><body/></html>"])
def test_broken_mpd_is_fatal(text):
    with pytest.raises(FatalManifest):
        DashParser().parse(text, MPD_URL)


def test_malformed_bandwidth_is_fatal():
    template = '<SegmentTemplate media="$Number$.m4s" duration="4"/>'
    with pytest.raises(FatalManifest):
        DashParser().parse(mpd(f"<Period>{video_set(template, bandwidth='abc')}</Period>"), MPD_URL)
