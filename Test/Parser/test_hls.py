# 18.10.26

import pytest

from MediaStitch.source.parser import detect_manifest_type
from MediaStitch.source.parser.hls import HLSParser, parse_attributes, parse_iv, sequence_iv
from MediaStitch.source.utils.exceptions import FatalManifest
from MediaStitch.source.utils.object import ByteRange, Track


BASE = "https://cdn.example.com/show/index.m3u8"


def media_playlist(count, start=0, duration=6.0, extra=""):
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-TARGETDURATION:6", f"#EXT-X-MEDIA-SEQUENCE:{start}", extra]
    for i in range(count):
        lines.append(f"#EXTINF:{duration},")
        lines.append(f"seg{i}.ts")
    lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines)


class StaticFetcher:
    def __init__(self, pages):
        self.pages = pages
        self.calls = []

    def fetch(self, url):
        self.calls.append(url)
        return self.pages[url], url


def test_attributes_keep_quoted_commas():
    attrs = parse_attributes('#EXT-X-STREAM-INF:BANDWIDTH=1280000,CODECS="avc1.4d401f,mp4a.40.2",RESOLUTION=1280x720')
    assert attrs["BANDWIDTH"] == "1280000"
    assert attrs["CODECS"] == "avc1.4d401f,mp4a.40.2"
    assert attrs["RESOLUTION"] == "1280x720"


def test_segment_count_matches_extinf_and_indices_are_contiguous():
    playlist = HLSParser().parse_media(media_playlist(7, start=40), BASE)

    assert len(playlist.segments) == 7
    assert [s.sequence_index for s in playlist.segments] == list(range(40, 47))
    assert playlist.segments[0].url == "https://cdn.example.com/show/seg0.ts"
    assert playlist.duration == pytest.approx(42.0)
    assert playlist.end_list


def test_byterange_offset_defaults_to_previous_end():
    text = "\n".join([
        "#EXTM3U",
        "#EXT-X-TARGETDURATION:4",
        "#EXTINF:4,", "#EXT-X-BYTERANGE:1000@0", "main.ts",
        "#EXTINF:4,", "#EXT-X-BYTERANGE:1500", "main.ts",
        "#EXTINF:4,", "#EXT-X-BYTERANGE:700", "main.ts",
        "#EXTINF:4,", "#EXT-X-BYTERANGE:300", "other.ts",
        "#EXT-X-ENDLIST",
    ])
    segments = HLSParser().parse_media(text, BASE).segments

    assert [s.byte_range for s in segments] == [ByteRange(1000, 0), ByteRange(1500, 1000), ByteRange(700, 2500), ByteRange(300, 0)]
    assert segments[1].byte_range.header() == "bytes=1000-2499"


def test_only_first_map_becomes_init_segment():
    text = "\n".join([
        "#EXTM3U",
        '#EXT-X-MAP:URI="init.mp4",BYTERANGE="720@0"',
        "#EXTINF:4,", "a.m4s",
        '#EXT-X-MAP:URI="init2.mp4"',
        "#EXTINF:4,", "b.m4s",
        "#EXT-X-ENDLIST",
    ])
    segments = HLSParser().parse_media(text, BASE).segments
    inits = [s for s in segments if s.is_init]

    assert len(inits) == 1
    assert inits[0].sequence_index == -1
    assert inits[0].url.endswith("/init.mp4")
    assert inits[0].byte_range == ByteRange(720, 0)
    assert [s.sequence_index for s in segments if not s.is_init] == [0, 1]


def test_key_iv_defaults_to_media_sequence():
    text = media_playlist(3, start=12, extra='#EXT-X-KEY:METHOD=AES-128,URI="key.bin"')
    segments = HLSParser().parse_media(text, BASE).segments

    assert all(s.key.uri == "https://cdn.example.com/show/key.bin" for s in segments)
    assert segments[0].key.iv == sequence_iv(12)
    assert segments[2].key.iv == (14).to_bytes(16, "big")


def test_explicit_iv_and_method_none():
    text = "\n".join([
        "#EXTM3U",
        '#EXT-X-KEY:METHOD=AES-128,URI="k1",IV=0x000102030405060708090a0b0c0d0e0f',
        "#EXTINF:4,", "a.ts",
        "#EXT-X-KEY:METHOD=NONE",
        "#EXTINF:4,", "b.ts",
        "#EXT-X-ENDLIST",
    ])
    first, second = HLSParser().parse_media(text, BASE).segments

    assert first.key.iv == bytes(range(16))
    assert second.key is None


def test_short_iv_is_left_padded():
    assert parse_iv("0x1") == (1).to_bytes(16, "big")


@pytest.mark.parametrize("extra", [
    "#EXT-X-MEDIA-SEQUENCE:abc",
    '#EXT-X-KEY:METHOD=AES-128,URI="key.bin",IV=0xZZ',
    "#EXT-X-BYTERANGE:big@0",
])
def test_malformed_media_values_are_fatal(extra):
    with pytest.raises(FatalManifest):
        HLSParser().parse_media(media_playlist(2, extra=extra), BASE)


def test_malformed_bandwidth_is_fatal():
    master_text = "\n".join([
        "#EXTM3U",
        "#EXT-X-STREAM-INF:BANDWIDTH=1.5e6,RESOLUTION=1280x720",
        "720p.m3u8",
    ])
    with pytest.raises(FatalManifest):
        HLSParser().resolve(master_text, BASE)


def test_discontinuity_and_cue_markers():
    text = "\n".join([
        "#EXTM3U",
        "#EXTINF:6,", "a.ts",
        "#EXT-X-DISCONTINUITY",
        "#EXT-X-CUE-OUT:DURATION=30",
        "#EXTINF:10,", "ad1.ts",
        "#EXT-X-CUE-IN",
        "#EXT-X-DISCONTINUITY",
        "#EXTINF:6,", "b.ts",
        "#EXT-X-ENDLIST",
    ])
    a, ad, b = HLSParser().parse_media(text, BASE).segments

    assert not a.discontinuity and a.ad_cue is None
    assert ad.discontinuity and ad.ad_cue == "start" and ad.ad_cue_duration == 30.0
    assert b.discontinuity and b.ad_cue == "end"


def test_master_selects_highest_bandwidth_and_default_audio():
    master_text = "\n".join([
        "#EXTM3U",
        '#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aud",NAME="English",LANGUAGE="en",DEFAULT=NO,URI="audio/en.m3u8"',
        '#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aud",NAME="Italiano",LANGUAGE="it",DEFAULT=YES,URI="audio/it.m3u8"',
        '#EXT-X-STREAM-INF:BANDWIDTH=800000,RESOLUTION=854x480,AUDIO="aud"',
        "480p.m3u8",
        '#EXT-X-STREAM-INF:BANDWIDTH=5000000,RESOLUTION=1920x1080,CODECS="avc1.640028,mp4a.40.2",AUDIO="aud"',
        "1080p.m3u8",
    ])
    parser = HLSParser()
    master = parser.parse_master(master_text, BASE)
    variant = parser.select_variant(master)

    assert len(master.variants) == 2
    assert variant.url == "https://cdn.example.com/show/1080p.m3u8"
    assert variant.height == 1080
    assert parser.select_audio(variant).language == "it"


def test_resolve_follows_master_and_marks_tracks():
    master_text = "\n".join([
        "#EXTM3U",
        '#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aud",NAME="en",DEFAULT=YES,URI="a.m3u8"',
        '#EXT-X-STREAM-INF:BANDWIDTH=100,AUDIO="aud"',
        "v.m3u8",
    ])
    fetcher = StaticFetcher({
        "https://cdn.example.com/show/v.m3u8": media_playlist(3),
        "https://cdn.example.com/show/a.m3u8": media_playlist(4),
    })
    selection = HLSParser(fetcher=fetcher).resolve(master_text, BASE)

    assert selection.media.track == Track.VIDEO
    assert all(s.track == Track.VIDEO for s in selection.media.segments)
    assert len(selection.audio_media.segments) == 4
    assert all(s.track == Track.AUDIO for s in selection.audio_media.segments)


def test_media_playlist_without_master_is_muxed():
    selection = HLSParser().resolve(media_playlist(2), BASE)
    assert selection.media.track == Track.MUXED
    assert selection.audio_media is None


def test_nested_masters_beyond_depth_limit_fail():
    looping = "\n".join(["#EXTM3U", "#EXT-X-STREAM-INF:BANDWIDTH=1", "index.m3u8"])
    fetcher = StaticFetcher({BASE: looping})

    with pytest.raises(FatalManifest):
        HLSParser(fetcher=fetcher, max_depth=5).resolve(looping, BASE)
    assert len(fetcher.calls) == 6


def test_playlist_without_segments_is_rejected():
    with pytest.raises(FatalManifest):
        HLSParser().resolve("#EXTM3U\n#EXT-X-VERSION:3\n", BASE)


@pytest.mark.parametrize("text, kind", [
    ("#EXTM3U\n#EXTINF:1,\na.ts", "hls"),
    ("\ufeff  \n#EXTM3U\n", "hls"),
    ('<?xml version="1.0"?>\n<MPD xmlns="urn:mpeg:dash:schema:mpd:2011"></MPD>', "dash"),
])
def test_manifest_type_from_content(text, kind):
    assert detect_manifest_type(text) == kind


def test_unknown_manifest_type():
    with pytest.raises(FatalManifest):
        detect_manifest_type("<html><body>nope</body></html>")
