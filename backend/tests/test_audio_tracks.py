"""Tests for audio track extraction and probing."""

import asyncio

import pytest

from src.exceptions import MediaProbeError
from src.render.audio_tracks import AudioTrackInfo, extract_audio_tracks, prepare_audio_inputs


def audio_layer(**overrides):
    layer = {
        "id": "music",
        "type": "audio",
        "enterTime": 0,
        "exitTime": 2,
        "contentOffset": 0,
        "contentDuration": 2,
        "props": {"src": "/api/storage/media/music.mp3", "volume": 1},
    }
    props = overrides.pop("props", None)
    layer.update(overrides)
    if props is not None:
        layer["props"] = {**layer["props"], **props}
    return layer


class TestExtractAudioTracks:
    def test_single_audio_layer(self):
        tracks = extract_audio_tracks([audio_layer()], project_duration=2)

        assert tracks == [
            AudioTrackInfo(
                source_url="/api/storage/media/music.mp3",
                enter_time=0.0,
                media_start_offset=0.0,
                media_duration=2.0,
                volume=1.0,
                layer_id="music",
            )
        ]

    def test_muted_layer_never_appears(self):
        layers = [
            audio_layer(),
            {
                "id": "clip",
                "type": "video",
                "enterTime": 0,
                "exitTime": 2,
                "props": {"src": "/api/storage/media/clip.mp4", "muted": True},
            },
        ]

        tracks = extract_audio_tracks(layers, project_duration=2)

        assert [t.layer_id for t in tracks] == ["music"]

    def test_non_media_layers_ignored(self):
        layers = [
            {"id": "t", "type": "text", "props": {"src": "nope"}},
            {"id": "i", "type": "image", "props": {"src": "/a.png"}},
            {"id": "v", "type": "video", "props": {}},
        ]
        assert extract_audio_tracks(layers, project_duration=5) == []

    def test_defaults_for_missing_times(self):
        layer = {"id": "v", "type": "video", "props": {"src": "https://cdn.test/v.mp4"}}

        (track,) = extract_audio_tracks([layer], project_duration=7.5)

        assert track.enter_time == 0
        assert track.media_start_offset == 0
        assert track.media_duration == 7.5

    def test_content_offset_bounds_media_duration(self):
        layer = audio_layer(enterTime=1, exitTime=9, contentOffset=3, contentDuration=5)

        (track,) = extract_audio_tracks([layer], project_duration=10)

        assert track.media_start_offset == 3
        assert track.media_duration == 2
        assert track.media_start_offset + track.media_duration <= 5

    def test_layer_shorter_than_content(self):
        layer = audio_layer(enterTime=2, exitTime=3, contentOffset=1, contentDuration=60)

        (track,) = extract_audio_tracks([layer], project_duration=10)

        assert track.enter_time == 2
        assert track.media_duration == 1

    def test_offset_past_content_end_dropped(self):
        layer = audio_layer(contentOffset=5, contentDuration=4)
        assert extract_audio_tracks([layer], project_duration=10) == []

    def test_zero_volume_dropped(self):
        layer = audio_layer(props={"volume": 0})
        assert extract_audio_tracks([layer], project_duration=2) == []

    def test_layer_entering_after_project_end_dropped(self):
        layer = audio_layer(enterTime=5, exitTime=8)
        assert extract_audio_tracks([layer], project_duration=4) == []

    def test_volume_carried(self):
        (track,) = extract_audio_tracks([audio_layer(props={"volume": 0.25})], project_duration=2)
        assert track.volume == 0.25

    def test_pure_and_order_preserving(self):
        layers = [
            audio_layer(id="b", enterTime=1),
            audio_layer(id="a", enterTime=0),
            {"id": "c", "type": "video", "enterTime": 0.5, "props": {"src": "/api/storage/media/c.mp4"}},
        ]
        snapshot = [dict(layer) for layer in layers]

        first = extract_audio_tracks(layers, project_duration=2)
        second = extract_audio_tracks(layers, project_duration=2)

        assert first == second
        assert [t.layer_id for t in first] == ["b", "a", "c"]
        assert layers == snapshot


class TestPrepareAudioInputs:
    @pytest.mark.asyncio
    async def test_drops_sources_without_audio(self, resolver):
        tracks = extract_audio_tracks(
            [
                audio_layer(id="music"),
                audio_layer(id="silent", props={"src": "/api/storage/media/silent.mp4"}),
            ],
            project_duration=2,
        )
        probed: list[str] = []

        async def probe(url: str) -> bool:
            probed.append(url)
            return "silent" not in url

        prepared = await prepare_audio_inputs(tracks, resolver, probe)

        assert [t.layer_id for t in prepared] == ["music"]
        assert prepared[0].source_url == "https://storage.test/bucket/music.mp3?X-Goog-Signature=abc"
        # Probes run against the resolved URL, never the proxy reference
        assert all(url.startswith("https://storage.test/") for url in probed)

    @pytest.mark.asyncio
    async def test_probe_failure_drops_track_by_default(self, resolver):
        tracks = extract_audio_tracks([audio_layer(id="a"), audio_layer(id="b")], project_duration=2)

        async def probe(url: str) -> bool:
            if len(probe.calls) == 0:
                probe.calls.append(url)
                raise MediaProbeError("ffprobe failed (1): Connection refused")
            probe.calls.append(url)
            return True

        probe.calls = []

        prepared = await prepare_audio_inputs(tracks, resolver, probe)

        assert len(prepared) == 1

    @pytest.mark.asyncio
    async def test_probe_failure_raises_when_configured(self, resolver):
        tracks = extract_audio_tracks([audio_layer()], project_duration=2)

        async def probe(url: str) -> bool:
            raise MediaProbeError("ffprobe timed out after 20s")

        with pytest.raises(MediaProbeError):
            await prepare_audio_inputs(tracks, resolver, probe, fail_on_probe_error=True)

    @pytest.mark.asyncio
    async def test_no_tracks(self, resolver):
        async def probe(url: str) -> bool:
            raise AssertionError("should not probe")

        assert await prepare_audio_inputs([], resolver, probe) == []

    @pytest.mark.asyncio
    async def test_hard_probe_failure_cancels_remaining_probes(self, resolver):
        tracks = extract_audio_tracks(
            [
                audio_layer(id="broken", props={"src": "/api/storage/media/broken.mp3"}),
                audio_layer(id="slow", props={"src": "/api/storage/media/slow.mp3"}),
            ],
            project_duration=2,
        )
        cancelled: list[str] = []
        slow_started = asyncio.Event()

        async def probe(url: str) -> bool:
            if "broken" in url:
                await slow_started.wait()
                raise MediaProbeError("ffprobe failed (1): Invalid data found")
            slow_started.set()
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.append(url)
                raise
            return True

        with pytest.raises(MediaProbeError, match="Invalid data"):
            await asyncio.wait_for(
                prepare_audio_inputs(tracks, resolver, probe, fail_on_probe_error=True), timeout=5
            )

        assert len(cancelled) == 1
        assert "slow.mp3" in cancelled[0]

    @pytest.mark.asyncio
    async def test_known_sources_are_not_probed_again(self, resolver):
        probed: list[str] = []

        async def probe(url: str) -> bool:
            probed.append(url)
            return "silent" not in url

        known: dict[str, str | None] = {}
        layers = [
            audio_layer(id="music", exitTime=None),
            audio_layer(id="silent", exitTime=None, props={"src": "/api/storage/media/silent.mp4"}),
        ]

        first = await prepare_audio_inputs(extract_audio_tracks(layers, 2), resolver, probe, probed=known)
        second = await prepare_audio_inputs(extract_audio_tracks(layers, 4), resolver, probe, probed=known)

        assert len(probed) == 2
        assert [t.layer_id for t in second] == ["music"]
        assert first[0].source_url == second[0].source_url
        assert known["/api/storage/media/silent.mp4"] is None
