"""
Audio track extraction for rendering.

This module handles:
- Deriving one AudioTrackInfo per audible media layer (timing + trim window)
- Resolving each source to a directly fetchable, encoder-safe URL
- Dropping sources without an audio stream before they reach ffmpeg

A video-only source fed into amix is a hard ffmpeg error, so every source
is probed before the encoder starts.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable

from src.exceptions import MediaProbeError
from src.services.media_url_resolver import MediaURLResolver

logger = logging.getLogger(__name__)

# Layer types whose props.src points at time-based media
AUDIO_LAYER_TYPES = frozenset({"video", "audio"})

AudioProbe = Callable[[str], Awaitable[bool]]


@dataclass(frozen=True)
class AudioTrackInfo:
    """One audio input for the encoder. Times are in seconds."""

    source_url: str
    enter_time: float  # Position on the project timeline
    media_start_offset: float  # Where playback starts inside the source
    media_duration: float
    volume: float = 1.0
    layer_id: str | None = None


def _number(value: Any, default: float | None) -> float | None:
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def track_from_layer(layer: dict[str, Any], project_duration: float) -> AudioTrackInfo | None:
    """Build the AudioTrackInfo for one layer, or None if it contributes no audio."""
    if layer.get("type") not in AUDIO_LAYER_TYPES:
        return None

    props = layer.get("props") or {}
    src = props.get("src")
    if not src or not isinstance(src, str):
        return None
    if props.get("muted", False):
        return None

    volume = _number(props.get("volume"), 1.0)
    if volume <= 0:
        return None

    enter_time = max(0.0, _number(layer.get("enterTime"), 0.0))
    exit_time = _number(layer.get("exitTime"), project_duration)
    layer_duration = exit_time - enter_time
    if layer_duration <= 0 or enter_time >= project_duration:
        return None

    content_offset = max(0.0, _number(layer.get("contentOffset"), 0.0))
    content_duration = _number(layer.get("contentDuration"), None)
    if content_duration is not None:
        media_duration = min(layer_duration, content_duration - content_offset)
    else:
        media_duration = layer_duration
    if media_duration <= 0:
        return None

    return AudioTrackInfo(
        source_url=src,
        enter_time=enter_time,
        media_start_offset=content_offset,
        media_duration=media_duration,
        volume=volume,
        layer_id=layer.get("id"),
    )


def extract_audio_tracks(
    layers: list[dict[str, Any]],
    project_duration: float,
) -> list[AudioTrackInfo]:
    """Convert project layers into AudioTrackInfo, in layer order.

    Pure: the same layers and duration always give the same list.

    Args:
        layers: Project layer list (as stored in the project document)
        project_duration: Project duration in seconds

    Returns:
        Tracks for every unmuted, audible media layer
    """
    tracks: list[AudioTrackInfo] = []
    for layer in layers:
        track = track_from_layer(layer, project_duration)
        if track is not None:
            tracks.append(track)
    logger.info(f"[AUDIO] {len(tracks)} candidate audio tracks from {len(layers)} layers")
    return tracks


async def prepare_audio_inputs(
    tracks: list[AudioTrackInfo],
    resolver: MediaURLResolver,
    probe: AudioProbe,
    fail_on_probe_error: bool = False,
    probed: dict[str, str | None] | None = None,
) -> list[AudioTrackInfo]:
    """Resolve and probe candidate tracks, keeping only those with audio.

    Args:
        tracks: Output of extract_audio_tracks
        resolver: Rewrites proxy references to signed URLs
        probe: Async callable returning True when the URL has an audio stream
        fail_on_probe_error: Raise instead of dropping when a probe fails
        probed: Earlier results keyed by layer source (resolved URL, or None
            when dropped). Sources found here are not probed again; new
            results are added.

    Returns:
        Tracks (in input order) whose source_url is the resolved, encoder-safe URL

    Raises:
        MediaProbeError: If a probe fails and fail_on_probe_error is set.
            The remaining probes are cancelled.
    """
    known = probed if probed is not None else {}

    async def _resolve_audible(source: str, layer_id: str | None) -> str | None:
        url = await asyncio.to_thread(resolver.resolve_for_encoder, source)
        try:
            audible = await probe(url)
        except MediaProbeError as e:
            if fail_on_probe_error:
                raise
            logger.warning(f"[AUDIO] Dropping layer {layer_id}: probe failed: {e}")
            return None
        if not audible:
            logger.info(f"[AUDIO] Dropping layer {layer_id}: no audio stream")
            return None
        return url

    probes: dict[int, asyncio.Task] = {}
    try:
        async with asyncio.TaskGroup() as group:
            for i, track in enumerate(tracks):
                if track.source_url not in known:
                    probes[i] = group.create_task(_resolve_audible(track.source_url, track.layer_id))
    except ExceptionGroup as eg:
        raise eg.exceptions[0]

    prepared: list[AudioTrackInfo] = []
    for i, track in enumerate(tracks):
        if i in probes:
            url = probes[i].result()
            known.setdefault(track.source_url, url)
        else:
            url = known[track.source_url]
        if url is not None:
            prepared.append(replace(track, source_url=url))
    return prepared
