from src.render.audio_tracks import AudioTrackInfo, extract_audio_tracks, prepare_audio_inputs
from src.render.encoder import FFmpegEncoder, FramePipe, build_audio_filter_graph
from src.render.frame_capture import FrameCaptureLoop, total_frame_count
from src.render.lifecycle import RenderLifecycle
from src.render.pipeline import RenderJobConfig, RenderSession, VideoRenderer, get_video_renderer
from src.render.surface import PlaywrightSurface, RenderSurface

__all__ = [
    "AudioTrackInfo",
    "extract_audio_tracks",
    "prepare_audio_inputs",
    "FFmpegEncoder",
    "FramePipe",
    "build_audio_filter_graph",
    "FrameCaptureLoop",
    "total_frame_count",
    "RenderLifecycle",
    "RenderJobConfig",
    "RenderSession",
    "VideoRenderer",
    "get_video_renderer",
    "PlaywrightSurface",
    "RenderSurface",
]
