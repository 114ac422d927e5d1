"""
FFmpeg encoder for streamed renders.

One ffmpeg process per render:
- input 0: PNG frames on stdin (the frame pipe) at a fixed frame rate
- inputs 1..N: audio sources (signed URLs), combined by a filter graph
- output: fragmented MP4 on stdout, so it can be streamed as it is produced

Video settings are fixed for reproducible output and are not user-tunable.
"""

import asyncio
import logging
from collections import deque

from src.config import get_settings
from src.exceptions import EncoderError
from src.render.audio_tracks import AudioTrackInfo

logger = logging.getLogger(__name__)

VIDEO_CODEC = "libx264"
VIDEO_PRESET = "fast"
VIDEO_CRF = 18
PIXEL_FORMAT = "yuv420p"
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "192k"
AUDIO_SAMPLE_RATE = 48000
# Fragmented MP4: playable while streaming to a non-seekable pipe
MOVFLAGS = "+frag_keyframe+empty_moov+default_base_moof"

AUDIO_OUTPUT_LABEL = "aout"
STDERR_TAIL_LINES = 40


def _fmt_seconds(value: float) -> str:
    """Format seconds for filter arguments without float noise (2.5 -> '2.5')."""
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return text or "0"


def build_audio_filter_graph(
    tracks: list[AudioTrackInfo],
    project_duration: float,
    first_input_index: int = 1,
) -> str | None:
    """
    Build the filter_complex that turns N audio inputs into one mixed track.

    Per track i (ffmpeg input first_input_index + i):
        atrim(start, duration) -> asetpts (reset to 0) -> adelay(enter ms)
        -> volume, labelled [a{i}]
    Then all [a{i}] -> amix(duration=longest) -> atrim(project duration) -> [aout]

    Returns:
        Filter graph string, or None when there are no tracks
    """
    if not tracks:
        return None

    filter_parts: list[str] = []
    for i, track in enumerate(tracks):
        delay_ms = int(round(track.enter_time * 1000))
        chain = [
            f"atrim=start={_fmt_seconds(track.media_start_offset)}"
            f":duration={_fmt_seconds(track.media_duration)}",
            "asetpts=PTS-STARTPTS",  # Reset timestamps after trim
            f"adelay=delays={delay_ms}:all=1",
            f"volume={track.volume}",
        ]
        filter_parts.append(f"[{first_input_index + i}:a]" + ",".join(chain) + f"[a{i}]")

    mix_inputs = "".join(f"[a{i}]" for i in range(len(tracks)))
    filter_parts.append(
        f"{mix_inputs}amix=inputs={len(tracks)}:duration=longest:normalize=0,"
        f"atrim=duration={_fmt_seconds(project_duration)}[{AUDIO_OUTPUT_LABEL}]"
    )
    return ";".join(filter_parts)


class FramePipe:
    """Write side of the encoder's stdin, one PNG per frame.

    write() waits for the pipe to drain, so a slow encoder pauses the capture
    loop instead of letting frames pile up in memory.
    """

    def __init__(self, writer: asyncio.StreamWriter) -> None:
        self._writer = writer
        self.frames_written = 0

    @property
    def closed(self) -> bool:
        return self._writer.is_closing()

    async def write(self, frame: bytes) -> None:
        if self.closed:
            raise EncoderError("Frame pipe is closed")
        try:
            self._writer.write(frame)
            await self._writer.drain()
        except ConnectionError as e:
            raise EncoderError(f"Encoder stopped accepting frames: {e}") from e
        # An aborted pipe releases drain() without an error
        if self.closed:
            raise EncoderError("Frame pipe was closed while writing")
        self.frames_written += 1

    async def close(self) -> None:
        """Signal end-of-input to the encoder."""
        if self.closed:
            return
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except ConnectionError as e:
            # The encoder is already gone; its exit status carries the error.
            logger.debug(f"[ENCODER] Frame pipe closed with error: {e}")

    def destroy(self) -> None:
        """Abort the pipe. Wakes any writer blocked in drain()."""
        if not self.closed:
            self._writer.transport.abort()


class FFmpegEncoder:
    """Drives one ffmpeg process for a single render."""

    def __init__(
        self,
        width: int,
        height: int,
        fps: int,
        duration: float,
        audio_tracks: list[AudioTrackInfo] | None = None,
        ffmpeg_path: str | None = None,
    ) -> None:
        self.width = width
        self.height = height
        self.fps = fps
        self.duration = duration
        self.audio_tracks = list(audio_tracks or [])
        self.ffmpeg_path = ffmpeg_path or get_settings().ffmpeg_path

        self._proc: asyncio.subprocess.Process | None = None
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_task: asyncio.Task | None = None
        self.frame_pipe: FramePipe | None = None

    def build_command(self) -> list[str]:
        """Build the ffmpeg command without executing it."""
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "error",
            "-y",
            # Video: PNG stream on stdin
            "-f", "image2pipe",
            "-framerate", str(self.fps),
            "-c:v", "png",
            "-i", "pipe:0",
        ]
        for track in self.audio_tracks:
            cmd.extend(["-i", track.source_url])

        filter_graph = build_audio_filter_graph(self.audio_tracks, self.duration)
        if filter_graph:
            cmd.extend(["-filter_complex", filter_graph])

        # Explicit mapping: never rely on default stream selection
        cmd.extend(["-map", "0:v:0"])
        if filter_graph:
            cmd.extend(["-map", f"[{AUDIO_OUTPUT_LABEL}]"])

        cmd.extend([
            "-c:v", VIDEO_CODEC,
            "-preset", VIDEO_PRESET,
            "-crf", str(VIDEO_CRF),
            "-pix_fmt", PIXEL_FORMAT,
            "-s", f"{self.width}x{self.height}",
            "-r", str(self.fps),
        ])
        if filter_graph:
            cmd.extend([
                "-c:a", AUDIO_CODEC,
                "-b:a", AUDIO_BITRATE,
                "-ar", str(AUDIO_SAMPLE_RATE),
            ])
        cmd.extend([
            "-movflags", MOVFLAGS,
            "-f", "mp4",
            "pipe:1",
        ])
        return cmd

    async def start(self) -> None:
        cmd = self.build_command()
        logger.info(
            f"[ENCODER] Starting {self.width}x{self.height}@{self.fps} "
            f"with {len(self.audio_tracks)} audio inputs"
        )
        logger.debug(f"[ENCODER] Command: {cmd}")
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EncoderError(f"Encoder could not be started: {e}") from e
        self.frame_pipe = FramePipe(self._proc.stdin)
        # stderr must be drained or ffmpeg blocks once the pipe buffer fills
        self._stderr_task = asyncio.create_task(self._collect_stderr())

    async def _collect_stderr(self) -> None:
        assert self._proc is not None and self._proc.stderr is not None
        async for raw_line in self._proc.stderr:
            line = raw_line.decode("utf-8", errors="replace").rstrip()
            if line:
                self._stderr_tail.append(line)

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc else None

    @property
    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    async def read(self, size: int) -> bytes:
        """Read the next chunk of muxed output. Empty bytes means EOF."""
        assert self._proc is not None and self._proc.stdout is not None
        return await self._proc.stdout.read(size)

    async def wait(self) -> int:
        """Wait for the process to exit and stderr to be fully collected."""
        assert self._proc is not None
        returncode = await self._proc.wait()
        if self._stderr_task is not None:
            # Shielded: a caller giving up on wait() must not lose the stderr tail
            await asyncio.shield(self._stderr_task)
        return returncode

    def error(self) -> EncoderError:
        stderr = self.stderr_tail
        message = f"Encoder exited with code {self.returncode}"
        if stderr:
            message += f": {stderr.splitlines()[-1]}"
        return EncoderError(message, returncode=self.returncode, stderr=stderr)

    def kill(self) -> None:
        """Forcibly terminate the encoder. No-op once it has exited."""
        if self.is_running:
            try:
                self._proc.kill()
            except ProcessLookupError:
                pass
