"""Media stream probing using FFprobe."""

import asyncio
import json
import logging

from src.config import get_settings
from src.exceptions import MediaProbeError

logger = logging.getLogger(__name__)


def _get_settings():
    """Get settings lazily to avoid import issues in tests."""
    return get_settings()


def build_ffprobe_command(source: str, *args: str) -> list[str]:
    settings = _get_settings()
    return [
        settings.ffprobe_path,
        "-v", "error",
        "-print_format", "json",
        *args,
        source,
    ]


async def _run_ffprobe(source: str, *args: str, timeout: float | None = None) -> dict:
    """Run ffprobe and return parsed JSON.

    Raises:
        MediaProbeError: ffprobe missing, timed out, failed, or printed garbage
    """
    cmd = build_ffprobe_command(source, *args)
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise MediaProbeError(f"ffprobe could not be started: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise MediaProbeError(f"ffprobe timed out after {timeout}s") from e
    except asyncio.CancelledError:
        proc.kill()
        raise

    if proc.returncode != 0:
        raise MediaProbeError(
            f"ffprobe failed ({proc.returncode}): {stderr.decode('utf-8', errors='replace').strip()}"
        )

    try:
        return json.loads(stdout)
    except json.JSONDecodeError as e:
        raise MediaProbeError(f"Failed to parse ffprobe output: {e}") from e


async def has_audio_stream(source: str, timeout: float | None = None) -> bool:
    """
    Check whether a media file or URL carries at least one audio stream.

    Args:
        source: Local path or URL ffprobe can open
        timeout: Seconds before the probe is abandoned

    Returns:
        True if an audio stream exists, False if the source has none

    Raises:
        MediaProbeError: If the probe itself failed
    """
    if timeout is None:
        timeout = _get_settings().render_probe_timeout_seconds
    data = await _run_ffprobe(
        source, "-show_streams", "-select_streams", "a", timeout=timeout
    )
    return len(data.get("streams", [])) > 0
