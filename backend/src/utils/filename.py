import re

_WHITESPACE = re.compile(r"\s+")
_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")

DEFAULT_FILENAME = "video"


def sanitize_download_filename(name: str | None, extension: str = "mp4", max_length: int = 100) -> str:
    """Make a project name safe for a Content-Disposition filename.

    Keeps ASCII letters, digits, "-" and "_"; whitespace runs become "_";
    everything else is dropped. "My Project: v2!" -> "My_Project_v2.mp4".
    """
    stem = _WHITESPACE.sub("_", (name or "").strip())
    stem = _UNSAFE.sub("", stem)[:max_length] or DEFAULT_FILENAME
    return f"{stem}.{extension}" if extension else stem
