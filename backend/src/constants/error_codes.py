"""Error codes dictionary for the render API.

This is the single source of truth for all error codes, their retryability,
and suggested recovery actions. Used by exception handlers to generate
machine-readable error responses.
"""

from typing import TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    retryable: bool
    suggested_fix: str


# Error codes dictionary - single source of truth
ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Setup errors (raised before any render resource is allocated)
    # ==========================================================================
    "RENDER_TOKEN_INVALID": {
        "retryable": False,
        "suggested_fix": "Start a new render; render tokens are single-use and expire after 5 minutes",
    },
    "NOT_FOUND": {
        "retryable": False,
    },
    "PROJECT_NOT_FOUND": {
        "retryable": False,
    },
    "RENDER_SESSION_IN_USE": {
        "retryable": True,
        "suggested_fix": "Use a unique render_session_id per concurrent render",
    },
    # ==========================================================================
    # Mid-render errors (reported on the progress channel and the stream)
    # ==========================================================================
    "CAPTURE_FAILED": {
        "retryable": True,
    },
    "ENCODER_FAILED": {
        "retryable": False,
    },
    "RENDER_TIMEOUT": {
        "retryable": False,
        "suggested_fix": "Shorten the project or lower fps; renders are capped at 10 minutes",
    },
    "MEDIA_PROBE_FAILED": {
        "retryable": True,
    },
    "INTERNAL_ERROR": {
        "retryable": False,
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get error specification by code.

    Args:
        code: The error code

    Returns:
        ErrorCodeSpec with retryable flag and suggested fix
    """
    return ERROR_CODES.get(code, {"retryable": False})


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    spec = get_error_spec(code)
    return spec.get("retryable", False)
