"""Custom exceptions for the render backend.

Setup-time errors (token, project lookup) are raised before any render
resource exists and surface as ordinary HTTP errors. Mid-render errors
(subclasses of RenderError) are reported on the progress channel and raised
out of the output stream.
"""

from src.constants.error_codes import get_error_spec
from src.schemas.envelope import ErrorInfo


class RenderServiceError(Exception):
    """Base exception for all render service errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        suggested_fix: str | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.suggested_fix = suggested_fix
        super().__init__(self.message)

    def to_error_info(self) -> ErrorInfo:
        """Convert exception to ErrorInfo for API response."""
        spec = get_error_spec(self.code)
        return ErrorInfo(
            code=self.code,
            message=self.message,
            retryable=spec.get("retryable", False),
            suggested_fix=self.suggested_fix or spec.get("suggested_fix"),
        )


# =============================================================================
# Setup errors
# =============================================================================


class AuthorizationError(RenderServiceError):
    """Render token is missing, unknown, expired, or issued for another project."""

    code = "RENDER_TOKEN_INVALID"
    status_code = 403
    message = "Invalid or missing render token"


class NotFoundError(RenderServiceError):
    """Base class for resource not found errors."""

    code = "NOT_FOUND"
    status_code = 404
    message = "Resource not found"


class ProjectNotFoundError(NotFoundError):
    """Project not found."""

    code = "PROJECT_NOT_FOUND"
    message = "Project not found"

    def __init__(self, project_id: str | None = None):
        message = f"Project not found: {project_id}" if project_id else self.message
        super().__init__(message)


class RenderSessionInUseError(RenderServiceError):
    """Another live render already owns this render session id."""

    code = "RENDER_SESSION_IN_USE"
    status_code = 409
    message = "Render session id is already in use"


# =============================================================================
# Mid-render errors
# =============================================================================


class RenderError(RenderServiceError):
    """Base class for failures after render resources were allocated."""

    code = "INTERNAL_ERROR"
    status_code = 500
    message = "Render failed"


class CaptureError(RenderError):
    """The rendering surface failed to load, settle, or snapshot in time."""

    code = "CAPTURE_FAILED"
    message = "Frame capture failed"


class EncoderError(RenderError):
    """The encoder process reported a failure."""

    code = "ENCODER_FAILED"
    message = "Encoder failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        returncode: int | None = None,
        stderr: str = "",
    ):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


class RenderTimeoutError(RenderError):
    """The global render watchdog expired."""

    code = "RENDER_TIMEOUT"
    status_code = 504
    message = "Render timed out"


class MediaProbeError(RenderError):
    """An audio source could not be probed."""

    code = "MEDIA_PROBE_FAILED"
    message = "Media probe failed"


class ConsumerDisconnect(Exception):
    """The stream consumer went away. Not an application error."""
