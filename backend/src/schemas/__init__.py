from src.schemas.envelope import ErrorInfo
from src.schemas.render import (
    RenderPhase,
    RenderProgress,
    RenderRequest,
    RenderStatusResponse,
    RenderViewData,
)

__all__ = [
    "ErrorInfo",
    "RenderPhase",
    "RenderProgress",
    "RenderRequest",
    "RenderStatusResponse",
    "RenderViewData",
]
