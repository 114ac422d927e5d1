import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class RenderPhase(str, Enum):
    INITIALIZING = "initializing"
    CAPTURING = "capturing"
    ENCODING = "encoding"
    DONE = "done"
    ERROR = "error"


TERMINAL_PHASES = frozenset({RenderPhase.DONE, RenderPhase.ERROR})


class RenderProgress(BaseModel):
    """One progress event of a render session (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    phase: RenderPhase
    current_frame: int = 0
    total_frames: int = 0
    percent: int = 0
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_sse(self) -> str:
        """Format event for SSE transmission."""
        return f"event: progress\ndata: {json.dumps(self.to_wire())}\n\n"


class RenderRequest(BaseModel):
    """Body of POST /projects/{id}/render. Omitted values use the project's own."""

    render_session_id: str | None = Field(default=None, min_length=1, max_length=128)
    width: int | None = Field(default=None, gt=0, le=7680)
    height: int | None = Field(default=None, gt=0, le=4320)
    fps: int | None = Field(default=None, gt=0, le=120)


class RenderStatusResponse(BaseModel):
    project_id: str
    name: str
    status: str = "ready"
    message: str = "Use POST to start rendering"


class RenderViewData(BaseModel):
    """Project document handed to the render-only view."""

    project_id: str
    name: str
    width: int
    height: int
    fps: int
    duration: float
    layers: list[dict[str, Any]] = Field(default_factory=list)
