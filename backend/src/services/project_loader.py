"""Read-only access to projects for rendering."""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.exceptions import ProjectNotFoundError
from src.models.project import Project

logger = logging.getLogger(__name__)


async def load_project(db: AsyncSession, project_id: UUID) -> Project:
    """Fetch a project or raise ProjectNotFoundError."""
    project = await db.get(Project, project_id)
    if project is None:
        raise ProjectNotFoundError(str(project_id))
    return project


def project_document(project: Project) -> dict[str, Any]:
    """The render-facing view of a project.

    Returns:
        {name, width, height, fps, duration (seconds), layers}
    """
    settings = get_settings()
    timeline = project.timeline_data or {}
    duration_ms = project.duration_ms or timeline.get("duration_ms") or 0
    return {
        "name": project.name,
        "width": project.width or settings.render_default_width,
        "height": project.height or settings.render_default_height,
        "fps": project.fps or settings.render_default_fps,
        "duration": duration_ms / 1000,
        "layers": list(timeline.get("layers") or []),
    }
