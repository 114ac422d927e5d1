"""Render API endpoints - video streamed straight from the encoder (no job queue)."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import aclosing
from uuid import UUID

from fastapi import APIRouter, Query
from fastapi.responses import StreamingResponse

from src.api.deps import DbSession, ProgressChannel, Renderer, Resolver, TokenStore
from src.render.pipeline import RenderJobConfig
from src.schemas.render import RenderRequest, RenderStatusResponse, RenderViewData
from src.services.progress_channel import RenderProgressChannel
from src.services.project_loader import load_project, project_document
from src.services.render_token_store import authorize_render_token
from src.utils.filename import sanitize_download_filename

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/projects/{project_id}/render")
async def render_project(
    project_id: UUID,
    db: DbSession,
    renderer: Renderer,
    render_request: RenderRequest | None = None,
) -> StreamingResponse:
    """
    Render a project and stream the MP4 as it is encoded.

    Setup failures (unknown project, session id in use, browser or encoder
    failing to start) are returned as ordinary errors. Failures after the
    first byte abort the response instead of ending it cleanly.
    """
    project = await load_project(db, project_id)
    document = project_document(project)
    job = RenderJobConfig.from_project(str(project_id), document, render_request)

    session = await renderer.start(job)
    filename = sanitize_download_filename(document["name"])
    return StreamingResponse(
        session.stream(),
        media_type="video/mp4",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Cache-Control": "no-cache",
            "X-Render-Session-Id": session.session_id,
        },
    )


@router.get("/projects/{project_id}/render", response_model=RenderStatusResponse)
async def get_render_status(project_id: UUID, db: DbSession) -> RenderStatusResponse:
    """Check that a project can be rendered."""
    project = await load_project(db, project_id)
    return RenderStatusResponse(project_id=str(project_id), name=project.name)


@router.get("/render/{project_id}/view-data", response_model=RenderViewData)
async def get_render_view_data(
    project_id: UUID,
    db: DbSession,
    token_store: TokenStore,
    resolver: Resolver,
    token: str | None = Query(default=None),
) -> RenderViewData:
    """
    Project document for the render-only view.

    Authenticated by a single-use render token instead of a user session.
    The token is checked before the project is even looked up.
    """
    authorize_render_token(token_store, token, str(project_id))
    project = await load_project(db, project_id)
    document = project_document(project)
    # Signing may call out to IAM; keep it off the event loop
    layers = await asyncio.to_thread(resolver.resolve_layer_sources, document["layers"])
    return RenderViewData(
        project_id=str(project_id),
        name=document["name"],
        width=document["width"],
        height=document["height"],
        fps=document["fps"],
        duration=document["duration"],
        layers=layers,
    )


async def progress_event_stream(
    channel: RenderProgressChannel, session_id: str
) -> AsyncGenerator[str, None]:
    """SSE frames for one render session, ending after the terminal event."""
    async with aclosing(channel.subscribe(session_id)) as events:
        async for progress in events:
            yield progress.to_sse()


@router.get("/render/sessions/{session_id}/progress")
async def stream_render_progress(session_id: str, channel: ProgressChannel) -> StreamingResponse:
    """Server-Sent Events stream of RenderProgress for a render session."""
    return StreamingResponse(
        progress_event_stream(channel, session_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
