from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.database import get_db
from src.render.pipeline import VideoRenderer, get_video_renderer
from src.services.media_url_resolver import MediaURLResolver, get_media_url_resolver
from src.services.progress_channel import RenderProgressChannel, get_progress_channel
from src.services.render_token_store import RenderTokenStore, get_render_token_store

# Type aliases for dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db)]
Renderer = Annotated[VideoRenderer, Depends(get_video_renderer)]
TokenStore = Annotated[RenderTokenStore, Depends(get_render_token_store)]
ProgressChannel = Annotated[RenderProgressChannel, Depends(get_progress_channel)]
Resolver = Annotated[MediaURLResolver, Depends(get_media_url_resolver)]
