from typing import Any

from sqlalchemy import Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base, TimestampMixin, UUIDMixin


class Project(Base, UUIDMixin, TimestampMixin):
    """Animation project as stored by the editor. Read-only here."""

    __tablename__ = "projects"

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Video settings
    width: Mapped[int] = mapped_column(Integer, default=1920)
    height: Mapped[int] = mapped_column(Integer, default=1080)
    fps: Mapped[int] = mapped_column(Integer, default=30)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)

    # Timeline data (JSONB for flexibility). Layers live under "layers";
    # times inside a layer are in seconds.
    timeline_data: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        default=lambda: {"version": "1.0", "layers": []},
    )

    def __repr__(self) -> str:
        return f"<Project {self.name}>"
