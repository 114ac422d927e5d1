from src.models.base import Base
from src.models.project import Project

__all__ = [
    "Base",
    "Project",
]
