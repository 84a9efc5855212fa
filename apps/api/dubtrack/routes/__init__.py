"""Route modules."""

from .dialogues import router as dialogues_router
from .episodes import router as episodes_router
from .internal import router as internal_router
from .projects import router as projects_router
from .queue import router as queue_router
from .uploads import router as uploads_router

__all__ = [
    "dialogues_router",
    "episodes_router",
    "internal_router",
    "projects_router",
    "queue_router",
    "uploads_router",
]
