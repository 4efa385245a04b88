"""
Generator service route modules.

Each module handles a specific area of functionality.
"""

from .queue_admin import router as queue_router
from .render import router as render_router

__all__ = [
    "queue_router",
    "render_router",
]
