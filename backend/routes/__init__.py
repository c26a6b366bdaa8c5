"""FastAPI API endpoints under /api.

Endpoint groups: health, settings, login/logout, player, and the book
commands (open, choose, ask, draw, close, resume, summary).
"""

from fastapi import APIRouter

from .books import router as books_router
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(books_router)
