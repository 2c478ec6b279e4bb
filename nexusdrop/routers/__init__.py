"""HTTP routers."""

from .download_router import router as download_router
from .upload_router import router as upload_router

__all__ = ["download_router", "upload_router"]
