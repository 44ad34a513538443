from batview.services.loading_service import ChunkDriver, LoadingService
from batview.services.viewport_service import ViewportService

__all__ = [
    "ChunkDriver",
    "LoadingService",
    "ViewportService",
]
