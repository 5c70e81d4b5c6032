from .cameras import router as cameras_router
from .mqtt import router as mqtt_router
from .sessions import router as sessions_router

__all__ = ["cameras_router", "mqtt_router", "sessions_router"]
