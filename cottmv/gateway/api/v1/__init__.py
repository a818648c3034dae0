from cottmv.gateway.api.v1.admin import router as admin_router
from cottmv.gateway.api.v1.media import router as media_router
from cottmv.gateway.api.v1.stream import router as stream_router

__all__ = ["routers"]
routers = [stream_router, media_router, admin_router]
