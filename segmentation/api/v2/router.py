from fastapi import APIRouter

from segmentation.api.deps import InternalAuth
from segmentation.api.v2 import hooks, segments

api_router = APIRouter(dependencies=[InternalAuth])

# Include all v2 routers
api_router.include_router(hooks.router, prefix="/hooks", tags=["hooks"])
api_router.include_router(segments.router, prefix="/segments", tags=["segments"])
