from fastapi import APIRouter
from adpilot.api.v1 import launch, sync, optimization

api_router = APIRouter()

api_router.include_router(launch.router, prefix="/launch", tags=["Launch"])
api_router.include_router(sync.router, prefix="/sync", tags=["Sync"])
api_router.include_router(optimization.router, prefix="/optimization", tags=["Optimization"])
