from fastapi import APIRouter

from vibeforge.api.routes import credits, health, jobs

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(credits.router, prefix="/credits", tags=["credits"])
