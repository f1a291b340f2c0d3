from fastapi import APIRouter

from meetai.api.routes.health import router as health_router
from meetai.api.routes.jobs import router as jobs_router
from meetai.api.routes.meetings import router as meetings_router
from meetai.api.routes.webhook import router as webhook_router

api_router = APIRouter()

api_router.include_router(health_router)
api_router.include_router(webhook_router)
api_router.include_router(meetings_router)
api_router.include_router(jobs_router)
