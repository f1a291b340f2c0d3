from fastapi import APIRouter, Depends

from meetai.schemas.health import HealthResponse
from meetai.services.health_service import HealthService, get_health_service

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def healthcheck(service: HealthService = Depends(get_health_service)) -> HealthResponse:
    return service.get_status()
