from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response

from leadflow.core.auth import AuthUser, get_current_user
from leadflow.core.config import get_settings
from leadflow.crm.api import notifications_router
from leadflow.crm.expiration.scheduler import SERVICE_NAME
from leadflow.crm.models import utcnow
from leadflow.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(notifications_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/health/lead-expiration", tags=["system"])
def lead_expiration_health(request: Request) -> JSONResponse:
    scheduler = getattr(request.app.state, "lead_expiration_scheduler", None)
    if scheduler is None:
        # Sweeps run in the standalone worker process.
        return JSONResponse(
            content={
                "service_name": SERVICE_NAME,
                "status": "external",
                "check_time": utcnow().isoformat(),
            }
        )
    status_code = status.HTTP_200_OK if scheduler.is_healthy else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=scheduler.health())


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
