from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from aichat.deps import get_health_service
from aichat.schemas import ApiResponse, HealthReport, success
from aichat.services.health_service import HealthService

router = APIRouter(tags=["health"])


@router.get("/health", response_model=ApiResponse[HealthReport])
async def health_endpoint(service: HealthService = Depends(get_health_service)):
    """
    探测 genkit 与数据库依赖。依赖异常时 HTTP 状态为 503，响应体的 code 仍为 200，
    便于负载均衡器与人工排障同时使用。
    """
    report = await service.check()
    body = success(report).model_dump(mode="json")
    status_code = 200 if report.status == "healthy" else 503
    return JSONResponse(status_code=status_code, content=body)
