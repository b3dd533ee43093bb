from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.core.config import get_config_summary, settings, validate_chat_config

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
def health_check():
    return {"status": "ok", "service": settings.app_name}


@router.get("/chat")
def chat_health_check():
    validation = validate_chat_config()
    body = {
        "status": "healthy" if validation.is_valid else "unhealthy",
        "config": get_config_summary(),
        "errors": validation.errors,
        "warnings": validation.warnings,
    }
    return JSONResponse(status_code=200 if validation.is_valid else 500, content=body)
