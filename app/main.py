import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app import models  # noqa: F401
from app.api import chat, health
from app.core.config import settings, validate_chat_config
from app.core.logging import configure_logging
from app.db.base import Base
from app.db.session import engine

configure_logging(settings.debug)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    Base.metadata.create_all(bind=engine)
    validation = validate_chat_config()
    for warning in validation.warnings:
        logger.warning(warning)
    for error in validation.errors:
        logger.error(error)
    yield


app = FastAPI(
    title=settings.app_name,
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Retry-After", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
)

app.include_router(health.router, prefix=settings.api_v1_prefix)
app.include_router(chat.router, prefix=settings.api_v1_prefix)


@app.get("/", tags=["root"])
def root():
    return {"message": f"{settings.app_name} is running"}
