import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import router as api_router
from .config import settings
from .search_service import _csv, available_providers, close_http_client, init_http_client

logger = logging.getLogger("uvicorn.error")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_http_client()
    logger.info(
        "Sourcing: primary=%s fallbacks=%s available=%s",
        settings.search_provider,
        ",".join(_csv(settings.fallback_order)) or "-",
        ",".join(available_providers()) or "-",
    )
    try:
        yield
    finally:
        await close_http_client()


app = FastAPI(title=settings.app_name, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/health", tags=["health"])
def health_check():
    return {"status": "ok", "providers": available_providers()}
