import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from leadflow.config import settings
from leadflow.logging_config import get_logger, setup_logging
from leadflow.routers import admin, webhook
from leadflow.runtime import build_runtime
from leadflow.services.store_service import SqlConversationStore

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="Leadflow API",
    description="WhatsApp lead qualification conversation service",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(admin.router)


@app.on_event("startup")
async def start_runtime() -> None:
    if getattr(app.state, "runtime", None) is None:
        app.state.runtime = build_runtime(settings)
    if isinstance(app.state.runtime.store, SqlConversationStore):
        from leadflow.database import Base, engine

        Base.metadata.create_all(bind=engine)
    logger.info(
        "Runtime started",
        extra={"context": {"store_backend": settings.store_backend, "sender": type(app.state.runtime.sender).__name__}},
    )


@app.on_event("shutdown")
async def stop_runtime() -> None:
    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        return
    await runtime.shutdown()
    logger.info("Runtime stopped")


@app.get("/health")
async def health():
    return {"status": "ok"}
