from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from history.api.routes import auth, chat, history, proxy, rate_limit
from history.config import settings, validate_environment
from history.services.logger import logger
from history.services.store import close_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    errors, warnings = validate_environment()
    for warning in warnings:
        logger.warning(f"Environment: {warning}")
    for error in errors:
        logger.error(f"Environment: {error}")
    logger.info(f"History backend starting in {settings.app_mode_normalized} mode")
    yield
    # Shutdown
    await close_store()


app = FastAPI(
    title="History",
    description="Location history research powered by Valyu DeepResearch",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(chat.router)
app.include_router(rate_limit.router)
app.include_router(auth.router)
app.include_router(proxy.router)
app.include_router(history.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "history"}
