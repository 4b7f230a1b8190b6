"""
Copyright © 2026 Vladimir Vaulin-Belskii. All rights reserved.

FastAPI application entrypoint wiring routers and middleware.
"""
from contextlib import asynccontextmanager
import logging
import os

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .api import router as api_router
from .config import settings
from .runtime_config import RuntimeConfig

# Configure logging handlers
handlers = [logging.StreamHandler()]
if settings.log_file:
    handlers.append(logging.FileHandler(settings.log_file))

logging.basicConfig(
    level=logging.INFO,
    handlers=handlers,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

# Set the application's specific log level from settings
logging.getLogger("livescribe").setLevel(settings.log_level.upper())
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log configuration on startup."""
    logger.info("Starting Livescribe Backend")
    logger.info("Loaded Configuration:")
    for key, value in settings.model_dump().items():
        if any(secret in key.lower() for secret in ["key", "secret", "token", "password"]):
            value = "***" if value else "(unset)"
        logger.info("  %s: %s", key, value)
    logger.info("Session defaults: %s", RuntimeConfig().as_dict())

    if not settings.deepgram_api_key:
        logger.error("DEEPGRAM_API_KEY is not set; transcription streams will be rejected upstream")
    if settings.llm_provider.lower() == "gemini" and not settings.gemini_api_key:
        logger.error("GEMINI_API_KEY is not set; extraction calls will fail")

    yield


app = FastAPI(title=settings.app_name, lifespan=lifespan)

origins = [origin.strip() for origin in settings.allowed_origins.split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Trust forwarded headers from Nginx (or other proxies)
app.add_middleware(
    ProxyHeadersMiddleware,
    trusted_hosts=[ip.strip() for ip in settings.forwarded_allow_ips.split(",")] if settings.forwarded_allow_ips != "*" else "*",
)

app.include_router(api_router)

# Mounted last so the WebSocket route on "/" still matches first.
if settings.static_dir and os.path.isdir(settings.static_dir):
    app.mount("/", StaticFiles(directory=settings.static_dir, html=True), name="static")


def run() -> None:
    """Console entry point."""
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
