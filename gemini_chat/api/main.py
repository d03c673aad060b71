"""FastAPI entrypoint - thin layer that wires together services & routes.

  • config.py          - env/config
  • api/auth.py        - authentication dependency
  • api/deps.py        - service providers
  • services/          - transcoder, uploader, payload, invoker, persistence
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..config import get_settings
from ..errors import ChatBackendError
from ..utils.logging import configure_logging
from . import deps
from .routers import chats, generate, meta, preferences

load_dotenv()
configure_logging()
settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # missing credentials are fatal at startup, not on the first request
    settings.validate_credentials()
    logger.info("Gemini chat backend ready (default model %s)", settings.default_model)
    yield
    if deps.get_preferences_repo.cache_info().currsize:
        deps.get_preferences_repo().flush()


app = FastAPI(
    title="Gemini Chat Backend",
    description="Generation proxy, attachment uploads and chat persistence for the Gemini chat front-end.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*", "Authorization"],
    max_age=86400,
)


@app.exception_handler(ChatBackendError)
async def chat_backend_error_handler(request: Request, exc: ChatBackendError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    detail = f"{location}: {first.get('msg')}" if location else first.get("msg", "invalid body")
    return JSONResponse(status_code=400, content={"error": f"Invalid request: {detail}"})


app.include_router(generate.router)
app.include_router(chats.router)
app.include_router(preferences.router)
app.include_router(meta.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
