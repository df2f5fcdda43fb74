import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from . import tmdb
from .auth import ACCESS_COOKIE, verify_csrf
from .config import CORS_ORIGINS, IMPORT_SHUTDOWN_GRACE_SECONDS, LOG_LEVEL
from .database import close_db, init_db
from .import_jobs import wait_for_running_jobs
from .limits import limiter
from .routes_import import router as import_router

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    logger.info("Shutting down; waiting for running import jobs")
    await wait_for_running_jobs(timeout=IMPORT_SHUTDOWN_GRACE_SECONDS)
    await tmdb.close_client()
    await close_db()


app = FastAPI(title="reelsync", lifespan=lifespan)
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(status_code=429, content={"detail": "Too many uploads. Please try again later."})


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.update(SECURITY_HEADERS)
    return response


@app.middleware("http")
async def csrf_middleware(request: Request, call_next):
    if request.method in STATE_CHANGING_METHODS and request.cookies.get(ACCESS_COOKIE):
        try:
            verify_csrf(request)
        except HTTPException as exc:
            return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
    return await call_next(request)


if CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "X-CSRF-Token"],
    )


app.include_router(import_router)
