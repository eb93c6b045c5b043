# main.py
"""
RCM backend API entry point.
Mounts the RCM router and maps service errors / validation failures to JSON.
Uses FastAPI lifespan for startup/shutdown logging (no deprecated @app.on_event).
Run:
  uvicorn main:app --reload --port 8000
"""
import os
import logging
from contextlib import asynccontextmanager
from dotenv import load_dotenv

# .env must be loaded before db_store reads DATABASE_URL at import
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder

from errors import RCMError
from rcm_routes import router as rcm_router

# Logging
logging.basicConfig(level=logging.INFO)
log = logging.getLogger("rcm_main")

# Read configuration from environment (safe defaults for dev)
# FRONTEND_ORIGINS is a comma-separated list like:
# "http://192.168.44.109:8080,http://localhost:8080"
FRONTEND_ORIGINS = os.getenv("FRONTEND_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
origins = [o.strip() for o in FRONTEND_ORIGINS.split(",") if o.strip()]

# Informational only; binding is done by the uvicorn process.
BACKEND_HOST = os.getenv("BACKEND_HOST", "127.0.0.1")
BACKEND_PORT = int(os.getenv("BACKEND_PORT", "8000"))
RCM_API_PREFIX = os.getenv("RCM_API_PREFIX", "/api/rcm")

@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("Configured FRONTEND_ORIGINS: %s", origins)
    log.info("Configured BACKEND_HOST: %s, BACKEND_PORT: %s", BACKEND_HOST, BACKEND_PORT)
    if not os.getenv("DATABASE_URL"):
        log.warning("DATABASE_URL is not set; every data endpoint will fail until it is configured.")
    yield
    log.info("RCM backend shutting down.")

app = FastAPI(title="RCM Backend API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rcm_router, prefix=RCM_API_PREFIX)
log.info("Mounted RCM router at %s", RCM_API_PREFIX)

# -----------------------
# Error mapping
@app.exception_handler(RCMError)
async def rcm_error_handler(request: Request, exc: RCMError):
    if exc.status_code >= 500:
        log.error("%s %s failed: %s %s", request.method, request.url.path, exc.message, exc.details)
    return JSONResponse(jsonable_encoder(exc.to_dict()), status_code=exc.status_code)

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path", "header")]
        errors.append({
            "field": ".".join(loc) or "body",
            "message": err.get("msg"),
            "value": err.get("input"),
        })
    log.info("validation failed on %s %s: %s", request.method, request.url.path, [e["field"] for e in errors])
    return JSONResponse(
        jsonable_encoder({"success": False, "message": "Validation failed", "errors": errors}),
        status_code=400,
    )

@app.get("/_healthz")
def healthz():
    return {"ok": True, "rcm_prefix": RCM_API_PREFIX}
