import logging
import uuid
import asyncio
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from repricer.config import settings
from repricer.routers import internal
from repricer.utils.logger import logger

app = FastAPI(title="eBay Repricer API", version="1.0.0")

origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=3600,
)


# Request logging middleware with request ID
@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.rid = rid
    logging.info("→ %s %s rid=%s", request.method, request.url.path, rid)
    try:
        resp = await call_next(request)
        logging.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
        resp.headers["X-Request-ID"] = rid
        return resp
    except Exception as e:
        logging.exception("Unhandled error rid=%s: %s", rid, str(e))
        error_resp = JSONResponse(
            {"error": "internal_error", "rid": rid, "type": type(e).__name__},
            status_code=500,
        )
        error_resp.headers["X-Request-ID"] = rid
        return error_resp


app.include_router(internal.router)


@app.on_event("startup")
async def startup_event():
    if not settings.ENCRYPTION_KEY:
        logger.warning("ENCRYPTION_KEY is not set; stored eBay credentials cannot be read")

    if not settings.START_BACKGROUND_WORKERS:
        logger.info("Background workers disabled (START_BACKGROUND_WORKERS=false)")
        return

    from repricer.workers import run_price_reduction_worker_loop

    asyncio.create_task(run_price_reduction_worker_loop())
    logger.info(
        "Price reduction worker started (runs every %s seconds)",
        settings.PRICE_REDUCTION_INTERVAL_SECONDS,
    )


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/healthz/db")
async def healthz_db():
    """Database health check endpoint"""
    from fastapi import HTTPException, status
    try:
        from repricer.models_sqlalchemy import engine
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        logger.exception("Database health check failed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database unavailable: {type(e).__name__}",
        )
