import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from database import check_connection, init_db
from routers import admin_router, receipts_router, scans_router, webhooks_router
from services.errors import RebateError

# Logging
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("rebates")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Local sqlite gets its tables created; server databases are migrated with Alembic
    if settings.database_url.startswith("sqlite"):
        init_db()
    logger.info("Rebate engine started")
    yield


# App instance
app = FastAPI(title="Rebate Engine", version="1.0.0", lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health():
    database_ok = check_connection()
    return {"status": "ok" if database_ok else "degraded", "database": database_ok}


app.include_router(scans_router)
app.include_router(receipts_router)
app.include_router(admin_router)
app.include_router(webhooks_router)


# Engine errors that escaped a router
@app.exception_handler(RebateError)
async def rebate_error_handler(request: Request, exc: RebateError):
    logger.error(f"Unhandled engine error on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# 404 Fallback Middleware
@app.middleware("http")
async def not_found_middleware(request: Request, call_next):
    response = await call_next(request)
    if response.status_code == 404 and request.scope.get("route") is None:
        return JSONResponse(status_code=404, content={"error": "Route not found"})
    return response


if __name__ == "__main__":
    port = int(os.getenv("PORT", 10000))
    uvicorn.run("main:app", host="0.0.0.0", port=port, reload=True)
