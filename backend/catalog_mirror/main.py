import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

import catalog_mirror.utils.logger  # noqa: F401  configures the application logger
from catalog_mirror.api import library, restrictions, sync
from catalog_mirror.core.database import SessionLocal, init_db
from catalog_mirror.errors import QueryValidationError, RecomputeLockBusy, RestrictionError, SyncLockBusy
from catalog_mirror.utils.timezone import utc_now

logger = logging.getLogger(__name__)

app = FastAPI(title="Catalog Mirror API", version="1.0.0")

# Library pages can be large; compress them
app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(library.router, prefix="/api/library", tags=["Library"])
app.include_router(sync.router, prefix="/api/sync", tags=["Sync"])
app.include_router(restrictions.router, prefix="/api/users", tags=["Restrictions"])


@app.exception_handler(QueryValidationError)
async def query_validation_handler(request: Request, exc: QueryValidationError):
    # ExclusionLimitError is a QueryValidationError and lands here too
    return JSONResponse(status_code=400, content={"detail": str(exc), "field": exc.field})


@app.exception_handler(RestrictionError)
async def restriction_error_handler(request: Request, exc: RestrictionError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(SyncLockBusy)
async def sync_lock_busy_handler(request: Request, exc: SyncLockBusy):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(RecomputeLockBusy)
async def recompute_lock_busy_handler(request: Request, exc: RecomputeLockBusy):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.on_event("startup")
async def startup_event():
    init_db()


@app.get("/")
def root():
    return {"status": "Catalog Mirror API Running"}


@app.get("/health")
async def health_check():
    """Simple health check endpoint for load balancers/monitoring"""
    try:
        from catalog_mirror.core.redis_client import get_redis

        await get_redis().ping()

        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()

        return {"status": "healthy", "timestamp": utc_now().isoformat()}
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Service unhealthy: {str(e)}")
