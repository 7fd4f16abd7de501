from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import os
import logging
import time
from contextlib import asynccontextmanager

from database import WriteConflictError, create_cosmos_client, get_cosmosdb_service
from datetime_utils import now_utc_iso
from error_utils import GradingEngineError, grading_error_handler, safe_raise_http
from grading_queue import get_queue_client
from routers import attempts, grading, proctoring

# Configure logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    cosmos_endpoint = os.getenv("COSMOS_DB_ENDPOINT")
    database_name = os.getenv("DATABASE_NAME", "grading_engine")

    app.state.db = None
    app.state.queue = None

    try:
        if cosmos_endpoint:
            database_client = create_cosmos_client(cosmos_endpoint).get_database_client(database_name)
            app.state.db = await get_cosmosdb_service(database_client)
            logger.info(f"Connected to Cosmos DB: {database_name}")
        else:
            logger.warning("COSMOS_DB_ENDPOINT not provided, running without database")
    except Exception as e:
        logger.error(f"Cosmos DB connection failed: {e}")

    try:
        app.state.queue = get_queue_client()
        logger.info("Grading queue client ready")
    except Exception as e:
        # Submissions still go through; grading is enqueued later by staff
        logger.error(f"Failed to initialize grading queue: {e}")

    yield

    logger.info("Shutting down grading engine API")


app = FastAPI(
    title="Grading Engine",
    description="Exam attempt submission, grading and proctoring API",
    version="1.0.0",
    lifespan=lifespan
)

app.add_exception_handler(GradingEngineError, grading_error_handler)


@app.exception_handler(WriteConflictError)
async def write_conflict_handler(request: Request, exc: WriteConflictError):
    logger.warning(f"Write conflict on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=409, content={"error": "CONFLICT", "message": "Concurrent update, retry the request"})


app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests with their latency"""
    start_time = time.time()
    logger.info(f"Request: {request.method} {request.url.path}")

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(f"Response: {response.status_code} in {process_time:.4f}s")

    return response


@app.get("/")
async def root():
    return {"message": "Grading Engine API", "version": "1.0.0"}


@app.get("/health")
async def health_check(request: Request):
    return {
        "status": "healthy",
        "database": "connected" if getattr(request.app.state, "db", None) else "disconnected",
        "queue": "configured" if getattr(request.app.state, "queue", None) else "unavailable",
    }


@app.get("/metrics")
async def get_metrics(request: Request):
    """Get Cosmos DB performance metrics"""
    db = getattr(request.app.state, "db", None)
    if db is None:
        safe_raise_http("Database not available", status_code=503)

    return {
        "service_metrics": db.get_metrics(),
        "timestamp": now_utc_iso(),
    }


# Include routers
app.include_router(attempts.router, prefix="/api/attempts", tags=["attempts"])
app.include_router(grading.router, prefix="/api/grading", tags=["grading"])
app.include_router(proctoring.router, prefix="/api/proctoring", tags=["proctoring"])


def main():
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))


if __name__ == "__main__":
    main()
