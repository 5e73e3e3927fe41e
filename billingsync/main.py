from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
from dotenv import load_dotenv

from billingsync.core.config import settings
from billingsync.core.container import build_container
from billingsync.core.database import AsyncSessionLocal
from billingsync.routers import admin, payments, subscriptions

load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(levelname)s - %(message)s',
    handlers=[logging.StreamHandler()]
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if AsyncSessionLocal is None:
        logger.warning("⚠️ DATABASE_URL not set; billing endpoints are unavailable")
        yield
        return

    container = build_container(AsyncSessionLocal)
    app.state.container = container

    if settings.job_processor_enabled or settings.environment == "production":
        await container.job_processor.start()
    else:
        logger.info("ℹ️ Job processor disabled (not in production)")

    try:
        yield
    finally:
        await container.job_processor.stop()


app = FastAPI(
    title="Billing Sync API",
    description="Razorpay subscription billing with idempotent webhooks, retries and reconciliation",
    version="1.0.0",
    redirect_slashes=False,
    lifespan=lifespan,
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.environment == "development" else [settings.frontend_url],
    allow_credentials=False if settings.environment == "development" else True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Health check endpoint
@app.get("/health")
async def health_check():
    return JSONResponse(content={
        "status": "healthy",
        "service": "Billing Sync API",
        "version": "1.0.0"
    })

# Include routers
app.include_router(subscriptions.router, prefix="/api/subscriptions", tags=["Subscriptions"])
app.include_router(payments.router, prefix="/api/payments", tags=["Payments"])
app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
