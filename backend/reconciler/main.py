"""
Checkout Reconciler - FastAPI Application

Payment backend for a hosted pay-page gateway: creates payments, receives
signed callbacks and browser redirects, and keeps one idempotent order
state per merchant transaction.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from datetime import datetime
import logging

from .config import settings
from .exceptions import ReconcilerError
from .services.service_factory import create_services
from .api.payments import router as payments_router
from .api.orders import router as orders_router


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events:
    - Startup: Build services (order store, gateway client, sinks), start sweep
    - Shutdown: Stop sweep, flush sink deliveries, close connections
    """
    # Startup
    logger.info("Starting checkout reconciler...")
    logger.info(f"Merchant ID: {settings.phonepe_merchant_id}")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Ledger backend: {settings.ledger_backend}")

    try:
        services = create_services(settings)
        app.state.services = services
        logger.info("Services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}")
        raise

    if services.sweeper is not None:
        try:
            services.sweeper.start()
            logger.info("APScheduler started for pending order sweep")
        except Exception as e:
            logger.error(f"Failed to start scheduler: {e}")
            raise

    logger.info("Server startup complete")

    yield

    # Shutdown
    logger.info("Shutting down checkout reconciler...")
    try:
        await services.aclose()
        logger.info("Services shut down")
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


# Initialize FastAPI application
app = FastAPI(
    title="Checkout Reconciler API",
    description="Payment creation and callback reconciliation for a hosted pay-page gateway",
    version="0.1.0",
    lifespan=lifespan,
)


# Configure CORS middleware for the storefront
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ReconcilerError)
async def reconciler_error_handler(request: Request, exc: ReconcilerError):
    """
    Handle reconciliation errors with standardized response format.

    Status code comes from the exception class (400, 404, 409, 503); the body
    is ReconcilerError.to_dict().
    """
    logger.warning(
        f"Reconciler error: {exc.error_code} - {exc.message}",
        extra={"details": exc.details}
    )

    return JSONResponse(
        status_code=exc.http_status,
        content=exc.to_dict()
    )


@app.exception_handler(Exception)
async def general_error_handler(request: Request, exc: Exception):
    """
    Catch-all handler for unexpected errors.

    Logs full exception for debugging but returns generic message to client.
    """
    logger.error(f"Unexpected error: {str(exc)}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error_code": "internal_error",
            "message": "An unexpected error occurred",
            "details": {}
        }
    )


# Health check endpoint
@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        Server status and gateway configuration (never the salt key)
    """
    return {
        "status": "OK",
        "timestamp": datetime.utcnow().isoformat(),
        "config": {
            "merchantId": settings.phonepe_merchant_id,
            "saltIndex": settings.phonepe_salt_index,
            "baseUrl": settings.phonepe_base_url,
            "environment": settings.environment,
        }
    }


# Include API routers
app.include_router(payments_router, tags=["Payments"])
app.include_router(orders_router, prefix="/orders", tags=["Orders"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "reconciler.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower()
    )
