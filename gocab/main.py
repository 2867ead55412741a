"""
GoCab Dispatch - FastAPI Entry Point
Main application file with CORS, middleware, and route registration
"""

import logging
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gocab.database import connect_db, disconnect_db
from gocab.errors import DispatchError
from gocab.logging_config import configure_logging
from gocab.routes import driver_routes, ride_routes
from gocab.sockets import ride_socket
from gocab.sockets.manager import manager

configure_logging()
logger = logging.getLogger(__name__)

VERSION = "1.0.0"

# Initialize FastAPI app
app = FastAPI(
    title="GoCab Dispatch API",
    description="Ride dispatch: matching, ride lifecycle and real-time updates",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Update with specific origins in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests with timing"""
    start_time = time.time()
    logger.info(f"Request: {request.method} {request.url.path}")

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(f"Completed in {process_time:.2f}s - Status: {response.status_code}")
    return response


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    """Domain errors carry their own status code and stable error code"""
    if exc.status_code >= 500:
        logger.error(f"Dispatch error on {request.url.path}: {exc.code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code}")

    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message, "error": exc.to_dict()},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions"""
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "error": {"code": "INTERNAL_ERROR", "message": str(exc)},
        },
    )


@app.on_event("startup")
async def startup_event():
    """Connect to MongoDB and start the socket housekeeping loops"""
    logger.info("Starting GoCab Dispatch API...")
    connect_db()
    await manager.start()


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down GoCab Dispatch API...")
    await manager.stop()
    disconnect_db()


@app.get("/")
async def root():
    """API health check"""
    return {"success": True, "message": "GoCab Dispatch API is running", "version": VERSION}


@app.get("/health")
async def health_check():
    """Detailed health check"""
    stats = manager.get_stats()
    return {
        "success": True,
        "status": "healthy",
        "websocket_connections": stats["active_connections"],
    }


# Register route modules
app.include_router(ride_routes.router, prefix="/rides", tags=["Rides"])
app.include_router(driver_routes.router, prefix="/drivers", tags=["Drivers"])

# Register WebSocket routes
app.include_router(ride_socket.router, prefix="/ws", tags=["WebSocket"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("gocab.main:app", host="0.0.0.0", port=8000, reload=True)
