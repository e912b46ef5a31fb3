from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from chunked_uploader.config import settings, log_storage_settings
from chunked_uploader.middleware import add_error_handling_middleware

# Configure logging
logging.basicConfig(level=getattr(logging, settings.log_level.upper()))
logger = logging.getLogger(__name__)

# Create FastAPI app instance
app = FastAPI(
    title=settings.app_name,
    description="Resumable multipart uploads of large files to object storage",
    version=settings.app_version,
    debug=settings.debug
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add error handling middleware
add_error_handling_middleware(app)

# Include routers
from chunked_uploader.routes import health, info, uploads, websocket
from chunked_uploader.services.orchestrator import init_orchestrator, shutdown_orchestrator

app.include_router(health.router, prefix=settings.api_v1_prefix)
app.include_router(info.router, prefix=settings.api_v1_prefix)
app.include_router(uploads.router, prefix=settings.api_v1_prefix)
app.include_router(websocket.router)

# Orchestrator lifecycle
@app.on_event("startup")
async def _startup():
    log_storage_settings(settings)
    await init_orchestrator()


@app.on_event("shutdown")
async def _shutdown():
    await shutdown_orchestrator()

@app.get("/")
async def root():
    """Root endpoint"""
    return {"message": settings.app_name, "version": settings.app_version}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
