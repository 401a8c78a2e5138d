import logging

# Fastapi Base
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from export_config import ExportSettings

# Import error handlers
from error_handlers import register_error_handlers

# Include routers
from routes.export_jobs import router as export_jobs_router


logging.basicConfig(level=getattr(logging, ExportSettings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)
logger.info("Starting FastAPI application...")


app = FastAPI(
    title="Tenant Record Export Service",
    description="Background CSV / JSON / XLSX exports with progress tracking and cancellation",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ——————— Initialize Export Engine on startup ———————
@app.on_event("startup")
async def startup():
    from services.export_worker import get_export_engine
    get_export_engine()
    logger.info("Export engine initialized")


@app.on_event("shutdown")
async def shutdown():
    # Cancel running jobs and release payloads
    from services.export_worker import shutdown_export_engine
    await shutdown_export_engine()
    logger.info("Export engine shutdown complete")
# ————————————————————————————————————————————————


# Register error handlers
register_error_handlers(app)

app.include_router(export_jobs_router)


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
