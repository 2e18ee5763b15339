import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from artifact_reader import ArtifactReader
from config import Settings, get_settings
from job_store import JobStore
from pipeline import SlicePipeline
from routes_slice import router as slice_router
from upload_validator import REASON_FILE_TOO_LARGE, UploadValidator
from workspace import ensure_scratch_dir


VERSION = "1.0.0"

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the API; tests pass explicit settings."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: an unusable scratch directory is fatal
        ensure_scratch_dir(settings.scratch_dir)
        reader = ArtifactReader(settings.scratch_dir)
        store = JobStore(settings.scratch_dir, reader)
        app.state.settings = settings
        app.state.reader = reader
        app.state.store = store
        app.state.pipeline = SlicePipeline(settings, store=store)
        logger.info(
            f"Slice Bridge {VERSION} ready: slicer={settings.slicer_command!r}, "
            f"timeout={settings.slice_timeout_seconds}s, "
            f"max_concurrent={settings.max_concurrent_slices}"
        )
        yield
        # Shutdown
        logger.info("Slice Bridge shutting down")

    app = FastAPI(title="Slice Bridge API", version=VERSION, lifespan=lifespan)
    upload_validator = UploadValidator(settings.allowed_extensions, settings.max_upload_bytes)

    @app.middleware("http")
    async def limit_upload_size(request: Request, call_next):
        # Must run before form parsing, which spools the whole body to disk
        if request.method == "POST" and request.url.path == "/slice":
            rejected = upload_validator.check_request_length(request.headers.get("content-length"))
            if rejected is not None:
                return JSONResponse(
                    status_code=413 if rejected.reason == REASON_FILE_TOO_LARGE else 411,
                    content={"detail": {"code": rejected.reason, "message": rejected.detail}},
                )
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(slice_router)

    @app.get("/healthz")
    def health():
        return {"status": "ok"}

    return app


def run() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
