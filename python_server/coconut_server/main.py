"""Main entry point for the Coconut Tree Classifier server."""

import asyncio
import contextlib
import logging
import os
import signal
import sys
from contextlib import asynccontextmanager
from functools import partial
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import ServerSettings
from .errors import ClassifierError, ModelLoadError, UploadError
from .routers import health, predict
from .routers.predict import MULTIPART_OVERHEAD_BYTES, upload_too_large

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def _on_model_load_failure(app: FastAPI, error: ModelLoadError) -> None:
    """Stop the server: without a model there is nothing to serve.

    ``run()`` attaches its uvicorn.Server and checks ``fatal_error`` after
    it returns. When the app is served some other way (``uvicorn
    coconut_server.main:app``), the process signals itself with SIGTERM;
    uvicorn shuts down gracefully and re-raises the signal, so the process
    still ends with a non-zero status.
    """
    app.state.fatal_error = error
    server = getattr(app.state, "server", None)
    if server is not None:
        logger.critical("Shutting down: model could not be loaded")
        server.should_exit = True
    elif app.state.settings.exit_on_load_failure:
        logger.critical("Terminating: model could not be loaded")
        os.kill(os.getpid(), signal.SIGTERM)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Starts the model load in the background and returns immediately so the
    listener accepts connections while the model loads. Disposes the model
    on shutdown.
    """
    logger.info("Starting Coconut Classifier Server...")
    settings: ServerSettings = app.state.settings

    from .services.device_manager import resolve_device
    from .services.inference_service import InferenceService
    from .services.model_backends import load_model_dir
    from .services.model_lifecycle import ModelLifecycle, watch_warmup

    device_manager = app.state.device_manager or resolve_device(settings.device)
    logger.info("Compute device: %s", device_manager.get_info())
    loader = app.state.model_loader or partial(
        load_model_dir, settings.model_dir, device_manager)

    lifecycle = ModelLifecycle(
        loader=loader,
        device_manager=device_manager,
        on_fatal=partial(_on_model_load_failure, app),
    )
    app.state.lifecycle = lifecycle
    app.state.inference_service = InferenceService(
        lifecycle,
        device_manager=device_manager,
        allowed_content_types=settings.allowed_content_types,
    )

    lifecycle.start_loading()
    watchdog = asyncio.create_task(watch_warmup(lifecycle, settings.warmup_timeout))

    yield

    logger.info("Shutting down Coconut Classifier Server...")
    watchdog.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await watchdog
    await lifecycle.dispose(timeout=settings.shutdown_timeout)


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message},
    )


async def classifier_error_handler(request: Request, exc: ClassifierError):
    """Convert classified errors into the JSON error body."""
    if isinstance(exc, UploadError):
        logger.info("Rejected upload on %s: %s", request.url.path, exc)
    else:
        logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc)

    return _error_response(exc.status_code, exc.user_message)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Report malformed requests as 400 in the JSON error body."""
    logger.info("Invalid request on %s: %s", request.url.path, exc.errors())
    return _error_response(400, "Invalid request.")


async def unhandled_error_handler(request: Request, exc: Exception):
    """Last resort: any other exception becomes a generic 500."""
    logger.error("Unhandled error on %s", request.url.path, exc_info=exc)
    return _error_response(500, ClassifierError.public_message)


def create_app(
    settings: Optional[ServerSettings] = None,
    model_loader: Optional[Callable] = None,
    device_manager=None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Server settings (read from the environment when omitted)
        model_loader: Blocking callable returning a loaded model; defaults
            to loading ``settings.model_dir`` from disk
        device_manager: Device manager; detected from ``settings.device``
            when omitted

    Returns:
        Configured FastAPI app
    """
    settings = settings or ServerSettings()

    app = FastAPI(
        title="Coconut Tree Classifier Server",
        description="Binary coconut tree image classification service",
        version=__version__,
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.model_loader = model_loader
    app.state.device_manager = device_manager
    app.state.fatal_error = None

    @app.middleware("http")
    async def limit_upload_size(request: Request, call_next):
        """Refuse oversized uploads before the multipart body is read."""
        if request.method == "POST" and request.url.path == "/predict":
            try:
                length = int(request.headers.get("content-length", ""))
            except ValueError:
                length = None
            limit = settings.max_upload_bytes + MULTIPART_OVERHEAD_BYTES
            if length is not None and length > limit:
                error = upload_too_large(settings.max_upload_bytes)
                logger.info("Rejected upload on %s: %s (%d bytes)",
                            request.url.path, error, length)
                return _error_response(error.status_code, error.user_message)
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ClassifierError, classifier_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # Include routers
    app.include_router(health.router, tags=["health"])
    app.include_router(predict.router, tags=["predict"])

    return app


app = create_app()


def run(argv=None):
    """Run the server.

    Exits with status 1 if the model cannot be loaded.
    """
    import argparse
    parser = argparse.ArgumentParser(description="Coconut Tree Classifier Server")
    parser.add_argument("--host", default=None, help="Host to bind to")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    parser.add_argument("--model-dir", default=None,
                        help="Directory holding metadata.json and the model weights")
    parser.add_argument("--device", default=None,
                        choices=["auto", "cuda", "mps", "cpu"],
                        help="Compute device")
    args = parser.parse_args(argv)

    overrides = {
        key: value
        for key, value in vars(args).items()
        if value is not None
    }
    settings = ServerSettings(**overrides)
    logging.getLogger().setLevel(settings.log_level.upper())

    server_app = create_app(settings)
    server = uvicorn.Server(uvicorn.Config(
        server_app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level
    ))
    server_app.state.server = server
    server.run()

    if server_app.state.fatal_error is not None:
        logger.critical("Exiting: %s", server_app.state.fatal_error)
        sys.exit(1)


if __name__ == "__main__":
    run()
