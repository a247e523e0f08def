"""Model lifecycle management.

The classifier model is loaded once per process, in the background, so
the HTTP listener can accept connections while the weights are read.
Requests arriving before the model is ready are rejected rather than
queued. States::

    uninitialized -> loading -> ready -> disposed
                         \\
                          -> failed   (fatal: the server shuts down)
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from ..errors import ModelLoadError, ModelNotReady
from .device_manager import DeviceManager
from .model_backends import LoadedModel

logger = logging.getLogger(__name__)


class ModelState(str, Enum):
    """Lifecycle state of the served model."""
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    DISPOSED = "disposed"
    FAILED = "failed"


class ModelLifecycle:
    """Owns the single model instance shared by all prediction requests.

    The loader is injected so tests can substitute a fake model. The model
    reference is written once when loading succeeds and cleared once on
    dispose; requests only read it, so no locking is needed.
    """

    def __init__(
        self,
        loader: Callable[[], LoadedModel],
        device_manager: Optional[DeviceManager] = None,
        on_fatal: Optional[Callable[[ModelLoadError], None]] = None,
    ):
        """Initialize the lifecycle.

        Args:
            loader: Blocking callable that returns a loaded model or raises
            device_manager: Used to clear device caches on dispose
            on_fatal: Called with the error when loading fails
        """
        self._loader = loader
        self._device_manager = device_manager
        self._on_fatal = on_fatal
        self._state = ModelState.UNINITIALIZED
        self._model: Optional[LoadedModel] = None
        self._task: Optional[asyncio.Task] = None
        self._settled = asyncio.Event()
        self.load_error: Optional[ModelLoadError] = None

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ModelState.READY

    def start_loading(self) -> asyncio.Task:
        """Begin loading the model in a worker thread.

        Must be called from a running event loop.

        Returns:
            The background load task

        Raises:
            RuntimeError: If loading was already started
        """
        if self._state is not ModelState.UNINITIALIZED:
            raise RuntimeError(
                "Model loading already started (state: %s)" % self._state.value)

        self._state = ModelState.LOADING
        logger.info("Loading model in background...")
        self._task = asyncio.get_running_loop().create_task(self._load())
        return self._task

    async def _load(self) -> None:
        try:
            model = await asyncio.to_thread(self._loader)
        except Exception as e:
            if self._state is not ModelState.LOADING:
                logger.warning("Model load failed after shutdown: %s", e)
                return
            error = e if isinstance(e, ModelLoadError) else ModelLoadError(str(e))
            self.load_error = error
            self._state = ModelState.FAILED
            self._settled.set()
            logger.critical("Error loading model: %s", error, exc_info=e)
            if self._on_fatal is not None:
                self._on_fatal(error)
            return

        if self._state is not ModelState.LOADING:
            # Disposed while the worker thread was still loading
            logger.info("Model finished loading after shutdown; releasing it")
            model.close()
            return

        self._model = model
        self._state = ModelState.READY
        self._settled.set()
        manifest = model.manifest
        logger.info(
            "Model '%s' loaded successfully (%s): input shape %s, output shape %s, "
            "normalization %s, polarity %s",
            manifest.name, manifest.format, model.input_shape, model.output_shape,
            manifest.normalization.value, manifest.polarity.value)

    def require_ready(self) -> LoadedModel:
        """Return the model, or raise if it cannot serve predictions.

        Raises:
            ModelNotReady: If the state is anything other than ready
        """
        model = self._model
        if self._state is not ModelState.READY or model is None:
            raise ModelNotReady("Model state is '%s'" % self._state.value)
        return model

    async def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Wait for the load to settle.

        Returns:
            True if the model is ready, False on failure or timeout
        """
        try:
            await asyncio.wait_for(self._settled.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return self.is_ready

    async def dispose(self, timeout: float = 10.0) -> None:
        """Release the model. Safe to call more than once; never raises.

        An in-progress load is awaited for at most ``timeout`` seconds; if it
        completes later, the late model is released by the load task.
        """
        if self._state is ModelState.DISPOSED:
            return

        task = self._task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout)
            except asyncio.TimeoutError:
                logger.warning("Model still loading after %.1fs; not waiting further",
                               timeout)
            except Exception as e:
                logger.warning("Model load task ended with error: %s", e)

        model = self._model
        self._model = None
        self._state = ModelState.DISPOSED
        self._settled.set()

        if model is not None:
            try:
                model.close()
            except Exception as e:
                logger.warning("Failed to release model: %s", e)
        if self._device_manager is not None:
            self._device_manager.clear_cache()
        logger.info("Model disposed")


async def watch_warmup(lifecycle: ModelLifecycle, timeout: float) -> None:
    """Log an operational alarm if the model is not ready in time."""
    if await lifecycle.wait_until_ready(timeout):
        return
    if lifecycle.state is ModelState.LOADING:
        logger.error("Model not ready %.1fs after startup (state: %s)",
                     timeout, lifecycle.state.value)
