"""Health check endpoint."""

from fastapi import APIRouter, Request

from ..services.model_lifecycle import ModelState

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Report server status and whether the model is loaded.

    Reads the lifecycle state once so ``status`` and ``modelLoaded`` always
    agree. Never triggers loading.
    """
    lifecycle = getattr(request.app.state, "lifecycle", None)
    state = lifecycle.state if lifecycle is not None else ModelState.UNINITIALIZED
    loaded = state is ModelState.READY

    return {
        "success": True,
        "status": "healthy" if loaded else state.value,
        "modelLoaded": loaded,
    }
