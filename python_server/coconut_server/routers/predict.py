"""Prediction endpoint."""

import logging
from typing import Optional

from fastapi import APIRouter, File, Request, UploadFile
from fastapi.concurrency import run_in_threadpool

from ..errors import ClassifierError, InferenceError, UploadError
from ..utils.preprocessing import check_content_type

logger = logging.getLogger(__name__)

router = APIRouter()

# Room for multipart boundaries and part headers around the file itself
MULTIPART_OVERHEAD_BYTES = 16 * 1024


def format_size(num_bytes: int) -> str:
    """Human-readable size, e.g. "10 MB", "512 KB", "100 bytes"."""
    if num_bytes >= 1024 * 1024:
        return "%g MB" % round(num_bytes / (1024 * 1024), 1)
    if num_bytes >= 1024:
        return "%g KB" % round(num_bytes / 1024, 1)
    return "%d bytes" % num_bytes


def upload_too_large(max_bytes: int) -> UploadError:
    return UploadError("File too large. Maximum size is %s." % format_size(max_bytes))


@router.post("/predict")
async def predict(
    request: Request,
    file: Optional[UploadFile] = File(None),
):
    """Classify an uploaded image.

    The multipart field ``file`` carries one image. The upload is checked
    in order: model readiness, presence, MIME type, size. Only then are the
    bytes decoded and classified, in a worker thread so the event loop
    keeps serving other requests.
    """
    settings = request.app.state.settings
    service = request.app.state.inference_service

    try:
        service.lifecycle.require_ready()

        if file is None:
            raise UploadError("No image file uploaded.")

        check_content_type(file.content_type, settings.allowed_content_types)

        data = await file.read(settings.max_upload_bytes + 1)
        if len(data) > settings.max_upload_bytes:
            raise upload_too_large(settings.max_upload_bytes)

        decision = await run_in_threadpool(service.predict, data, file.content_type)

    except ClassifierError:
        raise
    except Exception as e:
        logger.exception("Unexpected error during prediction")
        raise InferenceError(str(e)) from e
    finally:
        # Closing removes the spooled temporary file, if one was created
        if file is not None:
            await file.close()

    logger.info("Prediction: %s (%.2f%%, score %.4f)",
                decision.classification, decision.confidence_percent,
                decision.raw_score)
    return {"success": True, "prediction": decision.to_dict()}
