"""Error taxonomy for the classifier server.

Every error raised on the prediction path derives from ClassifierError and
carries the HTTP status it maps to, plus the message that may be shown to
the caller. Only UploadError messages are surfaced verbatim; the rest are
replaced by a short generic message and logged server-side with detail.
"""


class ClassifierError(Exception):
    """Base class for all classifier server errors."""

    status_code = 500
    public_message = "Internal server error."

    def __init__(self, message: str = ""):
        super().__init__(message or self.public_message)

    @property
    def user_message(self) -> str:
        """Message safe to return to the client."""
        return self.public_message


class UploadError(ClassifierError):
    """Missing, empty or oversized upload."""

    status_code = 400
    public_message = "Invalid upload."

    @property
    def user_message(self) -> str:
        return str(self)


class UnsupportedFormat(UploadError):
    """Upload declared a MIME type that is not an allowed image type."""


class ModelNotReady(ClassifierError):
    """Prediction requested while the model is not in the ready state."""

    public_message = "Model is not loaded yet. Please try again shortly."


class DecodeError(ClassifierError):
    """Uploaded bytes could not be decoded as an image."""

    public_message = "Could not process the uploaded image."


class InferenceError(ClassifierError):
    """The model forward pass failed or produced an unusable score."""

    public_message = "Prediction failed."


class ModelLoadError(ClassifierError):
    """The model artifact could not be loaded at startup."""

    public_message = "Model failed to load."
