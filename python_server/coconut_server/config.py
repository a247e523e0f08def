"""Server configuration.

Settings are read from environment variables prefixed with ``COCONUT_``
(or a ``.env`` file) and can be overridden from the command line by
``main.run``.
"""

from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ALLOWED_CONTENT_TYPES = [
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/bmp",
    "image/webp",
]


class ServerSettings(BaseSettings):
    """Runtime settings for the classifier server."""

    model_config = SettingsConfigDict(
        env_prefix="COCONUT_",
        env_file=".env",
        case_sensitive=False,
        # "model_dir" would otherwise collide with pydantic's protected namespace
        protected_namespaces=(),
    )

    host: str = "0.0.0.0"
    port: int = 5000
    model_dir: str = "./model"
    device: Literal["auto", "cuda", "mps", "cpu"] = "auto"

    max_upload_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    allowed_content_types: List[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_CONTENT_TYPES)
    )

    # Seconds after startup by which the model is expected to be ready
    warmup_timeout: float = Field(default=60.0, gt=0)
    # Upper bound on how long shutdown waits for model disposal
    shutdown_timeout: float = Field(default=10.0, ge=0)
    # Stop the process when the model cannot be loaded
    exit_on_load_failure: bool = True

    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    log_level: str = "info"
