"""Configuration management for the Design Lab backend.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the DESIGNLAB_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (DESIGNLAB_* prefix)
2. .env file in the project root
3. Default values defined in DesignLabConfig

Example .env file:
    DESIGNLAB_DATABASE_PATH=data/designlab.sqlite3
    DESIGNLAB_DEVICE=cuda
    DESIGNLAB_REJECT_CONCURRENT_GENERATION=true
    DESIGNLAB_SERVER_PORT=7860

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
This ensures a single source of truth for all configuration values across
the application.

Usage Example
-------------
    from designlab.core.config import config

    print(config.database_path)
    print(config.max_concurrent_generations)

Generation Hardening
--------------------
The generation orchestrator accepts every request immediately and runs it as
its own task.  Three opt-in settings bound that behaviour:
- reject_concurrent_generation: refuse a new request while another one for
  the same project is still pending or processing
- max_concurrent_generations: cap the number of detached generation tasks
  that may talk to the provider at once
- provider_timeout_seconds: fail a request whose provider call exceeds this

All three default to off, so generation is unqueued and unbounded unless an
operator opts in.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DesignLabConfig(BaseSettings):
    """Main configuration for the Design Lab backend.

    Values are loaded from environment variables with the DESIGNLAB_ prefix,
    with fallback to defaults defined here.  Directory fields are created on
    initialisation if they do not exist.

    Attributes
    ----------
    Storage:
        data_dir : Path
            Directory holding the SQLite database and the variant catalogue
        database_path : Path | None
            SQLite database file.  ``None`` selects the in-memory gateway
        variants_file : str
            File name of the product variant catalogue inside ``data_dir``

    Provider:
        provider : Literal["diffusers"]
            Generation provider backend
        base_model_id : str
            HuggingFace model ID used for design generation
        torch_dtype, device, num_inference_steps, guidance_scale, image_size
            Diffusion settings passed to the model manager
        typography_strength : float
            Image-to-image strength for typography iterations

    Orchestration:
        reject_concurrent_generation : bool
        max_concurrent_generations : int | None
        provider_timeout_seconds : float | None

    Server:
        server_host : str
        server_port : int
        log_level : str

    Examples
    --------
        >>> custom = DesignLabConfig(database_path=None, device="cpu")
        >>> custom.max_concurrent_generations is None
        True
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="DESIGNLAB_",
        case_sensitive=False,
    )

    # Storage
    data_dir: Path = Field(
        default=Path("data"),
        description="Directory for the database and variant catalogue",
    )
    database_path: Path | None = Field(
        default=Path("data/designlab.sqlite3"),
        description="SQLite database file (None for the in-memory gateway)",
    )
    variants_file: str = Field(
        default="variants.json",
        description="Variant catalogue file name inside data_dir",
    )
    models_dir: Path = Field(
        default=Path("models"),
        description="Directory to cache diffusion models",
    )

    # Provider settings
    provider: Literal["diffusers"] = Field(
        default="diffusers",
        description="Generation provider backend",
    )
    base_model_id: str = Field(
        default="stabilityai/sdxl-turbo",
        description="HuggingFace model ID for design generation",
    )
    torch_dtype: Literal["bfloat16", "float16", "float32"] = Field(
        default="bfloat16",
        description="Torch dtype for model inference",
    )
    device: str = Field(
        default="cuda",
        description="Device to run inference on (cuda/cpu)",
    )
    num_inference_steps: int = Field(default=4, ge=1, le=100)
    guidance_scale: float = Field(default=0.0, ge=0.0)
    image_size: Literal["1024x1024", "512x512"] = Field(
        default="1024x1024",
        description="Default output size for generated designs",
    )
    typography_strength: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Image-to-image strength used for typography iterations",
    )
    enable_attention_slicing: bool = Field(default=False)
    enable_model_cpu_offload: bool = Field(default=False)

    # Orchestration hardening (all off by default)
    reject_concurrent_generation: bool = Field(
        default=False,
        description="Reject a generation while another is in flight for the same project",
    )
    max_concurrent_generations: int | None = Field(
        default=None,
        ge=1,
        description="Upper bound on generation tasks running against the provider",
    )
    provider_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Fail a generation whose provider call exceeds this many seconds",
    )

    # Compositor
    compositor_fetch_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Timeout in seconds for fetching template and design images",
    )

    # Server settings
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address (0.0.0.0 for local network)",
    )
    server_port: int = Field(
        default=7860,
        description="Server port",
        ge=1024,
        le=65535,
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.models_dir.mkdir(parents=True, exist_ok=True)
        if self.database_path is not None:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def variants_path(self) -> Path:
        """Absolute location of the variant catalogue JSON file."""
        return self.data_dir / self.variants_file

    @property
    def image_dimensions(self) -> tuple[int, int]:
        """``image_size`` parsed into ``(width, height)``."""
        width, height = self.image_size.split("x")
        return int(width), int(height)


# Global configuration instance, loaded from DESIGNLAB_* environment variables
# and the .env file at import time.
config = DesignLabConfig()
