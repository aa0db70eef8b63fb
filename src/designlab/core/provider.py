"""Generation provider interface and the local diffusers implementation.

A generation provider turns a design prompt into front/back artwork, or
re-renders an existing design with new typography.  Providers are opaque,
slow (seconds) and fallible; they are called from the orchestrator's
detached task through ``asyncio.to_thread`` and must therefore be safe to
call from a worker thread.

Provider Contract
-----------------
``generate_base_design(params) -> BaseDesignResult``
    Two base64 PNGs (front and back) plus provider metadata.
``generate_typography_iteration(params) -> TypographyIterationResult``
    One base64 PNG re-rendered from ``params.base_image_base64``.

Input problems raise :class:`~designlab.core.errors.ValidationError`; every
other failure is wrapped in :class:`~designlab.core.errors.ProviderError`
with a message safe to show to end users.
"""

from __future__ import annotations

import logging
import random
import time
from abc import ABC, abstractmethod
from typing import Literal

from pydantic import BaseModel, Field

from designlab.core.config import DesignLabConfig
from designlab.core.errors import ProviderError, ValidationError
from designlab.core.images import decode_base64_image, encode_png_base64
from designlab.core.model_manager import ModelManager
from designlab.core.prompt_builder import build_design_prompt, build_typography_prompt

logger = logging.getLogger(__name__)

FocusArea = Literal["chest", "back", "sleeve", "full"]


class BaseDesignParams(BaseModel):
    """Inputs for a base (front/back) design generation."""

    prompt: str
    style: str = "athletic"
    product_type: str | None = None
    size: Literal["1024x1024", "512x512"] | None = None
    primary_color: str | None = None
    style_preset_id: int | None = None
    style_modifier: str | None = None
    design_theme: str | None = None
    key_elements: str | None = None
    things_to_avoid: str | None = None


class BaseDesignResult(BaseModel):
    front_image_base64: str
    back_image_base64: str
    prompt: str
    provider: str
    model_version: str
    duration_ms: int


class TypographyParams(BaseModel):
    """Inputs for re-rendering an existing design with typography."""

    base_image_base64: str
    text_content: str
    font_family: str | None = None
    font_size: str | None = None
    text_color: str | None = None
    focus_area: FocusArea | None = None
    style: str | None = None


class TypographyIterationResult(BaseModel):
    modified_image_base64: str
    text_content: str
    placement: str
    provider: str
    model_version: str | None = None
    duration_ms: int = Field(..., ge=0)


class GenerationProvider(ABC):
    """Abstract image generation capability used by the orchestrator."""

    name: str = "base"

    @abstractmethod
    def generate_base_design(self, params: BaseDesignParams) -> BaseDesignResult:
        """Generate front and back design artwork."""

    @abstractmethod
    def generate_typography_iteration(self, params: TypographyParams) -> TypographyIterationResult:
        """Apply typography to an existing design."""

    def close(self) -> None:
        """Release provider resources.  Called on application shutdown."""


class DiffusersProvider(GenerationProvider):
    """Generate designs locally with a diffusers pipeline.

    Base designs run the text-to-image pipeline once per view with
    independent random seeds.  Typography iterations run an image-to-image
    pass over the base design so the existing artwork guides the result.
    """

    name = "diffusers"

    def __init__(self, config: DesignLabConfig, model_manager: ModelManager | None = None) -> None:
        self._config = config
        self._model_manager = model_manager or ModelManager(config)

    @property
    def model_version(self) -> str:
        return self._config.base_model_id

    def _ensure_loaded(self) -> None:
        if self._model_manager.current_model_id != self._config.base_model_id:
            self._model_manager.load_model(self._config.base_model_id)

    @staticmethod
    def _seed() -> int:
        return random.randint(0, 2**32 - 1)

    def generate_base_design(self, params: BaseDesignParams) -> BaseDesignResult:
        start = time.monotonic()
        size = params.size or self._config.image_size
        width, height = (int(part) for part in size.split("x"))

        prompts = {
            view: build_design_prompt(
                params.prompt,
                product_type=params.product_type,
                style=params.style,
                view=view,
                style_modifier=params.style_modifier,
                design_theme=params.design_theme,
                key_elements=params.key_elements,
                primary_color=params.primary_color,
                things_to_avoid=params.things_to_avoid,
            )
            for view in ("front", "back")
        }

        try:
            self._ensure_loaded()
            images = {
                view: self._model_manager.generate(
                    prompt=prompt,
                    width=width,
                    height=height,
                    steps=self._config.num_inference_steps,
                    guidance_scale=self._config.guidance_scale,
                    seed=self._seed(),
                    negative_prompt=params.things_to_avoid,
                )
                for view, prompt in prompts.items()
            }
        except Exception as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.exception("Base design generation failed after %dms", duration_ms)
            raise ProviderError(f"Failed to generate designs: {e}") from e

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info("Generated base designs in %dms", duration_ms)
        return BaseDesignResult(
            front_image_base64=encode_png_base64(images["front"]),
            back_image_base64=encode_png_base64(images["back"]),
            prompt=params.prompt,
            provider=self.name,
            model_version=self.model_version,
            duration_ms=duration_ms,
        )

    def generate_typography_iteration(self, params: TypographyParams) -> TypographyIterationResult:
        start = time.monotonic()

        if not params.base_image_base64 or not params.base_image_base64.strip():
            raise ValidationError("Base image (base64) is required")
        prompt = build_typography_prompt(
            params.text_content,
            font_family=params.font_family,
            font_size=params.font_size,
            text_color=params.text_color,
            focus_area=params.focus_area,
            style=params.style,
        )
        try:
            base_image = decode_base64_image(params.base_image_base64).convert("RGB")
        except ValueError as e:
            raise ValidationError(f"Base image could not be decoded: {e}") from e

        try:
            self._ensure_loaded()
            image = self._model_manager.generate_from_image(
                prompt=prompt,
                image=base_image,
                strength=self._config.typography_strength,
                steps=self._config.num_inference_steps,
                guidance_scale=self._config.guidance_scale,
                seed=self._seed(),
            )
        except Exception as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.exception("Typography iteration failed after %dms", duration_ms)
            raise ProviderError(f"Failed to generate typography iteration: {e}") from e

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info("Generated typography iteration in %dms", duration_ms)
        return TypographyIterationResult(
            modified_image_base64=encode_png_base64(image),
            text_content=params.text_content,
            placement=params.focus_area or "chest",
            provider=self.name,
            model_version=self.model_version,
            duration_ms=duration_ms,
        )

    def close(self) -> None:
        self._model_manager.unload()


def create_provider(config: DesignLabConfig) -> GenerationProvider:
    """Instantiate the provider selected by ``config.provider``."""
    if config.provider == "diffusers":
        return DiffusersProvider(config)
    raise ValueError(f"Unknown provider: {config.provider}")
