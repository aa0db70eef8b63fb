"""Diffusion pipeline lifecycle management for the diffusers provider.

This module provides :class:`ModelManager`, the single point of control for
loading, switching, and invoking HuggingFace diffusers pipelines on behalf of
:class:`~designlab.core.provider.DiffusersProvider`.

Key Responsibilities
--------------------
- **Lazy model loading** - ``torch`` and ``diffusers`` are imported, and the
  pipeline loaded, only on first use.  The server starts without them.
- **Model switching** - loading a different model unloads the current one
  and frees CUDA memory first.
- **Text-to-image and image-to-image** - base designs use the text-to-image
  pipeline; typography iterations reuse the loaded weights through an
  image-to-image pipeline built with ``from_pipe``.
- **Turbo-model enforcement** - models whose HuggingFace ID contains
  ``"turbo"`` have ``guidance_scale`` forced to 0.0.
- **Deterministic generation** - every call gets a freshly seeded
  ``torch.Generator``.
- **Thread safety** - generation requests run in worker threads; a lock
  ensures only one of them drives the pipeline at a time.

Usage
-----
::

    mgr = ModelManager(config)
    mgr.load_model("stabilityai/sdxl-turbo")
    image = mgr.generate(prompt="a tiger crest", width=1024, height=1024,
                         steps=4, guidance_scale=0.0, seed=42)
    mgr.unload()
"""

from __future__ import annotations

import gc
import logging
import threading

from PIL import Image

from designlab.core.config import DesignLabConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Dtype string -> torch dtype mapping, built lazily so that torch is only
# imported when a model is actually used.
# ---------------------------------------------------------------------------
_DTYPE_MAP: dict | None = None


def _get_dtype_map() -> dict:
    """Return the dtype string -> ``torch.dtype`` mapping."""
    global _DTYPE_MAP
    if _DTYPE_MAP is None:
        import torch

        _DTYPE_MAP = {
            "bfloat16": torch.bfloat16,
            "float16": torch.float16,
            "float32": torch.float32,
        }
    return _DTYPE_MAP


class ModelManager:
    """Manages the lifecycle of a single diffusers pipeline.

    Attributes:
        _config (DesignLabConfig):
            Application configuration - device, dtype, cache directory and
            performance flags.
        _pipeline:
            The loaded text-to-image pipeline, or ``None``.
        _img2img_pipeline:
            Image-to-image pipeline sharing ``_pipeline``'s components,
            built on first typography iteration.
        _current_model_id (str | None):
            HuggingFace identifier of the loaded model.
    """

    def __init__(self, config: DesignLabConfig) -> None:
        self._config = config
        self._pipeline = None
        self._img2img_pipeline = None
        self._current_model_id: str | None = None
        self._lock = threading.RLock()

    # -- Public interface ---------------------------------------------------

    def load_model(self, hf_id: str) -> None:
        """Load a diffusers pipeline by HuggingFace model identifier.

        A no-op if *hf_id* is already loaded; otherwise any loaded model is
        unloaded first.

        Raises:
            RuntimeError: If the model cannot be loaded.
        """
        with self._lock:
            if self._current_model_id == hf_id and self._pipeline is not None:
                logger.info("Model '%s' is already loaded - skipping.", hf_id)
                return

            if self._pipeline is not None:
                logger.info(
                    "Switching from '%s' to '%s' - unloading current model.",
                    self._current_model_id,
                    hf_id,
                )
                self.unload()

            import torch
            from diffusers import AutoPipelineForText2Image

            torch_dtype = _get_dtype_map().get(self._config.torch_dtype, torch.bfloat16)

            logger.info(
                "Loading model '%s' (dtype=%s, device=%s, cache=%s).",
                hf_id,
                self._config.torch_dtype,
                self._config.device,
                self._config.models_dir,
            )

            try:
                pipeline = AutoPipelineForText2Image.from_pretrained(
                    hf_id,
                    torch_dtype=torch_dtype,
                    cache_dir=str(self._config.models_dir),
                )

                if self._config.enable_model_cpu_offload:
                    pipeline.enable_sequential_cpu_offload()
                    logger.info("Sequential CPU offloading enabled.")
                else:
                    pipeline = pipeline.to(self._config.device)

                if self._config.enable_attention_slicing:
                    pipeline.enable_attention_slicing()
                    logger.info("Attention slicing enabled.")

                self._pipeline = pipeline
                self._current_model_id = hf_id
                logger.info("Model '%s' loaded successfully.", hf_id)

            except Exception:
                # Leave a clean state so the next call retries the load.
                self._pipeline = None
                self._img2img_pipeline = None
                self._current_model_id = None
                logger.exception("Failed to load model '%s'.", hf_id)
                raise

    def generate(
        self,
        prompt: str,
        width: int,
        height: int,
        steps: int,
        guidance_scale: float,
        seed: int,
        negative_prompt: str | None = None,
    ) -> Image.Image:
        """Generate a single image with the text-to-image pipeline.

        Raises:
            RuntimeError: If no model is loaded.
        """
        with self._lock:
            if self._pipeline is None:
                raise RuntimeError("No model is loaded.  Call load_model(hf_id) before generate().")

            pipeline_kwargs: dict = {
                "prompt": prompt,
                "width": width,
                "height": height,
                "num_inference_steps": steps,
                "guidance_scale": self._effective_guidance(guidance_scale),
                "generator": self._generator(seed),
            }
            # Turbo variants may reject negative prompts, so only pass one
            # when the caller supplied it.
            if negative_prompt:
                pipeline_kwargs["negative_prompt"] = negative_prompt

            logger.info("Generating image: %dx%d, %d steps, seed=%d.", width, height, steps, seed)
            output = self._pipeline(**pipeline_kwargs)
            return output.images[0]

    def generate_from_image(
        self,
        prompt: str,
        image: Image.Image,
        strength: float,
        steps: int,
        guidance_scale: float,
        seed: int,
    ) -> Image.Image:
        """Re-render *image* guided by *prompt* with the image-to-image pipeline.

        The image-to-image pipeline shares the loaded model's components, so
        no extra weights are loaded.

        Raises:
            RuntimeError: If no model is loaded.
        """
        with self._lock:
            if self._pipeline is None:
                raise RuntimeError(
                    "No model is loaded.  Call load_model(hf_id) before generate_from_image()."
                )

            if self._img2img_pipeline is None:
                from diffusers import AutoPipelineForImage2Image

                self._img2img_pipeline = AutoPipelineForImage2Image.from_pipe(self._pipeline)

            # img2img runs int(steps * strength) denoising steps; keep at least one.
            if strength > 0 and steps * strength < 1:
                steps = int(1 / strength) + 1

            logger.info(
                "Editing image: %dx%d, strength=%.2f, %d steps, seed=%d.",
                image.width,
                image.height,
                strength,
                steps,
                seed,
            )
            output = self._img2img_pipeline(
                prompt=prompt,
                image=image,
                strength=strength,
                num_inference_steps=steps,
                guidance_scale=self._effective_guidance(guidance_scale),
                generator=self._generator(seed),
            )
            return output.images[0]

    def unload(self) -> None:
        """Unload the current model and free GPU memory.  Safe when nothing is loaded."""
        with self._lock:
            if self._pipeline is None:
                return

            model_id = self._current_model_id
            logger.info("Unloading model '%s'.", model_id)

            del self._pipeline
            self._pipeline = None
            self._img2img_pipeline = None
            self._current_model_id = None

            gc.collect()

            try:
                import torch

                if torch.cuda.is_available():
                    torch.cuda.empty_cache()
                    torch.cuda.synchronize()
                    logger.info("CUDA cache cleared after unloading '%s'.", model_id)
            except ImportError:
                pass

    # -- Helpers ------------------------------------------------------------

    def _effective_guidance(self, guidance_scale: float) -> float:
        if self._current_model_id and "turbo" in self._current_model_id.lower():
            if guidance_scale != 0.0:
                logger.warning(
                    "Turbo model detected ('%s') - forcing guidance_scale from %.1f to 0.0.",
                    self._current_model_id,
                    guidance_scale,
                )
            return 0.0
        return guidance_scale

    def _generator(self, seed: int):
        import torch

        return torch.Generator(device=self._config.device).manual_seed(seed)

    # -- Properties ---------------------------------------------------------

    @property
    def is_loaded(self) -> bool:
        """Whether a model pipeline is currently loaded in memory."""
        return self._pipeline is not None

    @property
    def current_model_id(self) -> str | None:
        """HuggingFace ID of the currently loaded model, or ``None``."""
        return self._current_model_id
