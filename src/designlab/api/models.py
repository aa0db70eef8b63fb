"""Pydantic request models for the Design Lab API.

FastAPI uses these for request validation and OpenAPI documentation.
Partial-update bodies (``Update*Request``) are applied with
``model_dump(exclude_unset=True)`` so only the fields a client actually sent
are changed.

Models
------
CreateProjectRequest / UpdateProjectRequest
    ``POST`` / ``PATCH`` on ``/api/design-lab/projects``.
FinalizeRequest
    ``POST /api/design-lab/projects/{id}/finalize``.
CreateVersionRequest / UpdateVersionRequest
    Version creation (optionally copying layers) and metadata edits.
CreateLayerRequest / UpdateLayerRequest
    Layer creation and partial edits.
GenerateRequest
    ``POST /api/design-lab/generate`` - starts an asynchronous generation.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from designlab.core.models import LayerType, LayerView, ProjectStatus


class CreateProjectRequest(BaseModel):
    name: str = Field(..., min_length=1, description="Project name.")
    description: str | None = None
    variant_id: int | None = Field(
        default=None, description="Catalogue variant whose templates are used for composites."
    )
    design_job_id: int | None = None
    org_id: int | None = None


class UpdateProjectRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    status: ProjectStatus | None = None
    variant_id: int | None = None
    design_job_id: int | None = None
    org_id: int | None = None
    thumbnail_url: str | None = None


class FinalizeRequest(BaseModel):
    design_job_id: int | None = Field(
        default=None,
        description="Design job to link.  Omit to leave the current link unchanged.",
    )


class CreateVersionRequest(BaseModel):
    name: str | None = None
    front_image_url: str | None = None
    back_image_url: str | None = None
    copy_from_version_id: int | None = Field(
        default=None,
        description="Duplicate every layer of this version into the new one.",
    )


class UpdateVersionRequest(BaseModel):
    name: str | None = None
    front_image_url: str | None = None
    back_image_url: str | None = None
    composite_front_url: str | None = None
    composite_back_url: str | None = None


class CreateLayerRequest(BaseModel):
    layer_type: LayerType
    name: str = "Layer"
    view: LayerView = LayerView.FRONT
    z_index: int = 0
    position: dict[str, Any] = Field(default_factory=dict)
    is_visible: bool = True
    is_locked: bool = False
    opacity: float = Field(default=1.0, ge=0.0, le=1.0)
    blend_mode: str = "normal"
    text_content: str | None = None
    text_style: dict[str, Any] | None = None
    image_url: str | None = None


class UpdateLayerRequest(BaseModel):
    name: str | None = None
    view: LayerView | None = None
    z_index: int | None = None
    position: dict[str, Any] | None = None
    is_visible: bool | None = None
    is_locked: bool | None = None
    opacity: float | None = Field(default=None, ge=0.0, le=1.0)
    blend_mode: str | None = None
    text_content: str | None = None
    text_style: dict[str, Any] | None = None
    image_url: str | None = None


class GenerateRequest(BaseModel):
    """Request body for ``POST /api/design-lab/generate``.

    ``request_type`` selects the generation kind.  ``prompt`` is required for
    ``base_generation`` and ``text_content`` for ``typography_iteration``;
    those checks happen in the orchestrator so both kinds report the same
    error shape.

    Attributes:
        request_type: ``"base_generation"`` or ``"typography_iteration"``.
        project_id: Project that receives the generated version.
        prompt: Design description (base generation).
        style: Visual style, e.g. ``"athletic"``.
        product_type: Garment type used to flavour the prompt.
        text_content: Text to render (typography).
        focus_area: Garment placement for typography.
        prompt_modifier: Extra modifier text from a style preset.
    """

    request_type: str = Field(..., description="'base_generation' or 'typography_iteration'.")
    project_id: int
    prompt: str | None = None
    style: str | None = None
    product_type: str | None = None
    size: Literal["1024x1024", "512x512"] | None = None
    primary_color: str | None = None
    style_preset_id: int | None = None
    prompt_modifier: str | None = None
    design_theme: str | None = None
    key_elements: str | None = None
    things_to_avoid: str | None = None
    text_content: str | None = None
    font_family: str | None = None
    font_size: str | None = None
    text_color: str | None = None
    focus_area: str | None = Field(
        default=None,
        description="One of 'chest', 'back', 'sleeve' or 'full'.",
    )

    def generation_config(self) -> dict[str, Any]:
        """The kind-specific input, without routing fields or unset values."""
        return self.model_dump(exclude={"request_type", "project_id"}, exclude_none=True)
