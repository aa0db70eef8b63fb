"""Domain models for Design Lab projects, versions, layers and generations.

These Pydantic models are the rows exchanged with a
:class:`~designlab.core.gateway.PersistenceGateway`.  Ids are integers
assigned by the gateway on creation; every ``create_*`` call takes a
``New*`` payload (the row without id and timestamps) and returns the stored
model.

Models
------
Project
    A design-authoring container owned by a user.  ``current_version_id``
    points at the active :class:`Version` and is ``None`` only until the
    first version exists.
Version
    A numbered snapshot of generated artwork.  Versions are never deleted.
Layer
    An editable image or text element belonging to exactly one version.
GenerationRequest
    A tracked asynchronous generation producing a new version.
Variant
    Catalogue variant carrying the front/back template images used for
    compositing previews.
ProjectView
    A project together with its current version and that version's layers.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current time used for every timestamp field."""
    return datetime.now(timezone.utc)


class ProjectStatus(str, Enum):
    DRAFT = "draft"
    GENERATING = "generating"
    IN_PROGRESS = "in_progress"
    FINALIZED = "finalized"
    ARCHIVED = "archived"


class LayerType(str, Enum):
    IMAGE = "image"
    TEXT = "text"


class LayerView(str, Enum):
    FRONT = "front"
    BACK = "back"


class GenerationKind(str, Enum):
    BASE_GENERATION = "base_generation"
    TYPOGRAPHY_ITERATION = "typography_iteration"


class GenerationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Projects.
# ---------------------------------------------------------------------------


class NewProject(BaseModel):
    """Fields supplied when a project is created."""

    user_id: str
    name: str = Field(..., min_length=1)
    description: str | None = None
    variant_id: int | None = None
    design_job_id: int | None = None
    org_id: int | None = None
    status: ProjectStatus = ProjectStatus.DRAFT
    current_version_id: int | None = None
    thumbnail_url: str | None = None


class Project(NewProject):
    id: int
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Versions.
# ---------------------------------------------------------------------------


class NewVersion(BaseModel):
    """Fields supplied when a version is created.

    ``version_number`` is assigned by the version manager, never by clients.
    """

    project_id: int
    version_number: int = Field(..., ge=1)
    name: str | None = None
    front_image_url: str | None = None
    back_image_url: str | None = None
    composite_front_url: str | None = None
    composite_back_url: str | None = None
    generation_prompt: str | None = None
    generation_provider: str | None = None
    generation_duration_ms: int | None = None
    created_by: str | None = None


class Version(NewVersion):
    id: int
    created_at: datetime = Field(default_factory=utcnow)


# Fields of a version that may change after creation.
MUTABLE_VERSION_FIELDS: frozenset[str] = frozenset(
    {
        "name",
        "front_image_url",
        "back_image_url",
        "composite_front_url",
        "composite_back_url",
        "generation_prompt",
        "generation_provider",
        "generation_duration_ms",
    }
)


# ---------------------------------------------------------------------------
# Layers.
# ---------------------------------------------------------------------------


class NewLayer(BaseModel):
    """Fields supplied when a layer is created or copied."""

    version_id: int
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


class Layer(NewLayer):
    id: int
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Generation requests.
# ---------------------------------------------------------------------------


class NewGenerationRequest(BaseModel):
    """Fields supplied when the orchestrator records a new request."""

    project_id: int
    kind: GenerationKind
    prompt: str
    input_config: dict[str, Any] = Field(default_factory=dict)
    status: GenerationStatus = GenerationStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    created_by: str | None = None


class GenerationRequest(NewGenerationRequest):
    id: int
    request_code: str
    version_id: int | None = None
    error_message: str | None = None
    provider: str | None = None
    model_version: str | None = None
    duration_ms: int | None = None
    result_image_urls: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None


# ---------------------------------------------------------------------------
# Catalogue and composite views.
# ---------------------------------------------------------------------------


class Variant(BaseModel):
    id: int
    name: str = ""
    front_template_url: str | None = None
    back_template_url: str | None = None


class ProjectView(BaseModel):
    """A project with its current version and the layers of that version."""

    project: Project
    current_version: Version | None = None
    layers: list[Layer] = Field(default_factory=list)


class CallerIdentity(BaseModel):
    """The authenticated caller as resolved by the upstream auth service."""

    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
