"""Asynchronous generation orchestration.

:class:`GenerationOrchestrator` turns a generation request into a new
project version.  :meth:`~GenerationOrchestrator.start_generation` validates
the input, records the request and returns immediately; the actual work runs
as a detached task on the injected :class:`~designlab.core.scheduler.TaskScheduler`.

Lifecycle
---------
1. **Start** - request stored as ``processing`` at progress 0, project
   status set to ``generating``.
2. **Provider accepted** - progress 10.
3. **Base image resolved** (typography only) - progress 30.  The base is
   the front image of the project's current version.
4. **Provider returned** - progress 80.  A new version is appended and made
   current.
5. **Compositing attempted** - best effort.  The request completes at 100
   with the new version id whether or not compositing succeeded.

Every write the detached task makes (request status, the new version, its
composites and the project status) happens while holding the request lock
with the request re-read and still active.  A cancelled request therefore
stays cancelled, and its project is left as ``cancel`` set it, even while
the task is still waiting on the provider or the compositor.

Cancelling or failing a request returns the project to ``draft`` only when
no other request for it is still running.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import logging
import threading
from collections.abc import Callable
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from designlab.core.compositor import ImageFetcher, fetch_image_bytes, generate_composites
from designlab.core.errors import (
    CompositingError,
    ConflictError,
    DesignLabError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from designlab.core.gateway import PersistenceGateway
from designlab.core.images import preview_url, to_data_url, unwrap_data_url
from designlab.core.models import (
    CallerIdentity,
    GenerationKind,
    GenerationRequest,
    GenerationStatus,
    NewGenerationRequest,
    ProjectStatus,
    Version,
    utcnow,
)
from designlab.core.provider import (
    BaseDesignParams,
    FocusArea,
    GenerationProvider,
    TypographyParams,
)
from designlab.core.scheduler import TaskScheduler
from designlab.core.state_machine import (
    GenerationEvent,
    is_cancellable,
    is_terminal,
    next_progress,
    transition,
)
from designlab.core.variant_catalog import VariantCatalog
from designlab.core.versions import VersionManager

logger = logging.getLogger(__name__)

VERSION_NAME_FORMATS: dict[GenerationKind, str] = {
    GenerationKind.BASE_GENERATION: "Generated v{number}",
    GenerationKind.TYPOGRAPHY_ITERATION: "Typography v{number}",
}


class _GenerationInput(BaseModel):
    @field_validator("*", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class BaseGenerationConfig(_GenerationInput):
    """Input accepted for a ``base_generation`` request."""

    prompt: str = Field(..., description="Design description")
    style: str = "athletic"
    product_type: str | None = None
    size: Literal["1024x1024", "512x512"] | None = None
    primary_color: str | None = None
    style_preset_id: int | None = None
    prompt_modifier: str | None = None
    design_theme: str | None = None
    key_elements: str | None = None
    things_to_avoid: str | None = None


class TypographyConfig(_GenerationInput):
    """Input accepted for a ``typography_iteration`` request."""

    text_content: str = Field(..., description="Text to render on the design")
    font_family: str | None = None
    font_size: str | None = None
    text_color: str | None = None
    focus_area: FocusArea | None = None
    style: str | None = None


_CONFIG_MODELS: dict[GenerationKind, type[_GenerationInput]] = {
    GenerationKind.BASE_GENERATION: BaseGenerationConfig,
    GenerationKind.TYPOGRAPHY_ITERATION: TypographyConfig,
}

_REQUIRED_FIELD_MESSAGES = {
    "prompt": "Prompt is required for base generation",
    "text_content": "Text content is required for typography iteration",
}


def parse_generation_config(kind: GenerationKind, config: dict[str, Any]) -> _GenerationInput:
    """Validate *config* for *kind*.

    Raises:
        ValidationError: If the kind-specific required field is missing or
            any value is invalid.
    """
    model = _CONFIG_MODELS[kind]
    known = {key: value for key, value in config.items() if key in model.model_fields}
    try:
        return model.model_validate(known)
    except PydanticValidationError as e:
        error = e.errors()[0]
        field = str(error["loc"][0]) if error["loc"] else ""
        if error["type"] in ("missing", "string_type") and field in _REQUIRED_FIELD_MESSAGES:
            raise ValidationError(_REQUIRED_FIELD_MESSAGES[field]) from e
        raise ValidationError(f"Invalid {field or 'config'}: {error['msg']}") from e


class _Cancelled(Exception):
    """Raised inside the detached task once the request is terminal."""


class GenerationOrchestrator:
    """Start, run, cancel and report generation requests.

    Args:
        gateway: Persistence for projects, versions and requests.
        versions: Version manager used to append generated versions.
        provider: Image generation capability.
        scheduler: Runs the detached generation work.
        variants: Catalogue used to find composite templates.  ``None``
            disables compositing.
        fetch: Image fetcher handed to the compositor.
        reject_concurrent_generation: Refuse to start while the project
            already has an active request.
        max_concurrent_generations: Upper bound on detached tasks running
            provider work at once.  ``None`` means unbounded.
        provider_timeout_seconds: Fail a request whose provider call takes
            longer than this.  ``None`` means no timeout.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        versions: VersionManager,
        provider: GenerationProvider,
        scheduler: TaskScheduler,
        variants: VariantCatalog | None = None,
        *,
        fetch: ImageFetcher = fetch_image_bytes,
        reject_concurrent_generation: bool = False,
        max_concurrent_generations: int | None = None,
        provider_timeout_seconds: float | None = None,
    ) -> None:
        self._gateway = gateway
        self._versions = versions
        self._provider = provider
        self._scheduler = scheduler
        self._variants = variants
        self._fetch = fetch
        self._reject_concurrent = reject_concurrent_generation
        self._semaphore = (
            asyncio.Semaphore(max_concurrent_generations) if max_concurrent_generations else None
        )
        self._provider_timeout = provider_timeout_seconds
        self._request_lock = threading.Lock()

    @property
    def provider_name(self) -> str:
        return self._provider.name

    # -- Public operations --------------------------------------------------

    async def start_generation(
        self,
        project_id: int,
        kind: GenerationKind | str,
        config: dict[str, Any],
        user: CallerIdentity,
    ) -> GenerationRequest:
        """Validate and record a generation request, then run it detached.

        Returns as soon as the request row exists.  Provider failures are
        never raised here; they surface on the request record.

        Raises:
            ValidationError: Unknown kind or missing required input.
            NotFoundError: The project does not exist.
            ForbiddenError: The caller may not access the project.
            ConflictError: Concurrent generations are rejected and one is
                already active.
        """
        try:
            kind = GenerationKind(kind)
        except ValueError as e:
            raise ValidationError(
                "Invalid request type. Must be 'base_generation' or 'typography_iteration'"
            ) from e
        parsed = parse_generation_config(kind, config)
        self._versions.owned_project(project_id, user)

        if self._reject_concurrent and self._active_requests(project_id):
            raise ConflictError("A generation is already in progress for this project")

        prompt = (
            parsed.prompt if isinstance(parsed, BaseGenerationConfig) else parsed.text_content
        )
        request = self._gateway.create_generation_request(
            NewGenerationRequest(
                project_id=project_id,
                kind=kind,
                prompt=prompt,
                input_config=parsed.model_dump(exclude_none=True),
                status=transition(GenerationStatus.PENDING, GenerationEvent.STARTED),
                progress=next_progress(0, GenerationEvent.STARTED),
                created_by=user.user_id,
            )
        )
        self._gateway.update_project(project_id, {"status": ProjectStatus.GENERATING})

        self._scheduler.spawn(
            self._run(request.id, user.user_id), name=f"generation-{request.request_code}"
        )
        logger.info(
            "Started %s %s for project %d", kind.value, request.request_code, project_id
        )
        return request

    def cancel(self, request_id: int, user: CallerIdentity | None = None) -> GenerationRequest:
        """Cancel a pending or processing request.

        The project returns to ``draft`` unless another generation for it is
        still running.  The detached task notices the cancellation at its
        next step and stops without writing.

        Raises:
            NotFoundError: Unknown request.
            ConflictError: The request is already terminal.
        """
        with self._request_lock:
            request = self._gateway.get_generation_request(request_id)
            if request is None:
                raise NotFoundError("Generation request not found")
            if user is not None:
                self._versions.owned_project(request.project_id, user)
            if not is_cancellable(request.status):
                raise ConflictError("Cannot cancel request that is not pending or processing")
            request = self._gateway.update_generation_request(
                request_id,
                {"status": transition(request.status, GenerationEvent.CANCELLED)},
            )
            self._release_project(request.project_id)

        logger.info("Cancelled %s", request.request_code)
        return request

    def get_request(self, id_or_code: int | str, user: CallerIdentity | None = None) -> GenerationRequest:
        """Look up a request by numeric id or by request code."""
        key = str(id_or_code).strip()
        if key.isdigit():
            request = self._gateway.get_generation_request(int(key))
        else:
            request = self._gateway.get_generation_request_by_code(key)
        if request is None:
            raise NotFoundError("Generation request not found")
        if user is not None:
            self._versions.owned_project(request.project_id, user)
        return request

    def list_requests(self, project_id: int) -> list[GenerationRequest]:
        return self._gateway.list_generation_requests(project_id)

    def _active_requests(self, project_id: int) -> list[GenerationRequest]:
        return [
            r for r in self._gateway.list_generation_requests(project_id) if is_cancellable(r.status)
        ]

    def _release_project(self, project_id: int) -> None:
        # Caller holds the request lock.
        if not self._active_requests(project_id):
            self._gateway.update_project(project_id, {"status": ProjectStatus.DRAFT})

    # -- Detached work ------------------------------------------------------

    @contextlib.contextmanager
    def _while_active(self, request_id: int):
        """Hold the request lock and yield the stored request.

        Raises:
            _Cancelled: If the request is gone or already terminal.
        """
        with self._request_lock:
            current = self._gateway.get_generation_request(request_id)
            if current is None or is_terminal(current.status):
                raise _Cancelled()
            yield current

    def _apply(
        self, current: GenerationRequest, event: GenerationEvent, **fields: Any
    ) -> GenerationRequest:
        changes = {
            "status": transition(current.status, event),
            "progress": next_progress(current.progress, event),
            **fields,
        }
        return self._gateway.update_generation_request(current.id, changes)

    def _advance(self, request_id: int, event: GenerationEvent, **fields: Any) -> GenerationRequest:
        """Apply *event* to the stored request.

        Raises:
            _Cancelled: If the request is gone or already terminal.
        """
        with self._while_active(request_id) as current:
            return self._apply(current, event, **fields)

    async def _run(self, request_id: int, user_id: str) -> None:
        guard = self._semaphore if self._semaphore is not None else contextlib.nullcontext()
        async with guard:
            await self._execute(request_id, user_id)

    async def _execute(self, request_id: int, user_id: str) -> None:
        try:
            request = self._advance(request_id, GenerationEvent.PROVIDER_ACCEPTED)
            if request.kind == GenerationKind.TYPOGRAPHY_ITERATION:
                version_fields, model_version = await self._run_typography(request)
            else:
                version_fields, model_version = await self._run_base_design(request)
            with self._while_active(request_id) as current:
                request = self._apply(current, GenerationEvent.PROVIDER_RETURNED)
                version = self._versions.create_version(
                    request.project_id,
                    version_fields,
                    created_by=user_id,
                    name_format=VERSION_NAME_FORMATS[request.kind],
                )
        except _Cancelled:
            logger.info("Request %d is no longer active; discarding its work", request_id)
            return
        except Exception as e:
            self._fail(request_id, e)
            return

        try:
            await self._attach_composites(request_id, request.project_id, version)
            request = self._complete(request_id, version, model_version)
        except _Cancelled:
            logger.info(
                "Request %d was cancelled after v%d was created", request_id, version.version_number
            )
            return
        logger.info(
            "Completed %s: project %d now at v%d",
            request.request_code,
            request.project_id,
            version.version_number,
        )

    def _complete(self, request_id: int, version: Version, model_version: str | None) -> GenerationRequest:
        images = [
            url for url in (version.front_image_url, version.back_image_url) if url is not None
        ]
        with self._while_active(request_id) as current:
            try:
                self._gateway.update_project(
                    current.project_id,
                    {"current_version_id": version.id, "status": ProjectStatus.IN_PROGRESS},
                )
            except Exception:
                logger.exception("Failed to update project %d after generation", current.project_id)
            return self._apply(
                current,
                GenerationEvent.COMPOSITING_ATTEMPTED,
                version_id=version.id,
                provider=version.generation_provider,
                model_version=model_version,
                duration_ms=version.generation_duration_ms,
                result_image_urls=[preview_url(unwrap_data_url(url) or url) for url in images],
                completed_at=utcnow(),
            )

    async def _call_provider(self, func: Callable[[Any], Any], params: Any) -> Any:
        call = asyncio.to_thread(func, params)
        if self._provider_timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self._provider_timeout)
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"Generation timed out after {self._provider_timeout:g} seconds"
            ) from e

    async def _run_base_design(
        self, request: GenerationRequest
    ) -> tuple[dict[str, Any], str | None]:
        config = BaseGenerationConfig.model_validate(request.input_config)
        params = BaseDesignParams(
            prompt=config.prompt,
            style=config.style,
            product_type=config.product_type,
            size=config.size,
            primary_color=config.primary_color,
            style_preset_id=config.style_preset_id,
            style_modifier=config.prompt_modifier,
            design_theme=config.design_theme,
            key_elements=config.key_elements,
            things_to_avoid=config.things_to_avoid,
        )
        result = await self._call_provider(self._provider.generate_base_design, params)
        return {
            "front_image_url": to_data_url(result.front_image_base64),
            "back_image_url": to_data_url(result.back_image_base64),
            "generation_prompt": config.prompt,
            "generation_provider": result.provider,
            "generation_duration_ms": result.duration_ms,
        }, result.model_version

    async def _run_typography(
        self, request: GenerationRequest
    ) -> tuple[dict[str, Any], str | None]:
        config = TypographyConfig.model_validate(request.input_config)
        base_image = await self._resolve_base_image(request.project_id)
        self._advance(request.id, GenerationEvent.BASE_IMAGE_RESOLVED)

        params = TypographyParams(
            base_image_base64=base_image,
            text_content=config.text_content,
            font_family=config.font_family,
            font_size=config.font_size,
            text_color=config.text_color,
            focus_area=config.focus_area,
            style=config.style,
        )
        result = await self._call_provider(self._provider.generate_typography_iteration, params)
        return {
            "front_image_url": to_data_url(result.modified_image_base64),
            "generation_prompt": config.text_content,
            "generation_provider": result.provider,
            "generation_duration_ms": result.duration_ms,
        }, result.model_version

    async def _resolve_base_image(self, project_id: int) -> str:
        """Base64 of the current version's front image, or ``""`` if it has none."""
        _, current = self._versions.ensure_current_version(project_id)
        reference = current.front_image_url
        if not reference:
            return ""
        payload = unwrap_data_url(reference)
        if payload is not None:
            return payload
        data = await asyncio.to_thread(self._fetch, reference)
        return base64.b64encode(data).decode("ascii")

    async def _attach_composites(self, request_id: int, project_id: int, version: Version) -> None:
        """Best-effort compositing of *version* onto its variant's templates.

        Raises:
            _Cancelled: If the request stopped being active meanwhile.
        """
        if self._variants is None:
            return
        project = self._gateway.get_project(project_id)
        if project is None or project.variant_id is None:
            return
        try:
            variant = self._variants.get(project.variant_id)
            composites = await asyncio.to_thread(
                generate_composites,
                variant,
                version.front_image_url,
                version.back_image_url,
                fetch=self._fetch,
            )
            with self._while_active(request_id):
                if not composites.is_empty:
                    self._gateway.update_version(
                        version.id, composites.model_dump(exclude_none=True)
                    )
        except _Cancelled:
            raise
        except CompositingError as e:
            logger.warning("Compositing failed for version %d: %s", version.id, e.message)
        except Exception as e:
            logger.warning("Unexpected compositing error for version %d: %s", version.id, e)

    def _fail(self, request_id: int, error: Exception) -> None:
        if isinstance(error, DesignLabError):
            message = error.message
        else:
            message = "Generation failed due to an internal error"
        logger.error("Generation request %d failed: %s", request_id, error, exc_info=error)

        try:
            with self._while_active(request_id) as current:
                request = self._apply(current, GenerationEvent.FAILED, error_message=message)
                self._release_project(request.project_id)
        except _Cancelled:
            return
