"""Design Lab - FastAPI Application.

This module defines the application factory :func:`create_app`, the
module-level ``app`` instance, every REST route, and the ``main()`` CLI
function that launches the uvicorn server.

Architecture
------------
- **Storage** goes through a :class:`~designlab.core.gateway.PersistenceGateway`:
  SQLite when ``DESIGNLAB_DATABASE_PATH`` is set, in-memory otherwise.
- **Versions and layers** are managed by
  :class:`~designlab.core.versions.VersionManager`.
- **Generation** is asynchronous.  ``POST /api/design-lab/generate`` records
  a request and returns ``202`` with a poll URL; the
  :class:`~designlab.core.orchestrator.GenerationOrchestrator` does the work
  in a detached task.
- **Caller identity** comes from the ``X-User-Id`` and ``X-User-Role``
  headers set by the upstream authentication service.

Endpoints
---------
========  ===================================================  ===========================
Method    Path                                                 Purpose
========  ===================================================  ===========================
GET       ``/api/health``                                      Version and provider name
GET       ``/api/design-lab/projects``                         List caller's projects
POST      ``/api/design-lab/projects``                         Create project + version 1
GET       ``/api/design-lab/projects/{id}``                    Project, current version
PATCH     ``/api/design-lab/projects/{id}``                    Update project fields
DELETE    ``/api/design-lab/projects/{id}``                    Archive project
POST      ``/api/design-lab/projects/{id}/finalize``           Finalize project
GET       ``/api/design-lab/projects/{id}/versions``           Version history
POST      ``/api/design-lab/projects/{id}/versions``           New version
GET       ``/api/design-lab/projects/{id}/versions/{vid}``     Version with layers
PATCH     ``/api/design-lab/projects/{id}/versions/{vid}``     Update version metadata
POST      ``/api/design-lab/projects/{id}/versions/{vid}/...`` ``restore``: repoint project
GET       ``/api/design-lab/versions/{vid}/layers``            Layers of a version
POST      ``/api/design-lab/versions/{vid}/layers``            Add layer
PATCH     ``/api/design-lab/layers/{lid}``                     Update layer
DELETE    ``/api/design-lab/layers/{lid}``                     Delete layer
POST      ``/api/design-lab/generate``                         Start a generation
GET       ``/api/design-lab/generate/{id_or_code}``            Poll a generation
POST      ``/api/design-lab/generate/{id}/cancel``             Cancel a generation
GET       ``/api/design-lab/projects/{id}/generations``        Generation history
========  ===================================================  ===========================

Usage
-----
CLI (installed entry point)::

    designlab

Direct invocation::

    python -m designlab.api.main
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from designlab import __version__
from designlab.api.models import (
    CreateLayerRequest,
    CreateProjectRequest,
    CreateVersionRequest,
    FinalizeRequest,
    GenerateRequest,
    UpdateLayerRequest,
    UpdateProjectRequest,
    UpdateVersionRequest,
)
from designlab.core.compositor import ImageFetcher, fetch_image_bytes
from designlab.core.config import DesignLabConfig, config
from designlab.core.errors import DesignLabError
from designlab.core.gateway import InMemoryGateway, PersistenceGateway
from designlab.core.models import CallerIdentity
from designlab.core.orchestrator import GenerationOrchestrator
from designlab.core.provider import GenerationProvider, create_provider
from designlab.core.scheduler import AsyncioTaskScheduler, TaskScheduler
from designlab.core.sqlite_gateway import SQLiteGateway
from designlab.core.variant_catalog import VariantCatalog
from designlab.core.versions import VersionManager

logger = logging.getLogger(__name__)

API_PREFIX = "/api/design-lab"


def _build_gateway(cfg: DesignLabConfig) -> PersistenceGateway:
    if cfg.database_path is None:
        logger.warning("No database path configured - using in-memory storage.")
        return InMemoryGateway()
    return SQLiteGateway(cfg.database_path)


def create_app(
    cfg: DesignLabConfig | None = None,
    *,
    gateway: PersistenceGateway | None = None,
    provider: GenerationProvider | None = None,
    scheduler: TaskScheduler | None = None,
    variants: VariantCatalog | None = None,
    fetch: ImageFetcher | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Components not supplied are built from *cfg* when the application
    starts, so tests can inject fakes for any of them.

    Args:
        cfg: Configuration.  Defaults to the global ``config`` instance.
        gateway: Persistence gateway.
        provider: Generation provider.
        scheduler: Scheduler for detached generation tasks.
        variants: Variant catalogue for compositing.
        fetch: Image fetcher used by the compositor.

    Returns:
        The configured application.
    """
    cfg = cfg or config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Wire components onto ``app.state`` and tear them down on shutdown.

        On shutdown, outstanding generation tasks are drained before the
        provider releases its resources.
        """
        # --- Startup -------------------------------------------------------
        app_gateway = gateway or _build_gateway(cfg)
        app_provider = provider or create_provider(cfg)
        app_scheduler = scheduler or AsyncioTaskScheduler()
        app_fetch = fetch or (
            lambda url: fetch_image_bytes(url, timeout=cfg.compositor_fetch_timeout)
        )

        app.state.gateway = app_gateway
        app.state.provider = app_provider
        app.state.scheduler = app_scheduler
        app.state.versions = VersionManager(app_gateway)
        app.state.orchestrator = GenerationOrchestrator(
            app_gateway,
            app.state.versions,
            app_provider,
            app_scheduler,
            variants or VariantCatalog(cfg.variants_path),
            fetch=app_fetch,
            reject_concurrent_generation=cfg.reject_concurrent_generation,
            max_concurrent_generations=cfg.max_concurrent_generations,
            provider_timeout_seconds=cfg.provider_timeout_seconds,
        )
        logger.info("Design Lab started with provider '%s'.", app_provider.name)

        yield

        # --- Shutdown ------------------------------------------------------
        if app_scheduler.pending:
            logger.info("Waiting for %d generation task(s) to finish.", app_scheduler.pending)
        await app_scheduler.drain()
        app_provider.close()
        logger.info("Design Lab shut down.")

    app = FastAPI(
        title="Design Lab",
        description="Versioned design projects with asynchronous AI generation.",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DesignLabError)
    async def design_lab_error_handler(request: Request, exc: DesignLabError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    _register_routes(app)
    return app


# ---------------------------------------------------------------------------
# Dependencies.
# ---------------------------------------------------------------------------


def get_caller(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> CallerIdentity:
    """Resolve the caller from headers set by the authentication service.

    Raises:
        HTTPException: 401 if no user id is present.
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return CallerIdentity(user_id=x_user_id, role=x_user_role or "user")


def _versions(request: Request) -> VersionManager:
    return request.app.state.versions


def _orchestrator(request: Request) -> GenerationOrchestrator:
    return request.app.state.orchestrator


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------


def _register_routes(app: FastAPI) -> None:
    @app.get("/api/health")
    async def health(request: Request) -> dict:
        return {
            "status": "ok",
            "version": __version__,
            "provider": request.app.state.orchestrator.provider_name,
        }

    # --- Projects ----------------------------------------------------------

    @app.get(f"{API_PREFIX}/projects")
    async def list_projects(
        request: Request,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=100),
        include_archived: bool = False,
        caller: CallerIdentity = Depends(get_caller),
    ) -> dict:
        return _versions(request).list_projects(
            caller, page=page, limit=limit, include_archived=include_archived
        )

    @app.post(f"{API_PREFIX}/projects", status_code=201)
    async def create_project(
        body: CreateProjectRequest,
        request: Request,
        caller: CallerIdentity = Depends(get_caller),
    ):
        """Create a project.  The response already carries version 1."""
        return _versions(request).create_project(caller, body.model_dump(exclude_none=True))

    @app.get(f"{API_PREFIX}/projects/{{project_id}}")
    async def get_project(
        project_id: int, request: Request, caller: CallerIdentity = Depends(get_caller)
    ):
        """Return the project with its current version and layers.

        A project whose current-version pointer is missing or dangling is
        repaired as part of this read.
        """
        versions = _versions(request)
        versions.owned_project(project_id, caller)
        return versions.get_project_view(project_id, created_by=caller.user_id)

    @app.patch(f"{API_PREFIX}/projects/{{project_id}}")
    async def update_project(
        project_id: int,
        body: UpdateProjectRequest,
        request: Request,
        caller: CallerIdentity = Depends(get_caller),
    ):
        versions = _versions(request)
        versions.owned_project(project_id, caller)
        return versions.update_project(project_id, body.model_dump(exclude_unset=True))

    @app.delete(f"{API_PREFIX}/projects/{{project_id}}")
    async def archive_project(
        project_id: int, request: Request, caller: CallerIdentity = Depends(get_caller)
    ) -> dict:
        versions = _versions(request)
        versions.owned_project(project_id, caller)
        versions.archive_project(project_id)
        return {"success": True}

    @app.post(f"{API_PREFIX}/projects/{{project_id}}/finalize")
    async def finalize_project(
        project_id: int,
        request: Request,
        body: FinalizeRequest | None = None,
        caller: CallerIdentity = Depends(get_caller),
    ):
        versions = _versions(request)
        versions.owned_project(project_id, caller)
        if body is not None and "design_job_id" in body.model_fields_set:
            return versions.finalize_project(project_id, design_job_id=body.design_job_id)
        return versions.finalize_project(project_id)

    # --- Versions ----------------------------------------------------------

    @app.get(f"{API_PREFIX}/projects/{{project_id}}/versions")
    async def list_versions(
        project_id: int, request: Request, caller: CallerIdentity = Depends(get_caller)
    ) -> dict:
        versions = _versions(request)
        versions.owned_project(project_id, caller)
        return {"versions": versions.list_versions(project_id)}

    @app.post(f"{API_PREFIX}/projects/{{project_id}}/versions", status_code=201)
    async def create_version(
        project_id: int,
        body: CreateVersionRequest,
        request: Request,
        caller: CallerIdentity = Depends(get_caller),
    ):
        versions = _versions(request)
        versions.owned_project(project_id, caller)
        fields = body.model_dump(exclude={"copy_from_version_id"}, exclude_none=True)
        return versions.create_version(
            project_id,
            fields,
            created_by=caller.user_id,
            copy_from_version_id=body.copy_from_version_id,
            name_format=None if "name" in fields else "Version {number}",
        )

    @app.get(f"{API_PREFIX}/projects/{{project_id}}/versions/{{version_id}}")
    async def get_version(
        project_id: int,
        version_id: int,
        request: Request,
        caller: CallerIdentity = Depends(get_caller),
    ) -> dict:
        versions = _versions(request)
        versions.owned_project(project_id, caller)
        version, layers = versions.get_version(project_id, version_id)
        return {"version": version, "layers": layers}

    @app.patch(f"{API_PREFIX}/projects/{{project_id}}/versions/{{version_id}}")
    async def update_version(
        project_id: int,
        version_id: int,
        body: UpdateVersionRequest,
        request: Request,
        caller: CallerIdentity = Depends(get_caller),
    ):
        versions = _versions(request)
        versions.owned_project(project_id, caller)
        return versions.update_version(project_id, version_id, body.model_dump(exclude_unset=True))

    @app.post(f"{API_PREFIX}/projects/{{project_id}}/versions/{{version_id}}/restore")
    async def restore_version(
        project_id: int,
        version_id: int,
        request: Request,
        caller: CallerIdentity = Depends(get_caller),
    ):
        versions = _versions(request)
        versions.owned_project(project_id, caller)
        return versions.restore_version(project_id, version_id)

    # --- Layers ------------------------------------------------------------

    @app.get(f"{API_PREFIX}/versions/{{version_id}}/layers")
    async def list_layers(
        version_id: int, request: Request, caller: CallerIdentity = Depends(get_caller)
    ) -> dict:
        versions = _versions(request)
        versions.owned_version(version_id, caller)
        return {"layers": versions.list_layers(version_id)}

    @app.post(f"{API_PREFIX}/versions/{{version_id}}/layers", status_code=201)
    async def create_layer(
        version_id: int,
        body: CreateLayerRequest,
        request: Request,
        caller: CallerIdentity = Depends(get_caller),
    ):
        versions = _versions(request)
        versions.owned_version(version_id, caller)
        return versions.create_layer(version_id, body.model_dump())

    @app.patch(f"{API_PREFIX}/layers/{{layer_id}}")
    async def update_layer(
        layer_id: int,
        body: UpdateLayerRequest,
        request: Request,
        caller: CallerIdentity = Depends(get_caller),
    ):
        versions = _versions(request)
        versions.owned_layer(layer_id, caller)
        return versions.update_layer(layer_id, body.model_dump(exclude_unset=True))

    @app.delete(f"{API_PREFIX}/layers/{{layer_id}}")
    async def delete_layer(
        layer_id: int, request: Request, caller: CallerIdentity = Depends(get_caller)
    ) -> dict:
        versions = _versions(request)
        versions.owned_layer(layer_id, caller)
        versions.delete_layer(layer_id)
        return {"success": True}

    # --- Generation --------------------------------------------------------

    @app.post(f"{API_PREFIX}/generate", status_code=202)
    async def start_generation(
        body: GenerateRequest,
        request: Request,
        caller: CallerIdentity = Depends(get_caller),
    ) -> dict:
        """Start a generation and return immediately.

        The response carries the request record (status ``processing``,
        progress 0) and a ``poll_url`` for following its progress.
        """
        generation = await _orchestrator(request).start_generation(
            body.project_id, body.request_type, body.generation_config(), caller
        )
        return {
            "request": generation,
            "poll_url": f"{API_PREFIX}/generate/{generation.request_code}",
        }

    @app.get(f"{API_PREFIX}/generate/{{id_or_code}}")
    async def get_generation(
        id_or_code: str, request: Request, caller: CallerIdentity = Depends(get_caller)
    ):
        return _orchestrator(request).get_request(id_or_code, caller)

    @app.post(f"{API_PREFIX}/generate/{{request_id}}/cancel")
    async def cancel_generation(
        request_id: int, request: Request, caller: CallerIdentity = Depends(get_caller)
    ):
        return _orchestrator(request).cancel(request_id, caller)

    @app.get(f"{API_PREFIX}/projects/{{project_id}}/generations")
    async def list_generations(
        project_id: int, request: Request, caller: CallerIdentity = Depends(get_caller)
    ) -> dict:
        _versions(request).owned_project(project_id, caller)
        return {"requests": _orchestrator(request).list_requests(project_id)}


app = create_app()


def main() -> None:
    """Launch the uvicorn server.

    Server host, port and log level come from the global configuration
    instance (``DESIGNLAB_SERVER_HOST``, ``DESIGNLAB_SERVER_PORT``,
    ``DESIGNLAB_LOG_LEVEL``).
    """
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("Starting Design Lab on %s:%d", config.server_host, config.server_port)
    uvicorn.run(
        "designlab.api.main:app",
        host=config.server_host,
        port=config.server_port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
