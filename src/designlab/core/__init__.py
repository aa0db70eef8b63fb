"""Core functionality for Design Lab projects and generation.

This package holds everything below the HTTP surface:

- **DesignLabConfig / config**: Configuration via Pydantic Settings
- **PersistenceGateway**: Storage contract, with in-memory and SQLite
  implementations
- **VersionManager**: Projects, append-only versions and per-version layers
- **GenerationOrchestrator**: Asynchronous generation requests driven by
  the state machine in ``state_machine.py``
- **GenerationProvider**: Image generation capability (diffusers locally)
- **compositor**: Best-effort preview composites onto variant templates

Architecture Overview
---------------------
1. **Configuration Layer** (config.py):
   - Environment-based configuration, ``DESIGNLAB_`` prefix
   - Directories created on load

2. **Persistence Layer** (gateway.py, sqlite_gateway.py, variant_catalog.py):
   - Create/read/update by id plus list-by-parent queries
   - Read-only variant catalogue loaded from JSON

3. **Domain Layer** (versions.py, orchestrator.py, state_machine.py):
   - Self-healing current-version pointer
   - Detached generation tasks via an injected scheduler

4. **Generation Layer** (provider.py, model_manager.py, prompt_builder.py,
   compositor.py, images.py)

Usage Example
-------------
    from designlab.core import InMemoryGateway, VersionManager, CallerIdentity

    manager = VersionManager(InMemoryGateway())
    view = manager.create_project(CallerIdentity(user_id="u1"), {"name": "Jersey"})
    print(view.current_version.name)  # "Initial Version"
"""

from designlab.core.config import DesignLabConfig, config
from designlab.core.errors import (
    ConflictError,
    DesignLabError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from designlab.core.gateway import InMemoryGateway, PersistenceGateway
from designlab.core.models import (
    CallerIdentity,
    GenerationKind,
    GenerationRequest,
    GenerationStatus,
    Layer,
    Project,
    ProjectStatus,
    ProjectView,
    Version,
)
from designlab.core.orchestrator import GenerationOrchestrator
from designlab.core.provider import GenerationProvider, create_provider
from designlab.core.scheduler import AsyncioTaskScheduler, TaskScheduler
from designlab.core.sqlite_gateway import SQLiteGateway
from designlab.core.versions import VersionManager

__all__ = [
    "DesignLabConfig",
    "config",
    "DesignLabError",
    "ValidationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "PersistenceGateway",
    "InMemoryGateway",
    "SQLiteGateway",
    "CallerIdentity",
    "Project",
    "ProjectStatus",
    "ProjectView",
    "Version",
    "Layer",
    "GenerationKind",
    "GenerationStatus",
    "GenerationRequest",
    "VersionManager",
    "GenerationOrchestrator",
    "GenerationProvider",
    "create_provider",
    "TaskScheduler",
    "AsyncioTaskScheduler",
]
