"""Persistence gateway contract and an in-memory implementation.

The Design Lab core never talks to a database directly.  It goes through a
:class:`PersistenceGateway`, which offers create/read/update by id plus the
list-by-parent queries the version manager and orchestrator need.

Two implementations ship with the package:

- :class:`InMemoryGateway` (this module) - dict-backed, used by tests and
  when ``DESIGNLAB_DATABASE_PATH`` is unset.
- :class:`~designlab.core.sqlite_gateway.SQLiteGateway` - durable SQLite
  storage.

Contract notes
--------------
- ``get_*`` returns ``None`` for unknown ids; ``update_*`` returns ``None``
  for unknown ids and otherwise the updated row.
- Returned models are copies.  Mutating one never changes stored state.
- ``list_versions`` is ordered by version number; ``list_layers`` by
  ``z_index`` then id.
- Updates are plain overwrites: no optimistic concurrency control.
"""

from __future__ import annotations

import secrets
import threading
import time
from abc import ABC, abstractmethod
from typing import Any

from designlab.core.errors import ConflictError
from designlab.core.models import (
    GenerationRequest,
    Layer,
    NewGenerationRequest,
    NewLayer,
    NewProject,
    NewVersion,
    Project,
    Version,
    utcnow,
)


def new_request_code() -> str:
    """Return an external-safe generation request code.

    The code is ``GEN-<epoch millis>-<4 hex chars>``; the random suffix keeps
    codes unique when two requests start within the same millisecond.
    """
    return f"GEN-{int(time.time() * 1000)}-{secrets.token_hex(2).upper()}"


class PersistenceGateway(ABC):
    """Abstract durable store for projects, versions, layers and requests."""

    # -- Projects -----------------------------------------------------------

    @abstractmethod
    def create_project(self, data: NewProject) -> Project: ...

    @abstractmethod
    def get_project(self, project_id: int) -> Project | None: ...

    @abstractmethod
    def update_project(self, project_id: int, changes: dict[str, Any]) -> Project | None: ...

    @abstractmethod
    def list_projects(self, user_id: str | None = None) -> list[Project]:
        """List projects, newest first, optionally restricted to one owner."""

    # -- Versions -----------------------------------------------------------

    @abstractmethod
    def create_version(self, data: NewVersion) -> Version: ...

    @abstractmethod
    def get_version(self, version_id: int) -> Version | None: ...

    @abstractmethod
    def list_versions(self, project_id: int) -> list[Version]: ...

    @abstractmethod
    def update_version(self, version_id: int, changes: dict[str, Any]) -> Version | None: ...

    # -- Layers -------------------------------------------------------------

    @abstractmethod
    def create_layer(self, data: NewLayer) -> Layer: ...

    @abstractmethod
    def get_layer(self, layer_id: int) -> Layer | None: ...

    @abstractmethod
    def list_layers(self, version_id: int) -> list[Layer]: ...

    @abstractmethod
    def update_layer(self, layer_id: int, changes: dict[str, Any]) -> Layer | None: ...

    @abstractmethod
    def delete_layer(self, layer_id: int) -> bool: ...

    # -- Generation requests ------------------------------------------------

    @abstractmethod
    def create_generation_request(self, data: NewGenerationRequest) -> GenerationRequest: ...

    @abstractmethod
    def get_generation_request(self, request_id: int) -> GenerationRequest | None: ...

    @abstractmethod
    def get_generation_request_by_code(self, code: str) -> GenerationRequest | None: ...

    @abstractmethod
    def update_generation_request(
        self, request_id: int, changes: dict[str, Any]
    ) -> GenerationRequest | None: ...

    @abstractmethod
    def list_generation_requests(self, project_id: int) -> list[GenerationRequest]:
        """List a project's requests, newest first."""


class InMemoryGateway(PersistenceGateway):
    """Thread-safe dict-backed gateway.

    Rows are stored as Pydantic models and copied on the way in and out, so
    the store behaves like a database: callers only ever see snapshots.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._projects: dict[int, Project] = {}
        self._versions: dict[int, Version] = {}
        self._layers: dict[int, Layer] = {}
        self._requests: dict[int, GenerationRequest] = {}
        self._next_ids: dict[str, int] = {}

    def _next_id(self, table: str) -> int:
        value = self._next_ids.get(table, 0) + 1
        self._next_ids[table] = value
        return value

    @staticmethod
    def _apply(row, changes: dict[str, Any], touch: bool = True):
        data = row.model_dump()
        data.update(changes)
        if touch and "updated_at" in data:
            data["updated_at"] = utcnow()
        return type(row).model_validate(data)

    # -- Projects -----------------------------------------------------------

    def create_project(self, data: NewProject) -> Project:
        with self._lock:
            project = Project(id=self._next_id("projects"), **data.model_dump())
            self._projects[project.id] = project
            return project.model_copy(deep=True)

    def get_project(self, project_id: int) -> Project | None:
        with self._lock:
            project = self._projects.get(project_id)
            return project.model_copy(deep=True) if project else None

    def update_project(self, project_id: int, changes: dict[str, Any]) -> Project | None:
        with self._lock:
            project = self._projects.get(project_id)
            if project is None:
                return None
            updated = self._apply(project, changes)
            self._projects[project_id] = updated
            return updated.model_copy(deep=True)

    def list_projects(self, user_id: str | None = None) -> list[Project]:
        with self._lock:
            projects = [
                p.model_copy(deep=True)
                for p in self._projects.values()
                if user_id is None or p.user_id == user_id
            ]
        return sorted(projects, key=lambda p: (p.created_at, p.id), reverse=True)

    # -- Versions -----------------------------------------------------------

    def create_version(self, data: NewVersion) -> Version:
        with self._lock:
            for existing in self._versions.values():
                if (
                    existing.project_id == data.project_id
                    and existing.version_number == data.version_number
                ):
                    raise ConflictError(
                        f"Version {data.version_number} already exists for project {data.project_id}"
                    )
            version = Version(id=self._next_id("versions"), **data.model_dump())
            self._versions[version.id] = version
            return version.model_copy(deep=True)

    def get_version(self, version_id: int) -> Version | None:
        with self._lock:
            version = self._versions.get(version_id)
            return version.model_copy(deep=True) if version else None

    def list_versions(self, project_id: int) -> list[Version]:
        with self._lock:
            versions = [
                v.model_copy(deep=True)
                for v in self._versions.values()
                if v.project_id == project_id
            ]
        return sorted(versions, key=lambda v: v.version_number)

    def update_version(self, version_id: int, changes: dict[str, Any]) -> Version | None:
        with self._lock:
            version = self._versions.get(version_id)
            if version is None:
                return None
            updated = self._apply(version, changes)
            self._versions[version_id] = updated
            return updated.model_copy(deep=True)

    # -- Layers -------------------------------------------------------------

    def create_layer(self, data: NewLayer) -> Layer:
        with self._lock:
            layer = Layer(id=self._next_id("layers"), **data.model_dump())
            self._layers[layer.id] = layer
            return layer.model_copy(deep=True)

    def get_layer(self, layer_id: int) -> Layer | None:
        with self._lock:
            layer = self._layers.get(layer_id)
            return layer.model_copy(deep=True) if layer else None

    def list_layers(self, version_id: int) -> list[Layer]:
        with self._lock:
            layers = [
                layer.model_copy(deep=True)
                for layer in self._layers.values()
                if layer.version_id == version_id
            ]
        return sorted(layers, key=lambda layer: (layer.z_index, layer.id))

    def update_layer(self, layer_id: int, changes: dict[str, Any]) -> Layer | None:
        with self._lock:
            layer = self._layers.get(layer_id)
            if layer is None:
                return None
            updated = self._apply(layer, changes)
            self._layers[layer_id] = updated
            return updated.model_copy(deep=True)

    def delete_layer(self, layer_id: int) -> bool:
        with self._lock:
            return self._layers.pop(layer_id, None) is not None

    # -- Generation requests ------------------------------------------------

    def create_generation_request(self, data: NewGenerationRequest) -> GenerationRequest:
        with self._lock:
            request = GenerationRequest(
                id=self._next_id("generation_requests"),
                request_code=new_request_code(),
                **data.model_dump(),
            )
            self._requests[request.id] = request
            return request.model_copy(deep=True)

    def get_generation_request(self, request_id: int) -> GenerationRequest | None:
        with self._lock:
            request = self._requests.get(request_id)
            return request.model_copy(deep=True) if request else None

    def get_generation_request_by_code(self, code: str) -> GenerationRequest | None:
        with self._lock:
            for request in self._requests.values():
                if request.request_code == code:
                    return request.model_copy(deep=True)
        return None

    def update_generation_request(
        self, request_id: int, changes: dict[str, Any]
    ) -> GenerationRequest | None:
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                return None
            updated = self._apply(request, changes)
            self._requests[request_id] = updated
            return updated.model_copy(deep=True)

    def list_generation_requests(self, project_id: int) -> list[GenerationRequest]:
        with self._lock:
            requests = [
                r.model_copy(deep=True)
                for r in self._requests.values()
                if r.project_id == project_id
            ]
        return sorted(requests, key=lambda r: r.id, reverse=True)
