"""Version and layer management for Design Lab projects.

:class:`VersionManager` owns the append-only version history of a project
and the ordered layer list inside each version.

Key Responsibilities
--------------------
- **Bootstrap** - a new project immediately gets version 1 ("Initial
  Version") and its ``current_version_id`` pointer.
- **Self-healing reads** - if a project's pointer is missing or dangling,
  :meth:`VersionManager.ensure_current_version` repairs it by adopting the
  latest existing version or creating version 1.  The repair is an
  idempotent get-or-create keyed by project id, so racing readers converge
  on the same version.
- **Numbering** - version numbers are ``max(existing) + 1`` and never
  reused.  Numbering is serialised per project, and the gateway rejects
  duplicate numbers as a second line of defence.
- **Copy-on-derive** - creating a version from a source version duplicates
  every source layer by value with new ids.
- **Restore** - a pointer swap.  Nothing is copied or deleted.

Access checks (owner or admin) are exposed as ``owned_*`` helpers that the
request surface calls before any operation.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from designlab.core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from designlab.core.gateway import PersistenceGateway
from designlab.core.models import (
    MUTABLE_VERSION_FIELDS,
    CallerIdentity,
    Layer,
    NewLayer,
    NewProject,
    NewVersion,
    Project,
    ProjectStatus,
    ProjectView,
    Version,
)

logger = logging.getLogger(__name__)

INITIAL_VERSION_NAME = "Initial Version"

# Project fields a client may change directly.  The current-version pointer
# is deliberately absent: it moves only through version creation, restore
# and generation.
UPDATABLE_PROJECT_FIELDS: frozenset[str] = frozenset(
    {"name", "description", "status", "variant_id", "design_job_id", "org_id", "thumbnail_url"}
)

UPDATABLE_LAYER_FIELDS: frozenset[str] = frozenset(
    {
        "name",
        "image_url",
        "position",
        "text_content",
        "text_style",
        "view",
        "z_index",
        "is_visible",
        "is_locked",
        "opacity",
        "blend_mode",
    }
)

# Fields copied when a layer is duplicated into a new version.
_LAYER_COPY_FIELDS = tuple(name for name in NewLayer.model_fields if name != "version_id")

_UNSET: Any = object()


def paginate_projects(projects: list[Project], page: int, limit: int) -> dict:
    """Paginate projects and clamp the requested page to valid bounds.

    Args:
        projects: Filtered projects in display order.
        page: Requested one-based page number.
        limit: Requested items per page.

    Returns:
        Dictionary with ``projects`` and a ``pagination`` block holding
        ``page``, ``limit``, ``total`` and ``pages``.
    """
    limit = max(limit, 1)
    total = len(projects)
    pages = (total + limit - 1) // limit if total > 0 else 1
    resolved_page = min(max(page, 1), pages)
    start = (resolved_page - 1) * limit
    return {
        "projects": projects[start : start + limit],
        "pagination": {"page": resolved_page, "limit": limit, "total": total, "pages": pages},
    }


class VersionManager:
    """Maintain projects, their version history and per-version layers."""

    def __init__(self, gateway: PersistenceGateway) -> None:
        self._gateway = gateway
        self._locks_guard = threading.Lock()
        self._project_locks: dict[int, threading.RLock] = {}

    def _project_lock(self, project_id: int) -> threading.RLock:
        with self._locks_guard:
            lock = self._project_locks.get(project_id)
            if lock is None:
                lock = self._project_locks[project_id] = threading.RLock()
            return lock

    # -- Access checks ------------------------------------------------------

    def owned_project(self, project_id: int, caller: CallerIdentity) -> Project:
        """Return the project if *caller* owns it or is an admin.

        Raises:
            NotFoundError: If the project does not exist.
            ForbiddenError: If the caller is neither owner nor admin.
        """
        project = self._gateway.get_project(project_id)
        if project is None:
            raise NotFoundError("Design project not found")
        if not caller.is_admin and project.user_id != caller.user_id:
            raise ForbiddenError("Access denied - you don't own this project")
        return project

    def owned_version(self, version_id: int, caller: CallerIdentity) -> tuple[Project, Version]:
        version = self._gateway.get_version(version_id)
        if version is None:
            raise NotFoundError("Design version not found")
        return self.owned_project(version.project_id, caller), version

    def owned_layer(self, layer_id: int, caller: CallerIdentity) -> tuple[Project, Layer]:
        layer = self._gateway.get_layer(layer_id)
        if layer is None:
            raise NotFoundError("Design layer not found")
        project, _ = self.owned_version(layer.version_id, caller)
        return project, layer

    def _project_version(self, project_id: int, version_id: int) -> Version:
        version = self._gateway.get_version(version_id)
        if version is None:
            raise NotFoundError("Design version not found")
        if version.project_id != project_id:
            raise ValidationError("Version does not belong to this project")
        return version

    # -- Projects -----------------------------------------------------------

    def create_project(self, owner: CallerIdentity, fields: dict[str, Any]) -> ProjectView:
        """Create a project and bootstrap its first version.

        The project row is written first with no current version, then
        version 1 is created and the pointer set.  If the process dies in
        between, the next :meth:`get_project_view` repairs the project.
        """
        try:
            data = NewProject.model_validate(
                {
                    **fields,
                    "user_id": owner.user_id,
                    "status": ProjectStatus.DRAFT,
                    "current_version_id": None,
                }
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid project: {e.errors()[0]['msg']}") from e

        project = self._gateway.create_project(data)
        logger.info("Created design project %d for user %s", project.id, owner.user_id)
        return self.get_project_view(project.id, created_by=owner.user_id)

    def list_projects(
        self,
        caller: CallerIdentity,
        *,
        page: int = 1,
        limit: int = 20,
        include_archived: bool = False,
    ) -> dict:
        projects = self._gateway.list_projects(None if caller.is_admin else caller.user_id)
        if not include_archived:
            projects = [p for p in projects if p.status != ProjectStatus.ARCHIVED]
        return paginate_projects(projects, page, limit)

    def get_project_view(self, project_id: int, created_by: str | None = None) -> ProjectView:
        """Return the project with its current version and layers, healing if needed."""
        project, version = self.ensure_current_version(project_id, created_by=created_by)
        return ProjectView(
            project=project,
            current_version=version,
            layers=self._gateway.list_layers(version.id),
        )

    def ensure_current_version(
        self, project_id: int, created_by: str | None = None
    ) -> tuple[Project, Version]:
        """Get-or-create the current version of a project.

        A valid pointer is returned untouched.  Otherwise the latest existing
        version is adopted, or version 1 is created when the project has
        none.  Calling this any number of times, concurrently or not, leaves
        the project pointing at one valid version of its own.

        Raises:
            NotFoundError: If the project does not exist.
        """
        project = self._gateway.get_project(project_id)
        if project is None:
            raise NotFoundError("Design project not found")

        current = self._valid_current_version(project)
        if current is not None:
            return project, current

        with self._project_lock(project_id):
            # Another caller may have healed the project while we waited.
            project = self._gateway.get_project(project_id)
            current = self._valid_current_version(project)
            if current is not None:
                return project, current

            versions = self._gateway.list_versions(project_id)
            if versions:
                current = versions[-1]
                logger.info(
                    "Project %d had no usable current version; adopting v%d",
                    project_id,
                    current.version_number,
                )
            else:
                try:
                    current = self._gateway.create_version(
                        NewVersion(
                            project_id=project_id,
                            version_number=1,
                            name=INITIAL_VERSION_NAME,
                            created_by=created_by or project.user_id,
                        )
                    )
                except ConflictError:
                    # Another process created v1 first; adopt it.
                    current = self._gateway.list_versions(project_id)[0]
                logger.info("Bootstrapped initial version for project %d", project_id)

            project = self._gateway.update_project(project_id, {"current_version_id": current.id})
            return project, current

    def _valid_current_version(self, project: Project) -> Version | None:
        if project.current_version_id is None:
            return None
        version = self._gateway.get_version(project.current_version_id)
        if version is None or version.project_id != project.id:
            return None
        return version

    def update_project(self, project_id: int, changes: dict[str, Any]) -> Project:
        unknown = set(changes) - UPDATABLE_PROJECT_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        if "status" in changes:
            try:
                changes = {**changes, "status": ProjectStatus(changes["status"])}
            except ValueError as e:
                raise ValidationError(f"Invalid project status: {changes['status']}") from e
        if "name" in changes and not (changes["name"] or "").strip():
            raise ValidationError("Project name cannot be empty")

        project = self._gateway.update_project(project_id, changes)
        if project is None:
            raise NotFoundError("Design project not found")
        return project

    def archive_project(self, project_id: int) -> Project:
        """Soft-delete a project.  Projects are never removed."""
        project = self._gateway.update_project(project_id, {"status": ProjectStatus.ARCHIVED})
        if project is None:
            raise NotFoundError("Design project not found")
        logger.info("Archived design project %d", project_id)
        return project

    def finalize_project(self, project_id: int, design_job_id: int | None = _UNSET) -> ProjectView:
        """Mark a project finalized, optionally linking or unlinking a design job.

        Raises:
            ValidationError: If the project has no current version.
        """
        project = self._gateway.get_project(project_id)
        if project is None:
            raise NotFoundError("Design project not found")
        if project.current_version_id is None:
            raise ValidationError("Cannot finalize project without a design version")
        current = self._valid_current_version(project)
        if current is None:
            raise ValidationError("Current version not found")

        changes: dict[str, Any] = {"status": ProjectStatus.FINALIZED}
        if design_job_id is not _UNSET:
            changes["design_job_id"] = design_job_id
        project = self._gateway.update_project(project_id, changes)
        logger.info("Finalized design project %d at v%d", project_id, current.version_number)
        return ProjectView(
            project=project,
            current_version=current,
            layers=self._gateway.list_layers(current.id),
        )

    # -- Versions -----------------------------------------------------------

    def list_versions(self, project_id: int) -> list[Version]:
        return self._gateway.list_versions(project_id)

    def get_version(self, project_id: int, version_id: int) -> tuple[Version, list[Layer]]:
        version = self._project_version(project_id, version_id)
        return version, self._gateway.list_layers(version.id)

    def create_version(
        self,
        project_id: int,
        fields: dict[str, Any] | None = None,
        *,
        created_by: str | None = None,
        copy_from_version_id: int | None = None,
        name_format: str | None = None,
    ) -> Version:
        """Append a new version to a project and make it current.

        Args:
            project_id: Owning project.
            fields: Optional version metadata (name, image URLs, generation
                metadata).  ``project_id`` and ``version_number`` are
                always assigned here.
            created_by: User recorded as the version's creator.
            copy_from_version_id: If given, every layer of this version is
                duplicated into the new version.  The source must belong to
                the same project.
            name_format: Optional name template formatted with the assigned
                ``number``, e.g. ``"Generated v{number}"``.

        Returns:
            The created version.

        Raises:
            NotFoundError: If the project or the copy source does not exist.
            ValidationError: If the copy source belongs to another project or
                the fields are invalid.
        """
        fields = dict(fields or {})
        unknown = set(fields) - MUTABLE_VERSION_FIELDS
        if unknown:
            raise ValidationError(f"Unknown version fields: {', '.join(sorted(unknown))}")

        with self._project_lock(project_id):
            if self._gateway.get_project(project_id) is None:
                raise NotFoundError("Design project not found")

            source_layers: list[Layer] = []
            if copy_from_version_id is not None:
                self._project_version(project_id, copy_from_version_id)
                source_layers = self._gateway.list_layers(copy_from_version_id)

            existing = self._gateway.list_versions(project_id)
            next_number = max((v.version_number for v in existing), default=0) + 1
            if name_format is not None:
                fields["name"] = name_format.format(number=next_number)

            try:
                data = NewVersion.model_validate(
                    {
                        **fields,
                        "project_id": project_id,
                        "version_number": next_number,
                        "created_by": created_by,
                    }
                )
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid version: {e.errors()[0]['msg']}") from e

            version = self._gateway.create_version(data)
            for layer in source_layers:
                copied = {name: getattr(layer, name) for name in _LAYER_COPY_FIELDS}
                self._gateway.create_layer(NewLayer.model_validate({**copied, "version_id": version.id}))

            self._gateway.update_project(project_id, {"current_version_id": version.id})

        logger.info(
            "Created v%d (id=%d) for project %d%s",
            version.version_number,
            version.id,
            project_id,
            f", copied {len(source_layers)} layers" if source_layers else "",
        )
        return version

    def update_version(self, project_id: int, version_id: int, changes: dict[str, Any]) -> Version:
        unknown = set(changes) - MUTABLE_VERSION_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        self._project_version(project_id, version_id)
        version = self._gateway.update_version(version_id, changes)
        if version is None:
            raise NotFoundError("Design version not found")
        return version

    def restore_version(self, project_id: int, version_id: int) -> ProjectView:
        """Point the project back at an earlier version.

        Only the pointer moves.  No version or layer is copied or deleted,
        so subsequent layer edits change the restored version in place.
        """
        version = self._project_version(project_id, version_id)
        project = self._gateway.update_project(project_id, {"current_version_id": version.id})
        if project is None:
            raise NotFoundError("Design project not found")
        logger.info("Restored project %d to v%d", project_id, version.version_number)
        return ProjectView(
            project=project,
            current_version=version,
            layers=self._gateway.list_layers(version.id),
        )

    # -- Layers -------------------------------------------------------------

    def list_layers(self, version_id: int) -> list[Layer]:
        return self._gateway.list_layers(version_id)

    def create_layer(self, version_id: int, fields: dict[str, Any]) -> Layer:
        if self._gateway.get_version(version_id) is None:
            raise NotFoundError("Design version not found")
        try:
            data = NewLayer.model_validate({**fields, "version_id": version_id})
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid layer: {e.errors()[0]['msg']}") from e
        return self._gateway.create_layer(data)

    def update_layer(self, layer_id: int, changes: dict[str, Any]) -> Layer:
        unknown = set(changes) - UPDATABLE_LAYER_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        existing = self._gateway.get_layer(layer_id)
        if existing is None:
            raise NotFoundError("Design layer not found")

        # Validate the merged row, then persist only the requested fields.
        try:
            merged = NewLayer.model_validate({**existing.model_dump(), **changes})
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid layer: {e.errors()[0]['msg']}") from e
        validated = {name: getattr(merged, name) for name in changes}

        layer = self._gateway.update_layer(layer_id, validated)
        if layer is None:
            raise NotFoundError("Design layer not found")
        return layer

    def delete_layer(self, layer_id: int) -> None:
        if not self._gateway.delete_layer(layer_id):
            raise NotFoundError("Design layer not found")
