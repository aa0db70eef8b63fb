"""SQLite-backed persistence gateway."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from designlab.core.errors import ConflictError
from designlab.core.gateway import PersistenceGateway, new_request_code
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

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS design_projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    description TEXT,
    variant_id INTEGER,
    design_job_id INTEGER,
    org_id INTEGER,
    status TEXT NOT NULL,
    current_version_id INTEGER,
    thumbnail_url TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS design_versions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES design_projects(id),
    version_number INTEGER NOT NULL,
    name TEXT,
    front_image_url TEXT,
    back_image_url TEXT,
    composite_front_url TEXT,
    composite_back_url TEXT,
    generation_prompt TEXT,
    generation_provider TEXT,
    generation_duration_ms INTEGER,
    created_by TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (project_id, version_number)
);

CREATE TABLE IF NOT EXISTS design_layers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    version_id INTEGER NOT NULL REFERENCES design_versions(id),
    layer_type TEXT NOT NULL,
    name TEXT NOT NULL,
    view TEXT NOT NULL,
    z_index INTEGER NOT NULL,
    position TEXT NOT NULL,
    is_visible INTEGER NOT NULL,
    is_locked INTEGER NOT NULL,
    opacity REAL NOT NULL,
    blend_mode TEXT NOT NULL,
    text_content TEXT,
    text_style TEXT,
    image_url TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS design_generation_requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    request_code TEXT NOT NULL UNIQUE,
    project_id INTEGER NOT NULL REFERENCES design_projects(id),
    kind TEXT NOT NULL,
    prompt TEXT NOT NULL,
    input_config TEXT NOT NULL,
    status TEXT NOT NULL,
    progress INTEGER NOT NULL,
    version_id INTEGER,
    error_message TEXT,
    provider TEXT,
    model_version TEXT,
    duration_ms INTEGER,
    result_image_urls TEXT NOT NULL,
    created_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_versions_project ON design_versions(project_id);
CREATE INDEX IF NOT EXISTS idx_layers_version ON design_layers(version_id);
CREATE INDEX IF NOT EXISTS idx_requests_project ON design_generation_requests(project_id);
"""

# Columns stored as JSON text.
_JSON_COLUMNS = frozenset({"position", "text_style", "input_config", "result_image_urls"})


def _to_column(key: str, value: Any) -> Any:
    """Convert a model value into its SQLite column representation."""
    if key in _JSON_COLUMNS:
        return None if value is None else json.dumps(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    if hasattr(value, "value"):
        # str-based enums
        return value.value
    return value


def _from_row(row: sqlite3.Row) -> dict[str, Any]:
    data = dict(row)
    for key in _JSON_COLUMNS & data.keys():
        if data[key] is not None:
            data[key] = json.loads(data[key])
    return data


class SQLiteGateway(PersistenceGateway):
    """Persist Design Lab rows in a single SQLite database file.

    Each call opens a short-lived connection, in the same way the rest of the
    package treats SQLite: cheap connections, no shared cursor state.  A
    process-wide lock serialises writers so that read-modify-write updates
    are not interleaved between threads.
    """

    def __init__(self, db_path: Path):
        """Initialize the database, creating the schema if needed.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._initialize_db()
        logger.info("Initialized design lab database at %s", self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _initialize_db(self) -> None:
        """Create database schema if it doesn't exist."""
        with self._connect() as conn:
            conn.executescript(_SCHEMA)

    # -- Generic helpers ----------------------------------------------------

    def _insert(self, table: str, values: dict[str, Any]) -> int:
        columns = list(values)
        placeholders = ", ".join("?" for _ in columns)
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
        params = [_to_column(key, values[key]) for key in columns]
        with self._lock:
            try:
                with self._connect() as conn:
                    cursor = conn.execute(sql, params)
                    return int(cursor.lastrowid)
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Could not insert into {table}: {e}") from e

    def _fetch_one(self, sql: str, params: tuple) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return _from_row(row) if row is not None else None

    def _fetch_all(self, sql: str, params: tuple) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_from_row(row) for row in rows]

    def _update(
        self, table: str, row_id: int, changes: dict[str, Any], *, touch: bool = True
    ) -> bool:
        values = dict(changes)
        if touch:
            values["updated_at"] = utcnow()
        if not values:
            return self._fetch_one(f"SELECT id FROM {table} WHERE id = ?", (row_id,)) is not None
        assignments = ", ".join(f"{key} = ?" for key in values)
        params = [_to_column(key, value) for key, value in values.items()]
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE {table} SET {assignments} WHERE id = ?",
                    (*params, row_id),
                )
                return cursor.rowcount > 0

    # -- Projects -----------------------------------------------------------

    def create_project(self, data: NewProject) -> Project:
        now = utcnow()
        row_id = self._insert(
            "design_projects", {**data.model_dump(), "created_at": now, "updated_at": now}
        )
        return self.get_project(row_id)

    def get_project(self, project_id: int) -> Project | None:
        row = self._fetch_one("SELECT * FROM design_projects WHERE id = ?", (project_id,))
        return Project.model_validate(row) if row else None

    def update_project(self, project_id: int, changes: dict[str, Any]) -> Project | None:
        if not self._update("design_projects", project_id, changes):
            return None
        return self.get_project(project_id)

    def list_projects(self, user_id: str | None = None) -> list[Project]:
        if user_id is None:
            rows = self._fetch_all("SELECT * FROM design_projects ORDER BY id DESC", ())
        else:
            rows = self._fetch_all(
                "SELECT * FROM design_projects WHERE user_id = ? ORDER BY id DESC",
                (user_id,),
            )
        return [Project.model_validate(row) for row in rows]

    # -- Versions -----------------------------------------------------------

    def create_version(self, data: NewVersion) -> Version:
        row_id = self._insert("design_versions", {**data.model_dump(), "created_at": utcnow()})
        return self.get_version(row_id)

    def get_version(self, version_id: int) -> Version | None:
        row = self._fetch_one("SELECT * FROM design_versions WHERE id = ?", (version_id,))
        return Version.model_validate(row) if row else None

    def list_versions(self, project_id: int) -> list[Version]:
        rows = self._fetch_all(
            "SELECT * FROM design_versions WHERE project_id = ? ORDER BY version_number",
            (project_id,),
        )
        return [Version.model_validate(row) for row in rows]

    def update_version(self, version_id: int, changes: dict[str, Any]) -> Version | None:
        # Versions carry no updated_at column.
        if not self._update("design_versions", version_id, changes, touch=False):
            return None
        return self.get_version(version_id)

    # -- Layers -------------------------------------------------------------

    def create_layer(self, data: NewLayer) -> Layer:
        now = utcnow()
        row_id = self._insert(
            "design_layers", {**data.model_dump(), "created_at": now, "updated_at": now}
        )
        return self.get_layer(row_id)

    def get_layer(self, layer_id: int) -> Layer | None:
        row = self._fetch_one("SELECT * FROM design_layers WHERE id = ?", (layer_id,))
        return Layer.model_validate(row) if row else None

    def list_layers(self, version_id: int) -> list[Layer]:
        rows = self._fetch_all(
            "SELECT * FROM design_layers WHERE version_id = ? ORDER BY z_index, id",
            (version_id,),
        )
        return [Layer.model_validate(row) for row in rows]

    def update_layer(self, layer_id: int, changes: dict[str, Any]) -> Layer | None:
        if not self._update("design_layers", layer_id, changes):
            return None
        return self.get_layer(layer_id)

    def delete_layer(self, layer_id: int) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM design_layers WHERE id = ?", (layer_id,))
                return cursor.rowcount > 0

    # -- Generation requests ------------------------------------------------

    def create_generation_request(self, data: NewGenerationRequest) -> GenerationRequest:
        now = utcnow()
        row_id = self._insert(
            "design_generation_requests",
            {
                **data.model_dump(),
                "request_code": new_request_code(),
                "result_image_urls": [],
                "created_at": now,
                "updated_at": now,
            },
        )
        return self.get_generation_request(row_id)

    def get_generation_request(self, request_id: int) -> GenerationRequest | None:
        row = self._fetch_one(
            "SELECT * FROM design_generation_requests WHERE id = ?", (request_id,)
        )
        return GenerationRequest.model_validate(row) if row else None

    def get_generation_request_by_code(self, code: str) -> GenerationRequest | None:
        row = self._fetch_one(
            "SELECT * FROM design_generation_requests WHERE request_code = ?", (code,)
        )
        return GenerationRequest.model_validate(row) if row else None

    def update_generation_request(
        self, request_id: int, changes: dict[str, Any]
    ) -> GenerationRequest | None:
        if not self._update("design_generation_requests", request_id, changes):
            return None
        return self.get_generation_request(request_id)

    def list_generation_requests(self, project_id: int) -> list[GenerationRequest]:
        rows = self._fetch_all(
            "SELECT * FROM design_generation_requests WHERE project_id = ? ORDER BY id DESC",
            (project_id,),
        )
        return [GenerationRequest.model_validate(row) for row in rows]
