"""Database helpers for the worker."""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from psycopg2 import extras, pool

from extraction_worker.core.config import get_settings
from extraction_worker.core.errors import EntityNotFoundError, StaleVersionError
from extraction_worker.models import EntityRecord, EntityType, OverallStatus, StepState

logger = logging.getLogger(__name__)

_connection_pool: Optional[pool.ThreadedConnectionPool] = None


def init_pool(minconn: int = 1, maxconn: int = 10) -> pool.ThreadedConnectionPool:
    """Initialise and return the shared connection pool.

    Background jobs run on several threads, so the thread-safe pool is used.
    """
    global _connection_pool
    if _connection_pool is None:
        settings = get_settings()
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL is required for database connections")
        _connection_pool = pool.ThreadedConnectionPool(
            minconn,
            maxconn,
            dsn=settings.database_url,
            connect_timeout=10,
        )
        logger.info("Database connection pool initialised")
    return _connection_pool


@contextmanager
def get_connection():
    """Context manager yielding a pooled connection, rolled back on error."""
    pg_pool = init_pool()
    conn = pg_pool.getconn()
    try:
        yield conn
    except Exception:
        conn.rollback()
        raise
    finally:
        pg_pool.putconn(conn)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS directory_entities (
    id UUID PRIMARY KEY,
    entity_type TEXT NOT NULL,
    external_place_id TEXT NOT NULL,
    slug TEXT NOT NULL,
    name TEXT NOT NULL,
    overall_status TEXT NOT NULL DEFAULT 'pending',
    status_reason TEXT,
    progress JSONB NOT NULL DEFAULT '{}'::jsonb,
    fields JSONB NOT NULL DEFAULT '{}'::jsonb,
    verified BOOLEAN NOT NULL DEFAULT FALSE,
    active BOOLEAN NOT NULL DEFAULT FALSE,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (entity_type, external_place_id),
    UNIQUE (entity_type, slug)
);
CREATE INDEX IF NOT EXISTS directory_entities_status_idx
    ON directory_entities (overall_status, updated_at);
CREATE TABLE IF NOT EXISTS directory_categories (
    id TEXT PRIMARY KEY,
    entity_type TEXT NOT NULL,
    name TEXT NOT NULL,
    slug TEXT NOT NULL
);
"""

_SELECT_COLUMNS = """
    id::text AS id, entity_type, external_place_id, slug, name, overall_status, status_reason,
    progress, fields, verified, active, version, created_at, updated_at
"""

_INSERT_ENTITY = """
INSERT INTO directory_entities (
    id,
    entity_type,
    external_place_id,
    slug,
    name,
    overall_status,
    progress,
    fields,
    verified,
    active,
    version,
    created_at,
    updated_at
) VALUES (
    %(id)s,
    %(entity_type)s,
    %(external_place_id)s,
    %(slug)s,
    %(name)s,
    %(overall_status)s,
    %(progress)s,
    %(fields)s,
    FALSE,
    FALSE,
    1,
    NOW(),
    NOW()
)
ON CONFLICT (entity_type, external_place_id) DO NOTHING
RETURNING id;
"""

_MERGE_PROGRESS = """
UPDATE directory_entities SET
    progress = jsonb_set(progress, %(path)s, %(state)s, true),
    version = version + 1,
    updated_at = NOW()
WHERE id = %(id)s
RETURNING version;
"""

_MERGE_FIELDS = """
UPDATE directory_entities SET
    fields = fields || %(patch)s,
    name = COALESCE(%(name)s, name),
    version = version + 1,
    updated_at = NOW()
WHERE id = %(id)s
  AND (%(expected_version)s::integer IS NULL OR version = %(expected_version)s::integer)
RETURNING version;
"""

_CLEAR_FIELDS = """
UPDATE directory_entities SET
    fields = fields - %(names)s::text[],
    version = version + 1,
    updated_at = NOW()
WHERE id = %(id)s
RETURNING version;
"""

_SET_STATUS = """
UPDATE directory_entities SET
    overall_status = %(status)s,
    status_reason = %(reason)s,
    version = version + 1,
    updated_at = NOW()
WHERE id = %(id)s
RETURNING version;
"""

_RESET_FOR_EXTRACTION = """
UPDATE directory_entities SET
    progress = %(progress)s,
    fields = fields - %(names)s::text[],
    overall_status = 'pending',
    status_reason = NULL,
    version = version + 1,
    updated_at = NOW()
WHERE id = %(id)s
RETURNING version;
"""


def _row_to_record(row: Mapping[str, Any]) -> EntityRecord:
    return EntityRecord(
        id=str(row["id"]),
        entity_type=EntityType(row["entity_type"]),
        external_place_id=row["external_place_id"],
        slug=row["slug"],
        name=row["name"],
        overall_status=OverallStatus(row["overall_status"]),
        status_reason=row.get("status_reason"),
        progress=dict(row.get("progress") or {}),
        fields=dict(row.get("fields") or {}),
        verified=bool(row.get("verified")),
        active=bool(row.get("active")),
        version=int(row.get("version") or 0),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


class PostgresEntityStore:
    """Entity store backed by the ``directory_entities`` table.

    Every write bumps ``version``; ``fields`` and ``progress`` are merged with
    JSONB operators so concurrent writers touching different keys never
    overwrite each other.
    """

    def __init__(self, connection_factory=get_connection) -> None:
        self._connection = connection_factory

    def ensure_schema(self) -> None:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
            conn.commit()

    def _fetch_all(self, sql: str, params: Mapping[str, Any]) -> List[Dict[str, Any]]:
        with self._connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            conn.commit()
        return [dict(row) for row in rows]

    def _update_returning_version(self, sql: str, params: Mapping[str, Any]) -> Optional[int]:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            conn.commit()
        return int(row[0]) if row else None

    def _require(self, entity_id: str, version: Optional[int]) -> int:
        if version is None:
            raise EntityNotFoundError(entity_id)
        return version

    def get_entity(self, entity_id: str) -> EntityRecord:
        rows = self._fetch_all(
            f"SELECT {_SELECT_COLUMNS} FROM directory_entities WHERE id = %(id)s",
            {"id": entity_id},
        )
        if not rows:
            raise EntityNotFoundError(entity_id)
        return _row_to_record(rows[0])

    def find_by_external_id(self, entity_type: EntityType, external_place_id: str) -> Optional[EntityRecord]:
        rows = self._fetch_all(
            f"SELECT {_SELECT_COLUMNS} FROM directory_entities "
            "WHERE entity_type = %(entity_type)s AND external_place_id = %(external_place_id)s LIMIT 1",
            {"entity_type": EntityType(entity_type).value, "external_place_id": external_place_id},
        )
        return _row_to_record(rows[0]) if rows else None

    def find_similar(self, entity_type: EntityType, locality: str, limit: int = 200) -> List[EntityRecord]:
        pattern = f"%{locality.strip()}%"
        rows = self._fetch_all(
            f"SELECT {_SELECT_COLUMNS} FROM directory_entities "
            "WHERE entity_type = %(entity_type)s "
            "AND (fields->>'area' ILIKE %(pattern)s OR fields->>'city' ILIKE %(pattern)s "
            "OR fields->>'address' ILIKE %(pattern)s) "
            "ORDER BY updated_at DESC LIMIT %(limit)s",
            {"entity_type": EntityType(entity_type).value, "pattern": pattern, "limit": limit},
        )
        return [_row_to_record(row) for row in rows]

    def slug_exists(self, entity_type: EntityType, slug: str) -> bool:
        rows = self._fetch_all(
            "SELECT 1 AS present FROM directory_entities WHERE entity_type = %(entity_type)s AND slug = %(slug)s LIMIT 1",
            {"entity_type": EntityType(entity_type).value, "slug": slug},
        )
        return bool(rows)

    def create_entity(self, record: EntityRecord) -> bool:
        """Insert a new record; returns False if one already exists for the external id."""
        params = {
            "id": record.id,
            "entity_type": record.entity_type.value,
            "external_place_id": record.external_place_id,
            "slug": record.slug,
            "name": record.name,
            "overall_status": record.overall_status.value,
            "progress": extras.Json(record.progress or {}),
            "fields": extras.Json(record.fields or {}),
        }
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_INSERT_ENTITY, params)
                row = cur.fetchone()
            conn.commit()
        created = row is not None
        logger.debug("create_entity %s (%s) created=%s", record.id, record.external_place_id, created)
        return created

    def merge_progress(self, entity_id: str, step: str, state: StepState) -> int:
        version = self._update_returning_version(
            _MERGE_PROGRESS,
            {"id": entity_id, "path": [step], "state": extras.Json(state.to_dict())},
        )
        return self._require(entity_id, version)

    def merge_fields(self, entity_id: str, update: Mapping[str, Any], expected_version: Optional[int] = None) -> int:
        params = {
            "id": entity_id,
            "patch": extras.Json(dict(update)),
            "name": update.get("name") or None,
            "expected_version": expected_version,
        }
        version = self._update_returning_version(_MERGE_FIELDS, params)
        if version is None:
            current = self.get_entity(entity_id)
            raise StaleVersionError(entity_id, expected_version, current.version)
        return version

    def clear_fields(self, entity_id: str, names: Iterable[str]) -> int:
        version = self._update_returning_version(_CLEAR_FIELDS, {"id": entity_id, "names": list(names)})
        return self._require(entity_id, version)

    def set_overall_status(self, entity_id: str, status: OverallStatus, reason: Optional[str] = None) -> int:
        version = self._update_returning_version(
            _SET_STATUS,
            {"id": entity_id, "status": OverallStatus(status).value, "reason": reason},
        )
        return self._require(entity_id, version)

    def reset_for_extraction(self, entity_id: str, progress: Mapping[str, Any], clear_fields: Iterable[str] = ()) -> int:
        version = self._update_returning_version(
            _RESET_FOR_EXTRACTION,
            {"id": entity_id, "progress": extras.Json(dict(progress)), "names": list(clear_fields)},
        )
        return self._require(entity_id, version)

    def find_stale_processing(self, older_than: datetime) -> List[EntityRecord]:
        rows = self._fetch_all(
            f"SELECT {_SELECT_COLUMNS} FROM directory_entities "
            "WHERE overall_status = 'processing' AND updated_at < %(older_than)s",
            {"older_than": older_than},
        )
        return [_row_to_record(row) for row in rows]

    def list_categories(self, entity_type: EntityType) -> List[Dict[str, Any]]:
        return self._fetch_all(
            "SELECT id, name, slug FROM directory_categories WHERE entity_type = %(entity_type)s ORDER BY name",
            {"entity_type": EntityType(entity_type).value},
        )
