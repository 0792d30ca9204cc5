"""Persistence gateway for research sessions.

Every mutation after creation is a partial merge. `update_if` applies the merge
only when the stored record still matches the expected field values, which is
how status transitions stay compare-and-swap safe across processes.
"""
from __future__ import annotations

import asyncio
import copy
import json
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, Protocol

from pydantic import BaseModel

from deepresearch.config import Settings
from deepresearch.errors import SessionNotFoundError, StoreError
from deepresearch.models.session import ResearchSession, utc_now
from deepresearch.services.logger import log_db_operation

SESSION_COLUMNS = frozenset(ResearchSession.model_fields)


class SessionStore(Protocol):
    async def get(self, session_id: str) -> Optional[ResearchSession]: ...
    async def create(self, session: ResearchSession) -> ResearchSession: ...
    async def update(self, session_id: str, fields: Mapping[str, Any]) -> ResearchSession: ...
    async def update_if(
        self,
        session_id: str,
        fields: Mapping[str, Any],
        expected: Mapping[str, Any],
    ) -> Optional[ResearchSession]: ...
    async def list_for_user(self, user_id: str, limit: int = 50) -> list[ResearchSession]: ...
    async def aclose(self) -> None: ...


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseModel):
        return value.model_dump(mode="python")
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def _jsonable(value: Any) -> Any:
    value = _plain(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def prepare_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Validate column names and stamp `updated_at` on a partial update."""
    unknown = set(fields) - SESSION_COLUMNS
    if unknown:
        raise StoreError(f"Unknown session fields: {sorted(unknown)}")
    if "id" in fields:
        raise StoreError("Session id is immutable")
    prepared = {k: _plain(v) for k, v in fields.items()}
    prepared.setdefault("updated_at", utc_now())
    return prepared


def _matches(record: Mapping[str, Any], expected: Mapping[str, Any]) -> bool:
    for key, value in expected.items():
        stored = record.get(key)
        if value is None:
            if stored is not None:
                return False
        elif stored != _plain(value):
            return False
    return True


class InMemorySessionStore:
    """Process-local store for development, the CLI and tests."""

    table = "memory:research_sessions"

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def get(self, session_id: str) -> Optional[ResearchSession]:
        async with self._lock:
            record = self._records.get(session_id)
            if record is None:
                return None
            return ResearchSession.model_validate(copy.deepcopy(record))

    async def create(self, session: ResearchSession) -> ResearchSession:
        async with self._lock:
            if session.id in self._records:
                raise StoreError(f"Session already exists: {session.id}")
            self._records[session.id] = session.to_record()
        log_db_operation("insert", self.table, "success", details=session.id)
        return session

    async def update(self, session_id: str, fields: Mapping[str, Any]) -> ResearchSession:
        prepared = prepare_fields(fields)
        async with self._lock:
            record = self._records.get(session_id)
            if record is None:
                raise SessionNotFoundError(session_id)
            record.update(copy.deepcopy(prepared))
            return ResearchSession.model_validate(copy.deepcopy(record))

    async def update_if(
        self,
        session_id: str,
        fields: Mapping[str, Any],
        expected: Mapping[str, Any],
    ) -> Optional[ResearchSession]:
        prepared = prepare_fields(fields)
        async with self._lock:
            record = self._records.get(session_id)
            if record is None or not _matches(record, expected):
                return None
            record.update(copy.deepcopy(prepared))
            return ResearchSession.model_validate(copy.deepcopy(record))

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[ResearchSession]:
        async with self._lock:
            rows = [copy.deepcopy(r) for r in self._records.values() if r["user_id"] == user_id]
        sessions = [ResearchSession.model_validate(r) for r in rows]
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return sessions[:limit]

    async def aclose(self) -> None:
        return None


class SupabaseSessionStore:
    """Supabase (PostgREST) table store.

    Conditional updates push the expected values into the UPDATE filter, so
    the check and the write happen in one statement on the server.
    """

    def __init__(self, client: Any, table: str = "research_sessions"):
        self.client = client
        self.table = table

    def _query(self) -> Any:
        return self.client.table(self.table)

    async def _execute(self, query: Any, operation: str, details: str | None = None) -> Any:
        try:
            result = await asyncio.to_thread(query.execute)
        except Exception as e:
            log_db_operation(operation, self.table, "error", details=details, error=str(e))
            raise StoreError(f"{operation} on {self.table} failed: {e}") from e
        log_db_operation(operation, self.table, "success", details=details)
        return result

    async def get(self, session_id: str) -> Optional[ResearchSession]:
        result = await self._execute(
            self._query().select("*").eq("id", session_id).limit(1), "select", session_id
        )
        rows = result.data or []
        return ResearchSession.model_validate(rows[0]) if rows else None

    async def create(self, session: ResearchSession) -> ResearchSession:
        await self._execute(
            self._query().insert(_jsonable(session.to_record())), "insert", session.id
        )
        return session

    async def update(self, session_id: str, fields: Mapping[str, Any]) -> ResearchSession:
        payload = _jsonable(prepare_fields(fields))
        result = await self._execute(
            self._query().update(payload).eq("id", session_id), "update", session_id
        )
        rows = result.data or []
        if not rows:
            raise SessionNotFoundError(session_id)
        return ResearchSession.model_validate(rows[0])

    async def update_if(
        self,
        session_id: str,
        fields: Mapping[str, Any],
        expected: Mapping[str, Any],
    ) -> Optional[ResearchSession]:
        payload = _jsonable(prepare_fields(fields))
        query = self._query().update(payload).eq("id", session_id)
        for key, value in expected.items():
            if value is None:
                query = query.is_(key, "null")
            else:
                query = query.eq(key, _jsonable(value))
        result = await self._execute(query, "conditional_update", session_id)
        rows = result.data or []
        return ResearchSession.model_validate(rows[0]) if rows else None

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[ResearchSession]:
        result = await self._execute(
            self._query()
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(limit),
            "select",
            user_id,
        )
        return [ResearchSession.model_validate(r) for r in result.data or []]

    async def aclose(self) -> None:
        return None


def _coerce_json_list(value: Any) -> list[Any]:
    """Normalize JSON-string columns into lists."""
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


def _db_value(key: str, value: Any) -> Any:
    if key == "refinement_questions":
        return json.dumps(_jsonable(value or []))
    return value


def build_update_sql(
    table: str,
    session_id: str,
    fields: Mapping[str, Any],
    expected: Mapping[str, Any] | None = None,
) -> tuple[str, list[Any]]:
    """Build an `UPDATE ... RETURNING *` statement with optional conditions."""
    prepared = prepare_fields(fields)
    args: list[Any] = []
    assignments: list[str] = []
    for key, value in prepared.items():
        args.append(_db_value(key, value))
        assignments.append(f"{key} = ${len(args)}")

    args.append(session_id)
    conditions = [f"id = ${len(args)}"]
    for key, value in (expected or {}).items():
        if key not in SESSION_COLUMNS:
            raise StoreError(f"Unknown session field in condition: {key}")
        if value is None:
            conditions.append(f"{key} IS NULL")
        else:
            args.append(_db_value(key, _plain(value)))
            conditions.append(f"{key} = ${len(args)}")

    sql = (
        f"UPDATE {table} SET {', '.join(assignments)} "
        f"WHERE {' AND '.join(conditions)} RETURNING *"
    )
    return sql, args


class PostgresSessionStore:
    """PostgreSQL store using an asyncpg pool. Schema: sql/research_sessions.sql."""

    def __init__(self, dsn: str, table: str = "research_sessions", *, pool: Any = None):
        self.dsn = dsn
        self.table = table
        self._pool = pool

    async def _get_pool(self) -> Any:
        if self._pool is None:
            import asyncpg

            if not self.dsn:
                raise StoreError("Database not configured. Set DATABASE_URL in .env")
            self._pool = await asyncpg.create_pool(self.dsn, min_size=1, max_size=10)
        return self._pool

    async def aclose(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    def _to_session(self, row: Any) -> ResearchSession:
        record = dict(row)
        record["refinement_questions"] = _coerce_json_list(record.get("refinement_questions"))
        return ResearchSession.model_validate(record)

    async def _fetch(self, operation: str, sql: str, *args: Any, many: bool = False) -> Any:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                if many:
                    result = await conn.fetch(sql, *args)
                else:
                    result = await conn.fetchrow(sql, *args)
        except Exception as e:
            log_db_operation(operation, self.table, "error", error=str(e))
            raise StoreError(f"{operation} on {self.table} failed: {e}") from e
        log_db_operation(operation, self.table, "success")
        return result

    async def get(self, session_id: str) -> Optional[ResearchSession]:
        row = await self._fetch("select", f"SELECT * FROM {self.table} WHERE id = $1", session_id)
        return self._to_session(row) if row else None

    async def create(self, session: ResearchSession) -> ResearchSession:
        record = session.to_record()
        columns = list(record)
        placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
        await self._fetch(
            "insert",
            f"INSERT INTO {self.table} ({', '.join(columns)}) VALUES ({placeholders}) RETURNING id",
            *[_db_value(c, record[c]) for c in columns],
        )
        return session

    async def update(self, session_id: str, fields: Mapping[str, Any]) -> ResearchSession:
        sql, args = build_update_sql(self.table, session_id, fields)
        row = await self._fetch("update", sql, *args)
        if not row:
            raise SessionNotFoundError(session_id)
        return self._to_session(row)

    async def update_if(
        self,
        session_id: str,
        fields: Mapping[str, Any],
        expected: Mapping[str, Any],
    ) -> Optional[ResearchSession]:
        sql, args = build_update_sql(self.table, session_id, fields, expected)
        row = await self._fetch("conditional_update", sql, *args)
        return self._to_session(row) if row else None

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[ResearchSession]:
        rows = await self._fetch(
            "select",
            f"SELECT * FROM {self.table} WHERE user_id = $1 ORDER BY created_at DESC LIMIT $2",
            user_id,
            limit,
            many=True,
        )
        return [self._to_session(r) for r in rows]


def build_session_store(config: Settings) -> SessionStore:
    backend = config.session_store_backend.lower().strip()
    if backend == "memory":
        return InMemorySessionStore()
    if backend == "supabase":
        from supabase import create_client

        if not config.supabase_url or not config.supabase_anon_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_ANON_KEY must be configured")
        return SupabaseSessionStore(
            create_client(config.supabase_url, config.supabase_anon_key),
            config.sessions_table,
        )
    if backend == "postgres":
        return PostgresSessionStore(config.database_url, config.sessions_table)
    raise ValueError(f"Unsupported SESSION_STORE_BACKEND: {config.session_store_backend}")
