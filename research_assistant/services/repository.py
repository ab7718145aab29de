"""Research session persistence.

Two implementations share one merge routine: an in-process store used in demo
mode and tests, and a PostgreSQL store backed by asyncpg. Updates are
read-modify-write against the latest stored document inside a per-session
critical section, so a report patch never clobbers provider state written
concurrently, and an optional precondition can veto the write atomically.
"""
from __future__ import annotations

import asyncio
import base64
import json
from datetime import datetime, timezone
from typing import Any, Callable, Protocol
from uuid import uuid4

import asyncpg

from research_assistant.models.research import (
    ProviderKind,
    ProviderRunState,
    ReportState,
    ResearchSession,
    ResearchStatus,
    SessionPatch,
)
from research_assistant.research.errors import (
    InvalidCursorError,
    InvalidInputError,
    NotFoundError,
)
from research_assistant.research.state_machine import assert_transition

Precondition = Callable[[ResearchSession], None]

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 50


class ResearchRepository(Protocol):
    async def create(
        self,
        owner_uid: str,
        title: str,
        *,
        status: ResearchStatus = ResearchStatus.AWAITING_REFINEMENTS,
    ) -> ResearchSession: ...

    async def get_by_id(self, session_id: str, *, owner_uid: str) -> ResearchSession | None: ...

    async def update(
        self,
        session_id: str,
        patch: SessionPatch,
        *,
        owner_uid: str,
        precondition: Precondition | None = None,
    ) -> ResearchSession: ...

    async def list_by_owner(
        self,
        owner_uid: str,
        *,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> tuple[list[ResearchSession], str | None]: ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def merge_session(
    current: ResearchSession, patch: SessionPatch, *, now: datetime
) -> ResearchSession:
    """Apply a partial update, merging only the keys the patch explicitly sets."""
    fields = patch.model_fields_set
    update: dict[str, Any] = {"updated_at": now}

    if "status" in fields and patch.status is not None and patch.status != current.status:
        assert_transition(current.status, patch.status)
        update["status"] = patch.status

    if "title" in fields and patch.title and patch.title.strip():
        update["title"] = patch.title.strip()

    if patch.providers:
        providers = dict(current.providers)
        for kind, provider_patch in patch.providers.items():
            kind = ProviderKind(kind)
            base = providers.get(kind, ProviderRunState()).model_dump()
            base.update(provider_patch.model_dump(include=provider_patch.model_fields_set))
            providers[kind] = ProviderRunState.model_validate(base)
        update["providers"] = providers

    if "report" in fields and patch.report is not None:
        base = current.report.model_dump()
        base.update(patch.report.model_dump(include=patch.report.model_fields_set))
        update["report"] = ReportState.model_validate(base)

    return current.model_copy(update=update)


def _sanitize_limit(limit: int | None) -> int:
    if not limit:
        return DEFAULT_PAGE_SIZE
    return min(max(int(limit), 1), MAX_PAGE_SIZE)


def encode_cursor(session: ResearchSession) -> str:
    payload = json.dumps({"created_at": session.created_at.isoformat(), "id": session.id})
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> tuple[datetime, str]:
    try:
        parsed = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8"))
        return datetime.fromisoformat(parsed["created_at"]), str(parsed["id"])
    except (ValueError, KeyError, TypeError) as exc:
        raise InvalidCursorError() from exc


def _new_session(owner_uid: str, title: str, status: ResearchStatus) -> ResearchSession:
    clean_title = title.strip()
    if not clean_title:
        raise InvalidInputError("Research title is required")
    now = utcnow()
    return ResearchSession(
        id=uuid4().hex,
        owner_uid=owner_uid,
        title=clean_title,
        status=status,
        created_at=now,
        updated_at=now,
    )


class InMemoryResearchRepository:
    """Process-local repository. Each session has its own asyncio lock."""

    def __init__(self) -> None:
        self._items: dict[str, ResearchSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def create(
        self,
        owner_uid: str,
        title: str,
        *,
        status: ResearchStatus = ResearchStatus.AWAITING_REFINEMENTS,
    ) -> ResearchSession:
        session = _new_session(owner_uid, title, status)
        self._items[session.id] = session
        return session.model_copy(deep=True)

    async def get_by_id(self, session_id: str, *, owner_uid: str) -> ResearchSession | None:
        session = self._items.get(session_id)
        if session is None or session.owner_uid != owner_uid:
            return None
        return session.model_copy(deep=True)

    async def update(
        self,
        session_id: str,
        patch: SessionPatch,
        *,
        owner_uid: str,
        precondition: Precondition | None = None,
    ) -> ResearchSession:
        async with self._lock(session_id):
            current = self._items.get(session_id)
            if current is None or current.owner_uid != owner_uid:
                raise NotFoundError(session_id)
            if precondition is not None:
                precondition(current.model_copy(deep=True))
            updated = merge_session(current, patch, now=utcnow())
            self._items[session_id] = updated
            return updated.model_copy(deep=True)

    async def list_by_owner(
        self,
        owner_uid: str,
        *,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> tuple[list[ResearchSession], str | None]:
        page_size = _sanitize_limit(limit)
        owned = sorted(
            (s for s in self._items.values() if s.owner_uid == owner_uid),
            key=lambda s: (s.created_at, s.id),
            reverse=True,
        )
        if cursor:
            after = decode_cursor(cursor)
            owned = [s for s in owned if (s.created_at, s.id) < after]

        page = owned[:page_size]
        next_cursor = encode_cursor(page[-1]) if len(owned) > page_size else None
        return [s.model_copy(deep=True) for s in page], next_cursor


CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS research_sessions (
    id TEXT PRIMARY KEY,
    owner_uid TEXT NOT NULL,
    title TEXT NOT NULL,
    status TEXT NOT NULL,
    providers JSONB NOT NULL DEFAULT '{}'::jsonb,
    report JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS research_sessions_owner_created_idx
    ON research_sessions (owner_uid, created_at DESC, id DESC);
"""

SELECT_COLUMNS = "id, owner_uid, title, status, providers, report, created_at, updated_at"


def _coerce_json_object(value: Any) -> dict[str, Any]:
    """asyncpg hands JSONB back as text unless a codec is registered."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _row_to_session(row: Any) -> ResearchSession:
    return ResearchSession.model_validate(
        {
            "id": row["id"],
            "owner_uid": row["owner_uid"],
            "title": row["title"],
            "status": row["status"],
            "providers": _coerce_json_object(row["providers"]),
            "report": _coerce_json_object(row["report"]),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }
    )


def _dump_providers(session: ResearchSession) -> str:
    return json.dumps(
        {kind.value: state.model_dump(mode="json") for kind, state in session.providers.items()}
    )


class PostgresResearchRepository:
    """PostgreSQL repository using an asyncpg pool and row locks for updates."""

    def __init__(self, database_url: str, *, min_size: int = 1, max_size: int = 10):
        if not database_url:
            raise RuntimeError("Database not configured. Set DATABASE_URL in .env")
        self._database_url = database_url
        self._min_size = min_size
        self._max_size = max_size
        self._pool: asyncpg.Pool | None = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self._database_url,
                min_size=self._min_size,
                max_size=self._max_size,
            )
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(CREATE_TABLE_SQL)

    async def create(
        self,
        owner_uid: str,
        title: str,
        *,
        status: ResearchStatus = ResearchStatus.AWAITING_REFINEMENTS,
    ) -> ResearchSession:
        session = _new_session(owner_uid, title, status)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO research_sessions
                    (id, owner_uid, title, status, providers, report, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7, $8)
                """,
                session.id,
                session.owner_uid,
                session.title,
                session.status.value,
                _dump_providers(session),
                json.dumps(session.report.model_dump(mode="json")),
                session.created_at,
                session.updated_at,
            )
        return session

    async def get_by_id(self, session_id: str, *, owner_uid: str) -> ResearchSession | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {SELECT_COLUMNS} FROM research_sessions WHERE id = $1 AND owner_uid = $2",
                session_id,
                owner_uid,
            )
        return _row_to_session(row) if row else None

    async def update(
        self,
        session_id: str,
        patch: SessionPatch,
        *,
        owner_uid: str,
        precondition: Precondition | None = None,
    ) -> ResearchSession:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    SELECT {SELECT_COLUMNS} FROM research_sessions
                    WHERE id = $1 AND owner_uid = $2
                    FOR UPDATE
                    """,
                    session_id,
                    owner_uid,
                )
                if row is None:
                    raise NotFoundError(session_id)

                current = _row_to_session(row)
                if precondition is not None:
                    precondition(current)
                updated = merge_session(current, patch, now=utcnow())

                await conn.execute(
                    """
                    UPDATE research_sessions
                    SET title = $2, status = $3, providers = $4::jsonb,
                        report = $5::jsonb, updated_at = $6
                    WHERE id = $1
                    """,
                    session_id,
                    updated.title,
                    updated.status.value,
                    _dump_providers(updated),
                    json.dumps(updated.report.model_dump(mode="json")),
                    updated.updated_at,
                )
        return updated

    async def list_by_owner(
        self,
        owner_uid: str,
        *,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> tuple[list[ResearchSession], str | None]:
        page_size = _sanitize_limit(limit)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            if cursor:
                created_at, last_id = decode_cursor(cursor)
                rows = await conn.fetch(
                    f"""
                    SELECT {SELECT_COLUMNS} FROM research_sessions
                    WHERE owner_uid = $1 AND (created_at, id) < ($2, $3)
                    ORDER BY created_at DESC, id DESC
                    LIMIT $4
                    """,
                    owner_uid,
                    created_at,
                    last_id,
                    page_size + 1,
                )
            else:
                rows = await conn.fetch(
                    f"""
                    SELECT {SELECT_COLUMNS} FROM research_sessions
                    WHERE owner_uid = $1
                    ORDER BY created_at DESC, id DESC
                    LIMIT $2
                    """,
                    owner_uid,
                    page_size + 1,
                )

        items = [_row_to_session(r) for r in rows]
        next_cursor = None
        if len(items) > page_size:
            items = items[:page_size]
            next_cursor = encode_cursor(items[-1])
        return items, next_cursor
