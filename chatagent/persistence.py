"""Async SQLite persistence for sessions, messages, completion records and shared messages."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

import aiosqlite

from .errors import (
    ImmutableFieldError,
    MessageNotFound,
    SessionNotFound,
    SharedMessageNotFound,
)
from .models import (
    TERMINAL_ANNOTATIONS,
    Annotation,
    CompletionKind,
    CompletionRecord,
    Message,
    MessageRole,
    Session,
    SessionCategory,
    SharedMessage,
    UNMIGRATED_USER_ID,
    UserIdentity,
)


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat(timespec="microseconds")


def _row_to_session(row: aiosqlite.Row) -> Session:
    return Session(
        id=row["id"],
        title=row["title"],
        category=SessionCategory(row["category"]),
        is_active=bool(row["is_active"]),
        team_id=row["team_id"],
        created_by_user_id=row["created_by_user_id"],
        doc_id=row["doc_id"],
        metadata=json.loads(row["metadata"] or "{}"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_message(row: aiosqlite.Row) -> Message:
    return Message(
        id=row["id"],
        session_id=row["session_id"],
        role=MessageRole(row["role"]),
        content=row["content"],
        author=UserIdentity.from_columns(row["user_id"], row["user_id_str"]),
        verdict=row["verdict"],
        annotations=tuple(json.loads(row["annotations"] or "[]")),
        created_at=row["created_at"],
    )


def _row_to_completion(row: aiosqlite.Row) -> CompletionRecord:
    return CompletionRecord(
        id=row["id"],
        session_id=row["session_id"],
        message_id=row["message_id"],
        kind=CompletionKind(row["kind"]),
        model=row["model"],
        prompt_digest=row["prompt_digest"],
        prompt_tokens=row["prompt_tokens"],
        completion_tokens=row["completion_tokens"],
        latency_ms=row["latency_ms"],
        outcome=row["outcome"],
        attempt=row["attempt"],
        created_at=row["created_at"],
    )


def _row_to_shared(row: aiosqlite.Row) -> SharedMessage:
    return SharedMessage(
        share_id=row["share_id"],
        message_id=row["message_id"],
        session_id=row["session_id"],
        role=MessageRole(row["role"]),
        content=row["content"],
        sharer=UserIdentity.from_columns(row["user_id"], row["user_id_str"]),
        created_at=row["created_at"],
    )


class SessionStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def init(self) -> None:
        async with self._init_lock:
            if self._initialized:
                return

            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(self.db_path)
            try:
                await conn.execute("PRAGMA journal_mode=WAL;")
                await conn.execute("PRAGMA synchronous=NORMAL;")
                await conn.execute("PRAGMA foreign_keys=ON;")

                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS sessions (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        team_id INTEGER,
                        title TEXT NOT NULL,
                        is_active INTEGER NOT NULL DEFAULT 1,
                        created_by_user_id INTEGER,
                        doc_id INTEGER,
                        category TEXT NOT NULL DEFAULT 'chat' CHECK (category IN ('chat', 'search')),
                        metadata TEXT NOT NULL DEFAULT '{}',
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )

                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS messages (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        session_id INTEGER NOT NULL,
                        role TEXT NOT NULL,
                        user_id_str TEXT DEFAULT '',
                        user_id INTEGER,
                        content TEXT NOT NULL,
                        verdict TEXT,
                        annotations TEXT NOT NULL DEFAULT '[]',
                        created_at TEXT NOT NULL,
                        FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
                    )
                    """
                )

                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS completion_records (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        session_id INTEGER NOT NULL,
                        message_id INTEGER,
                        kind TEXT NOT NULL,
                        model TEXT NOT NULL,
                        prompt_digest TEXT NOT NULL,
                        prompt_tokens INTEGER NOT NULL,
                        completion_tokens INTEGER NOT NULL,
                        latency_ms REAL NOT NULL,
                        outcome TEXT NOT NULL,
                        attempt INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE,
                        FOREIGN KEY(message_id) REFERENCES messages(id) ON DELETE SET NULL
                    )
                    """
                )

                # Shares outlive their source message; only revocation removes them.
                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS shared_messages (
                        share_id TEXT PRIMARY KEY,
                        message_id INTEGER NOT NULL,
                        session_id INTEGER NOT NULL,
                        role TEXT NOT NULL,
                        content TEXT NOT NULL,
                        user_id_str TEXT DEFAULT '',
                        user_id INTEGER NOT NULL DEFAULT -1,
                        created_at TEXT NOT NULL
                    )
                    """
                )

                await conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_active ON sessions(is_active)")
                await conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_created_by ON sessions(created_by_user_id)")
                await conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_team ON sessions(team_id)")
                await conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_category ON sessions(category)")
                await conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_doc_team_id ON sessions(doc_id, team_id, id)")
                await conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, id)")
                await conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_user_id ON messages(user_id)")
                await conn.execute("CREATE INDEX IF NOT EXISTS idx_completions_session ON completion_records(session_id, id)")
                await conn.execute("CREATE INDEX IF NOT EXISTS idx_completions_message ON completion_records(message_id)")
                await conn.execute("CREATE INDEX IF NOT EXISTS idx_shared_user_id ON shared_messages(user_id)")

                await conn.commit()
            finally:
                await conn.close()
            self._initialized = True

    async def _conn(self) -> aiosqlite.Connection:
        await self.init()
        conn = await aiosqlite.connect(self.db_path)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys=ON;")
        return conn

    # Sessions
    async def create_session(
        self,
        *,
        title: str,
        category: SessionCategory = SessionCategory.CHAT,
        team_id: Optional[int] = None,
        created_by_user_id: Optional[int] = None,
        doc_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Session:
        now = _utc_now()
        category = SessionCategory(category)
        conn = await self._conn()
        try:
            cur = await conn.execute(
                """
                INSERT INTO sessions (team_id, title, is_active, created_by_user_id, doc_id, category, metadata, created_at, updated_at)
                VALUES (?, ?, 1, ?, ?, ?, ?, ?, ?)
                """,
                (
                    team_id,
                    title,
                    created_by_user_id,
                    doc_id,
                    category.value,
                    json.dumps(metadata or {}),
                    now,
                    now,
                ),
            )
            session_id = cur.lastrowid
            await conn.commit()
        finally:
            await conn.close()
        return await self.get_session(session_id)

    async def get_session(self, session_id: int) -> Session:
        conn = await self._conn()
        try:
            cur = await conn.execute("SELECT * FROM sessions WHERE id=?", (session_id,))
            row = await cur.fetchone()
            await cur.close()
        finally:
            await conn.close()
        if not row:
            raise SessionNotFound(session_id)
        return _row_to_session(row)

    async def list_sessions(
        self,
        *,
        is_active: Optional[bool] = None,
        created_by_user_id: Optional[int] = None,
        team_id: Optional[int] = None,
        category: Optional[SessionCategory] = None,
        doc_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[Session]:
        clauses: List[str] = []
        params: List[Any] = []
        if is_active is not None:
            clauses.append("is_active=?")
            params.append(1 if is_active else 0)
        if created_by_user_id is not None:
            clauses.append("created_by_user_id=?")
            params.append(created_by_user_id)
        if team_id is not None:
            clauses.append("team_id=?")
            params.append(team_id)
        if category is not None:
            clauses.append("category=?")
            params.append(SessionCategory(category).value)
        if doc_id is not None:
            clauses.append("doc_id=?")
            params.append(doc_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = await self._conn()
        try:
            cur = await conn.execute(
                f"SELECT * FROM sessions {where} ORDER BY updated_at DESC, id DESC LIMIT ?",
                (*params, limit),
            )
            rows = await cur.fetchall()
            await cur.close()
            return [_row_to_session(r) for r in rows]
        finally:
            await conn.close()

    async def update_session(
        self,
        session_id: int,
        *,
        title: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        category: Optional[SessionCategory] = None,
    ) -> Session:
        current = await self.get_session(session_id)
        if category is not None and SessionCategory(category) is not current.category:
            raise ImmutableFieldError(f"Session {session_id} category cannot change after creation")
        conn = await self._conn()
        try:
            await conn.execute(
                "UPDATE sessions SET title=?, metadata=?, updated_at=? WHERE id=?",
                (
                    current.title if title is None else title,
                    json.dumps(current.metadata if metadata is None else metadata),
                    _utc_now(),
                    session_id,
                ),
            )
            await conn.commit()
        finally:
            await conn.close()
        return await self.get_session(session_id)

    async def deactivate_session(self, session_id: int) -> Session:
        await self.get_session(session_id)
        conn = await self._conn()
        try:
            await conn.execute(
                "UPDATE sessions SET is_active=0, updated_at=? WHERE id=?",
                (_utc_now(), session_id),
            )
            await conn.commit()
        finally:
            await conn.close()
        return await self.get_session(session_id)

    async def delete_session(self, session_id: int) -> None:
        conn = await self._conn()
        try:
            cur = await conn.execute("DELETE FROM sessions WHERE id=?", (session_id,))
            deleted = cur.rowcount
            await conn.commit()
        finally:
            await conn.close()
        if not deleted:
            raise SessionNotFound(session_id)

    async def update_session_timestamp(self, session_id: int) -> None:
        conn = await self._conn()
        try:
            cur = await conn.execute(
                "UPDATE sessions SET updated_at=? WHERE id=?",
                (_utc_now(), session_id),
            )
            updated = cur.rowcount
            await conn.commit()
        finally:
            await conn.close()
        if not updated:
            raise SessionNotFound(session_id)

    # Messages
    async def append_message(self, session_id: int, message: Message) -> int:
        ids = await self.append_turn(session_id, [message])
        return ids[0]

    async def append_turn(self, session_id: int, messages: Sequence[Message]) -> List[int]:
        """Append messages in order within one transaction and bump the session timestamp."""
        now = _utc_now()
        ids: List[int] = []
        conn = await self._conn()
        try:
            cur = await conn.execute("SELECT 1 FROM sessions WHERE id=?", (session_id,))
            exists = await cur.fetchone()
            await cur.close()
            if not exists:
                raise SessionNotFound(session_id)
            for message in messages:
                user_id, user_id_str = message.author.to_columns()
                cur = await conn.execute(
                    """
                    INSERT INTO messages (session_id, role, user_id_str, user_id, content, verdict, annotations, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session_id,
                        MessageRole(message.role).value,
                        user_id_str or "",
                        user_id,
                        message.content,
                        message.verdict,
                        json.dumps(list(message.annotations)),
                        now,
                    ),
                )
                ids.append(cur.lastrowid)
            await conn.execute("UPDATE sessions SET updated_at=? WHERE id=?", (now, session_id))
            await conn.commit()
        except BaseException:
            await conn.rollback()
            raise
        finally:
            await conn.close()
        return ids

    async def fetch_messages(self, session_id: int, *, limit: Optional[int] = None) -> List[Message]:
        conn = await self._conn()
        try:
            if limit is None:
                cur = await conn.execute(
                    "SELECT * FROM messages WHERE session_id=? ORDER BY id ASC",
                    (session_id,),
                )
            else:
                cur = await conn.execute(
                    """
                    SELECT * FROM (
                        SELECT * FROM messages WHERE session_id=? ORDER BY id DESC LIMIT ?
                    ) ORDER BY id ASC
                    """,
                    (session_id, limit),
                )
            rows = await cur.fetchall()
            await cur.close()
            return [_row_to_message(r) for r in rows]
        finally:
            await conn.close()

    async def get_message(self, message_id: int) -> Message:
        conn = await self._conn()
        try:
            cur = await conn.execute("SELECT * FROM messages WHERE id=?", (message_id,))
            row = await cur.fetchone()
            await cur.close()
        finally:
            await conn.close()
        if not row:
            raise MessageNotFound(message_id)
        return _row_to_message(row)

    async def annotate_message(self, message_id: int, annotation: Annotation) -> Message:
        """Attach the single terminal annotation a persisted message may receive."""
        annotation = Annotation(annotation)
        if annotation not in TERMINAL_ANNOTATIONS:
            raise ValueError(f"{annotation.value} is not a terminal annotation")
        message = await self.get_message(message_id)
        terminal_values = {a.value for a in TERMINAL_ANNOTATIONS}
        if any(existing in terminal_values for existing in message.annotations):
            raise ImmutableFieldError(f"Message {message_id} already carries a terminal annotation")
        annotations = [*message.annotations, annotation.value]
        conn = await self._conn()
        try:
            await conn.execute(
                "UPDATE messages SET annotations=? WHERE id=?",
                (json.dumps(annotations), message_id),
            )
            await conn.commit()
        finally:
            await conn.close()
        return await self.get_message(message_id)

    # Completion records
    async def record_completion(self, record: CompletionRecord) -> int:
        conn = await self._conn()
        try:
            cur = await conn.execute(
                """
                INSERT INTO completion_records (
                    session_id, message_id, kind, model, prompt_digest, prompt_tokens,
                    completion_tokens, latency_ms, outcome, attempt, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.session_id,
                    record.message_id,
                    CompletionKind(record.kind).value,
                    record.model,
                    record.prompt_digest,
                    record.prompt_tokens,
                    record.completion_tokens,
                    record.latency_ms,
                    record.outcome,
                    record.attempt,
                    record.created_at or _utc_now(),
                ),
            )
            record_id = cur.lastrowid
            await conn.commit()
        finally:
            await conn.close()
        record.id = record_id
        return record_id

    async def list_completions(
        self,
        *,
        session_id: Optional[int] = None,
        message_id: Optional[int] = None,
    ) -> List[CompletionRecord]:
        clauses: List[str] = []
        params: List[Any] = []
        if session_id is not None:
            clauses.append("session_id=?")
            params.append(session_id)
        if message_id is not None:
            clauses.append("message_id=?")
            params.append(message_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = await self._conn()
        try:
            cur = await conn.execute(f"SELECT * FROM completion_records {where} ORDER BY id ASC", params)
            rows = await cur.fetchall()
            await cur.close()
            return [_row_to_completion(r) for r in rows]
        finally:
            await conn.close()

    # Shared messages
    async def share_message(self, message_id: int, sharer: UserIdentity) -> SharedMessage:
        message = await self.get_message(message_id)
        share_id = uuid4().hex
        user_id, user_id_str = sharer.to_columns()
        conn = await self._conn()
        try:
            await conn.execute(
                """
                INSERT INTO shared_messages (share_id, message_id, session_id, role, content, user_id_str, user_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    share_id,
                    message_id,
                    message.session_id,
                    message.role.value,
                    message.content,
                    user_id_str or "",
                    UNMIGRATED_USER_ID if user_id is None else user_id,
                    _utc_now(),
                ),
            )
            await conn.commit()
        finally:
            await conn.close()
        return await self.get_shared_message(share_id)

    async def get_shared_message(self, share_id: str) -> SharedMessage:
        conn = await self._conn()
        try:
            cur = await conn.execute("SELECT * FROM shared_messages WHERE share_id=?", (share_id,))
            row = await cur.fetchone()
            await cur.close()
        finally:
            await conn.close()
        if not row:
            raise SharedMessageNotFound(share_id)
        return _row_to_shared(row)

    async def list_shared_messages(self, sharer: UserIdentity) -> List[SharedMessage]:
        user_id, user_id_str = sharer.to_columns()
        conn = await self._conn()
        try:
            if user_id is not None and user_id != UNMIGRATED_USER_ID:
                cur = await conn.execute(
                    "SELECT * FROM shared_messages WHERE user_id=? ORDER BY created_at ASC",
                    (user_id,),
                )
            elif user_id_str:
                cur = await conn.execute(
                    "SELECT * FROM shared_messages WHERE user_id=? AND user_id_str=? ORDER BY created_at ASC",
                    (UNMIGRATED_USER_ID, user_id_str),
                )
            else:
                return []
            rows = await cur.fetchall()
            await cur.close()
            return [_row_to_shared(r) for r in rows]
        finally:
            await conn.close()

    async def revoke_shared_message(self, share_id: str) -> None:
        conn = await self._conn()
        try:
            cur = await conn.execute("DELETE FROM shared_messages WHERE share_id=?", (share_id,))
            deleted = cur.rowcount
            await conn.commit()
        finally:
            await conn.close()
        if not deleted:
            raise SharedMessageNotFound(share_id)
