"""SQLite-backed repository for tasks, messages, attachments, and credentials."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Mapping, Sequence
from uuid import uuid4

import aiosqlite

TaskRecord = dict[str, Any]
MessageRecord = dict[str, Any]
AttachmentRecord = dict[str, Any]

TASK_STATUSES: frozenset[str] = frozenset({"active", "completed", "archived"})


def utc_now() -> str:
    """Return the current UTC time as a sortable ISO-8601 string."""

    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _load_metadata(value: str | None) -> dict[str, Any]:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class TaskRepository:
    """Persist tasks and their conversation state."""

    def __init__(self, database_path: Path):
        self._path = database_path
        self._connection: aiosqlite.Connection | None = None
        # One connection is shared; multi-statement writes must not interleave.
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the SQLite connection and ensure tables exist."""

        if self._connection is not None:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self._path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.execute("PRAGMA foreign_keys=ON;")
        await self._create_schema()

    async def _create_schema(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                metadata TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS attachments (
                id TEXT PRIMARY KEY,
                message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
                position INTEGER NOT NULL DEFAULT 0,
                file_name TEXT NOT NULL,
                file_type TEXT NOT NULL,
                file_size INTEGER NOT NULL,
                storage_key TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS api_credentials (
                user_id TEXT NOT NULL,
                provider TEXT NOT NULL,
                encrypted_key TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (user_id, provider)
            );

            CREATE INDEX IF NOT EXISTS idx_tasks_user_updated ON tasks(user_id, updated_at);
            CREATE INDEX IF NOT EXISTS idx_messages_task_created ON messages(task_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_attachments_message_id ON attachments(message_id);
            """
        )
        await self._connection.commit()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run the enclosed statements as one unit: all commit or none do."""

        assert self._connection is not None
        async with self._write_lock:
            try:
                yield self._connection
            except BaseException:
                await self._connection.rollback()
                raise
            await self._connection.commit()

    # Tasks -----------------------------------------------------------------

    @staticmethod
    def _row_to_task(row: aiosqlite.Row) -> TaskRecord:
        return {
            "id": row["id"],
            "user_id": row["user_id"],
            "title": row["title"],
            "status": row["status"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    async def _insert_task(
        self, conn: aiosqlite.Connection, user_id: str, title: str
    ) -> TaskRecord:
        task_id = str(uuid4())
        now = utc_now()
        await conn.execute(
            """
            INSERT INTO tasks(id, user_id, title, status, created_at, updated_at)
            VALUES (?, ?, ?, 'active', ?, ?)
            """,
            (task_id, user_id, title, now, now),
        )
        return {
            "id": task_id,
            "user_id": user_id,
            "title": title,
            "status": "active",
            "created_at": now,
            "updated_at": now,
        }

    async def create_task(self, user_id: str, title: str) -> TaskRecord:
        """Create an empty task owned by ``user_id``."""

        async with self._transaction() as conn:
            return await self._insert_task(conn, user_id, title)

    async def create_task_with_message(
        self,
        user_id: str,
        title: str,
        content: str,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> tuple[TaskRecord, MessageRecord]:
        """Create a task and its first user message in one transaction."""

        async with self._transaction() as conn:
            task = await self._insert_task(conn, user_id, title)
            message = await self._insert_message(
                conn, task["id"], "user", content, metadata
            )
        return task, message

    async def get_task(
        self, task_id: str, *, user_id: str | None = None
    ) -> TaskRecord | None:
        """Return a task, optionally scoped to its owner."""

        assert self._connection is not None
        if user_id is None:
            cursor = await self._connection.execute(
                "SELECT * FROM tasks WHERE id = ? LIMIT 1", (task_id,)
            )
        else:
            cursor = await self._connection.execute(
                "SELECT * FROM tasks WHERE id = ? AND user_id = ? LIMIT 1",
                (task_id, user_id),
            )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return self._row_to_task(row)

    async def list_tasks(self, user_id: str, *, limit: int = 50) -> list[TaskRecord]:
        """Return the user's tasks, most recently updated first, with a preview."""

        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT
                t.*,
                (
                    SELECT m.content FROM messages AS m
                    WHERE m.task_id = t.id
                    ORDER BY m.created_at DESC, m.rowid DESC
                    LIMIT 1
                ) AS last_message,
                (
                    SELECT COUNT(*) FROM messages AS c WHERE c.task_id = t.id
                ) AS message_count
            FROM tasks AS t
            WHERE t.user_id = ?
            ORDER BY t.updated_at DESC
            LIMIT ?
            """,
            (user_id, limit),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        tasks: list[TaskRecord] = []
        for row in rows:
            record = self._row_to_task(row)
            record["last_message"] = row["last_message"]
            record["message_count"] = row["message_count"]
            tasks.append(record)
        return tasks

    async def update_task(
        self,
        task_id: str,
        *,
        title: str | None = None,
        status: str | None = None,
    ) -> TaskRecord | None:
        """Update a task's title and/or status."""

        if status is not None and status not in TASK_STATUSES:
            raise ValueError(f"Unknown task status: {status}")

        assignments: list[str] = []
        params: list[Any] = []
        if title is not None:
            assignments.append("title = ?")
            params.append(title)
        if status is not None:
            assignments.append("status = ?")
            params.append(status)
        if assignments:
            async with self._transaction() as conn:
                await conn.execute(
                    f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?",
                    (*params, task_id),
                )
        return await self.get_task(task_id)

    async def touch_task(self, task_id: str) -> None:
        """Move the task's updated timestamp forward."""

        async with self._transaction() as conn:
            await self._touch(conn, task_id)

    @staticmethod
    async def _touch(conn: aiosqlite.Connection, task_id: str) -> None:
        # MAX keeps updated_at monotonic even if clocks disagree.
        await conn.execute(
            "UPDATE tasks SET updated_at = MAX(updated_at, ?) WHERE id = ?",
            (utc_now(), task_id),
        )

    async def delete_task(self, task_id: str) -> list[str]:
        """Delete a task and return the storage keys of its attachments."""

        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT a.storage_key
            FROM attachments AS a
            JOIN messages AS m ON m.id = a.message_id
            WHERE m.task_id = ?
            """,
            (task_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        async with self._transaction() as conn:
            await conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        return [row["storage_key"] for row in rows]

    # Messages --------------------------------------------------------------

    @staticmethod
    def _row_to_message(row: aiosqlite.Row) -> MessageRecord:
        return {
            "id": row["id"],
            "task_id": row["task_id"],
            "role": row["role"],
            "content": row["content"],
            "metadata": _load_metadata(row["metadata"]),
            "created_at": row["created_at"],
        }

    async def _insert_message(
        self,
        conn: aiosqlite.Connection,
        task_id: str,
        role: str,
        content: str,
        metadata: Mapping[str, Any] | None,
    ) -> MessageRecord:
        message_id = str(uuid4())
        now = utc_now()
        stored_metadata = dict(metadata or {})
        await conn.execute(
            """
            INSERT INTO messages(id, task_id, role, content, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                message_id,
                task_id,
                role,
                content,
                json.dumps(stored_metadata) if stored_metadata else None,
                now,
            ),
        )
        return {
            "id": message_id,
            "task_id": task_id,
            "role": role,
            "content": content,
            "metadata": stored_metadata,
            "created_at": now,
        }

    async def create_message(
        self,
        task_id: str,
        role: str,
        content: str,
        *,
        metadata: Mapping[str, Any] | None = None,
        touch_task: bool = True,
    ) -> MessageRecord:
        """Persist a message and, by default, bump the task in the same transaction."""

        async with self._transaction() as conn:
            message = await self._insert_message(conn, task_id, role, content, metadata)
            if touch_task:
                await self._touch(conn, task_id)
        return message

    async def load_recent_messages(
        self, task_id: str, limit: int
    ) -> list[MessageRecord]:
        """Return up to ``limit`` messages for a task, most recent first."""

        if limit <= 0:
            return []
        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT id, task_id, role, content, metadata, created_at
            FROM messages
            WHERE task_id = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (task_id, limit),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [self._row_to_message(row) for row in rows]

    async def get_messages(self, task_id: str) -> list[MessageRecord]:
        """Return all messages for a task in chronological order with attachments."""

        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT id, task_id, role, content, metadata, created_at
            FROM messages
            WHERE task_id = ?
            ORDER BY created_at ASC, rowid ASC
            """,
            (task_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        messages = [self._row_to_message(row) for row in rows]
        attachments = await self.get_attachments_for_messages(
            message["id"] for message in messages
        )
        for message in messages:
            message["attachments"] = attachments.get(message["id"], [])
        return messages

    # Attachments -----------------------------------------------------------

    @staticmethod
    def _row_to_attachment(row: aiosqlite.Row) -> AttachmentRecord:
        return {
            "id": row["id"],
            "message_id": row["message_id"],
            "file_name": row["file_name"],
            "file_type": row["file_type"],
            "file_size": row["file_size"],
            "storage_key": row["storage_key"],
            "created_at": row["created_at"],
        }

    async def add_attachments(
        self,
        message_id: str,
        attachments: Sequence[Mapping[str, Any]],
    ) -> list[AttachmentRecord]:
        """Register attachments for an existing message, preserving order."""

        if not attachments:
            return []
        now = utc_now()
        records: list[AttachmentRecord] = []
        for attachment in attachments:
            records.append(
                {
                    "id": str(uuid4()),
                    "message_id": message_id,
                    "file_name": attachment["file_name"],
                    "file_type": attachment["file_type"],
                    "file_size": int(attachment["file_size"]),
                    "storage_key": attachment["storage_key"],
                    "created_at": now,
                }
            )
        async with self._transaction() as conn:
            await conn.executemany(
                """
                INSERT INTO attachments(
                    id, message_id, position, file_name, file_type,
                    file_size, storage_key, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        record["id"],
                        message_id,
                        position,
                        record["file_name"],
                        record["file_type"],
                        record["file_size"],
                        record["storage_key"],
                        now,
                    )
                    for position, record in enumerate(records)
                ],
            )
        return records

    async def get_attachments_for_messages(
        self, message_ids: Iterable[str]
    ) -> dict[str, list[AttachmentRecord]]:
        """Return attachments grouped by message ID, in upload order."""

        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return {}

        assert self._connection is not None
        placeholders = ",".join("?" for _ in ids)
        cursor = await self._connection.execute(
            f"""
            SELECT id, message_id, file_name, file_type, file_size, storage_key, created_at
            FROM attachments
            WHERE message_id IN ({placeholders})
            ORDER BY message_id, position ASC
            """,
            ids,
        )
        rows = await cursor.fetchall()
        await cursor.close()
        grouped: dict[str, list[AttachmentRecord]] = {}
        for row in rows:
            grouped.setdefault(row["message_id"], []).append(
                self._row_to_attachment(row)
            )
        return grouped

    # Credentials -----------------------------------------------------------

    async def has_credential(self, user_id: str, provider: str) -> bool:
        return await self.get_credential(user_id, provider) is not None

    async def get_credential(self, user_id: str, provider: str) -> str | None:
        """Return the encrypted credential for a provider, if stored."""

        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT encrypted_key FROM api_credentials
            WHERE user_id = ? AND provider = ?
            LIMIT 1
            """,
            (user_id, provider),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return row["encrypted_key"]

    async def upsert_credential(
        self, user_id: str, provider: str, encrypted_key: str
    ) -> None:
        async with self._transaction() as conn:
            await conn.execute(
                """
                INSERT INTO api_credentials(user_id, provider, encrypted_key, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, provider)
                DO UPDATE SET encrypted_key = excluded.encrypted_key
                """,
                (user_id, provider, encrypted_key, utc_now()),
            )

    async def delete_credential(self, user_id: str, provider: str) -> bool:
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM api_credentials WHERE user_id = ? AND provider = ?",
                (user_id, provider),
            )
            deleted = cursor.rowcount
            await cursor.close()
        return bool(deleted)

    async def list_credentials(self, user_id: str) -> list[dict[str, Any]]:
        """Return configured providers without exposing key material."""

        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT provider, created_at FROM api_credentials
            WHERE user_id = ?
            ORDER BY provider
            """,
            (user_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [
            {"provider": row["provider"], "created_at": row["created_at"]}
            for row in rows
        ]


__all__ = [
    "AttachmentRecord",
    "MessageRecord",
    "TASK_STATUSES",
    "TaskRecord",
    "TaskRepository",
    "utc_now",
]
