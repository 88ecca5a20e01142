"""Async Data Access Layer for the CONVERSATION table.

Provides ConversationDAL with the keyed select/insert/update operations the
transcript store needs, compatible with
`utils.database_init.AsyncDatabaseInitializer`.
"""

from __future__ import annotations

import json
from typing import Optional, Sequence

import aiosqlite

from models.conversation_models import ConversationRecord, TranscriptMessage
from utils.database_init import AsyncDatabaseInitializer

INSERTED = "inserted"
UPDATED = "updated"
SKIPPED = "skipped"


class ConversationDAL:
    """Data access layer for CONVERSATION records.

    Every write honours length dominance: a stored transcript is only
    replaced by one holding strictly more messages.
    """

    _COLUMNS = (
        "username",
        "conversation_id",
        "condition",
        "timestamp",
        "messages",
        "total_messages",
        "updated_at",
    )
    _COLUMN_LIST = ", ".join(_COLUMNS)

    def __init__(self, db_initializer: AsyncDatabaseInitializer) -> None:
        self._db = db_initializer

    async def get_conversation(self, username: str, conversation_id: str) -> Optional[ConversationRecord]:
        """Return the stored conversation, or None if not found."""
        async with self._db.connection() as conn:
            cur = await conn.execute(
                f"SELECT {self._COLUMN_LIST} FROM CONVERSATION WHERE username = ? AND conversation_id = ?",
                (username, conversation_id),
            )
            row = await cur.fetchone()
            return self._row_to_record(row) if row else None

    async def upsert_if_longer(self, record: ConversationRecord) -> str:
        """Insert the record, or overwrite the stored one if it is shorter.

        Args:
            record: Conversation snapshot to persist.

        Returns:
            One of "inserted", "updated" or "skipped".
        """
        params = self._record_to_params(record)

        async with self._db.connection() as conn:
            cur = await conn.execute(
                "SELECT total_messages FROM CONVERSATION WHERE username = ? AND conversation_id = ?",
                (record.username, record.conversation_id),
            )
            existing = await cur.fetchone()

            if existing is None:
                try:
                    await conn.execute(
                        f"INSERT INTO CONVERSATION ({self._COLUMN_LIST}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                        params,
                    )
                    await conn.commit()
                    return INSERTED
                except aiosqlite.IntegrityError:
                    # Another writer inserted the same key first; fall through to the guarded update.
                    await conn.rollback()

            await conn.execute(
                """
                UPDATE CONVERSATION
                SET condition = ?, timestamp = ?, messages = ?, total_messages = ?, updated_at = ?
                WHERE username = ? AND conversation_id = ? AND total_messages < ?
                """,
                (*params[2:], record.username, record.conversation_id, record.total_messages),
            )
            await conn.commit()
            cur = await conn.execute("SELECT changes()")
            changed = await cur.fetchone()
            return UPDATED if changed and changed[0] > 0 else SKIPPED

    @staticmethod
    def _record_to_params(record: ConversationRecord) -> tuple:
        return (
            record.username,
            record.conversation_id,
            record.condition,
            record.timestamp,
            json.dumps([msg.to_dict() for msg in record.messages]),
            record.total_messages,
            record.updated_at,
        )

    @staticmethod
    def _row_to_record(row: Sequence[object]) -> ConversationRecord:
        """Convert a DB row tuple into a ConversationRecord."""
        messages = json.loads(row[4] or "[]")
        return ConversationRecord(
            username=row[0],
            conversation_id=row[1],
            condition=row[2] or "C",
            timestamp=row[3] or "",
            messages=[TranscriptMessage.from_dict(item) for item in messages],
            updated_at=row[6] or "",
        )
