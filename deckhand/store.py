"""Conversation persistence keyed by working directory."""

from __future__ import annotations

import json
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

from deckhand.config import get_config
from deckhand.conversation import ConversationState
from deckhand.exceptions import StoreError
from deckhand.logging import get_logger
from deckhand.permissions import Agents
from deckhand.tools.registry import ToolRegistry

log = get_logger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def _cwd_key(cwd: Path | str) -> str:
    return str(Path(cwd).expanduser().resolve())


class ConversationStore:
    """Stores the last conversation of each working directory."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.session.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    cwd TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await self._db.commit()
        return self._db

    async def load(
        self,
        cwd: Path | str,
        agents: Agents,
        tool_registry: ToolRegistry,
    ) -> ConversationState | None:
        """Load the last conversation held for ``cwd``.

        Returns:
            The conversation, or None if nothing was saved for the directory
        """
        try:
            db = await self._ensure_db()
            async with db.execute(
                "SELECT data FROM conversations WHERE cwd = ?",
                (_cwd_key(cwd),),
            ) as cursor:
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to load conversation: {e}") from e

        if not row:
            return None

        try:
            data = json.loads(row[0])
            conversation = ConversationState.from_dict(data, agents=agents, tool_registry=tool_registry)
        except json.JSONDecodeError as e:
            raise StoreError(f"Stored conversation is corrupt: {e}") from e
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise StoreError(f"Stored conversation is malformed: {e!r}") from e
        log.info("Loaded conversation", cwd=_cwd_key(cwd), conversation_id=conversation.conversation_id)
        return conversation

    async def save(self, cwd: Path | str, conversation: ConversationState) -> None:
        """Save ``conversation`` as the last conversation of ``cwd``."""
        try:
            db = await self._ensure_db()
            await db.execute("""
                INSERT OR REPLACE INTO conversations (cwd, conversation_id, data, updated_at)
                VALUES (?, ?, ?, ?)
            """, (
                _cwd_key(cwd),
                conversation.conversation_id,
                json.dumps(conversation.to_dict(), default=str),
                _utcnow_iso(),
            ))
            await db.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to save conversation: {e}") from e
        log.debug("Saved conversation", cwd=_cwd_key(cwd), conversation_id=conversation.conversation_id)

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
