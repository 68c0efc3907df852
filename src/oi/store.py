"""Saved conversations: a sqlite index plus JSON history files."""

from __future__ import annotations

import hashlib
import json
import logging
import re
import secrets
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path

from oi.errors import CacheError, ManyMatchesError, NoMatchesError
from oi.types import Message, Role

_logger = logging.getLogger(__name__)


@dataclass
class Conversation:
    """Index entry for a saved conversation."""

    id: str
    title: str
    api: str | None
    model: str | None
    updated_at: float


class ConversationDB:
    """SQLite-backed index of saved conversations."""

    def __init__(self, db_path: str | Path) -> None:
        target = str(db_path)
        if target != ":memory:":
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            target = str(path)
        self.db_path = target
        self._conn = sqlite3.connect(target)
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                api TEXT,
                model TEXT,
                updated_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_conv_title ON conversations(title);
            CREATE INDEX IF NOT EXISTS idx_conv_updated ON conversations(updated_at);
        """)
        self._conn.commit()

    def save(self, id: str, title: str, api: str = "", model: str = "") -> None:
        """Insert or update a conversation entry."""
        now = time.time()
        self._conn.execute(
            "INSERT INTO conversations (id, title, api, model, updated_at) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET title=?, api=?, model=?, updated_at=?",
            (id, title, api, model, now, title, api, model, now),
        )
        self._conn.commit()

    def find(self, key: str) -> Conversation:
        """Find a conversation by id, id prefix or exact title."""
        rows = self._conn.execute(
            "SELECT id, title, api, model, updated_at FROM conversations "
            "WHERE id = ? OR title = ?",
            (key, key),
        ).fetchall()
        if not rows and len(key) >= 4:
            rows = self._conn.execute(
                "SELECT id, title, api, model, updated_at FROM conversations "
                "WHERE id LIKE ?",
                (f"{key}%",),
            ).fetchall()
        if not rows:
            raise NoMatchesError(
                f"no conversations found matching {key!r}",
                reason="Could not find the conversation.",
            )
        if len(rows) > 1:
            raise ManyMatchesError(
                f"{len(rows)} conversations match {key!r}",
                reason="Several conversations match; use a longer id.",
            )
        return Conversation(*rows[0])

    def find_head(self) -> Conversation:
        """Return the most recently updated conversation."""
        row = self._conn.execute(
            "SELECT id, title, api, model, updated_at FROM conversations "
            "ORDER BY updated_at DESC LIMIT 1",
        ).fetchone()
        if row is None:
            raise NoMatchesError(
                "no saved conversations", reason="There are no saved conversations.",
            )
        return Conversation(*row)

    def list(self) -> list[Conversation]:
        rows = self._conn.execute(
            "SELECT id, title, api, model, updated_at FROM conversations "
            "ORDER BY updated_at DESC",
        ).fetchall()
        return [Conversation(*r) for r in rows]

    def older_than(self, seconds: float) -> list[Conversation]:
        cutoff = time.time() - seconds
        rows = self._conn.execute(
            "SELECT id, title, api, model, updated_at FROM conversations "
            "WHERE updated_at < ? ORDER BY updated_at DESC",
            (cutoff,),
        ).fetchall()
        return [Conversation(*r) for r in rows]

    def delete(self, id: str) -> None:
        self._conn.execute("DELETE FROM conversations WHERE id = ?", (id,))
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()


class ConversationCache:
    """Conversation histories stored as one JSON file per id."""

    def __init__(self, directory: str | Path, db: ConversationDB) -> None:
        self.directory = Path(directory).expanduser()
        self.directory.mkdir(parents=True, exist_ok=True)
        self.db = db

    def _path(self, id: str) -> Path:
        if not id or "/" in id or id.startswith("."):
            raise CacheError(f"invalid conversation id: {id!r}", reason="Invalid conversation id.")
        return self.directory / f"{id}.json"

    def read(self, id: str) -> list[Message]:
        """Load a saved history.  A missing or corrupt file is an error."""
        path = self._path(id)
        try:
            raw = json.loads(path.read_text())
            return [Message.from_dict(m) for m in raw["messages"]]
        except FileNotFoundError as e:
            raise CacheError(
                f"conversation {id[:8]} not found in {self.directory}",
                reason="There was an error loading the conversation.",
            ) from e
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise CacheError(
                f"conversation {id[:8]} is unreadable: {e}",
                reason="There was an error loading the conversation.",
            ) from e

    def write(
        self,
        id: str,
        title: str,
        api: str,
        model: str,
        messages: list[Message],
    ) -> None:
        """Save a history and index it under *title*."""
        path = self._path(id)
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps({"messages": [m.to_dict() for m in messages]}))
            tmp.replace(path)
        except OSError as e:
            raise CacheError(str(e), reason="Could not write the conversation.") from e
        try:
            self.db.save(id, title or id[:8], api, model)
        except sqlite3.Error as e:
            raise CacheError(str(e), reason="Could not index the conversation.") from e
        _logger.debug("Saved conversation %s (%d messages)", id[:8], len(messages))

    def delete(self, id: str) -> None:
        """Remove a saved history and its index entry."""
        try:
            self._path(id).unlink(missing_ok=True)
        except OSError as e:
            raise CacheError(str(e), reason="Could not delete the conversation.") from e
        self.db.delete(id)


# ---------------------------------------------------------------------------
# Cache keys for a session
# ---------------------------------------------------------------------------

_SHA1_RE = re.compile(r"^[a-f0-9]{40}$")


def new_conversation_id() -> str:
    return hashlib.sha1(secrets.token_bytes(32)).hexdigest()


@dataclass
class CacheDetails:
    """Which conversation to read, and where to write the result."""

    write_id: str = ""
    title: str = ""
    read_id: str = ""
    api: str = ""
    model: str = ""


def resolve_cache_details(
    db: ConversationDB,
    *,
    continue_id: str = "",
    continue_last: bool = False,
    title: str = "",
    show: str = "",
    show_last: bool = False,
    api: str = "",
    model: str = "",
) -> CacheDetails:
    """Work out the read id, write id and title for this run.

    ``--continue X`` without a title keeps writing to the conversation it
    reads; with a title, the continuation is saved as a new conversation.
    A failed lookup falls back to the latest conversation, except when
    showing a specific one.
    """
    continue_last = continue_last or bool(continue_id and not title)
    read_id = continue_id or show
    write_id = title or continue_id
    title = write_id

    if read_id or continue_last or show_last:
        try:
            found = db.find(read_id)
        except NoMatchesError:
            if show:
                raise
            found = db.find_head()
        read_id = found.id
        if found.api and found.model:
            api, model = found.api, found.model

    if continue_last:
        write_id = read_id
    if not write_id:
        write_id = new_conversation_id()
    if not _SHA1_RE.match(write_id):
        try:
            write_id = db.find(write_id).id
        except CacheError:
            write_id = new_conversation_id()

    if show or show_last:
        write_id, title = "", ""
    return CacheDetails(write_id=write_id, title=title, read_id=read_id, api=api, model=model)


def format_conversation(messages: list[Message]) -> str:
    """Render a saved history as markdown."""
    parts: list[str] = []
    for msg in messages:
        if msg.role is Role.TOOL:
            parts.append(f"> **{msg.tool_name or 'tool'}**\n\n```\n{msg.content}\n```")
            continue
        body = msg.content
        for call in msg.tool_calls:
            body += f"\n\n> Called: `{call.name}`"
        parts.append(f"**{msg.role.value}**: {body}".rstrip())
    return "\n\n".join(parts) + "\n"
