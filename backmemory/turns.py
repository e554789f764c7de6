"""Turn/version log: lossless chat history with regenerate and pick-a-variant."""

from __future__ import annotations

import logging
import sqlite3
from typing import List, Optional

from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .schemas import Message, ModelReply, UserMessage
from .storage import ChatDatabase

logger = logging.getLogger(__name__)


def _row_to_message(row: sqlite3.Row) -> Message:
    if row["role"] == "user":
        return UserMessage(
            id=row["id"],
            conversation_id=row["conversation_id"],
            content=row["content"],
            created_at=row["created_at"],
        )
    return ModelReply(
        id=row["id"],
        conversation_id=row["conversation_id"],
        turn_id=row["turn_id"],
        content=row["content"],
        version=int(row["version"]),
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
    )


class TurnLog:
    """Append-only message store grouped into turns with versioned replies.

    A turn is one user message plus every model reply sharing its id as
    ``turn_id``. For every turn with at least one reply exactly one reply is
    active and versions run ``1..n``; both hold after every write because each
    write runs in a single transaction.

    ``promote_on_delete`` controls what happens when the active reply is
    deleted: the highest remaining version becomes active (default), or the
    turn is left without an active reply until the next switch or regenerate.
    The default therefore departs from the leave-empty behaviour; pass
    ``promote_on_delete=False`` to get it.
    """

    def __init__(self, db: ChatDatabase, *, promote_on_delete: bool = True) -> None:
        self.db = db
        self.promote_on_delete = promote_on_delete

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_message(self, message_id: str, *, conversation_id: Optional[str] = None) -> Message:
        row = self.db.query_one("SELECT * FROM messages WHERE id = ?", (message_id,))
        if row is None:
            raise NotFoundError(f"Message {message_id} does not exist")
        if conversation_id is not None and row["conversation_id"] != conversation_id:
            raise ForbiddenError(f"Message {message_id} belongs to another conversation")
        return _row_to_message(row)

    def get_turn(self, turn_id: str, *, conversation_id: Optional[str] = None) -> UserMessage:
        message = self.get_message(turn_id, conversation_id=conversation_id)
        if not isinstance(message, UserMessage):
            raise ValidationError(f"{turn_id} is a model reply, not a turn id")
        return message

    def versions(self, turn_id: str, *, conversation_id: Optional[str] = None) -> List[ModelReply]:
        self.get_turn(turn_id, conversation_id=conversation_id)
        rows = self.db.query(
            "SELECT * FROM messages WHERE turn_id = ? AND role = 'model' ORDER BY version ASC",
            (turn_id,),
        )
        return [_row_to_message(row) for row in rows]  # type: ignore[misc]

    def active_reply(self, turn_id: str) -> Optional[ModelReply]:
        row = self.db.query_one(
            "SELECT * FROM messages WHERE turn_id = ? AND role = 'model' AND is_active = 1",
            (turn_id,),
        )
        return _row_to_message(row) if row else None  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def append_user_message(self, conversation_id: str, content: str) -> UserMessage:
        if not content or not content.strip():
            raise ValidationError("Message content must not be empty")
        self.db.require_conversation(conversation_id)
        message = UserMessage(id=self.db.new_id(), conversation_id=conversation_id, content=content)
        with self.db.transaction() as cur:
            cur.execute(
                """
                INSERT INTO messages(id, conversation_id, role, turn_id, content, version, is_active, created_at)
                VALUES (?, ?, 'user', ?, ?, NULL, 0, ?)
                """,
                (message.id, conversation_id, message.id, content, message.created_at),
            )
            cur.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (message.created_at, conversation_id),
            )
        logger.debug("Opened turn %s in conversation %s", message.id, conversation_id)
        return message

    def append_model_reply(
        self, turn_id: str, content: str, *, conversation_id: Optional[str] = None
    ) -> ModelReply:
        """Store a new reply version for ``turn_id`` and make it the active one."""

        if not content or not content.strip():
            raise ValidationError("Reply content must not be empty")
        try:
            with self.db.transaction() as cur:
                turn = self.get_turn(turn_id, conversation_id=conversation_id)
                row = cur.execute(
                    "SELECT MAX(version) FROM messages WHERE turn_id = ? AND role = 'model'",
                    (turn_id,),
                ).fetchone()
                reply = ModelReply(
                    id=self.db.new_id(),
                    conversation_id=turn.conversation_id,
                    turn_id=turn_id,
                    content=content,
                    version=(row[0] or 0) + 1,
                    is_active=True,
                )
                cur.execute(
                    "UPDATE messages SET is_active = 0 WHERE turn_id = ? AND role = 'model'",
                    (turn_id,),
                )
                cur.execute(
                    """
                    INSERT INTO messages(id, conversation_id, role, turn_id, content, version, is_active, created_at)
                    VALUES (?, ?, 'model', ?, ?, ?, 1, ?)
                    """,
                    (
                        reply.id,
                        reply.conversation_id,
                        turn_id,
                        content,
                        reply.version,
                        reply.created_at,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(
                "Reply version collided with a concurrent write", entity="turn", entity_id=turn_id
            ) from exc
        logger.debug("Stored reply v%s for turn %s", reply.version, turn_id)
        return reply

    def switch_active_version(
        self, turn_id: str, message_id: str, *, conversation_id: Optional[str] = None
    ) -> ModelReply:
        with self.db.transaction() as cur:
            self.get_turn(turn_id, conversation_id=conversation_id)
            target = self.get_message(message_id, conversation_id=conversation_id)
            if not isinstance(target, ModelReply) or target.turn_id != turn_id:
                raise ValidationError(f"Message {message_id} is not a reply of turn {turn_id}")
            cur.execute(
                "UPDATE messages SET is_active = 0 WHERE turn_id = ? AND role = 'model'",
                (turn_id,),
            )
            cur.execute("UPDATE messages SET is_active = 1 WHERE id = ?", (message_id,))
        target.is_active = True
        logger.debug("Turn %s now shows reply v%s", turn_id, target.version)
        return target

    def edit_message_content(
        self, message_id: str, content: str, *, conversation_id: Optional[str] = None
    ) -> Message:
        if not content or not content.strip():
            raise ValidationError("Message content must not be empty")
        with self.db.transaction() as cur:
            message = self.get_message(message_id, conversation_id=conversation_id)
            cur.execute("UPDATE messages SET content = ? WHERE id = ?", (content, message_id))
        message.content = content
        return message

    def delete_message(self, message_id: str, *, conversation_id: Optional[str] = None) -> List[str]:
        """Delete a message and return every removed id.

        Deleting a user message removes its whole turn. Deleting a reply
        removes that row and renumbers the remaining versions.
        """

        with self.db.transaction() as cur:
            message = self.get_message(message_id, conversation_id=conversation_id)
            if isinstance(message, UserMessage):
                rows = cur.execute(
                    "SELECT id FROM messages WHERE turn_id = ? ORDER BY seq", (message.id,)
                ).fetchall()
                deleted = [row["id"] for row in rows]
                cur.execute("DELETE FROM messages WHERE turn_id = ?", (message.id,))
            else:
                deleted = [message.id]
                cur.execute("DELETE FROM messages WHERE id = ?", (message.id,))
                self._renumber(cur, message.turn_id)
                if message.is_active and self.promote_on_delete:
                    cur.execute(
                        """
                        UPDATE messages SET is_active = 1
                        WHERE id = (
                            SELECT id FROM messages WHERE turn_id = ? AND role = 'model'
                            ORDER BY version DESC LIMIT 1
                        )
                        """,
                        (message.turn_id,),
                    )
        logger.debug("Deleted %s message(s) starting at %s", len(deleted), message_id)
        return deleted

    @staticmethod
    def _renumber(cur: sqlite3.Cursor, turn_id: str) -> None:
        rows = cur.execute(
            "SELECT id, version FROM messages WHERE turn_id = ? AND role = 'model' ORDER BY version ASC",
            (turn_id,),
        ).fetchall()
        # ascending order never moves a version onto a slot that is still taken
        for expected, row in enumerate(rows, start=1):
            if row["version"] != expected:
                cur.execute("UPDATE messages SET version = ? WHERE id = ?", (expected, row["id"]))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def history(
        self,
        conversation_id: str,
        *,
        before: Optional[str] = None,
        before_turn: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Message]:
        """User messages plus each turn's active reply, oldest turn first.

        Rows are ordered by turn (the user message's position) so a reply
        regenerated later still sits directly after its own user message.
        ``before`` keeps turns opened before a timestamp, ``before_turn`` keeps
        the turns opened before another turn.
        """

        clauses = ["m.conversation_id = ?", "(m.role = 'user' OR m.is_active = 1)"]
        params: List[object] = [conversation_id]
        if before is not None:
            clauses.append("u.created_at < ?")
            params.append(before)
        if before_turn is not None:
            clauses.append("u.seq < (SELECT seq FROM messages WHERE id = ?)")
            params.append(before_turn)
        rows = self.db.query(
            f"""
            SELECT m.* FROM messages AS m
            JOIN messages AS u ON u.id = m.turn_id
            WHERE {' AND '.join(clauses)}
            ORDER BY u.seq ASC, CASE m.role WHEN 'user' THEN 0 ELSE 1 END ASC
            """,
            params,
        )
        messages = [_row_to_message(row) for row in rows]
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
            # never open the window on a reply whose user message was cut off
            while messages and isinstance(messages[0], ModelReply):
                messages.pop(0)
        return messages

    def count_active(self, conversation_id: str) -> int:
        row = self.db.query_one(
            """
            SELECT COUNT(*) FROM messages
            WHERE conversation_id = ? AND (role = 'user' OR is_active = 1)
            """,
            (conversation_id,),
        )
        return int(row[0]) if row else 0


__all__ = ["TurnLog"]
