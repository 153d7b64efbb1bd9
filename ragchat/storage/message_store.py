import logging
import uuid
from typing import List, Optional

from sqlalchemy import select

from ragchat.models.query import Citation, MessageStatus, StoredMessage
from ragchat.storage.database import Database, MessageRow, utcnow

logger = logging.getLogger(__name__)


class MessageStore:
    """
    Append-only chat message log, owner scoped.
    Failed assistant turns are stored with status=error and retryable=True; nothing is deleted.
    """

    def __init__(self, database: Database):
        self.db = database

    def append(self,
               chat_id: str,
               owner_id: str,
               role: str,
               content: str,
               citations: Optional[List[Citation]] = None,
               status: MessageStatus = MessageStatus.complete,
               retryable: bool = False) -> StoredMessage:
        row = MessageRow(
            id=str(uuid.uuid4()),
            chat_id=chat_id,
            owner_id=owner_id,
            role=role,
            content=content,
            citations=[c.model_dump() for c in citations] if citations else None,
            status=status.value,
            retryable=retryable,
            created_at=utcnow(),
        )
        with self.db.session_factory.begin() as session:
            session.add(row)
        logger.info(f"Stored {role} message for chat {chat_id} | status={status.value}")
        return StoredMessage.model_validate(row)

    def list_messages(self, chat_id: str, owner_id: str) -> List[StoredMessage]:
        with self.db.session_factory() as session:
            rows = session.scalars(
                select(MessageRow)
                .where(MessageRow.chat_id == chat_id, MessageRow.owner_id == owner_id)
                .order_by(MessageRow.created_at, MessageRow.id)
            ).all()
            return [StoredMessage.model_validate(r) for r in rows]
