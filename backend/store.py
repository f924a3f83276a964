"""Chat message persistence.

The hub only ever appends through ``MessageStore.persist``; clients hydrate
history through ``MessageStore.fetch`` via the HTTP surface.
"""
import logging
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from db import Base
from models import ChatMessage
from schemas import ChatMessageCreate, ChatMessageOut

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base class for message store failures."""


class MessageRejected(StoreError):
    """The message violates a field constraint."""


class StoreUnavailable(StoreError):
    """The backing database could not be reached or failed mid-write."""


class MessageStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create_all(self) -> None:
        Base.metadata.create_all(bind=self.session_factory.kw["bind"])

    def persist(self, username: str, message: str, room_id: Optional[str] = None) -> ChatMessageOut:
        try:
            data = ChatMessageCreate(username=username, message=message, room_id=room_id)
        except ValidationError as e:
            raise MessageRejected(_describe(e)) from e

        session = self.session_factory()
        try:
            row = ChatMessage(username=data.username, message=data.message, room_id=data.room_id)
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.debug("stored message %s (room=%s)", row.id, row.room_id)
            return ChatMessageOut.model_validate(row)
        except IntegrityError as e:
            session.rollback()
            raise MessageRejected(str(e.orig)) from e
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreUnavailable(str(e)) from e
        finally:
            session.close()

    def fetch(self, room_id: Optional[str] = None, limit: int = 100) -> List[ChatMessageOut]:
        """Return the newest ``limit`` messages, oldest first.

        With ``room_id`` only that room is returned; without it every room is.
        """
        if limit < 1:
            raise ValueError("limit must be >= 1")
        session = self.session_factory()
        try:
            query = session.query(ChatMessage)
            if room_id:
                query = query.filter(ChatMessage.room_id == room_id)
            rows = query.order_by(ChatMessage.created_at.desc(), ChatMessage.seq.desc()).limit(limit).all()
            return [ChatMessageOut.model_validate(r) for r in reversed(rows)]
        except SQLAlchemyError as e:
            raise StoreUnavailable(str(e)) from e
        finally:
            session.close()


def _describe(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err["loc"])
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)
