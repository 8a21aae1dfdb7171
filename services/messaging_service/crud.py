from sqlalchemy.orm import Session
from sqlalchemy import or_, and_, func
from models import Conversation, Message, MessageStatus
from typing import Optional


class ConversationStore:
    """Storage port for conversations. Never commits; the caller owns the transaction."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, conversation_id: int) -> Optional[Conversation]:
        return self.db.query(Conversation).filter(Conversation.id == conversation_id).first()

    def find(self, client_id: int, freelancer_id: int, job_id: Optional[int] = None) -> Optional[Conversation]:
        query = self.db.query(Conversation).filter(
            and_(
                Conversation.client_id == client_id,
                Conversation.freelancer_id == freelancer_id
            )
        )
        # job_id narrows the match only when the caller supplied one
        if job_id is not None:
            query = query.filter(Conversation.job_id == job_id)
        return query.order_by(Conversation.id.asc()).first()

    def add(self, conversation: Conversation) -> Conversation:
        self.db.add(conversation)
        self.db.flush()
        return conversation

    def list_for_user(self, user_id: int):
        return self.db.query(Conversation).filter(
            or_(
                Conversation.client_id == user_id,
                Conversation.freelancer_id == user_id
            )
        ).order_by(
            func.coalesce(Conversation.last_message_at, Conversation.created_at).desc(),
            Conversation.id.desc()
        ).all()

    def delete(self, conversation: Conversation):
        self.db.delete(conversation)
        self.db.flush()


class MessageStore:
    """Storage port for the append-only message log."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, message_id: int) -> Optional[Message]:
        return self.db.query(Message).filter(Message.id == message_id).first()

    def add(self, message: Message) -> Message:
        self.db.add(message)
        self.db.flush()
        return message

    def list_for_conversation(self, conversation_id: int, offset: int = 0, limit: int = 50):
        return self.db.query(Message).filter(
            Message.conversation_id == conversation_id
        ).order_by(Message.created_at.asc(), Message.id.asc()).offset(offset).limit(limit).all()

    def count_for_conversation(self, conversation_id: int) -> int:
        return self.db.query(func.count(Message.id)).filter(
            Message.conversation_id == conversation_id
        ).scalar() or 0

    def count_unread(self, conversation_id: int, user_id: int) -> int:
        return self.db.query(func.count(Message.id)).filter(
            Message.conversation_id == conversation_id,
            Message.recipient_id == user_id,
            Message.status == MessageStatus.SENT
        ).scalar() or 0

    def mark_read(self, conversation_id: int, user_id: int, read_at) -> int:
        return self.db.query(Message).filter(
            and_(
                Message.conversation_id == conversation_id,
                Message.recipient_id == user_id,
                Message.status == MessageStatus.SENT
            )
        ).update(
            {"status": MessageStatus.READ, "read_at": read_at, "updated_at": read_at},
            synchronize_session="fetch"
        )

    def delete_for_conversation(self, conversation_id: int) -> int:
        return self.db.query(Message).filter(
            Message.conversation_id == conversation_id
        ).delete(synchronize_session="fetch")
