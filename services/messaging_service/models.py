from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Boolean, JSON, TypeDecorator
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
import enum

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


class EnumValue(TypeDecorator):
    """Store enum values (e.g. "not-hired") instead of member names"""
    impl = String
    cache_ok = True

    def __init__(self, enum_class, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.enum_class = enum_class

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, self.enum_class):
            return value.value
        return self.enum_class(value).value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return self.enum_class(value)


class ConversationStatus(str, enum.Enum):
    NOT_HIRED = "not-hired"
    HIRED = "hired"
    CLOSED = "closed"


class MessageType(str, enum.Enum):
    TEXT = "text"
    FILE = "file"
    SYSTEM = "system"


class MessageStatus(str, enum.Enum):
    SENT = "sent"
    DELIVERED = "delivered"  # reserved, nothing moves a message here yet
    READ = "read"


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, nullable=False, index=True)
    freelancer_id = Column(Integer, nullable=False, index=True)
    job_id = Column(Integer, nullable=True, index=True)
    project_title = Column(String, nullable=True)
    status = Column(EnumValue(ConversationStatus, 20), nullable=False, default=ConversationStatus.NOT_HIRED)
    last_message = Column(Text, nullable=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True)
    client_unread = Column(Boolean, nullable=False, default=False)
    freelancer_unread = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utcnow)

    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
    )

    def is_member(self, user_id) -> bool:
        return user_id in (self.client_id, self.freelancer_id)

    def other_party(self, user_id) -> int:
        return self.freelancer_id if self.client_id == user_id else self.client_id

    def role_of(self, user_id):
        if self.client_id == user_id:
            return "client"
        if self.freelancer_id == user_id:
            return "freelancer"
        return None


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = Column(Integer, nullable=False, index=True)
    recipient_id = Column(Integer, nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    type = Column(EnumValue(MessageType, 20), nullable=False, default=MessageType.TEXT)
    status = Column(EnumValue(MessageStatus, 20), nullable=False, default=MessageStatus.SENT)
    read_at = Column(DateTime(timezone=True), nullable=True)
    file_data = Column(JSON, nullable=True)  # {"name", "size", "type", "url"}
    attachments = Column(JSON, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utcnow)

    conversation = relationship("Conversation", back_populates="messages")
