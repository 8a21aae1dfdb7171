"""Conversation service: conversations, messages, read state and the hire lifecycle.

Every call that takes a ``user_id`` re-checks conversation membership before it
touches storage. Each mutating call commits once and rolls back on failure, so
a message append and the conversation cache update land together.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from crud import ConversationStore, MessageStore
from exceptions import (
    ConversationNotFound,
    ConversationAccessDenied,
    MessagingValidationError,
    InvalidStatusTransition,
)
from models import Conversation, ConversationStatus, Message, MessageStatus, MessageType, utcnow

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = int(os.getenv("DEFAULT_PAGE_SIZE", "50"))

FILE_SHARED_PREVIEW = "File shared"
PROJECT_COMPLETE_TEXT = "Project has been marked as complete. Please review and approve."
REVISION_REQUESTED_TEXT = "Revision requested: {notes}"
PROJECT_APPROVED_TEXT = "Project has been approved and payment completed."

ALLOWED_TRANSITIONS = {
    ConversationStatus.NOT_HIRED: {ConversationStatus.HIRED},
    ConversationStatus.HIRED: {ConversationStatus.CLOSED},
    ConversationStatus.CLOSED: set(),
}


def ensure_transition(current: ConversationStatus, target: ConversationStatus) -> bool:
    """Return True if the status must change, False for a no-op.

    Raises InvalidStatusTransition for anything outside not-hired -> hired -> closed.
    """
    current = ConversationStatus(current)
    target = ConversationStatus(target)
    if current == target:
        return False
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStatusTransition(current, target)
    return True


def as_utc(value: datetime) -> datetime:
    """Treat naive values as UTC; convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_relative_timestamp(value: Optional[datetime], now: Optional[datetime] = None) -> str:
    if value is None:
        return ""
    value = as_utc(value)
    now = as_utc(now or utcnow())
    seconds = (now - value).total_seconds()
    minutes = int(seconds // 60)
    hours = int(seconds // 3600)
    days = int(seconds // 86400)

    if minutes < 1:
        return "Just now"
    if minutes < 60:
        return f"{minutes}m ago"
    if hours < 24:
        return f"{hours}h ago"
    if days < 7:
        return f"{days}d ago"
    return value.strftime("%m/%d/%Y")


class ConversationService:

    def __init__(
        self,
        db: Session,
        conversations: Optional[ConversationStore] = None,
        messages: Optional[MessageStore] = None,
        notifier=None,
    ):
        self.db = db
        self.conversations = conversations or ConversationStore(db)
        self.messages = messages or MessageStore(db)
        self.notifier = notifier

    # -- plumbing ---------------------------------------------------------

    def _commit(self):
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def _notify(self, event_type: str, data: dict, recipients):
        """Best-effort fan-out; a notifier failure never fails the caller."""
        if self.notifier is None:
            return
        try:
            self.notifier.notify(event_type, data, recipients)
        except Exception as exc:
            logger.warning("Failed to dispatch %s event: %s", event_type, exc)

    def _require_role(self, conversation: Conversation, user_id: int, role: str, action: str):
        if conversation.role_of(user_id) != role:
            raise ConversationAccessDenied(f"Only the {role} can {action}")

    # -- conversations ----------------------------------------------------

    def create_conversation(
        self,
        client_id: int,
        freelancer_id: Optional[int],
        job_id: Optional[int] = None,
        project_title: Optional[str] = None,
    ) -> Conversation:
        if freelancer_id is None:
            raise MessagingValidationError("Freelancer ID is required")
        if client_id == freelancer_id:
            raise MessagingValidationError("Cannot start a conversation with yourself")

        existing = self.conversations.find(client_id, freelancer_id, job_id)
        if existing:
            return existing

        conversation = Conversation(
            client_id=client_id,
            freelancer_id=freelancer_id,
            job_id=job_id,
            project_title=project_title,
            status=ConversationStatus.NOT_HIRED,
        )
        try:
            self.conversations.add(conversation)
        except Exception:
            self.db.rollback()
            raise
        self._commit()
        self.db.refresh(conversation)
        logger.info("Created conversation %s between client %s and freelancer %s",
                    conversation.id, client_id, freelancer_id)
        return conversation

    def get_conversations_by_user_id(self, user_id: int) -> list:
        now = utcnow()
        results = []
        for conversation in self.conversations.list_for_user(user_id):
            unread_count = self.messages.count_unread(conversation.id, user_id)
            is_client = conversation.client_id == user_id
            results.append({
                "conversation": conversation,
                "unread_count": unread_count,
                "unread": unread_count > 0,
                "timestamp": format_relative_timestamp(
                    conversation.last_message_at or conversation.created_at, now
                ),
                "other_participant_id": conversation.freelancer_id if is_client else conversation.client_id,
                "other_participant_role": "freelancer" if is_client else "client",
            })
        return results

    def get_conversation_by_id(self, conversation_id: int, user_id: int) -> Conversation:
        conversation = self.conversations.get(conversation_id)
        if not conversation:
            raise ConversationNotFound(conversation_id)
        if not conversation.is_member(user_id):
            raise ConversationAccessDenied()
        return conversation

    def update_conversation_status(self, conversation_id: int, status, user_id: int) -> Conversation:
        conversation = self.get_conversation_by_id(conversation_id, user_id)
        try:
            target = ConversationStatus(status)
        except ValueError:
            raise MessagingValidationError(f"Unknown conversation status: {status}")
        if not ensure_transition(conversation.status, target):
            return conversation

        conversation.status = target
        self._commit()
        self.db.refresh(conversation)
        self._notify(
            "conversation.status",
            {"conversation_id": conversation.id, "status": target.value, "changed_by": user_id},
            [conversation.other_party(user_id)],
        )
        return conversation

    def delete_conversation(self, conversation_id: int, user_id: int):
        conversation = self.get_conversation_by_id(conversation_id, user_id)
        try:
            deleted = self.messages.delete_for_conversation(conversation.id)
            self.conversations.delete(conversation)
        except Exception:
            self.db.rollback()
            raise
        self._commit()
        logger.info("Deleted conversation %s (%s messages) by user %s", conversation_id, deleted, user_id)

    # -- messages ---------------------------------------------------------

    def send_message(
        self,
        conversation_id: int,
        sender_id: int,
        content: Optional[str],
        type=MessageType.TEXT,
        file_data: Optional[dict] = None,
        attachments: Optional[list] = None,
        allow_system: bool = False,
    ) -> Message:
        try:
            message_type = MessageType(type)
        except ValueError:
            raise MessagingValidationError(f"Unknown message type: {type}")
        if message_type == MessageType.SYSTEM and not allow_system:
            raise MessagingValidationError("System messages cannot be sent by users")
        if message_type == MessageType.TEXT and not (content or "").strip():
            raise MessagingValidationError("Message content is required")

        conversation = self.get_conversation_by_id(conversation_id, sender_id)
        recipient_id = conversation.other_party(sender_id)
        now = utcnow()

        message = Message(
            conversation_id=conversation.id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            content=content or "",
            type=message_type,
            status=MessageStatus.SENT,
            file_data=file_data,
            attachments=attachments or [],
            created_at=now,
        )
        try:
            self.messages.add(message)
            conversation.last_message = content if message_type == MessageType.TEXT else FILE_SHARED_PREVIEW
            conversation.last_message_at = now
            # the sender's own flag is deliberately left as it was
            if recipient_id == conversation.client_id:
                conversation.client_unread = True
            else:
                conversation.freelancer_unread = True
        except Exception:
            self.db.rollback()
            raise
        self._commit()
        self.db.refresh(message)

        self._notify("chat.message", {
            "id": message.id,
            "conversation_id": conversation.id,
            "sender_id": sender_id,
            "recipient_id": recipient_id,
            "type": message_type.value,
            "project_id": conversation.job_id,
            "preview": (conversation.last_message or "")[:140],
            "created_at": message.created_at.isoformat(),
        }, [recipient_id])
        return message

    def get_conversation_messages(self, conversation_id: int, user_id: int, page: int = 1, limit: int = DEFAULT_PAGE_SIZE):
        if page < 1 or limit < 1:
            raise MessagingValidationError("page and limit must be positive")
        conversation = self.get_conversation_by_id(conversation_id, user_id)
        return self.messages.list_for_conversation(conversation.id, offset=(page - 1) * limit, limit=limit)

    def get_unread_message_count(self, conversation_id: int, user_id: int) -> int:
        conversation = self.get_conversation_by_id(conversation_id, user_id)
        return self.messages.count_unread(conversation.id, user_id)

    def mark_messages_as_read(self, conversation_id: int, user_id: int) -> int:
        conversation = self.get_conversation_by_id(conversation_id, user_id)
        try:
            updated = self.messages.mark_read(conversation.id, user_id, utcnow())
            if conversation.client_id == user_id:
                conversation.client_unread = False
            else:
                conversation.freelancer_unread = False
        except Exception:
            self.db.rollback()
            raise
        self._commit()

        if updated:
            self._notify(
                "chat.read",
                {"conversation_id": conversation.id, "read_by": user_id, "count": updated},
                [conversation.other_party(user_id)],
            )
        return updated

    # -- project lifecycle ------------------------------------------------

    def hire_freelancer(self, conversation_id: int, client_id: int) -> Conversation:
        conversation = self.get_conversation_by_id(conversation_id, client_id)
        self._require_role(conversation, client_id, "client", "hire the freelancer")
        return self.update_conversation_status(conversation_id, ConversationStatus.HIRED, client_id)

    def mark_project_complete(self, conversation_id: int, freelancer_id: int) -> Message:
        conversation = self.get_conversation_by_id(conversation_id, freelancer_id)
        self._require_role(conversation, freelancer_id, "freelancer", "mark the project complete")
        message = self.send_message(conversation_id, freelancer_id, PROJECT_COMPLETE_TEXT, MessageType.SYSTEM,
                                    allow_system=True)
        self._notify("project.completed", {"conversation_id": conversation_id, "message_id": message.id},
                     [conversation.client_id])
        return message

    def request_revisions(self, conversation_id: int, client_id: int, revision_notes: Optional[str]) -> Message:
        if not (revision_notes or "").strip():
            raise MessagingValidationError("Revision notes are required")
        conversation = self.get_conversation_by_id(conversation_id, client_id)
        self._require_role(conversation, client_id, "client", "request revisions")
        message = self.send_message(
            conversation_id,
            client_id,
            REVISION_REQUESTED_TEXT.format(notes=revision_notes.strip()),
            MessageType.SYSTEM,
            allow_system=True,
        )
        self._notify("revision.requested", {"conversation_id": conversation_id, "message_id": message.id},
                     [conversation.freelancer_id])
        return message

    def approve_project(self, conversation_id: int, client_id: int) -> Conversation:
        conversation = self.get_conversation_by_id(conversation_id, client_id)
        self._require_role(conversation, client_id, "client", "approve the project")
        if conversation.status == ConversationStatus.CLOSED:
            raise InvalidStatusTransition(conversation.status, ConversationStatus.CLOSED)
        conversation = self.update_conversation_status(conversation_id, ConversationStatus.CLOSED, client_id)
        self.send_message(conversation_id, client_id, PROJECT_APPROVED_TEXT, MessageType.SYSTEM,
                          allow_system=True)
        self.db.refresh(conversation)
        return conversation
