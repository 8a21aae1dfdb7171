from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime
from models import ConversationStatus, MessageType, MessageStatus


class FileData(BaseModel):
    name: str
    size: Optional[str] = None
    type: Optional[str] = None
    url: Optional[str] = None


class MessageCreate(BaseModel):
    content: Optional[str] = None
    type: MessageType = MessageType.TEXT
    file_data: Optional[FileData] = None
    attachments: List[str] = []


class MessageResponse(BaseModel):
    id: int
    conversation_id: int
    sender_id: int
    recipient_id: int
    content: str
    type: MessageType
    status: MessageStatus
    read_at: Optional[datetime] = None
    file_data: Optional[dict] = None
    attachments: List[str] = []
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ConversationResponse(BaseModel):
    id: int
    client_id: int
    freelancer_id: int
    job_id: Optional[int] = None
    project_title: Optional[str] = None
    status: ConversationStatus
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    client_unread: bool
    freelancer_unread: bool
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ConversationSummary(ConversationResponse):
    unread_count: int = 0
    unread: bool = False
    timestamp: str = ""
    other_participant_id: int
    other_participant_role: str


class ConversationDetail(BaseModel):
    conversation: ConversationResponse
    messages: List[MessageResponse]


class StartConversationRequest(BaseModel):
    freelancer_id: Optional[int] = None
    job_id: Optional[int] = None
    project_title: Optional[str] = None


class RevisionRequest(BaseModel):
    revision_notes: Optional[str] = None


class UnreadCountResponse(BaseModel):
    conversation_id: int
    unread_count: int


class ActionResponse(BaseModel):
    message: str
