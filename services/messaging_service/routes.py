from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status, WebSocket, WebSocketDisconnect
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from database import get_db, SessionLocal
from schemas import (
    MessageCreate, MessageResponse, ConversationResponse, ConversationSummary,
    ConversationDetail, StartConversationRequest, RevisionRequest,
    UnreadCountResponse, ActionResponse
)
from exceptions import (
    MessagingError, ConversationNotFound, ConversationAccessDenied,
    MessagingValidationError, InvalidStatusTransition
)
from models import MessageType
from notifier import DeliveryNotifier, manager
from service import ConversationService, DEFAULT_PAGE_SIZE
import json
import logging
import httpx
import os

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/messages", tags=["messages"])
http_bearer = HTTPBearer(auto_error=False)
AUTH_SERVICE_URL = os.getenv("AUTH_SERVICE_URL", "http://auth-service:8000")


def fetch_account(token: str) -> dict:
    try:
        response = httpx.get(
            f"{AUTH_SERVICE_URL}/api/v1/auth/me",
            headers={"Authorization": f"Bearer {token}"},
            timeout=5.0
        )
    except httpx.HTTPError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Cannot verify authentication: {exc}"
        ) from exc
    if response.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token"
        )
    account = response.json()
    if not account.get("id"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication payload"
        )
    return account


def resolve_account(credentials: HTTPAuthorizationCredentials = Depends(http_bearer)):
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )
    return fetch_account(credentials.credentials)


def get_notifier(background_tasks: BackgroundTasks) -> DeliveryNotifier:
    return DeliveryNotifier(manager, background_tasks)


def get_session_factory():
    return SessionLocal


def get_service(db: Session = Depends(get_db), notifier=Depends(get_notifier)) -> ConversationService:
    return ConversationService(db, notifier=notifier)


def to_http_exception(exc: MessagingError) -> HTTPException:
    if isinstance(exc, ConversationNotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ConversationAccessDenied):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(exc, InvalidStatusTransition):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, MessagingValidationError):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(exc))


def _user_id(account: dict) -> int:
    return int(account.get("id"))


@router.get("/conversations", response_model=list[ConversationSummary])
def get_conversations(
    service: ConversationService = Depends(get_service),
    account=Depends(resolve_account)
):
    summaries = []
    for item in service.get_conversations_by_user_id(_user_id(account)):
        payload = ConversationResponse.model_validate(item.pop("conversation")).model_dump()
        payload.update(item)
        summaries.append(payload)
    return summaries


@router.get("/conversations/{conversation_id}", response_model=ConversationDetail)
def get_conversation(
    conversation_id: int,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    service: ConversationService = Depends(get_service),
    account=Depends(resolve_account)
):
    user_id = _user_id(account)
    try:
        conversation = service.get_conversation_by_id(conversation_id, user_id)
        messages = service.get_conversation_messages(conversation_id, user_id, page, limit)
    except MessagingError as exc:
        raise to_http_exception(exc) from exc
    return {"conversation": conversation, "messages": messages}


@router.post("/conversations", response_model=ConversationResponse, status_code=status.HTTP_201_CREATED)
def create_conversation(
    request: StartConversationRequest,
    service: ConversationService = Depends(get_service),
    account=Depends(resolve_account)
):
    try:
        return service.create_conversation(
            _user_id(account),
            request.freelancer_id,
            request.job_id,
            request.project_title
        )
    except MessagingError as exc:
        raise to_http_exception(exc) from exc


@router.delete("/conversations/{conversation_id}", response_model=ActionResponse)
def delete_conversation(
    conversation_id: int,
    service: ConversationService = Depends(get_service),
    account=Depends(resolve_account)
):
    try:
        service.delete_conversation(conversation_id, _user_id(account))
    except MessagingError as exc:
        raise to_http_exception(exc) from exc
    return {"message": "Conversation deleted successfully"}


@router.post("/conversations/{conversation_id}/messages", response_model=MessageResponse,
             status_code=status.HTTP_201_CREATED)
def send_message(
    conversation_id: int,
    request: MessageCreate,
    service: ConversationService = Depends(get_service),
    account=Depends(resolve_account)
):
    try:
        return service.send_message(
            conversation_id,
            _user_id(account),
            request.content,
            request.type,
            request.file_data.model_dump() if request.file_data else None,
            request.attachments
        )
    except MessagingError as exc:
        raise to_http_exception(exc) from exc


@router.put("/conversations/{conversation_id}/mark-read", response_model=ActionResponse)
def mark_as_read(
    conversation_id: int,
    service: ConversationService = Depends(get_service),
    account=Depends(resolve_account)
):
    try:
        service.mark_messages_as_read(conversation_id, _user_id(account))
    except MessagingError as exc:
        raise to_http_exception(exc) from exc
    return {"message": "Messages marked as read"}


@router.get("/conversations/{conversation_id}/unread-count", response_model=UnreadCountResponse)
def get_unread_count(
    conversation_id: int,
    service: ConversationService = Depends(get_service),
    account=Depends(resolve_account)
):
    try:
        count = service.get_unread_message_count(conversation_id, _user_id(account))
    except MessagingError as exc:
        raise to_http_exception(exc) from exc
    return {"conversation_id": conversation_id, "unread_count": count}


@router.put("/conversations/{conversation_id}/hire", response_model=ConversationResponse)
def hire_freelancer(
    conversation_id: int,
    service: ConversationService = Depends(get_service),
    account=Depends(resolve_account)
):
    try:
        return service.hire_freelancer(conversation_id, _user_id(account))
    except MessagingError as exc:
        raise to_http_exception(exc) from exc


@router.put("/conversations/{conversation_id}/complete", response_model=MessageResponse)
def mark_project_complete(
    conversation_id: int,
    service: ConversationService = Depends(get_service),
    account=Depends(resolve_account)
):
    try:
        return service.mark_project_complete(conversation_id, _user_id(account))
    except MessagingError as exc:
        raise to_http_exception(exc) from exc


@router.put("/conversations/{conversation_id}/revisions", response_model=MessageResponse)
def request_revisions(
    conversation_id: int,
    request: RevisionRequest,
    service: ConversationService = Depends(get_service),
    account=Depends(resolve_account)
):
    try:
        return service.request_revisions(conversation_id, _user_id(account), request.revision_notes)
    except MessagingError as exc:
        raise to_http_exception(exc) from exc


@router.put("/conversations/{conversation_id}/approve", response_model=ConversationResponse)
def approve_project(
    conversation_id: int,
    service: ConversationService = Depends(get_service),
    account=Depends(resolve_account)
):
    try:
        return service.approve_project(conversation_id, _user_id(account))
    except MessagingError as exc:
        raise to_http_exception(exc) from exc


def _frame(event_type: str, data) -> str:
    return json.dumps({"type": event_type, "data": data}, default=str)


async def _handle_frame(websocket: WebSocket, user_id: int, frame: dict, session_factory):
    if not isinstance(frame, dict):
        await websocket.send_text(_frame("error", {"detail": "Frame must be a JSON object"}))
        return
    frame_type = frame.get("type")
    conversation_id = frame.get("conversation_id")
    if conversation_id is None:
        await websocket.send_text(_frame("error", {"detail": "conversation_id is required"}))
        return
    if isinstance(conversation_id, bool) or not isinstance(conversation_id, int):
        await websocket.send_text(_frame("error", {"detail": "conversation_id must be an integer"}))
        return

    if frame_type == "leave_conversation":
        manager.leave_conversation(websocket, conversation_id)
        return

    if frame_type in ("typing_start", "typing_stop"):
        await manager.broadcast_to_conversation(
            _frame("user_typing", {
                "user_id": user_id,
                "conversation_id": conversation_id,
                "is_typing": frame_type == "typing_start"
            }),
            conversation_id,
            exclude=websocket
        )
        return

    db = session_factory()
    notifier = DeliveryNotifier(manager)
    service = ConversationService(db, notifier=notifier)
    try:
        if frame_type == "join_conversation":
            service.get_conversation_by_id(conversation_id, user_id)
            manager.join_conversation(websocket, conversation_id)
            await websocket.send_text(_frame("joined", {"conversation_id": conversation_id}))
        elif frame_type == "send_message":
            request = MessageCreate.model_validate({
                "content": frame.get("content"),
                "type": frame.get("message_type", MessageType.TEXT),
                "file_data": frame.get("file_data"),
                "attachments": frame.get("attachments") or []
            })
            message = service.send_message(
                conversation_id,
                user_id,
                request.content,
                request.type,
                request.file_data.model_dump() if request.file_data else None,
                request.attachments
            )
            await websocket.send_text(
                _frame("message_sent", MessageResponse.model_validate(message).model_dump(mode="json"))
            )
        elif frame_type == "mark_read":
            count = service.mark_messages_as_read(conversation_id, user_id)
            await websocket.send_text(_frame("marked_read", {"conversation_id": conversation_id, "count": count}))
        else:
            await websocket.send_text(_frame("error", {"detail": f"Unknown frame type: {frame_type}"}))
    except ValidationError:
        await websocket.send_text(_frame("error", {"detail": "Invalid message payload"}))
    except MessagingError as exc:
        await websocket.send_text(_frame("error", {"detail": str(exc)}))
    except SQLAlchemyError:
        logger.exception("Websocket frame %s failed for user %s", frame_type, user_id)
        await websocket.send_text(_frame("error", {"detail": "Internal error"}))
    finally:
        db.close()
    await notifier.flush()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, session_factory=Depends(get_session_factory)):
    token = websocket.query_params.get("token")
    try:
        if not token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing authentication token")
        user_id = _user_id(fetch_account(token))
    except HTTPException as exc:
        logger.info("Rejected websocket connection: %s", exc.detail)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await manager.connect(websocket, user_id)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                frame = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_text(_frame("error", {"detail": "Invalid JSON"}))
                continue
            await _handle_frame(websocket, user_id, frame, session_factory)
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket, user_id)
