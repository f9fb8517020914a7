"""
Messaging endpoints: threads between parties with a business relationship
"""
from datetime import datetime

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.auth.dependencies import CurrentUser
from iplicensing.database import get_db
from iplicensing.redis_client import get_redis
from iplicensing.services.messaging_service import MessagingService

router = APIRouter(prefix="/messages", tags=["messages"])


class ThreadCreateRequest(BaseModel):
    participant_ids: list[str] = Field(min_length=1)
    subject: str | None = Field(default=None, max_length=255)


class ThreadResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    subject: str | None
    created_by: str
    last_message_at: datetime | None
    created_at: datetime


class ThreadCreatedResponse(BaseModel):
    thread: ThreadResponse
    existing_thread: bool


class ThreadSummaryResponse(BaseModel):
    thread: ThreadResponse
    unread_count: int


class ThreadListResponse(BaseModel):
    threads: list[ThreadSummaryResponse]
    has_more: bool


class SendMessageRequest(BaseModel):
    recipient_id: str
    body: str = Field(min_length=1, max_length=10000)


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    thread_id: str
    sender_id: str
    recipient_id: str
    body: str
    read_at: datetime | None
    created_at: datetime


class MessageListResponse(BaseModel):
    messages: list[MessageResponse]
    has_more: bool


def _service(db: AsyncSession, redis: aioredis.Redis | None) -> MessagingService:
    return MessagingService(db, redis)


@router.post("/threads", response_model=ThreadCreatedResponse)
async def create_thread(
    request: ThreadCreateRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis | None = Depends(get_redis),
) -> ThreadCreatedResponse:
    """
    Start a thread, or return the existing one for the same participants.
    """
    result = await _service(db, redis).create_thread(current_user, request.participant_ids, request.subject)
    return ThreadCreatedResponse(
        thread=ThreadResponse.model_validate(result.thread),
        existing_thread=result.existing_thread,
    )


@router.get("/threads", response_model=ThreadListResponse)
async def list_threads(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis | None = Depends(get_redis),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> ThreadListResponse:
    summaries, has_more = await _service(db, redis).list_threads(current_user, limit, offset)
    return ThreadListResponse(
        threads=[
            ThreadSummaryResponse(thread=ThreadResponse.model_validate(s.thread), unread_count=s.unread_count)
            for s in summaries
        ],
        has_more=has_more,
    )


@router.get("/threads/{thread_id}", response_model=ThreadResponse)
async def get_thread(
    thread_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis | None = Depends(get_redis),
) -> ThreadResponse:
    thread = await _service(db, redis).get_thread(current_user, thread_id)
    return ThreadResponse.model_validate(thread)


@router.get("/threads/{thread_id}/messages", response_model=MessageListResponse)
async def list_messages(
    thread_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis | None = Depends(get_redis),
    limit: int = Query(default=50, ge=1, le=100),
    before: datetime | None = None,
) -> MessageListResponse:
    messages, has_more = await _service(db, redis).list_messages(current_user, thread_id, limit, before)
    return MessageListResponse(
        messages=[MessageResponse.model_validate(m) for m in messages],
        has_more=has_more,
    )


@router.post(
    "/threads/{thread_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    thread_id: str,
    request: SendMessageRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis | None = Depends(get_redis),
) -> MessageResponse:
    message = await _service(db, redis).send_message(current_user, thread_id, request.recipient_id, request.body)
    return MessageResponse.model_validate(message)


@router.post("/threads/{thread_id}/read")
async def mark_thread_read(
    thread_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis | None = Depends(get_redis),
) -> dict:
    marked = await _service(db, redis).mark_thread_read(current_user, thread_id)
    return {"marked_read": marked}


@router.delete("/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_message(
    message_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis | None = Depends(get_redis),
) -> None:
    await _service(db, redis).delete_message(current_user, message_id)


@router.get("/unread-count")
async def unread_count(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis | None = Depends(get_redis),
) -> dict:
    return {"unread_count": await _service(db, redis).unread_count(current_user)}
