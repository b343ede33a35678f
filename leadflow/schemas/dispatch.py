from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class TaskType(str, Enum):
    CHAT = "chat"
    ANALYZE = "analyze"
    SUGGEST = "suggest"
    QUALIFY = "qualify"
    SENTIMENT = "sentiment"


# Tasks that skip the eligibility gate entirely.
UNGATED_TASKS = {TaskType.ANALYZE, TaskType.QUALIFY, TaskType.SENTIMENT}


class DispatchRequest(BaseModel):
    task: TaskType
    tenant_id: UUID
    payload: dict[str, Any] = Field(default_factory=dict)
    connection_id: Optional[UUID] = None


class DispatchResponse(BaseModel):
    success: bool
    task: Optional[TaskType] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    retry_after: Optional[int] = None


class LearnRequest(BaseModel):
    tenant_id: UUID
    content: str
    conversation_id: Optional[UUID] = None
    message_id: Optional[UUID] = None


class LearnResponse(BaseModel):
    learned: bool
    reason: Optional[str] = None
    content_type: Optional[str] = None
    became_ready: bool = False
