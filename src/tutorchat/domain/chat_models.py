from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


Role = Literal["user", "assistant"]


class Identity(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    email: str
    name: Optional[str] = None


class ChatMessageDraft(BaseModel):
    user_id: int
    session_id: str
    role: Role
    content: str
    goal_id: Optional[int] = None
    milestone_id: Optional[int] = None
    context_data: Optional[Dict[str, Any]] = None


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: int
    session_id: str
    role: Role
    content: str
    created_at: str
    goal_id: Optional[int] = None
    milestone_id: Optional[int] = None
    context_data: Optional[Dict[str, Any]] = None


class ChatSession(BaseModel):
    id: str
    user_id: int
    goal_id: Optional[int] = None
    title: Optional[str] = None
    summary: Optional[str] = None
    key_learning_points: List[str] = Field(default_factory=list)
    action_items: List[str] = Field(default_factory=list)
    message_count: int = 0
    started_at: str
    ended_at: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self.ended_at is not None


class ChatSessionWithMessages(BaseModel):
    session: ChatSession
    messages: List[ChatMessage]


class GoalContext(BaseModel):
    goal_id: int
    goal_title: str
    milestone_id: Optional[int] = None
    milestone_title: Optional[str] = None


# REST request bodies


class ChatSessionCreate(BaseModel):
    goal_id: Optional[int] = None
    title: Optional[str] = None


class ChatSessionClose(BaseModel):
    summary: str = Field(min_length=1)
    key_learning_points: List[str] = Field(default_factory=list)
    action_items: List[str] = Field(default_factory=list)
