"""API response schemas"""
from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from typing import Any, Dict, List, Optional


class ChatResponse(BaseModel):
    reply: str
    blocks: Optional[List[Dict[str, Any]]] = None
    confidence: float
    model: str
    requested_model: str
    response_id: Optional[str] = None
    thread_id: Optional[str] = None
    message_id: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class ThreadSummary(BaseModel):
    id: str
    title: Optional[str] = None
    updated_at: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class ChatOverviewResponse(BaseModel):
    model: str
    threads: List[ThreadSummary]


class ErrorResponse(BaseModel):
    error: str
    detail: Optional[str] = None
