"""
Conversation-related Pydantic schemas for request/response validation.
"""
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator

from app.utils.identity import normalize_identity


MAX_MESSAGE_LENGTH = 4096


class ReplySchema(BaseModel):
    """Schema for one reply reference."""
    key: str = Field(..., description="Reply template key")
    params: Dict[str, Any] = Field(default_factory=dict, description="Template parameters")


class MessageRequest(BaseModel):
    """Schema for an inbound message."""
    identity: str = Field(..., description="Sender phone number")
    text: str = Field(..., max_length=MAX_MESSAGE_LENGTH, description="Raw message text")

    @field_validator('identity')
    @classmethod
    def _normalize_identity(cls, v: str):
        normalized = normalize_identity(v)
        if not normalized:
            raise ValueError("identity must contain digits")
        return normalized


class MessageResponse(BaseModel):
    """Schema for the result of one turn."""
    success: bool = Field(..., description="Whether the turn was processed")
    identity: str = Field(..., description="Normalized identity")
    routed_by: str = Field(..., description="structured or legacy")
    state_type: Optional[str] = Field(None, description="Next state type")
    context: Optional[str] = Field(None, description="Next state context")
    route: Optional[str] = Field(None, description="Routing decision kind")
    replies: List[ReplySchema] = Field(default_factory=list, description="Replies for the transport")
    legacy_status: Optional[str] = Field(None, description="Legacy status written through, if any")


class SessionStateResponse(BaseModel):
    """Schema for a stored session."""
    identity: str = Field(..., description="Normalized identity")
    state_type: str = Field(..., description="State type")
    context: str = Field(..., description="State context")
    label: str = Field(..., description="Breadcrumb label")
    expected_inputs: List[str] = Field(..., description="Inputs accepted in this state")
    data: Dict[str, Any] = Field(default_factory=dict, description="Accumulated state data")
    created_at: str = Field(..., description="When the session started")
    last_transition_at: str = Field(..., description="When the state last changed")


class BreadcrumbResponse(BaseModel):
    """Schema for a breadcrumb trail."""
    identity: str = Field(..., description="Normalized identity")
    breadcrumbs: List[str] = Field(..., description="Titles of the most recent screens")
    text: str = Field(..., description="Rendered trail")
    can_go_back: bool = Field(..., description="Whether back has an entry")
    can_go_forward: bool = Field(..., description="Whether forward has an entry")


class StatsResponse(BaseModel):
    """Schema for engine statistics."""
    success: bool = Field(..., description="Always true")
    data: Dict[str, Any] = Field(..., description="Store, navigation, adapter and error statistics")
