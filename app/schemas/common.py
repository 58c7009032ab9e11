"""
Common Pydantic schemas used across the application.
"""
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Schema for health check and simple acknowledgement responses."""
    success: bool = Field(..., description="Whether the operation succeeded")
    data: Dict[str, Any] = Field(..., description="Response data")
    message: str = Field(..., description="Response message")


class ErrorDetail(BaseModel):
    """Schema for the body of an error envelope."""
    id: str = Field(..., description="Error identifier for support lookups")
    code: str = Field(..., description="Application error code, e.g. E5001")
    message: str = Field(..., description="Error message")
    timestamp: str = Field(..., description="When the error occurred")
    path: Optional[str] = Field(None, description="Request path")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    suggestion: Optional[str] = Field(None, description="What the caller can do about it")


class ErrorResponse(BaseModel):
    """Schema for error responses."""
    error: ErrorDetail
