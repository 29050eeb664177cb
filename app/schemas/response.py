from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Optional
import uuid


def _rid():
    return uuid.uuid4().hex


class SuccessResponse(BaseModel):
    """Simple success response wrapper with just data, success, and request_id"""
    success: Optional[bool] = Field(default=True)
    request_id: str = Field(default_factory=_rid)
    data: Optional[Any] = None


class ErrorBody(BaseModel):
    """Machine readable code plus a message safe to show the caller. Extra keys (stage, details) pass through."""
    model_config = ConfigDict(extra="allow")

    code: str
    message: str


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorBody
    request_id: str = Field(default_factory=_rid)
