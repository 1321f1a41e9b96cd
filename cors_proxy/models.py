from pydantic import BaseModel
from typing import Any, Dict, Optional


class EnvelopeRequest(BaseModel):
    """A request described in a JSON body instead of being encoded in the path."""

    url: Optional[str] = None
    method: Optional[str] = None
    headers: Optional[Dict[str, Any]] = None
    body: Optional[Any] = None


class EnvelopeResponse(BaseModel):
    body: Any = None
    headers: Dict[str, str]
    status: int
    statusText: str


class ErrorPayload(BaseModel):
    error: str
    detail: Optional[str] = None
